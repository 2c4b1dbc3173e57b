"""CLI commands for chatting through plan generation and managing the ledger."""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional

import typer

from .analysis import CompletenessAnalyzer
from .config import (
    DEFAULT_CONFIG_NAME,
    ConfigError,
    PipelineConfig,
    copy_config_template,
    write_config,
)
from .config import load_config as _load_pipeline_config
from .conversation import (
    AtMaxMessagesError,
    Completed,
    ConversationError,
    ConversationStateMachine,
    Failed,
    Idle,
    Ready,
)
from .diagnostics import GenerationLogWriter
from .memory import (
    GenerationLedger,
    LocalDatabase,
    PlanArchive,
    SQLiteDocumentStore,
    SQLiteKeyValueStore,
)
from .memory.schema import AssistantResponseType, ChatRole
from .models import GeminiGatewayClient
from .plans import PlanType
from .router import TaskRouter

APP_HELP = "Conversational diet and workout plan generator."

app = typer.Typer(help=APP_HELP)

QUIT_COMMANDS = {"quit", "exit", ":q"}


def load_config(config_path: Path) -> PipelineConfig:
    """Load configuration, turning problems into CLI errors."""
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")
    try:
        return _load_pipeline_config(config_path)
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


def _resolve(path: Path, config_path: Path) -> Path:
    if path.is_absolute():
        return path
    return (config_path.parent / path).resolve()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_plan_type(value: str) -> PlanType:
    try:
        return PlanType(value.strip().lower())
    except ValueError as error:
        choices = ", ".join(plan_type.value for plan_type in PlanType)
        raise typer.BadParameter(f"Unknown plan type '{value}'. Choose one of: {choices}") from error


def _open_database(config: PipelineConfig, config_path: Path) -> LocalDatabase:
    return LocalDatabase(_resolve(config.paths.db_path, config_path))


def _build_ledger(config: PipelineConfig, database: LocalDatabase) -> GenerationLedger:
    return GenerationLedger(
        SQLiteDocumentStore(database),
        retention=timedelta(days=config.ledger.retention_days),
    )


def _build_gateway(config: PipelineConfig) -> GeminiGatewayClient:
    gateway = config.gateway
    return GeminiGatewayClient(
        api_key_env=gateway.api_key_env,
        base_url=gateway.base_url,
        models=gateway.models or None,
        request_timeout=gateway.request_timeout,
        resource_timeout=gateway.resource_timeout,
        max_attempts=gateway.max_attempts,
        retry_base_delay=gateway.retry_base_delay,
    )


def _print_latest_reply(machine: ConversationStateMachine) -> None:
    for message in reversed(machine.messages):
        if message.role is ChatRole.ASSISTANT:
            typer.echo(f"\nAssistant: {message.content}\n")
            return


def _print_outcome(machine: ConversationStateMachine, archive: PlanArchive) -> None:
    state = machine.state
    if isinstance(state, Completed):
        typer.echo(f"Plan ready: {state.plan_id}")
        result = machine.last_result
        if result is not None and result.filled_fields:
            typer.echo(f"{len(result.filled_fields)} field(s) were filled with defaults:")
            for note in result.filled_fields[:10]:
                typer.echo(f"- {note}")
            if len(result.filled_fields) > 10:
                typer.echo(f"- ... and {len(result.filled_fields) - 10} more")
        if state.plan_id:
            plan = archive.get(state.plan_id)
            if plan is not None:
                typer.echo(f"Stored {plan.plan_type.display_name} with status {plan.generation_status.value}.")
    elif isinstance(state, Failed):
        stage = "Generation" if state.during_generation else "Conversation"
        typer.echo(f"{stage} failed: {state.reason.description}")


@app.command()
def init(
    config_path: Path = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path where the configuration file will be written.",
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a default configuration file."""
    if config_path.exists() and not force:
        typer.echo(f"Config already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)
    write_config(config_path, copy_config_template())
    typer.echo(f"Wrote configuration to {config_path}.")


@app.command()
def chat(
    plan_type: str = typer.Option(
        PlanType.DIET.value,
        "--plan-type",
        "-p",
        help="Plan to generate: diet, workout_home or workout_gym.",
    ),
    user: str = typer.Option(..., "--user", "-u", help="Identifier of the user the plan belongs to."),
    config_path: Path = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Chat with the assistant until a plan can be generated."""
    _configure_logging(verbose)
    config = load_config(config_path)
    selected = _parse_plan_type(plan_type)
    try:
        router = TaskRouter(config.routing)
    except (KeyError, ValueError) as error:
        typer.echo(f"Invalid routing configuration: {error}")
        raise typer.Exit(code=1) from error

    with _open_database(config, config_path) as database:
        archive = PlanArchive(database)
        machine = ConversationStateMachine(
            plan_type=selected,
            gateway=_build_gateway(config),
            store=SQLiteKeyValueStore(database),
            user_id=user,
            router=router,
            analyzer=CompletenessAnalyzer(
                selected, threshold=config.conversation.acceptable_completeness
            ),
            ledger=_build_ledger(config, database),
            plan_storage=archive,
            diagnostics=GenerationLogWriter(_resolve(config.paths.logs, config_path)),
            max_user_messages=config.conversation.max_user_messages,
            use_fallback=config.gateway.use_fallback,
        )
        typer.echo(f"{selected.display_name} assistant. Type 'quit' to leave.")
        _run_chat(machine, archive)


def _run_chat(machine: ConversationStateMachine, archive: PlanArchive) -> None:
    state = machine.state
    if state.is_terminal:
        _print_outcome(machine, archive)
        machine.acknowledge()
    elif not isinstance(state, Idle):
        typer.echo(f"Resuming session ({state.kind}).")
        _print_latest_reply(machine)

    while True:
        state = machine.state
        try:
            if isinstance(state, Idle):
                text = typer.prompt("Describe what you are looking for")
                if text.strip().lower() in QUIT_COMMANDS:
                    return
                machine.start_conversation(text)
            elif isinstance(state, Ready):
                typer.echo(f"\nSummary: {machine.ready_summary or machine.collected_context}\n")
                choice = typer.prompt("Generate now? [y]es / [m]ore questions / [q]uit", default="y")
                choice = choice.strip().lower()
                if choice.startswith("q"):
                    return
                if choice.startswith("m"):
                    machine.request_more_questions()
                else:
                    typer.echo("Generating plan...")
                    machine.start_plan_generation()
            elif state.can_start_generation:
                if isinstance(state, Failed):
                    typer.echo(f"Generation failed: {state.reason.description}")
                if not typer.confirm("Retry plan generation?", default=True):
                    return
                machine.start_plan_generation()
            elif state.accepts_messages:
                text = typer.prompt("You")
                if text.strip().lower() in QUIT_COMMANDS:
                    return
                machine.send_message(text)
            else:
                _print_outcome(machine, archive)
                machine.acknowledge()
                return
        except AtMaxMessagesError as error:
            typer.echo(str(error))
        except ConversationError as error:
            typer.echo(f"Error: {error}")
            return

        if machine.error_message and machine.state.accepts_messages:
            typer.echo(f"Error: {machine.error_message}")
        if machine.messages and machine.messages[-1].response_type is AssistantResponseType.QUESTION:
            if machine.state.accepts_messages:
                _print_latest_reply(machine)
        elif isinstance(machine.state, Ready):
            _print_latest_reply(machine)


@app.command()
def pending(
    user: str = typer.Option(..., "--user", "-u", help="Identifier of the user to inspect."),
    config_path: Path = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    notify: bool = typer.Option(
        False,
        "--notify",
        help="Mark listed completed generations as notified.",
    ),
) -> None:
    """List active generations and completed ones the user has not been told about."""
    config = load_config(config_path)
    with _open_database(config, config_path) as database:
        ledger = _build_ledger(config, database)
        active = ledger.list_active(user)
        unnotified = ledger.list_completed_unnotified(user)
        if not active and not unnotified:
            typer.echo("No pending generations.")
            return
        if active:
            typer.echo("Active generations:")
            for entry in active:
                typer.echo(
                    f"- {entry.id} [{entry.plan_type.value}] {entry.recovery_description} "
                    f"({entry.message_count} message(s))"
                )
        if unnotified:
            typer.echo("Completed generations:")
            for entry in unnotified:
                typer.echo(f"- {entry.id} [{entry.plan_type.value}] plan {entry.result_plan_id}")
                if notify:
                    ledger.mark_notification_sent(entry.id)
            if notify:
                typer.echo(f"Marked {len(unnotified)} generation(s) as notified.")


@app.command()
def cleanup(
    user: str = typer.Option(..., "--user", "-u", help="Identifier of the user to clean up."),
    config_path: Path = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
) -> None:
    """Delete finished ledger entries older than the retention window."""
    config = load_config(config_path)
    with _open_database(config, config_path) as database:
        removed = _build_ledger(config, database).cleanup(user)
    typer.echo(f"Removed {removed} expired generation record(s).")


@app.command()
def plans(
    user: str = typer.Option(..., "--user", "-u", help="Identifier of the user whose plans to list."),
    config_path: Path = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
) -> None:
    """List stored plans for a user."""
    config = load_config(config_path)
    with _open_database(config, config_path) as database:
        stored = PlanArchive(database).list_for_user(user)
    if not stored:
        typer.echo("No plans stored.")
        return
    for plan in stored:
        filled = f", {len(plan.filled_fields)} filled" if plan.filled_fields else ""
        typer.echo(
            f"- {plan.id} {plan.plan_type.display_name} "
            f"[{plan.generation_status.value}{filled}] {plan.created_at.isoformat()}"
        )


def main(argv: Optional[list[str]] = None) -> None:
    app(args=argv)


if __name__ == "__main__":
    main()
