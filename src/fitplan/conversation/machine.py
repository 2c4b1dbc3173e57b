"""State machine that gathers preferences in conversation and generates the plan."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

from ..analysis import CompletenessAnalyzer, RecoveryStrategy
from ..collaborators import ContextProvider, KeyValueStore, PlanStorage, UserContext
from ..diagnostics import GenerationLogWriter, GenerationTrace
from ..memory.ledger import GenerationLedger, LedgerError
from ..memory.schema import AssistantResponseType, ChatMessage, GenerationPhase, utc_now
from ..models.gateway import AIGatewayClient, GatewayError, GatewayNetworkError, ResponseParseError
from ..plans import PlanType
from ..prompts import (
    MORE_DETAILS_MESSAGE,
    accumulate_context,
    build_conversation_prompt,
    build_enhanced_preferences,
    build_gathering_system_prompt,
    build_plan_prompt,
    build_plan_system_prompt,
)
from ..reconcile import PartialSuccessReconciler, ReconciliationResult
from ..router import AIRequestConfig, AITaskType, TaskRouter, generation_task_for
from ..structured import load_json_document
from .persistence import ConversationPersistence
from .state import (
    AtMaxMessagesError,
    Completed,
    ConversationSession,
    Conversing,
    EmptyInputError,
    Failed,
    FailureKind,
    FailureReason,
    Generating,
    Idle,
    InvalidTransitionError,
    PlanGenerationError,
    Ready,
    SessionBusyError,
    SessionState,
)

__all__ = [
    "ConversationStateMachine",
    "DEFAULT_MAX_USER_MESSAGES",
    "GatheringReply",
    "failure_from_gateway_error",
    "parse_gathering_reply",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_USER_MESSAGES = 20


@dataclass(frozen=True, slots=True)
class GatheringReply:
    response_type: AssistantResponseType
    message: str
    summary: Optional[str] = None


def parse_gathering_reply(raw: str) -> GatheringReply:
    """Interpret a gathering response; plain prose is treated as a question."""
    document = load_json_document(raw)
    if isinstance(document, dict):
        message = str(document.get("message") or "").strip()
        if not message:
            raise ResponseParseError("gathering reply has no message")
        if str(document.get("type") or "").strip().lower() == "ready":
            summary = str(document.get("summary") or "").strip()
            return GatheringReply(AssistantResponseType.READY, message, summary or None)
        return GatheringReply(AssistantResponseType.QUESTION, message)
    text = raw.strip()
    if not text:
        raise ResponseParseError("gathering reply is empty")
    return GatheringReply(AssistantResponseType.QUESTION, text)


def failure_from_gateway_error(error: GatewayError) -> FailureReason:
    if isinstance(error, ResponseParseError):
        return FailureReason(kind=FailureKind.PARSING_ERROR, detail=error.detail)
    if isinstance(error, GatewayNetworkError):
        return FailureReason(kind=FailureKind.NETWORK_ERROR, detail=str(error))
    return FailureReason(kind=FailureKind.SERVICE_ERROR, detail=str(error))


class ConversationStateMachine:
    """Drives one plan type from the first message to a finished plan.

    Operations are synchronous and at most one runs per session at a time: a
    call arriving while another is in flight raises :class:`SessionBusyError`
    before anything is sent. :meth:`start_over` is the exception. It resets
    the session at once, and whatever the in-flight call produces afterwards
    is dropped because the session token no longer matches.

    Every state change is persisted as one record, so a restart restores
    messages, context, summary and state together. A session restored in the
    middle of generation is marked stale and waits for an explicit
    :meth:`start_plan_generation`.
    """

    def __init__(
        self,
        *,
        plan_type: PlanType,
        gateway: AIGatewayClient,
        store: KeyValueStore,
        user_id: Optional[str] = None,
        router: Optional[TaskRouter] = None,
        analyzer: Optional[CompletenessAnalyzer] = None,
        reconciler: Optional[PartialSuccessReconciler] = None,
        ledger: Optional[GenerationLedger] = None,
        plan_storage: Optional[PlanStorage] = None,
        context_provider: Optional[ContextProvider] = None,
        diagnostics: Optional[GenerationLogWriter] = None,
        max_user_messages: int = DEFAULT_MAX_USER_MESSAGES,
        use_fallback: bool = True,
    ) -> None:
        self._plan_type = plan_type
        self._gateway = gateway
        self._user_id = user_id
        self._router = router or TaskRouter()
        self._analyzer = analyzer or CompletenessAnalyzer(plan_type)
        self._reconciler = reconciler or PartialSuccessReconciler()
        self._ledger = ledger
        self._plan_storage = plan_storage
        self._context_provider = context_provider
        self._diagnostics = diagnostics
        self._max_user_messages = max_user_messages
        self._use_fallback = use_fallback
        self._persistence = ConversationPersistence(store, plan_type)

        self._mutex = threading.RLock()
        self._inflight: Optional[str] = None
        self._last_result: Optional[ReconciliationResult] = None
        self._session = ConversationSession(plan_type=plan_type)
        self._restore()

    # Observers ---------------------------------------------------------------------------
    @property
    def plan_type(self) -> PlanType:
        return self._plan_type

    @property
    def state(self) -> SessionState:
        with self._mutex:
            return self._session.state

    @property
    def messages(self) -> List[ChatMessage]:
        with self._mutex:
            return list(self._session.messages)

    @property
    def collected_context(self) -> str:
        with self._mutex:
            return self._session.collected_context

    @property
    def ready_summary(self) -> Optional[str]:
        with self._mutex:
            return self._session.ready_summary

    @property
    def error_message(self) -> Optional[str]:
        with self._mutex:
            return self._session.last_error

    @property
    def generation_id(self) -> Optional[str]:
        with self._mutex:
            return self._session.generation_id

    @property
    def is_processing_message(self) -> bool:
        with self._mutex:
            return self._inflight is not None and self._inflight == self._session.token

    @property
    def message_count(self) -> int:
        with self._mutex:
            return self._session.user_message_count

    @property
    def max_user_messages(self) -> int:
        return self._max_user_messages

    @property
    def is_at_max_messages(self) -> bool:
        return self.message_count >= self._max_user_messages

    @property
    def can_send_message(self) -> bool:
        with self._mutex:
            return self._session.state.accepts_messages and not self.is_processing_message

    @property
    def can_start_generation(self) -> bool:
        with self._mutex:
            return self._session.state.can_start_generation and not self.is_processing_message

    @property
    def last_result(self) -> Optional[ReconciliationResult]:
        """Reconciliation result of the most recent successful generation."""
        with self._mutex:
            return self._last_result

    # Operations --------------------------------------------------------------------------
    def start_conversation(self, seed_text: str) -> None:
        """Open a new conversation with the user's first message."""
        seed = (seed_text or "").strip()
        if not seed:
            raise EmptyInputError()
        with self._mutex:
            self._ensure_not_busy()
            current = self._session.state
            if not (isinstance(current, Idle) or current.is_terminal):
                raise InvalidTransitionError(
                    f"Cannot start a conversation while {current.kind}; start over first."
                )
            self._session = ConversationSession(
                plan_type=self._plan_type,
                messages=[ChatMessage.user(seed)],
                collected_context=seed,
            )
            self._last_result = None
            token = self._begin_turn()
            self._transition(Conversing())
            history, context = self._snapshot()

        try:
            generation_id = self._open_ledger_entry(token, history, context)
            try:
                reply = self._gather(history, context, forced=False)
            except GatewayError as error:
                reason = failure_from_gateway_error(error)
                self._apply(token, self._transition, Failed(reason=reason))
                if generation_id:
                    self._record("mark_failed", generation_id, reason.description)
            else:
                self._apply_reply(token, reply, forced=False)
        finally:
            self._end_turn(token)

    def send_message(self, text: str) -> None:
        """Send a follow-up answer while conversing.

        At the message cap the session is pushed to ``ready`` and
        :class:`AtMaxMessagesError` is raised after the transition.
        """
        text = (text or "").strip()
        if not text:
            raise EmptyInputError()
        with self._mutex:
            self._ensure_not_busy()
            current = self._session.state
            if not current.accepts_messages:
                raise InvalidTransitionError(f"Cannot send a message while {current.kind}.")
            at_cap = self._session.user_message_count >= self._max_user_messages
            previous_context = self._session.collected_context
            user_message: Optional[ChatMessage] = None
            if not at_cap:
                user_message = ChatMessage.user(text)
                self._session.messages.append(user_message)
                self._session.collected_context = accumulate_context(previous_context, text)
                self._session.last_error = None
                self._save()
            forced = self._session.user_message_count >= self._max_user_messages
            token = self._begin_turn()
            history, context = self._snapshot()
            generation_id = self._session.generation_id

        try:
            if user_message is not None and generation_id:
                self._record("append_message", generation_id, user_message, context)
            try:
                reply = self._gather(history, context, forced=forced)
            except GatewayError as error:
                if at_cap:
                    LOGGER.warning("Forced wrap-up turn failed (%s); marking ready anyway", error)
                    self._apply(token, self._force_ready)
                else:
                    self._apply(
                        token,
                        self._rollback_message,
                        user_message,
                        previous_context,
                        failure_from_gateway_error(error),
                    )
            else:
                self._apply_reply(token, reply, forced=forced)
        finally:
            self._end_turn(token)

        if at_cap:
            raise AtMaxMessagesError(self._max_user_messages)

    def request_more_questions(self) -> None:
        """Go back from ``ready`` to conversing so the user can add detail."""
        with self._mutex:
            self._ensure_not_busy()
            current = self._session.state
            if not isinstance(current, Ready):
                raise InvalidTransitionError(f"Cannot ask for more questions while {current.kind}.")
            if self._session.user_message_count >= self._max_user_messages:
                raise AtMaxMessagesError(self._max_user_messages)
            context = self._session.collected_context
            request = ChatMessage.user(MORE_DETAILS_MESSAGE)
            self._session.messages.append(request)
            self._session.ready_summary = None
            self._session.last_error = None
            self._transition(Conversing())
            forced = self._session.user_message_count >= self._max_user_messages
            token = self._begin_turn()
            history, _ = self._snapshot()
            generation_id = self._session.generation_id

        try:
            if generation_id:
                self._record("append_message", generation_id, request, context)
            try:
                reply = self._gather(history, context, forced=forced)
            except GatewayError as error:
                self._apply(
                    token,
                    self._rollback_message,
                    request,
                    context,
                    failure_from_gateway_error(error),
                )
            else:
                self._apply_reply(token, reply, forced=forced)
        finally:
            self._end_turn(token)

    def start_plan_generation(self) -> None:
        """Generate the plan from the gathered preferences.

        Allowed from ``ready``, from a stale restored ``generating`` state, and
        from a retryable generation failure.
        """
        with self._mutex:
            self._ensure_not_busy()
            current = self._session.state
            if not current.can_start_generation:
                raise InvalidTransitionError(f"Cannot start generation while {current.kind}.")
            if self._user_id is None:
                self._transition(Failed(reason=FailureReason(kind=FailureKind.USER_NOT_AUTHENTICATED)))
                return
            preferences = self._session.collected_context.strip()
            if not preferences:
                self._transition(Failed(reason=FailureReason(kind=FailureKind.EMPTY_PREFERENCES)))
                return
            summary = self._session.ready_summary
            token = self._begin_turn()
            self._session.last_error = None
            self._transition(Generating(progress=0.1))
            history, context = self._snapshot()
            generation_id = self._session.generation_id

        try:
            generation_id = self._prepare_generation_entry(token, generation_id, history, context)
            self._generate(token, generation_id, preferences, summary)
        except Exception:
            self._finish_failed(
                token,
                generation_id,
                FailureReason(kind=FailureKind.UNKNOWN, detail="Unexpected error during generation."),
            )
            raise
        finally:
            self._end_turn(token)

    def start_over(self) -> None:
        """Discard the session immediately; in-flight results are ignored."""
        with self._mutex:
            previous = self._session
            self._session = ConversationSession(plan_type=self._plan_type)
            self._last_result = None
            self._persistence.clear()
            LOGGER.debug("%s session %s -> idle (start over)", self._plan_type.value, previous.state.kind)
        if previous.generation_id and not previous.state.is_terminal:
            self._record(
                "mark_failed",
                previous.generation_id,
                FailureReason(kind=FailureKind.CANCELLED).description,
            )

    def acknowledge(self) -> None:
        """Clear a completed or failed session once the user has seen the outcome."""
        with self._mutex:
            current = self._session.state
            if not current.is_terminal:
                raise InvalidTransitionError(f"Nothing to acknowledge while {current.kind}.")
        self.start_over()

    # Generation --------------------------------------------------------------------------
    def _generate(
        self,
        token: str,
        generation_id: Optional[str],
        preferences: str,
        summary: Optional[str],
    ) -> None:
        config = self._router.config_for(generation_task_for(self._plan_type))
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="fitplan-context") as pool:
            pending_context = pool.submit(self._fetch_user_context)
            system_prompt = build_plan_system_prompt(self._plan_type)
            user_context = pending_context.result()
        prompt = build_plan_prompt(
            self._plan_type,
            build_enhanced_preferences(preferences, user_context),
            summary,
        )
        trace = GenerationTrace(
            plan_type=self._plan_type.value,
            generation_id=generation_id,
            config=config,
            system_prompt=system_prompt,
            prompt=prompt,
        )
        self._set_progress(token, 0.3)

        try:
            result = self._produce_plan(token, config, system_prompt, prompt, preferences, trace)
        except PlanGenerationError as error:
            trace.error = trace.error or error.reason.description
            self._finish_failed(token, generation_id, error.reason)
            return
        finally:
            if self._diagnostics is not None:
                self._diagnostics.write(trace)
        self._finish_completed(token, generation_id, result)

    def _produce_plan(
        self,
        token: str,
        config: AIRequestConfig,
        system_prompt: str,
        prompt: str,
        preferences: str,
        trace: GenerationTrace,
    ) -> ReconciliationResult:
        """Return a successful reconciliation or raise ``PlanGenerationError``."""
        send = self._gateway.send_with_fallback if self._use_fallback else self._gateway.send
        try:
            raw = send(prompt, system_prompt, config, observer=trace.record_attempt)
        except GatewayError as error:
            trace.error = str(error)
            raise PlanGenerationError(failure_from_gateway_error(error)) from error
        trace.response = raw
        self._set_progress(token, 0.7)

        analysis = self._analyzer.analyze(raw)
        trace.analysis = {
            "completeness": analysis.completeness,
            "strategy": analysis.recovery_strategy.value,
            "missing_fields": analysis.missing_fields[:50],
        }
        if analysis.recovery_strategy is RecoveryStrategy.ABORT:
            if analysis.raw_data is None:
                raise PlanGenerationError(
                    FailureReason(kind=FailureKind.PARSING_ERROR, detail="response was not JSON")
                )
            raise PlanGenerationError(
                FailureReason(kind=FailureKind.INSUFFICIENT_DATA, fields=analysis.missing_fields[:10])
            )
        self._set_progress(token, 0.85)

        result = self._reconciler.reconcile(
            analysis.raw_data,
            plan_type=self._plan_type,
            user_id=self._user_id or "",
            preferences=preferences,
        )
        trace.reconciliation = {
            "status": result.status.value,
            "filled_fields": result.filled_fields,
            "message": result.message,
        }
        if not result.success:
            raise PlanGenerationError(
                FailureReason(
                    kind=FailureKind.VALIDATION_FAILED,
                    detail=result.message,
                    fields=analysis.missing_fields[:10] or [result.message],
                )
            )
        return result

    def _fetch_user_context(self) -> Optional[UserContext]:
        if self._context_provider is None or self._user_id is None:
            return None
        try:
            return self._context_provider.get_context(self._user_id)
        except Exception:
            # enrichment only; generation proceeds without it
            LOGGER.warning("Context provider failed; generating without user context", exc_info=True)
            return None

    def _finish_completed(
        self,
        token: str,
        generation_id: Optional[str],
        result: ReconciliationResult,
    ) -> None:
        if not self._is_current(token):
            LOGGER.info("Dropping %s plan: the session was reset", self._plan_type.value)
            if generation_id:
                self._record(
                    "mark_failed",
                    generation_id,
                    FailureReason(kind=FailureKind.CANCELLED).description,
                )
            return
        if self._plan_storage is not None:
            try:
                self._plan_storage.save(result.plan)
            except Exception:
                LOGGER.exception("Saving %s plan %s failed", self._plan_type.value, result.plan.id)
                self._finish_failed(
                    token,
                    generation_id,
                    FailureReason(kind=FailureKind.SERVICE_ERROR, detail="Could not save the generated plan."),
                )
                return

        def complete() -> None:
            self._session.state = Generating(progress=1.0)
            self._last_result = result
            self._session.last_error = None
            self._transition(Completed(plan_id=result.plan.id, filled_field_count=len(result.filled_fields)))

        if self._apply(token, complete) and generation_id:
            self._record("mark_completed", generation_id, result.plan.id)

    def _finish_failed(self, token: str, generation_id: Optional[str], reason: FailureReason) -> None:
        applied = self._apply(token, self._transition, Failed(reason=reason, during_generation=True))
        if not generation_id:
            return
        description = reason.description if applied else FailureReason(kind=FailureKind.CANCELLED).description
        self._record("mark_failed", generation_id, description)

    # Ledger ------------------------------------------------------------------------------
    def _open_ledger_entry(self, token: str, history: List[ChatMessage], context: str) -> Optional[str]:
        if self._ledger is None or self._user_id is None:
            return None
        try:
            entry = self._ledger.create(self._user_id, self._plan_type, history, context)
        except LedgerError as error:
            LOGGER.warning("Ledger create failed: %s", error)
            return None
        self._apply(token, self._set_generation_id, entry.id)
        return entry.id

    def _prepare_generation_entry(
        self,
        token: str,
        generation_id: Optional[str],
        history: List[ChatMessage],
        context: str,
    ) -> Optional[str]:
        if self._ledger is None or self._user_id is None:
            return generation_id
        try:
            entry = self._ledger.get(generation_id) if generation_id else None
            if entry is None or entry.phase.is_terminal:
                entry = self._ledger.create(self._user_id, self._plan_type, history, context)
                self._apply(token, self._set_generation_id, entry.id)
            self._ledger.start_generation(entry.id)
        except LedgerError as error:
            LOGGER.warning("Ledger start_generation failed: %s", error)
            return self.generation_id if self._is_current(token) else generation_id
        return entry.id

    def _record(self, action: str, *args: Any) -> None:
        """Mirror a change into the ledger; ledger failures never stop the session."""
        if self._ledger is None:
            return
        try:
            getattr(self._ledger, action)(*args)
        except LedgerError as error:
            LOGGER.warning("Ledger %s failed: %s", action, error)

    # Session bookkeeping -----------------------------------------------------------------
    def _restore(self) -> None:
        session = self._persistence.restore()
        if session is None:
            return
        if isinstance(session.state, Generating) and not session.state.stale:
            session.state = self._recovered_generation_state(session)
        self._session = session
        LOGGER.info(
            "Restored %s session in state %s with %d message(s)",
            self._plan_type.value,
            session.state.kind,
            len(session.messages),
        )

    def _recovered_generation_state(self, session: ConversationSession) -> SessionState:
        """Resolve an interrupted generation from the ledger, else mark it stale."""
        stale = Generating(progress=session.state.progress, stale=True)
        if self._ledger is None or not session.generation_id:
            return stale
        try:
            entry = self._ledger.get(session.generation_id)
        except LedgerError as error:
            LOGGER.warning("Ledger lookup during restore failed: %s", error)
            return stale
        if entry is None:
            return stale
        if entry.phase is GenerationPhase.COMPLETED:
            return Completed(plan_id=entry.result_plan_id)
        if entry.phase is GenerationPhase.FAILED:
            reason = FailureReason(kind=FailureKind.SERVICE_ERROR, detail=entry.error_message or "")
            session.last_error = reason.description
            return Failed(reason=reason, during_generation=True)
        return stale

    def _ensure_not_busy(self) -> None:
        if self._inflight is not None and self._inflight == self._session.token:
            raise SessionBusyError()

    def _begin_turn(self) -> str:
        self._inflight = self._session.token
        return self._inflight

    def _end_turn(self, token: str) -> None:
        with self._mutex:
            if self._inflight == token:
                self._inflight = None

    def _is_current(self, token: str) -> bool:
        with self._mutex:
            return self._session.token == token

    def _apply(self, token: str, fn: Callable[..., Any], *args: Any) -> bool:
        """Run ``fn`` under the session lock unless the session was reset meanwhile."""
        with self._mutex:
            if self._session.token != token:
                LOGGER.info("Dropping stale %s result: the session was reset", self._plan_type.value)
                return False
            fn(*args)
            return True

    def _snapshot(self) -> Tuple[List[ChatMessage], str]:
        return list(self._session.messages), self._session.collected_context

    def _save(self) -> None:
        self._session.updated_at = utc_now()
        self._persistence.save(self._session)

    def _transition(self, new_state: SessionState) -> None:
        previous = self._session.state
        self._session.state = new_state
        LOGGER.debug("%s session %s -> %s", self._plan_type.value, previous.kind, new_state.kind)
        if isinstance(new_state, Failed):
            self._session.last_error = new_state.reason.description
            LOGGER.error("%s session failed: %s", self._plan_type.value, new_state.reason.description)
        self._save()

    def _set_generation_id(self, generation_id: str) -> None:
        self._session.generation_id = generation_id
        self._save()

    def _set_progress(self, token: str, progress: float) -> None:
        with self._mutex:
            if self._session.token != token or not isinstance(self._session.state, Generating):
                return
            self._session.state = Generating(progress=progress)
            LOGGER.debug("%s generation progress %.2f", self._plan_type.value, progress)
            self._save()

    # Gathering ---------------------------------------------------------------------------
    def _gather(self, history: List[ChatMessage], context: str, *, forced: bool) -> GatheringReply:
        config = self._router.config_for(AITaskType.CONVERSATIONAL_GATHERING)
        system_prompt = build_gathering_system_prompt(self._plan_type, forced=forced)
        raw = self._gateway.send(build_conversation_prompt(history, context), system_prompt, config)
        return parse_gathering_reply(raw)

    def _apply_reply(self, token: str, reply: GatheringReply, *, forced: bool) -> None:
        with self._mutex:
            if self._session.token != token:
                LOGGER.info("Dropping stale %s reply: the session was reset", self._plan_type.value)
                return
            if forced or reply.response_type is AssistantResponseType.READY:
                message = ChatMessage.assistant(reply.message, AssistantResponseType.READY)
                self._session.messages.append(message)
                self._session.ready_summary = reply.summary or self._session.collected_context
                self._session.last_error = None
                self._transition(Ready())
            else:
                message = ChatMessage.assistant(reply.message, AssistantResponseType.QUESTION)
                self._session.messages.append(message)
                self._session.last_error = None
                self._save()
            generation_id = self._session.generation_id
            context = self._session.collected_context
        if generation_id:
            self._record("append_message", generation_id, message, context)

    def _force_ready(self) -> None:
        self._session.ready_summary = self._session.collected_context
        self._transition(Ready())

    def _rollback_message(
        self,
        message: Optional[ChatMessage],
        previous_context: str,
        reason: FailureReason,
    ) -> None:
        messages = self._session.messages
        if message is not None and messages and messages[-1].id == message.id:
            messages.pop()
        self._session.collected_context = previous_context
        self._session.last_error = reason.description
        LOGGER.warning("%s gathering turn failed: %s", self._plan_type.value, reason.description)
        self._save()
        generation_id = self._session.generation_id
        if generation_id:
            self._record(
                "update_conversation",
                generation_id,
                list(messages),
                previous_context,
            )
