from __future__ import annotations

from pathlib import Path

import pytest

from fitplan.config import ConfigError, PipelineConfig, copy_config_template, load_config, write_config
from fitplan.router import AITaskType, TaskRouter, ThinkingLevel


def test_partial_config_is_merged_onto_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "gateway:\n  max_attempts: 5\nrouting:\n  plan_adjustment:\n    thinking: high\n",
        encoding="utf-8",
    )

    config = load_config(config_path)

    assert config.gateway.max_attempts == 5
    assert config.gateway.retry_base_delay == 1.0
    assert config.gateway.models["deep"] == "gemini-3-pro-preview"
    assert TaskRouter(config.routing).config_for(AITaskType.PLAN_ADJUSTMENT).thinking is ThinkingLevel.HIGH


def test_written_template_loads_back(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "config.yaml"
    write_config(config_path, copy_config_template())

    assert load_config(config_path) == PipelineConfig.from_mapping({})


def test_template_copy_is_independent() -> None:
    template = copy_config_template()
    template["gateway"]["max_attempts"] = 9

    assert copy_config_template()["gateway"]["max_attempts"] == 3


@pytest.mark.parametrize(
    "text",
    [
        "- just\n- a list\n",
        "conversation:\n  acceptable_completeness: 1.5\n",
        "gateway:\n  max_attempts: lots\n",
        "ledger: 7\n",
        "gateway: [unclosed\n",
    ],
)
def test_invalid_configs_raise(tmp_path: Path, text: str) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(text, encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(config_path)


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "absent.yaml")
