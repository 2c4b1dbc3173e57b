"""Structured JSON logs for plan-generation calls."""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .models.gateway import GatewayError
from .router import AIRequestConfig

__all__ = [
    "GenerationLogEntry",
    "GenerationLogWriter",
    "GenerationTrace",
    "load_generation_log",
]

LOGGER = logging.getLogger(__name__)


def _slug(value: str, *, fallback: str = "item", max_length: int = 80) -> str:
    """Normalise identifiers for use in log filenames."""
    cleaned = re.sub(r"[^A-Za-z0-9]+", "-", value).strip("-")
    slug = cleaned or fallback
    if len(slug) <= max_length:
        return slug
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    return f"{slug[: max_length - 9].rstrip('-')}-{digest}"


@dataclass(slots=True)
class GenerationTrace:
    """Everything learned about one generation call, filled in as it progresses."""

    plan_type: str
    generation_id: Optional[str]
    config: AIRequestConfig
    system_prompt: str
    prompt: str
    attempts: List[Dict[str, Any]] = field(default_factory=list)
    response: Optional[str] = None
    error: Optional[str] = None
    analysis: Dict[str, Any] = field(default_factory=dict)
    reconciliation: Dict[str, Any] = field(default_factory=dict)

    def record_attempt(self, attempt: int, error: Optional[GatewayError]) -> None:
        """Gateway observer callback."""
        self.attempts.append(
            {
                "attempt": attempt,
                "ok": error is None,
                "error": type(error).__name__ if error is not None else None,
            }
        )

    def as_payload(self) -> Dict[str, Any]:
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "plan_type": self.plan_type,
            "generation_id": self.generation_id,
            "config": {
                "tier": self.config.tier.value,
                "thinking": self.config.thinking.value,
                "max_output_tokens": self.config.max_output_tokens,
                "temperature": self.config.temperature,
            },
            "context": {"system_prompt": self.system_prompt, "user_prompt": self.prompt},
            "attempts": self.attempts,
            "response": self.response,
            "error": self.error,
            "analysis": self.analysis,
            "reconciliation": self.reconciliation,
        }


class GenerationLogWriter:
    """Writes one JSON file per generation under ``<logs_root>/generations``."""

    def __init__(self, logs_root: Path | str) -> None:
        self._root = Path(logs_root) / "generations"

    @property
    def root(self) -> Path:
        return self._root

    def write(self, trace: GenerationTrace) -> Optional[Path]:
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError:
            return None
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        parts = ["generation", _slug(trace.plan_type)]
        if trace.generation_id:
            parts.append(_slug(trace.generation_id))
        parts.append(timestamp)
        log_path = self._root / ("__".join(parts) + ".json")
        try:
            with log_path.open("w", encoding="utf-8") as handle:
                json.dump(trace.as_payload(), handle, indent=2, sort_keys=True, ensure_ascii=False)
        except OSError:
            return None
        LOGGER.debug("Wrote generation log %s", log_path)
        return log_path


@dataclass(slots=True)
class GenerationLogEntry:
    """In-memory representation of a stored generation log."""

    path: Path
    plan_type: str
    payload: Mapping[str, Any]

    @property
    def generation_id(self) -> Optional[str]:
        value = self.payload.get("generation_id")
        return value if isinstance(value, str) and value else None

    @property
    def succeeded(self) -> bool:
        return self.payload.get("error") is None and self.payload.get("response") is not None

    @property
    def attempts(self) -> List[Mapping[str, Any]]:
        value = self.payload.get("attempts")
        return list(value) if isinstance(value, list) else []


def load_generation_log(path: Path | str) -> GenerationLogEntry:
    """Load a structured generation log from disk."""
    log_path = Path(path).resolve()
    with log_path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    return GenerationLogEntry(
        path=log_path,
        plan_type=str(payload.get("plan_type") or "").strip(),
        payload=payload,
    )
