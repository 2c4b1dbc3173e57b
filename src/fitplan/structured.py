"""Helpers that pull JSON documents out of free-form model output."""

from __future__ import annotations

import json
import re
from typing import Any, Optional

__all__ = [
    "load_json_document",
    "normalise_json_string",
    "repair_json_payload",
    "strip_code_fence",
    "strip_trailing_commas",
]


def strip_code_fence(payload: str) -> str:
    """Remove Markdown-style code fences that wrap JSON payloads.

    A missing closing fence is tolerated, since long generations are often
    cut off before the model gets to emit it.
    """
    text = payload.strip()
    if not text.startswith("```"):
        return text
    header = re.match(r"```[A-Za-z0-9_-]*", text)
    if header is None:
        return text
    content_start = text.find("\n", header.end())
    if content_start == -1:
        return ""
    fence_end = text.rfind("```")
    if fence_end <= content_start:
        return text[content_start + 1 :].strip()
    return text[content_start + 1 : fence_end].strip()


def normalise_json_string(payload: str) -> str:
    """Normalise common non-JSON characters emitted by models."""
    if not payload:
        return payload
    translation = {
        0x201C: '"',
        0x201D: '"',
        0x00A0: " ",
        0xFEFF: "",
    }
    return payload.translate(str.maketrans(translation))


def strip_trailing_commas(payload: str) -> str:
    """Remove trailing commas before closing braces/brackets."""
    if not payload:
        return payload
    return re.sub(r",(\s*[}\]])", r"\1", payload)


def repair_json_payload(raw: str) -> Optional[str]:
    """Return the first balanced JSON object or array embedded in noisy output."""
    opening_idx = None
    expected: list[str] = []
    in_string = False
    escaped = False
    for index, char in enumerate(raw):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and expected:
            in_string = True
        elif char in "{[":
            if opening_idx is None:
                opening_idx = index
            expected.append("}" if char == "{" else "]")
        elif expected and char == expected[-1]:
            expected.pop()
            if not expected and opening_idx is not None:
                return strip_trailing_commas(raw[opening_idx : index + 1].strip())
    return None


def load_json_document(raw: str) -> Optional[Any]:
    """Parse ``raw`` as JSON after fence stripping and light repair.

    Returns ``None`` when nothing parseable can be recovered.
    """
    if not raw or not raw.strip():
        return None
    stripped = strip_code_fence(raw)
    candidates = [stripped]
    normalised = normalise_json_string(stripped)
    for text in (normalised, repair_json_payload(stripped), repair_json_payload(normalised)):
        if text and text not in candidates:
            candidates.append(text)
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None
