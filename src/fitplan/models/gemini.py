"""Production client for the Gemini ``generateContent`` endpoint."""

from __future__ import annotations

import json
import logging
import os
import time
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import urlparse

from ..router import AIRequestConfig, ModelTier
from .gateway import (
    AIGatewayClient,
    GatewayError,
    GatewayNetworkError,
    GatewayTimeoutError,
    InvalidEndpointError,
    NoCredentialError,
    RateLimitedError,
    ResponseParseError,
    ServerError,
    Sleep,
    TokenUsage,
)

__all__ = ["DEFAULT_BASE_URL", "DEFAULT_MODELS", "GeminiGatewayClient", "Transport"]

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_MODELS: Dict[ModelTier, str] = {
    ModelTier.FAST: "gemini-3-flash-preview",
    ModelTier.DEEP: "gemini-3-pro-preview",
}

_ERROR_BODY_LIMIT = 500
_READ_CHUNK = 64 * 1024

# (url, body, headers) -> (http status, response text)
Transport = Callable[[str, bytes, Dict[str, str]], Tuple[int, str]]


class GeminiGatewayClient(AIGatewayClient):
    """Thin adapter around the Gemini JSON ``generateContent`` API."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        api_key_env: str = "GEMINI_API_KEY",
        base_url: str = DEFAULT_BASE_URL,
        models: Optional[Mapping[ModelTier | str, str]] = None,
        transport: Optional[Transport] = None,
        request_timeout: float = 120.0,
        resource_timeout: float = 180.0,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        sleep: Optional[Sleep] = None,
    ) -> None:
        super().__init__(max_attempts=max_attempts, retry_base_delay=retry_base_delay, sleep=sleep)
        self._api_key = api_key or os.getenv(api_key_env) or None
        self._base_url = base_url.rstrip("/")
        self._models: Dict[ModelTier, str] = dict(DEFAULT_MODELS)
        for tier, name in (models or {}).items():
            self._models[ModelTier(tier)] = name
        self._request_timeout = request_timeout
        self._resource_timeout = resource_timeout
        self._transport = transport or self._http_transport

    def model_for(self, tier: ModelTier) -> str:
        return self._models[tier]

    def endpoint_for(self, tier: ModelTier) -> str:
        """Return the ``generateContent`` URL for the model serving ``tier``."""
        parsed = urlparse(self._base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise InvalidEndpointError(f"Invalid AI service endpoint: {self._base_url!r}")
        return f"{self._base_url}/{self.model_for(tier)}:generateContent"

    @staticmethod
    def build_payload(prompt: str, system_prompt: str, config: AIRequestConfig) -> Dict[str, Any]:
        """Render the request body for one generation call."""
        generation_config: Dict[str, Any] = {
            "temperature": config.temperature,
            "maxOutputTokens": config.max_output_tokens,
        }
        if config.json_mode:
            generation_config["responseMimeType"] = "application/json"
        budget = config.thinking.budget_tokens
        if budget is not None:
            generation_config["thinkingConfig"] = {"thinkingBudget": budget}

        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        return payload

    def _raw_send(self, prompt: str, system_prompt: str, config: AIRequestConfig) -> str:
        if not self._api_key:
            raise NoCredentialError()
        url = self.endpoint_for(config.tier)
        body = json.dumps(self.build_payload(prompt, system_prompt, config)).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self._api_key,
        }
        LOGGER.debug(
            "Sending %d prompt chars to %s (thinking=%s, max_tokens=%d)",
            len(prompt),
            self.model_for(config.tier),
            config.thinking.value,
            config.max_output_tokens,
        )

        try:
            status, text = self._transport(url, body, headers)
        except GatewayError:
            raise
        except TimeoutError as error:
            raise GatewayTimeoutError() from error
        except OSError as error:
            raise GatewayNetworkError(f"Failed to reach AI service: {error}") from error

        LOGGER.debug("AI service answered HTTP %d (%d bytes)", status, len(text))
        self._raise_for_status(status, text)
        return self._extract_text(text)

    @staticmethod
    def _raise_for_status(status: int, body: str) -> None:
        if 200 <= status < 300:
            return
        LOGGER.warning("AI service HTTP %d: %s", status, body[:_ERROR_BODY_LIMIT])
        if status == 429:
            raise RateLimitedError()
        raise ServerError(status)

    def _extract_text(self, raw_response: str) -> str:
        """Pull the generated text out of the provider envelope."""
        if not raw_response or not raw_response.strip():
            raise ResponseParseError("empty response body")
        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError as error:
            LOGGER.warning("Non-JSON AI service envelope: %s", raw_response[:_ERROR_BODY_LIMIT])
            raise ResponseParseError(f"envelope is not JSON ({error.msg})") from error
        if not isinstance(data, dict):
            raise ResponseParseError("envelope is not an object")

        error_block = data.get("error")
        if isinstance(error_block, dict):
            message = error_block.get("message")
            LOGGER.warning("AI service reported an error: %s", str(message)[:_ERROR_BODY_LIMIT])
            raise ResponseParseError("the service reported an error")

        self._record_usage(data.get("usageMetadata"))

        text = self._first_candidate_text(data.get("candidates"))
        if text is None:
            text = self._first_choice_text(data.get("choices"))
        if text is None:
            raise ResponseParseError("no content in response")
        return text

    def _record_usage(self, usage: Any) -> None:
        if not isinstance(usage, dict):
            self.last_usage = None
            return
        self.last_usage = TokenUsage(
            prompt_tokens=int(usage.get("promptTokenCount") or 0),
            response_tokens=int(usage.get("candidatesTokenCount") or 0),
            thinking_tokens=int(usage.get("thoughtsTokenCount") or 0),
        )
        LOGGER.info(
            "Token usage: prompt=%d response=%d thinking=%d total=%d",
            self.last_usage.prompt_tokens,
            self.last_usage.response_tokens,
            self.last_usage.thinking_tokens,
            self.last_usage.total_tokens,
        )

    @staticmethod
    def _first_candidate_text(candidates: Any) -> Optional[str]:
        """Join the non-thought text parts of the first candidate that has any."""
        if not isinstance(candidates, list):
            return None
        for candidate in candidates:
            if not isinstance(candidate, dict):
                continue
            content = candidate.get("content")
            parts = content.get("parts") if isinstance(content, dict) else None
            if not isinstance(parts, list):
                continue
            texts = [
                part["text"]
                for part in parts
                if isinstance(part, dict)
                and isinstance(part.get("text"), str)
                and not part.get("thought")
            ]
            joined = "".join(texts)
            if joined.strip():
                return joined
        return None

    @staticmethod
    def _first_choice_text(choices: Any) -> Optional[str]:
        # OpenAI-compatible proxies answer with ``choices[].message.content``.
        if not isinstance(choices, list):
            return None
        for choice in choices:
            message = choice.get("message") if isinstance(choice, dict) else None
            if not isinstance(message, dict):
                continue
            text = message.get("content")
            if isinstance(text, str) and text.strip():
                return text
        return None

    def _http_transport(self, url: str, body: bytes, headers: Dict[str, str]) -> Tuple[int, str]:
        """Default HTTP transport enforcing the request and whole-resource deadlines."""
        request = urllib.request.Request(url, data=body, headers=headers, method="POST")
        deadline = time.monotonic() + self._resource_timeout
        try:
            with urllib.request.urlopen(request, timeout=self._request_timeout) as response:
                status = getattr(response, "status", 200)
                chunks: list[bytes] = []
                while True:
                    if time.monotonic() > deadline:
                        raise GatewayTimeoutError("The AI service response took too long to arrive.")
                    chunk = response.read(_READ_CHUNK)
                    if not chunk:
                        break
                    chunks.append(chunk)
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            return error.code, error.read().decode("utf-8", errors="replace")
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            if isinstance(error.reason, TimeoutError):
                raise GatewayTimeoutError() from error
            raise GatewayNetworkError(f"Failed to reach AI service: {error.reason}") from error
        except ValueError as error:
            raise InvalidEndpointError(f"Invalid AI service endpoint: {url!r}") from error
        return status, b"".join(chunks).decode("utf-8", errors="replace")
