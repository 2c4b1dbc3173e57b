"""Gateway client base class shared by all generator integrations."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..router import AIRequestConfig, ModelTier

__all__ = [
    "AIGatewayClient",
    "AttemptObserver",
    "GatewayError",
    "GatewayNetworkError",
    "GatewayTimeoutError",
    "InvalidEndpointError",
    "NoCredentialError",
    "RateLimitedError",
    "ResponseParseError",
    "ServerError",
    "TokenUsage",
]

LOGGER = logging.getLogger(__name__)


class GatewayError(RuntimeError):
    """Base error raised for gateway failures."""

    retryable = False


class NoCredentialError(GatewayError):
    """Raised when no API key is configured."""

    def __init__(self, message: str = "AI service credential is not configured.") -> None:
        super().__init__(message)


class InvalidEndpointError(GatewayError):
    """Raised when the configured endpoint cannot be turned into a request URL."""


class RateLimitedError(GatewayError):
    """Raised when the provider answers HTTP 429."""

    retryable = True

    def __init__(self, message: str = "AI service rate limit reached.") -> None:
        super().__init__(message)


class ServerError(GatewayError):
    """Raised for non-success HTTP statuses other than 429."""

    retryable = True

    def __init__(self, code: int) -> None:
        super().__init__(f"AI service returned HTTP {code}.")
        self.code = code


class ResponseParseError(GatewayError):
    """Raised when the response envelope is empty, malformed, or reports an error."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"Could not read AI service response: {detail}")
        self.detail = detail


class GatewayNetworkError(GatewayError):
    """Raised when the transport fails before a response arrives."""

    retryable = True

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class GatewayTimeoutError(GatewayNetworkError):
    """Raised when the request or resource deadline expires."""

    def __init__(self, detail: str = "The AI service did not respond in time.") -> None:
        super().__init__(detail)


@dataclass(slots=True)
class TokenUsage:
    prompt_tokens: int = 0
    response_tokens: int = 0
    thinking_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.response_tokens + self.thinking_tokens


AttemptObserver = Callable[[int, Optional[GatewayError]], None]
Sleep = Callable[[float], None]


class AIGatewayClient:
    """Sends prompts to the generator with classified retry and tier fallback.

    Subclasses implement :meth:`_raw_send`, which performs exactly one request
    and raises a :class:`GatewayError` subclass on failure. Retryable errors
    are re-attempted with exponential backoff (``base * 2 ** (attempt - 1)``)
    through the injected ``sleep`` callable; everything else surfaces on the
    first attempt. After the final attempt the last error is re-raised as is.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self._max_attempts = max(1, max_attempts)
        self._retry_base_delay = retry_base_delay
        self._sleep = sleep or time.sleep
        self.last_usage: Optional[TokenUsage] = None

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def backoff_delay(self, attempt: int) -> float:
        """Delay slept after failed ``attempt`` (1-based) before the next one."""
        return self._retry_base_delay * (2 ** (attempt - 1))

    def send(
        self,
        prompt: str,
        system_prompt: str,
        config: AIRequestConfig,
        *,
        observer: Optional[AttemptObserver] = None,
        max_attempts: Optional[int] = None,
    ) -> str:
        """Send ``prompt`` and return the generated text."""
        attempts = max(1, max_attempts or self._max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                text = self._raw_send(prompt, system_prompt, config)
            except GatewayError as error:
                if observer:
                    observer(attempt, error)
                if not error.retryable or attempt >= attempts:
                    LOGGER.warning(
                        "Gateway request failed on attempt %d/%d: %s", attempt, attempts, error
                    )
                    raise
                delay = self.backoff_delay(attempt)
                LOGGER.info(
                    "Gateway attempt %d/%d failed (%s); retrying in %.1fs",
                    attempt,
                    attempts,
                    error,
                    delay,
                )
                self._sleep(delay)
                continue
            if observer:
                observer(attempt, None)
            LOGGER.debug("Gateway request succeeded on attempt %d", attempt)
            return text
        raise AssertionError("unreachable: retry loop always returns or raises")

    def send_with_fallback(
        self,
        prompt: str,
        system_prompt: str,
        config: AIRequestConfig,
        *,
        observer: Optional[AttemptObserver] = None,
    ) -> str:
        """Send on ``config`` and, when a deep-tier call fails, try the fast tier once."""
        try:
            return self.send(prompt, system_prompt, config, observer=observer)
        except GatewayError as error:
            if config.tier is not ModelTier.DEEP:
                raise
            fallback = config.as_fallback()
            LOGGER.warning(
                "Deep tier failed (%s); making one fast-tier attempt with %s thinking",
                error,
                fallback.thinking.value,
            )
            return self.send(prompt, system_prompt, fallback, observer=observer, max_attempts=1)

    def _raw_send(self, prompt: str, system_prompt: str, config: AIRequestConfig) -> str:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_send().")
