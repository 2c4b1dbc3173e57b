"""Convenience exports for fitplan gateway client implementations."""

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
    TokenUsage,
)
from .gemini import GeminiGatewayClient

__all__ = [
    "AIGatewayClient",
    "GatewayError",
    "GatewayNetworkError",
    "GatewayTimeoutError",
    "GeminiGatewayClient",
    "InvalidEndpointError",
    "NoCredentialError",
    "RateLimitedError",
    "ResponseParseError",
    "ServerError",
    "TokenUsage",
]
