from __future__ import annotations

import asyncio
from typing import Optional

from stemflow.core.models import GenerationError

PARSE_FAILURE_MESSAGE = "Failed to parse AI response"
MISSING_KEY_MESSAGE = "No API key found. Please configure settings."
TRUNCATED_MESSAGE = "Response was truncated due to length limit. Try a shorter prompt or simpler request."

_RETRYABLE_CODES = frozenset({"rate_limit", "upstream", "network", "parse"})


class StemflowError(RuntimeError):
    pass


class ConfigurationError(StemflowError):
    """No usable provider/key, or the request names something that does not exist."""


class UnsupportedModelError(StemflowError, ValueError):
    pass


class UpstreamError(StemflowError):
    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        body: str = "",
        provider: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body
        self.provider = provider


class NetworkError(UpstreamError):
    pass


class MalformedOutputError(StemflowError):
    pass


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, NetworkError):
        return True
    if isinstance(exc, UpstreamError) and exc.status is not None:
        return exc.status in (408, 429) or exc.status >= 500
    return isinstance(exc, asyncio.TimeoutError)


def _code_from_message(message: str) -> str:
    lowered = message.lower()
    if "429" in lowered or "rate limit" in lowered:
        return "rate_limit"
    if "401" in lowered or "403" in lowered or "api key" in lowered:
        return "auth"
    if "network" in lowered or "fetch" in lowered:
        return "network"
    return "unknown"


def classify_error(exc: BaseException) -> tuple[str, bool]:
    """Map a failure to a coarse (code, retryable) pair for display on a staged proposal."""
    if isinstance(exc, NetworkError) or isinstance(exc, asyncio.TimeoutError):
        code = "network"
    elif isinstance(exc, UpstreamError) and exc.status is not None:
        if exc.status == 429:
            code = "rate_limit"
        elif exc.status == 408:
            code = "network"
        elif exc.status in (401, 403):
            code = "auth"
        elif exc.status >= 500:
            code = "upstream"
        else:
            code = "unknown"
    elif isinstance(exc, MalformedOutputError):
        code = "parse"
    elif isinstance(exc, ConfigurationError):
        code = "config"
    else:
        code = _code_from_message(str(exc))
    return code, code in _RETRYABLE_CODES


def to_generation_error(exc: BaseException) -> GenerationError:
    code, retryable = classify_error(exc)
    message = str(exc) or type(exc).__name__
    provider = getattr(exc, "provider", None)
    return GenerationError(message=message, retryable=retryable, code=code, provider=provider)
