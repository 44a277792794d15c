"""
Abstract interface for external classification workers.

Defines the contract every provider adapter implements, and the mapping
from raw provider failures onto the normalized error taxonomy.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from credit_batcher.errors import (
    AuthError,
    ContentRejectedError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
    UnknownProviderError,
)


class WorkerInterface(ABC):
    """
    Abstract interface for a remote classifier.

    Implementations must be safe to call concurrently and must not share
    mutable state between calls.
    """

    name: str = "worker"

    async def connect(self) -> None:
        """Prepare any client resources."""
        pass

    async def disconnect(self) -> None:
        """Release client resources."""
        pass

    @abstractmethod
    async def invoke(
        self,
        payload: bytes,
        media_type: str,
        options: Optional[dict] = None,
    ) -> Any:
        """
        Classify one payload.

        Args:
            payload: Raw file bytes
            media_type: Declared media type of the payload
            options: Provider options (file name, prompt hints, ...)

        Returns:
            Provider output

        Raises:
            ProviderError: Normalized provider failure
        """
        pass


_AUTH_MARKERS = ("INVALID_API_KEY", "UNAUTHORIZED", "FORBIDDEN", "API KEY")
_RATE_LIMIT_MARKERS = ("QUOTA_EXCEEDED", "RATE LIMIT", "TOO MANY REQUESTS", "RESOURCE_EXHAUSTED")
_CONTENT_MARKERS = ("SAFETY", "CONTENT POLICY", "BLOCKED")


def classify_status(status_code: int, message: str) -> ProviderError:
    """Map an HTTP status from a provider to a normalized error."""
    if status_code in (401, 403):
        return AuthError(message, status_code=status_code)
    if status_code == 429:
        return RateLimitError(message, status_code=status_code)
    if status_code in (400, 413, 415, 422, 451):
        return ContentRejectedError(message, status_code=status_code)
    if status_code in (408, 504):
        return ProviderTimeoutError(message, status_code=status_code)
    return UnknownProviderError(message, status_code=status_code)


def classify_error(error: BaseException) -> ProviderError:
    """
    Normalize any exception raised by a provider call.

    Already-normalized errors pass through. Otherwise an HTTP status found on
    the exception (``status_code``, ``code`` or ``response.status_code``) is
    used first, then well-known markers in the message.
    """
    if isinstance(error, ProviderError):
        return error

    message = str(error) or type(error).__name__

    if isinstance(error, TimeoutError):
        return ProviderTimeoutError(message)

    status = _status_of(error)
    if status is not None:
        return classify_status(status, message)

    upper = message.upper()
    if "401" in upper or any(m in upper for m in _AUTH_MARKERS) or "403" in upper:
        return AuthError(message)
    if "429" in upper or any(m in upper for m in _RATE_LIMIT_MARKERS):
        return RateLimitError(message)
    if any(m in upper for m in _CONTENT_MARKERS):
        return ContentRejectedError(message)

    return UnknownProviderError(message)


def _status_of(error: BaseException) -> Optional[int]:
    for attr in ("status_code", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and 100 <= value < 600:
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None
