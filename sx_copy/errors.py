"""Exception taxonomy for the copy bot.

Transport problems surface as ``FeedConnectionError`` or ``ApiError`` and are
retried by their owners. ``ValidationError`` fails one copy operation only.
Exchange rejections are not exceptions at all: they come back as a failed
``CopyResult``.
"""
from __future__ import annotations


class CopyBotError(Exception):
    """Base class for every error raised by sx_copy."""


class ConfigError(CopyBotError):
    """Configuration is missing or invalid at startup."""


class ValidationError(CopyBotError, ValueError):
    """Malformed or out-of-range odds, stake or payload."""


class FeedConnectionError(CopyBotError, ConnectionError):
    """The real-time feed session could not be established."""


class SigningError(CopyBotError):
    """An order or cancellation could not be signed."""


class ApiError(CopyBotError):
    """The exchange REST API failed or answered with status != success."""

    def __init__(self, message: str, *, path: str = "", payload: object = None) -> None:
        super().__init__(message)
        self.path = path
        self.payload = payload


class HttpStatusError(ApiError):
    def __init__(self, status: int, body: str, method: str, path: str) -> None:
        super().__init__(
            f"http_error status={status} method={method} path={path} body={body[:400]}",
            path=path,
        )
        self.status = int(status)
        self.body = body
        self.method = method

    @property
    def retryable(self) -> bool:
        return self.status >= 500
