from __future__ import annotations


class DispatchError(Exception):
    """Base for every error raised by the outbound pipeline."""

    def __init__(self, message: str, *, detail: dict | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationFailed(DispatchError):
    """Rejected at enqueue time; never reaches the queue."""


class InvalidPhoneNumber(ValidationFailed):
    pass


class OutsideServiceWindow(ValidationFailed):
    """Official API only accepts templates outside the 24h customer window."""


class ChannelUnavailableError(DispatchError):
    """No usable session or credentials. Retrying cannot help."""


class SessionRestartRequired(ChannelUnavailableError):
    pass


class TransientChannelError(DispatchError):
    """Timeouts, 5xx, throttling. Retried with backoff."""


class ChannelRequestError(DispatchError):
    """The provider rejected the request (4xx)."""

    def __init__(self, message: str, *, status_code: int | None = None, detail: dict | None = None):
        super().__init__(message, detail=detail)
        self.status_code = status_code


def truncate(s: str | None, n: int = 500) -> str:
    s = s or ""
    return s if len(s) <= n else s[:n]
