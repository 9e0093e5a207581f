"""Errors raised at the operate-loop boundary.

Callers see these instead of the union of vendor SDK exceptions.  Each one
carries an HTTP-style ``status``, a stable ``title`` and a free-form ``detail``
so it can be copied into ``OperateResponse.error`` unchanged.
"""


class LlmError(Exception):
    """Base class for normalized operate-loop errors."""

    status = 500
    title = "Internal Application Error"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.title
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {"status": self.status, "title": self.title, "detail": self.detail}


class BadGatewayError(LlmError):
    """The provider call failed for good (unrecoverable or retries exhausted)."""

    status = 502
    title = "Bad Gateway"


class TooManyRequestsError(LlmError):
    """The model kept asking for tools past the turn limit."""

    status = 429
    title = "Too Many Requests"


class ConfigurationError(LlmError):
    status = 500
    title = "Application Configuration Error"


class ToolNotFoundError(LlmError):
    status = 404
    title = "Tool Not Found"


class AttemptCancelledError(LlmError):
    """An operation tried to proceed on a retry attempt that was already abandoned."""

    status = 499
    title = "Attempt Cancelled"


class StreamInterruptedError(LlmError):
    """A stream failed after chunks had reached the caller, so it cannot be replayed."""

    status = 502
    title = "Stream Error"
