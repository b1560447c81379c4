from typing import Optional


class PanelError(Exception):
    """Base class for every failure raised while talking to a panel."""


class TransientEndpoint(PanelError):
    """One candidate route failed in a way another route may not (404, 405, timeout, 5xx)."""

    def __init__(self, message: str, method: str = "", path: str = "", status: Optional[int] = None):
        self.method = method
        self.path = path
        self.status = status
        super().__init__(message)


class PanelUnreachable(TransientEndpoint):
    """The panel host could not be reached at all."""


class EnvelopeRejected(TransientEndpoint):
    """The panel answered 2xx with a `{"success": false}` envelope."""


class AuthExpired(PanelError):
    """The panel refused our credentials (401) or we never logged in."""

    def __init__(self, message: str = "authentication failed. Token may have expired. Please login again"):
        super().__init__(message)


class LoginFailed(PanelError):
    """The login step itself was rejected."""


class Conflict(PanelError):
    """The panel reports that the object already exists."""

    def __init__(self, message: str = "user already exists"):
        super().__init__(message)


class UnrecognizedShape(PanelError):
    """A JSON body matched none of the known response envelopes."""

    def __init__(self, body, message: Optional[str] = None):
        self.body = body
        if isinstance(body, bytes):
            preview = body.decode("utf-8", errors="replace")
        else:
            preview = str(body)
        if len(preview) > 512:
            preview = preview[:512] + "..."
        super().__init__(message or f"unrecognized response shape: {preview}")


class MissingIdentifier(PanelError):
    """An imported record carries no usable credential."""

    def __init__(self, username: str = ""):
        self.username = username
        super().__init__(f"user {username!r} has an empty identifier" if username else "user identifier is empty")


class PermanentEndpointFailure(PanelError):
    """A 4xx response that switching routes will not fix (validation, forbidden, ...)."""

    def __init__(self, message: str, method: str = "", path: str = "", status: Optional[int] = None):
        self.method = method
        self.path = path
        self.status = status
        super().__init__(message)


class EndpointsExhausted(PanelError):
    """Every candidate route for an operation was tried and none succeeded."""

    def __init__(self, operation: str, attempts: int, last_error: Optional[Exception] = None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        if last_error is not None:
            message = f"{operation} failed after trying {attempts} endpoint(s). Last error: {last_error}"
        else:
            message = f"{operation} failed: no endpoint candidates"
        super().__init__(message)


class CollisionCeilingReached(PanelError):
    """No free username was found within the attempt ceiling."""

    def __init__(self, username: str, attempts: int):
        self.username = username
        self.attempts = attempts
        super().__init__(f"could not create {username!r} after {attempts} attempts")


class ReconciliationAborted(PanelError):
    """A run stopped early; `summary` holds what was committed before the stop."""

    def __init__(self, summary, cause: Exception):
        self.summary = summary
        self.cause = cause
        super().__init__(f"import aborted after {summary.processed} of {summary.total} record(s): {cause}")


class InvalidSnapshot(ValueError):
    """A snapshot file could not be decoded."""
