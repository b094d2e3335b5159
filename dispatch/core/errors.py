"""
Domain Exceptions

Raised by the dispatch services and translated to HTTP responses by the
exception handlers registered in dispatch.main.

Branch scoping failures are reported as NotFoundError so that records of
another branch are indistinguishable from missing ones.
"""


class DispatchError(Exception):
    """Base class for all expected dispatch failures."""

    status_code: int = 500
    error: str = "Dispatch Error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(DispatchError):
    """Branch, assignment, courier or order missing (or outside the branch)."""
    status_code = 404
    error = "Not Found"


class ForbiddenError(DispatchError):
    """Actor has no branch association."""
    status_code = 403
    error = "Forbidden"


class BadRequestError(DispatchError):
    """Input rejected before any write took place."""
    status_code = 400
    error = "Bad Request"


class ConflictError(DispatchError):
    """Write would break an invariant, e.g. an order already on a trip."""
    status_code = 409
    error = "Conflict"
