"""
Typed failures of the dispatch core. Each maps to one HTTP status in main.py.
"""


class DispatchError(Exception):
    """Base for all failures the core reports to callers."""
    status_code = 500
    kind = "error"

    def __init__(self, detail: str = ""):
        self.detail = detail
        super().__init__(detail)


class ValidationError(DispatchError):
    """Malformed or out-of-range input. Caller must correct it; never retried."""
    status_code = 400
    kind = "validation_error"


class AuthenticationError(DispatchError):
    """Credential missing or not recognised by the identity service."""
    status_code = 401
    kind = "authentication_error"


class AuthorizationError(DispatchError):
    """Caller identity or role not allowed to perform the operation."""
    status_code = 403
    kind = "authorization_error"


class NotFoundError(DispatchError):
    status_code = 404
    kind = "not_found"


class ConflictError(DispatchError):
    """
    Input was well-formed but the order's current state does not allow the operation
    (lost accept race, out-of-sequence transition, terminal order). Re-fetch before retrying.
    """
    status_code = 409
    kind = "conflict"

    def __init__(self, detail: str = "", current_state: str | None = None):
        self.current_state = current_state
        super().__init__(detail)
