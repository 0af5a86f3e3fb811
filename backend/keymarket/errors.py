from __future__ import annotations


class EscrowError(Exception):
    """Base for every failure the settlement engine surfaces to callers."""

    code = "ESCROW_ERROR"
    status = 500

    def __init__(self, message: str = "", *, details: dict | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = dict(details or {})

    def to_payload(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.status),
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(EscrowError):
    code = "VALIDATION_ERROR"
    status = 400


class Unauthenticated(EscrowError):
    code = "UNAUTHENTICATED"
    status = 401


class Forbidden(EscrowError):
    code = "FORBIDDEN"
    status = 403


class NotFound(EscrowError):
    code = "NOT_FOUND"
    status = 404


class StateConflict(EscrowError):
    code = "STATE_CONFLICT"
    status = 409


class VersionConflict(StateConflict):
    """A conditional write lost to a concurrent writer; re-read and decide."""

    code = "VERSION_CONFLICT"


class ExternalDependencyError(EscrowError):
    code = "EXTERNAL_DEPENDENCY_ERROR"
    status = 502

    def __init__(self, message: str = "", *, transient: bool = True, dependency: str = "", details: dict | None = None):
        super().__init__(message, details=details)
        self.transient = bool(transient)
        self.dependency = dependency or ""


class GatewayTimeout(ExternalDependencyError):
    """The call may or may not have taken effect on the gateway side."""

    code = "GATEWAY_TIMEOUT"
    status = 504

    def __init__(self, message: str = "", *, dependency: str = "payments", details: dict | None = None):
        super().__init__(message, transient=True, dependency=dependency, details=details)


class InvariantViolation(EscrowError):
    code = "INVARIANT_VIOLATION"
    status = 422

    def __init__(self, message: str = "", *, review_item_id: int | None = None, details: dict | None = None):
        super().__init__(message, details=details)
        self.review_item_id = review_item_id
        if review_item_id is not None:
            self.details["review_item_id"] = int(review_item_id)
