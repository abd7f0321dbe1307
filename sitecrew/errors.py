"""
Domain error taxonomy.
Each error carries a stable ``kind`` and the HTTP status it renders as.
"""


class DomainError(Exception):
    """Base exception for business rule violations."""

    kind = "domain_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message}


class ValidationError(DomainError):
    """Malformed or out-of-domain input. Never retried."""

    kind = "validation_error"
    status_code = 400


class ConflictError(DomainError):
    """A uniqueness or singleton invariant would be violated."""

    kind = "conflict"
    status_code = 409


class NotFoundError(DomainError):
    """Entity missing, or not in the state the operation expects."""

    kind = "not_found"
    status_code = 404


class PreconditionFailedError(DomainError):
    """Business rule not met, e.g. worker not checked in inside the geofence."""

    kind = "precondition_failed"
    status_code = 412


class StorageUnavailableError(DomainError):
    kind = "storage_unavailable"
    status_code = 503
