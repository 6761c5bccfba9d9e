"""Domain errors raised by the circulation layer and rendered by the API as
``{"kind", "message", "code"}``."""
from typing import Optional


class LibraryError(Exception):
    kind = "LibraryError"
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "code": self.code}


class NotFoundError(LibraryError):
    kind = "NotFound"
    status_code = 404


class InvalidStateError(LibraryError):
    kind = "InvalidState"
    status_code = 409


class RuleViolationError(LibraryError):
    kind = "RuleViolation"
    status_code = 400


class ValidationFailedError(LibraryError):
    kind = "ValidationError"
    status_code = 422


class StorageError(LibraryError):
    kind = "StorageError"
    status_code = 500
