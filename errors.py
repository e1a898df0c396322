"""
Error types raised by the storefront services.

Routes translate these into HTTP responses; see the exception handlers in main.py.
"""
from pydantic import ValidationError
from pymongo.errors import OperationFailure

# MongoDB "Unauthorized"
PERMISSION_DENIED = 13


class StoreError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(StoreError):
    status_code = 404


class InvalidInput(StoreError):
    status_code = 422

    @classmethod
    def from_validation(cls, exc: ValidationError) -> "InvalidInput":
        """Report the first field error of a failed model rebuild."""
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        return cls(f"{field}: {first['msg']}" if field else first["msg"])


class Conflict(StoreError):
    status_code = 409


def is_permission_denied(exc: Exception) -> bool:
    return isinstance(exc, OperationFailure) and exc.code == PERMISSION_DENIED
