# errors.py — Request-terminal failures for the issue tracker
# Each kind is an HTTPException so FastAPI renders it without extra handlers.
from typing import Iterable, Optional

from fastapi import HTTPException, status


class AuthenticationFailure(HTTPException):
    """Bad credential or unusable session token. Never says which part was wrong."""

    def __init__(self, detail: str = "Invalid credentials"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationFailure(HTTPException):
    """Caller lacks a capability or role; carries what was required."""

    def __init__(self, required: Iterable, mode: str = "all", message: Optional[str] = None):
        self.required = [getattr(r, "value", r) for r in required]
        self.mode = mode
        if message is None:
            joiner = " or " if mode == "any" else ", "
            message = (
                "You don't have permission to perform this action. "
                f"Required: {joiner.join(self.required)}"
            )
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": message, "required": self.required, "mode": mode},
        )


class NotFoundError(HTTPException):
    """Nonexistent or cross-tenant resource. Both produce the same response."""

    def __init__(self, resource: str = "Resource"):
        self.resource = resource
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=f"{resource} not found")


class ValidationFailure(HTTPException):
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"field": field, "message": message},
        )


class ConflictError(HTTPException):
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail={"field": field, "message": message},
        )
