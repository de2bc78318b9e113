"""
Error taxonomy for room operations.
Every failure the room layer reports is a RoomError carrying one ErrorKind.
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    AUTH_FAILED = "AUTH_FAILED"
    SESSION_CONFLICT = "SESSION_CONFLICT"
    NOT_ACTIVE = "NOT_ACTIVE"
    BANNED = "BANNED"
    ENTRY_RESTRICTED = "ENTRY_RESTRICTED"
    ROOM_CLOSING = "ROOM_CLOSING"
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"


DEFAULT_STATUS = {
    ErrorKind.AUTH_FAILED: 403,
    ErrorKind.SESSION_CONFLICT: 401,
    ErrorKind.NOT_ACTIVE: 401,
    ErrorKind.BANNED: 403,
    ErrorKind.ENTRY_RESTRICTED: 403,
    ErrorKind.ROOM_CLOSING: 410,
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
}


class RoomError(Exception):
    """Raised by RoomManager before any state is mutated."""

    def __init__(self, kind: ErrorKind, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code or DEFAULT_STATUS[kind]

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "code": self.kind.value}

    def __repr__(self) -> str:
        return f"RoomError({self.kind.value}, {self.message!r}, {self.status_code})"
