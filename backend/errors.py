# errors.py — Error taxonomy for the activation & node orchestration core
# Every failure the core surfaces to a caller is a CoreError carrying:
# - a stable ErrorKind (machine readable, drives retry decisions)
# - a curated message (never a raw internal exception string)
# - a support reference (session fragment, request id, node id)

from enum import Enum as PyEnum
from typing import Optional


class ErrorKind(str, PyEnum):
    SESSION_INVALID = "SESSION_INVALID"
    WEBHOOK_NOT_YET_RECEIVED = "WEBHOOK_NOT_YET_RECEIVED"
    PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"
    ALREADY_PROVISIONED = "ALREADY_PROVISIONED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    LIKELY_SECRET_LEAK = "LIKELY_SECRET_LEAK"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    PROVIDER_REJECTED = "PROVIDER_REJECTED"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
    ENCRYPTION_FAILURE = "ENCRYPTION_FAILURE"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"


# kind -> (http_status, retryable)
ERROR_CATALOGUE = {
    ErrorKind.SESSION_INVALID: (400, False),
    ErrorKind.WEBHOOK_NOT_YET_RECEIVED: (202, True),
    ErrorKind.PERSISTENCE_FAILURE: (500, False),
    ErrorKind.ALREADY_PROVISIONED: (409, False),
    ErrorKind.INVALID_TRANSITION: (409, False),
    ErrorKind.LIKELY_SECRET_LEAK: (422, False),
    ErrorKind.PROVIDER_UNAVAILABLE: (503, True),
    ErrorKind.PROVIDER_TIMEOUT: (504, True),
    ErrorKind.PROVIDER_REJECTED: (422, False),
    ErrorKind.GATEWAY_UNAVAILABLE: (503, True),
    ErrorKind.ENCRYPTION_FAILURE: (500, False),
    ErrorKind.NOT_FOUND: (404, False),
    ErrorKind.FORBIDDEN: (403, False),
}


class CoreError(Exception):
    """A classified, user-presentable failure."""

    def __init__(self, kind: ErrorKind, message: str, reference: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.reference = reference

    @property
    def http_status(self) -> int:
        return ERROR_CATALOGUE[self.kind][0]

    @property
    def retryable(self) -> bool:
        return ERROR_CATALOGUE[self.kind][1]

    def to_dict(self) -> dict:
        return {
            "error": self.kind.value,
            "detail": self.message,
            "reference": self.reference,
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:
        return f"CoreError({self.kind.value}, {self.message!r}, reference={self.reference!r})"


def session_reference(session_ref: str) -> str:
    """Short, support-safe fragment of a gateway session id."""
    return f"…{session_ref[-8:]}" if session_ref and len(session_ref) > 8 else (session_ref or "")
