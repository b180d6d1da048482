"""Structured error kinds shared by every service.

Services raise :class:`FlowError`; ``collab.main`` renders it with the
status code from :data:`HTTP_STATUS`. Nothing below the API layer raises
``HTTPException``.
"""

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    NOT_FOUND = "not_found"
    NOT_AUTHORIZED = "not_authorized"
    NOT_YOUR_TURN = "not_your_turn"
    INVALID_INPUT = "invalid_input"
    INSUFFICIENT_AVAILABLE = "insufficient_available"
    INSUFFICIENT_FROZEN = "insufficient_frozen"
    DUPLICATE = "duplicate"
    REVISION_LIMIT_EXCEEDED = "revision_limit_exceeded"
    BAD_SIGNATURE = "bad_signature"
    TIMEOUT = "timeout"
    GATEWAY_UNAVAILABLE = "gateway_unavailable"


HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.NOT_AUTHORIZED: 403,
    ErrorKind.NOT_YOUR_TURN: 403,
    ErrorKind.INVALID_INPUT: 422,
    ErrorKind.INSUFFICIENT_AVAILABLE: 409,
    ErrorKind.INSUFFICIENT_FROZEN: 409,
    ErrorKind.DUPLICATE: 409,
    ErrorKind.REVISION_LIMIT_EXCEEDED: 409,
    ErrorKind.BAD_SIGNATURE: 400,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.GATEWAY_UNAVAILABLE: 502,
}


class FlowError(Exception):
    """A domain failure with a stable machine-readable kind."""

    def __init__(
        self,
        kind: ErrorKind,
        detail: str | None = None,
        *,
        resource: dict[str, Any] | None = None,
    ):
        self.kind = ErrorKind(kind)
        self.detail = detail or self.kind.value.replace("_", " ")
        self.resource = resource
        super().__init__(f"{self.kind.value}: {self.detail}")

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.kind.value, "detail": self.detail}
        if self.resource is not None:
            body["resource"] = self.resource
        return body
