from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_URL = "INVALID_URL"
    PROTOCOL_NOT_ALLOWED = "PROTOCOL_NOT_ALLOWED"
    URL_BLOCKED = "URL_BLOCKED"
    UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    UNSUPPORTED_CONTENT_TYPE = "UNSUPPORTED_CONTENT_TYPE"
    TOO_MANY_REQUESTS = "TOO_MANY_REQUESTS"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    PARSE_FAILED = "PARSE_FAILED"
    EMPTY_RESULT = "EMPTY_RESULT"


DEFAULT_STATUS: dict[ErrorCode, int] = {
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.INVALID_URL: 400,
    ErrorCode.PROTOCOL_NOT_ALLOWED: 403,
    ErrorCode.URL_BLOCKED: 403,
    ErrorCode.UPSTREAM_TIMEOUT: 408,
    ErrorCode.PAYLOAD_TOO_LARGE: 413,
    ErrorCode.UNSUPPORTED_CONTENT_TYPE: 415,
    ErrorCode.TOO_MANY_REQUESTS: 429,
    ErrorCode.UPSTREAM_ERROR: 502,
    ErrorCode.PARSE_FAILED: 502,
    ErrorCode.EMPTY_RESULT: 502,
}

# Codes raised by the trust boundary rather than by an upstream.
TRUST_BOUNDARY_CODES: frozenset[ErrorCode] = frozenset(
    {ErrorCode.INVALID_URL, ErrorCode.PROTOCOL_NOT_ALLOWED, ErrorCode.URL_BLOCKED}
)


class ProxyError(Exception):
    """Raised by gateway components for all expected failure conditions.

    Caught by server.py and serialised into the JSON error envelope. Core
    components never catch this themselves; it propagates to the operation
    boundary so the caller always receives a status and a message.

    ``status`` defaults to the code's HTTP status but may be overridden to
    surface an upstream status (e.g. a 404 from an image host).
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status if status is not None else DEFAULT_STATUS[code]

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "status": self.status,
            }
        }
