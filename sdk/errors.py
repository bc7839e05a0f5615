from typing import Any, Optional


DUPLICATE = "duplicate"
INVALID_FIELD = "invalid_field"
UNAUTHORIZED = "unauthorized"
NOT_FOUND = "not_found"
RATE_LIMITED = "rate_limited"
UNKNOWN = "unknown"

_STATUS_KINDS = {
    400: INVALID_FIELD,
    401: UNAUTHORIZED,
    403: UNAUTHORIZED,
    404: NOT_FOUND,
    409: DUPLICATE,
    422: INVALID_FIELD,
    429: RATE_LIMITED,
}

# providers do not return machine-readable codes, so fall back to message text
_MESSAGE_KINDS = (
    ("already exists", DUPLICATE),
    ("duplicate", DUPLICATE),
    ("conflict", DUPLICATE),
    ("not found", NOT_FOUND),
    ("invalid", INVALID_FIELD),
    ("unauthorized", UNAUTHORIZED),
    ("rate limit", RATE_LIMITED),
)


def classify(status_code: Optional[int], message: str) -> str:
    by_status = _STATUS_KINDS.get(status_code)
    # a generic 400 often carries the real reason only in its text
    if by_status not in (None, INVALID_FIELD):
        return by_status
    lowered = (message or "").lower()
    for needle, kind in _MESSAGE_KINDS:
        if needle in lowered:
            return kind
    return by_status or UNKNOWN


class GatewayError(Exception):
    def __init__(self, service: str, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.service = service
        self.message = message
        self.status_code = status_code
        self.body = body
        self.kind = classify(status_code, f"{message} {body if isinstance(body, str) else ''}")

    def __str__(self):
        if self.status_code is not None:
            return f"{self.service} API error {self.status_code}: {self.message}"
        return f"{self.service} API error: {self.message}"
