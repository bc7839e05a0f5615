"""HMAC verification for inbound webhooks.

Both providers sign the raw request body with HMAC-SHA256 and send the digest
as ``sha256=<hex>``. Verification must run on the exact bytes received, before
any JSON parsing.
"""
import hashlib
import hmac
import logging
from typing import Optional

from fastapi import HTTPException, status

log = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


class SignatureMissingError(Exception):
    pass


class SignatureMismatchError(Exception):
    pass


def compute_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(body: bytes, header: Optional[str], secret: Optional[str]) -> None:
    if not secret:
        raise SignatureMissingError("webhook secret not configured")
    if not header:
        raise SignatureMissingError("signature header missing")

    expected = compute_signature(secret, body)
    received = header.strip().lower()
    if not received.startswith(SIGNATURE_PREFIX):
        # some senders omit the algorithm prefix
        received = f"{SIGNATURE_PREFIX}{received}"

    if not hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8")):
        raise SignatureMismatchError("signature mismatch")


def verify_shared_secret(header: Optional[str], secret: Optional[str]) -> None:
    if not secret or not header:
        raise SignatureMissingError("shared secret missing")
    if not hmac.compare_digest(header.encode("utf-8"), secret.encode("utf-8")):
        raise SignatureMismatchError("shared secret mismatch")


def enforce(source: str, body: bytes, *, signature: Optional[str], secret: Optional[str],
            shared_secret: Optional[str] = None) -> None:
    """Raise the HTTP error matching a failed check, or return quietly."""
    try:
        if signature is None and shared_secret is not None:
            verify_shared_secret(shared_secret, secret)
        else:
            verify_signature(body, signature, secret)
    except SignatureMissingError as e:
        log.warning("webhook rejected: %s", e, extra={"source": source})
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Missing signature")
    except SignatureMismatchError as e:
        log.warning("webhook rejected: %s", e, extra={"source": source})
        raise HTTPException(status.HTTP_403_FORBIDDEN, detail="Invalid signature")
