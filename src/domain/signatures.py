from __future__ import annotations

import hashlib
import hmac

from src.domain.errors import SignatureInvalid


SIGNATURE_PREFIX = "sha256="


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def signature_enforced(secret: str | None) -> bool:
    return bool(secret)


def secrets_match(provided: str, expected: str) -> bool:
    """Constant-time compare of header text, safe for non-ASCII input."""
    return hmac.compare_digest(
        provided.encode("utf-8", "surrogatepass"),
        expected.encode("utf-8", "surrogatepass"),
    )


def verify_signature(raw_body: bytes, signature_header: str | None, secret: str | None) -> None:
    """Check an HMAC-SHA256 signature over the raw body.

    Without a configured secret every request is accepted. Meta sends
    ``sha256=<hex>``; WAHA sends the bare hex digest. Both are accepted.
    """
    if not signature_enforced(secret):
        return
    if not signature_header:
        raise SignatureInvalid("Missing webhook signature")

    provided = signature_header.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    computed = compute_signature(raw_body, secret)
    if not secrets_match(provided.lower(), computed):
        raise SignatureInvalid("Invalid webhook signature")
