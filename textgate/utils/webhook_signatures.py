"""
Gateway webhook signature verification.

The gateway signs "{timestamp}.{raw_body}" with HMAC-SHA256 using the shared
secret and sends the hex digest in X-Gateway-Signature (optionally prefixed
"sha256=") and the Unix timestamp in X-Gateway-Timestamp. Requests older or
newer than the tolerance window are rejected as replays.
"""
import hashlib
import hmac
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Gateway-Signature"
TIMESTAMP_HEADER = "X-Gateway-Timestamp"
DEFAULT_TOLERANCE_SECONDS = 300


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of "{timestamp}.{body}"."""
    signed = timestamp.encode("utf-8") + b"." + body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_signature(
    secret: str,
    signature: Optional[str],
    timestamp: Optional[str],
    body: bytes,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> tuple[bool, str]:
    """
    Verify a gateway webhook signature.

    Returns: (is_valid, reason). reason is "" when valid, otherwise one of
    "missing_secret", "missing_signature", "missing_timestamp",
    "invalid_timestamp", "stale_timestamp", "signature_mismatch".
    """
    if not secret:
        return False, "missing_secret"
    if not signature:
        return False, "missing_signature"
    if not timestamp:
        return False, "missing_timestamp"

    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False, "invalid_timestamp"

    current = time.time() if now is None else now
    if abs(current - ts) > tolerance_seconds:
        return False, "stale_timestamp"

    sig = signature.strip()
    if sig.startswith("sha256="):
        sig = sig[len("sha256="):]

    expected = compute_signature(secret, timestamp, body)
    # Header values may carry non-ASCII text; compare as bytes
    if not hmac.compare_digest(expected.encode("ascii"), sig.lower().encode("utf-8", "replace")):
        return False, "signature_mismatch"
    return True, ""


def compute_payload_hash(body: bytes) -> str:
    """Compute SHA-256 hash of raw payload for audit."""
    return hashlib.sha256(body).hexdigest()
