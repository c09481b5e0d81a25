"""
Webhook signature validation - verify incoming deliveries are authentic.

GitHub signs the raw request body with HMAC-SHA256 and sends the digest in
X-Hub-Signature-256 as "sha256=<hex>". The digest must be computed over the
exact bytes received; re-serializing parsed JSON changes the result.
"""
import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, body: bytes) -> str:
    """Return the header value GitHub would send for this body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_github_signature(secret: str, signature: str, body: bytes) -> bool:
    """
    Validate an X-Hub-Signature-256 header against the raw body.
    Returns False on mismatch, malformed header or missing secret. Never raises.
    """
    if not secret:
        logger.critical("GitHub webhook secret is not configured - rejecting delivery")
        return False
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        return False

    provided = signature[len(SIGNATURE_PREFIX):].strip().lower()
    if not provided:
        return False

    expected = compute_signature(secret, body)[len(SIGNATURE_PREFIX):]
    # Compare as bytes: compare_digest raises on non-ASCII str input
    return hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8", "replace"))


def compute_payload_hash(body: bytes) -> str:
    """Compute SHA-256 hash of raw payload for audit."""
    return hashlib.sha256(body).hexdigest()
