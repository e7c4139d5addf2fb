import hashlib
import hmac


def verify_callback_signature(payload: bytes, signature: str, secret: str) -> bool:
    """HMAC-SHA256 hex digest of the raw body, as sent by the QRIS provider."""
    expected = hmac.new(
        secret.encode("utf-8"),
        payload,
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected, (signature or "").strip().lower())


def secret_matches(provided: str | None, expected: str) -> bool:
    """Constant-time comparison for shared-secret headers (Telegram webhook, admin key)."""
    if not expected:
        return False
    return hmac.compare_digest((provided or "").encode("utf-8"), expected.encode("utf-8"))
