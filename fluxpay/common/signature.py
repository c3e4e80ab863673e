"""HMAC-SHA256 signing shared by API auth, PSP webhooks and outbound delivery."""

import base64
import binascii
import hashlib
import hmac


def sign(secret: str, message: str) -> str:
    """Return the base64 HMAC-SHA256 of `message` keyed by `secret`."""

    if not secret:
        raise ValueError("secret cannot be empty")
    if not message:
        raise ValueError("message cannot be empty")
    digest = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify(secret: str, message: str, signature: str) -> bool:
    """Constant-time check of a base64 signature; malformed base64 never matches."""

    if not signature:
        raise ValueError("signature cannot be empty")
    expected = base64.b64decode(sign(secret, message))
    try:
        provided = base64.b64decode(signature, validate=True)
    except (ValueError, binascii.Error):
        return False
    return hmac.compare_digest(expected, provided)


def sha256_hex(body: bytes | str | None) -> str:
    """Lowercase hex SHA-256 of a request body (of b"" when there is none)."""

    if body is None:
        body = b""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hashlib.sha256(body).hexdigest()
