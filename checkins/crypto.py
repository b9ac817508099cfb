"""
crypto.py — tiny HMAC-SHA256 helpers.

Why this exists:
- Keep the keyed-hash bits in one place so the rest of the code can call
  `sign/verify` without touching `cryptography` primitives directly.
- Signatures travel as lowercase hex so they drop cleanly into JSON.
- Secrets are provisioned out of band (env/config), never derived from input.
"""

import base64
import os

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

# Anything shorter than this is almost certainly a placeholder.
MIN_SECRET_BYTES = 16


# -----------------------------
# Base64 URL helpers (no padding)
# -----------------------------

def b64url_encode(data: bytes) -> str:
    """URL-safe Base64 without '=' padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def new_secret(n_bytes: int = 32) -> str:
    """Fresh random shared secret, Base64url so it fits in a .env file."""
    return b64url_encode(os.urandom(n_bytes))


def secret_bytes(secret) -> bytes:
    """Accept str or bytes secrets; everything is keyed on the UTF-8 bytes."""
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    if not secret:
        raise ValueError("Signing secret must not be empty.")
    return secret


# -------------------------
# Signing & Verification API
# -------------------------

def sign(secret, data: bytes) -> str:
    """HMAC-SHA256 over raw bytes. Returns a lowercase hex digest."""
    h = hmac.HMAC(secret_bytes(secret), hashes.SHA256())
    h.update(data)
    return h.finalize().hex()


def verify(secret, data: bytes, sig_hex: str) -> bool:
    """
    Constant-time check of a hex signature produced by `sign()`.
    Returns False on any failure (bad hex, wrong key, tampered data).
    """
    try:
        expected = bytes.fromhex(sig_hex)
    except (TypeError, ValueError):
        return False
    h = hmac.HMAC(secret_bytes(secret), hashes.SHA256())
    h.update(data)
    try:
        h.verify(expected)
        return True
    except InvalidSignature:
        return False
