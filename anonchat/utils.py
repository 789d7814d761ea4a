"""
Utility functions for the AnonChat API.

Clock, password hashing, token generation and client address helpers.
"""

import hashlib
import hmac
import ipaddress
import logging
import secrets
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

# scrypt cost parameters for new password hashes
SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1
SCRYPT_DKLEN = 64


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_token(nbytes: int = 32) -> str:
    """Return a hex token from the OS CSPRNG."""
    return secrets.token_hex(nbytes)


def constant_time_equals(a: Optional[str], b: Optional[str]) -> bool:
    """Compare two strings without leaking where they differ."""
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def _scrypt(password: str, salt: bytes, n: int, r: int, p: int) -> bytes:
    return hashlib.scrypt(
        password.encode("utf-8"),
        salt=salt,
        n=n,
        r=r,
        p=p,
        maxmem=256 * n * r + 1024 * 1024,
        dklen=SCRYPT_DKLEN,
    )


def hash_password(password: str) -> str:
    """
    Hash a password with a random salt.

    Returns:
        String of the form scrypt$n$r$p$salt_hex$hash_hex
    """
    salt = secrets.token_bytes(16)
    digest = _scrypt(password, salt, SCRYPT_N, SCRYPT_R, SCRYPT_P)
    return f"scrypt${SCRYPT_N}${SCRYPT_R}${SCRYPT_P}${salt.hex()}${digest.hex()}"


def verify_password(password: str, stored_hash: str) -> bool:
    """
    Verify a password against a stored scrypt hash.

    Malformed hashes never verify.
    """
    try:
        scheme, n, r, p, salt_hex, digest_hex = stored_hash.split("$")
        if scheme != "scrypt":
            return False
        expected = bytes.fromhex(digest_hex)
        computed = _scrypt(password, bytes.fromhex(salt_hex), int(n), int(r), int(p))
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False

    # Use constant-time comparison to prevent timing attacks
    return hmac.compare_digest(expected, computed)


def password_needs_rehash(stored_hash: str) -> bool:
    """True when the hash was produced with different cost parameters."""
    parts = stored_hash.split("$")
    if len(parts) != 6 or parts[0] != "scrypt":
        return True
    return parts[1:4] != [str(SCRYPT_N), str(SCRYPT_R), str(SCRYPT_P)]


def client_ip(remote_addr: Optional[str], forwarded_for: Optional[str], trust_forwarded: bool) -> str:
    """
    Resolve the client address.

    The first X-Forwarded-For entry is used only when forwarding is trusted
    and the entry is a public address; otherwise the socket peer is used.
    """
    if trust_forwarded and forwarded_for:
        candidate = forwarded_for.split(",")[0].strip()
        try:
            ip = ipaddress.ip_address(candidate)
        except ValueError:
            ip = None
        if ip is not None and ip.is_global:
            return candidate

    return remote_addr or "unknown"
