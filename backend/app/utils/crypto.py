"""Low-level cryptographic primitives.

Pure functions with no domain knowledge — reusable building blocks.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import secrets

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

NONCE_SIZE = 12
TAG_SIZE = 16

# RFC 4648 URL-safe alphabet, same one nanoid draws from
URL_SAFE_ALPHABET = (
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
)


def derive_subkey(
    master: bytes, info: bytes, length: int = 32, salt: bytes | None = None
) -> bytes:
    """Derive a sub-key from the master secret using HKDF-SHA256.

    Distinct ``info`` labels yield independent keys, so one secret can feed
    encryption, search hashing and link signing without key reuse.
    """
    hkdf = HKDF(
        algorithm=SHA256(),
        length=length,
        salt=salt,
        info=info,
    )
    return hkdf.derive(master)


def aes_gcm_encrypt(key: bytes, plaintext: bytes, aad: bytes | None = None) -> bytes:
    """Encrypt plaintext with AES-256-GCM.

    Returns nonce (12 bytes) || ciphertext+tag.
    """
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, plaintext, aad)
    return nonce + ciphertext


def aes_gcm_decrypt(key: bytes, data: bytes, aad: bytes | None = None) -> bytes:
    """Decrypt data produced by aes_gcm_encrypt.

    Splits data into nonce (first 12 bytes) and ciphertext+tag.
    Raises cryptography.exceptions.InvalidTag on tampered data or wrong AAD.
    """
    nonce = data[:NONCE_SIZE]
    ciphertext = data[NONCE_SIZE:]
    aesgcm = AESGCM(key)
    return aesgcm.decrypt(nonce, ciphertext, aad)


def hmac_sha256(key: bytes, data: bytes) -> str:
    """Compute HMAC-SHA256(key, data). Returns hex-encoded digest."""
    return hmac.new(key, data, hashlib.sha256).hexdigest()


def hmac_sha256_raw(key: bytes, data: bytes) -> bytes:
    """Compute HMAC-SHA256(key, data). Returns the raw 32-byte digest."""
    return hmac.new(key, data, hashlib.sha256).digest()


def sha256_hash(data: bytes) -> str:
    """Compute SHA-256 hash. Returns hex-encoded digest."""
    return hashlib.sha256(data).hexdigest()


def constant_time_equals(a: str | bytes, b: str | bytes) -> bool:
    """Timing-safe equality. Mixed str/bytes inputs are compared as UTF-8."""
    if isinstance(a, str):
        a = a.encode("utf-8")
    if isinstance(b, str):
        b = b.encode("utf-8")
    return hmac.compare_digest(a, b)


def b64url_encode(data: bytes) -> str:
    """URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    """Inverse of b64url_encode. Raises ValueError on malformed input.

    Only the canonical encoding is accepted: stray characters, padding and
    non-zero trailing bits are rejected so that no two strings decode to the
    same bytes.
    """
    try:
        raw = data.encode("ascii")
    except UnicodeEncodeError as exc:
        raise ValueError("base64url input must be ASCII") from exc
    if b"+" in raw or b"/" in raw or b"=" in raw:
        raise ValueError("Malformed base64url input")
    padding = b"=" * (-len(raw) % 4)
    try:
        decoded = base64.b64decode(raw + padding, altchars=b"-_", validate=True)
    except binascii.Error as exc:
        raise ValueError("Malformed base64url input") from exc
    if b64url_encode(decoded) != data:
        raise ValueError("Non-canonical base64url input")
    return decoded


def random_code(length: int) -> str:
    """Random URL-safe code drawn from the OS CSPRNG (6 bits of entropy per char)."""
    if length <= 0:
        raise ValueError(f"Code length must be > 0, got {length}")
    return "".join(secrets.choice(URL_SAFE_ALPHABET) for _ in range(length))
