"""Process-wide key material for protected fields and verification links.

The deployment secret is expanded once at startup into independent sub-keys
with HKDF. Services receive a KeyRing at construction instead of reading the
environment themselves, so tests can run against fixed keys and rotation
lives behind this one seam.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING

from app.exceptions import UnsupportedKeyVersionError
from app.utils.crypto import derive_subkey

if TYPE_CHECKING:
    from app.config import Settings

_HKDF_SALT = b"classmate/protected-fields"


class KeyRing:
    """Read-only bundle of derived keys.

    One field-encryption key per known key version (the current one plus any
    previous versions still needed to read old ciphertexts), one search-hash
    key and one link-tag key. The raw secrets are not kept.

    Search hashes and link tags are keyed from the current secret only:
    rotating the secret means re-hashing the search columns, which the
    re-encryption pass does anyway.
    """

    __slots__ = ("_current_version", "_encryption_keys", "_search_key", "_link_key")

    def __init__(
        self,
        secret: str | bytes,
        current_version: int = 1,
        previous_secrets: Mapping[int, str | bytes] | None = None,
    ) -> None:
        if current_version < 1:
            raise ValueError(f"Key version must be >= 1, got {current_version}")
        master = _as_bytes(secret)
        if not master:
            raise ValueError("Key ring secret must not be empty")

        keys: dict[int, bytes] = {}
        for version, old_secret in (previous_secrets or {}).items():
            if version == current_version:
                raise ValueError(
                    f"Previous secret supplied for the current key version {version}"
                )
            keys[version] = _encryption_key(_as_bytes(old_secret), version)
        keys[current_version] = _encryption_key(master, current_version)

        self._current_version = current_version
        self._encryption_keys = keys
        self._search_key = derive_subkey(master, b"search-hash", 32, salt=_HKDF_SALT)
        self._link_key = derive_subkey(master, b"link-tag", 32, salt=_HKDF_SALT)

    @classmethod
    def from_settings(cls, settings: Settings) -> KeyRing:
        return cls(settings.field_protection_secret, settings.key_version)

    @property
    def current_version(self) -> int:
        return self._current_version

    @property
    def known_versions(self) -> frozenset[int]:
        return frozenset(self._encryption_keys)

    def encryption_key(self, version: int | None = None) -> bytes:
        """Return the field-encryption key for ``version`` (default: current)."""
        if version is None:
            version = self._current_version
        try:
            return self._encryption_keys[version]
        except KeyError:
            raise UnsupportedKeyVersionError(
                f"No key material for key version {version}"
            ) from None

    @property
    def search_key(self) -> bytes:
        return self._search_key

    @property
    def link_key(self) -> bytes:
        return self._link_key

    def __repr__(self) -> str:
        return (
            f"KeyRing(current_version={self._current_version}, "
            f"versions={sorted(self._encryption_keys)})"
        )


def _encryption_key(secret: bytes, version: int) -> bytes:
    return derive_subkey(
        secret, f"field-encryption/v{version}".encode("ascii"), 32, salt=_HKDF_SALT
    )


def _as_bytes(secret: str | bytes) -> bytes:
    if isinstance(secret, bytes):
        return secret
    return secret.strip().encode("utf-8")
