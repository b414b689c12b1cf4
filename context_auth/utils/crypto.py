# context_auth/utils/crypto.py
"""
Field-level confidentiality for stored fingerprint attributes.

Every value is sealed with AES-256-GCM under a random 96-bit nonce and stored as
``<key version>:<base64url(nonce || ciphertext || tag)>``. The column name is bound
as associated data, so a ciphertext copied into another column fails to open.

Randomized ciphertext cannot be compared, so exact-match lookups go through a
separate keyed digest (HMAC-SHA256) of the whole plaintext fingerprint.
"""
import hashlib
import hmac
import logging
import os
from typing import Dict, Iterable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from context_auth.utils.helpers import b64u, b64u_dec

log = logging.getLogger(__name__)

NONCE_BYTES = 12
_INDEX_INFO = b"context-auth fingerprint index"


class DecryptionError(ValueError):
    """Ciphertext is malformed, tampered with, or sealed under an unknown key"""


def _decode_key(material: str) -> bytes:
    key = b64u_dec(material.strip())
    if len(key) != 32:
        raise ValueError("encryption keys must be 32 bytes (urlsafe base64)")
    return key


class FieldCipher:
    """Keyed encrypt/decrypt pair plus the lookup digest"""

    def __init__(self, keys: Dict[str, bytes], active_version: str, index_key: Optional[bytes] = None):
        if active_version not in keys:
            raise ValueError(f"active key version {active_version!r} has no key")
        if any(":" in version for version in keys):
            raise ValueError("key versions must not contain ':'")
        self._keys = {version: AESGCM(key) for version, key in keys.items()}
        self.active_version = active_version
        if index_key is None:
            # A derived index key would change on rotation and orphan every stored digest
            if len(keys) > 1:
                raise ValueError("an index key is required when more than one key version is configured")
            index_key = HKDF(
                algorithm=hashes.SHA256(),
                length=32,
                salt=None,
                info=_INDEX_INFO,
            ).derive(keys[active_version])
        self._index_key = index_key

    @classmethod
    def from_settings(cls, settings) -> "FieldCipher":
        keys = {version: _decode_key(material) for version, material in settings.encryption_keys.items()}
        if not keys:
            log.warning("No field encryption key configured; generated ephemeral dev key. "
                        "Stored context data will be unreadable after restart.")
            keys[settings.active_key_version] = AESGCM.generate_key(bit_length=256)
        elif settings.active_key_version not in keys:
            raise ValueError(f"crypto.active_key_version {settings.active_key_version!r} has no key in crypto.keys")
        elif not settings.index_key:
            raise ValueError("crypto.index_key (or CONTEXT_AUTH_INDEX_KEY) must be set when encryption keys are configured")
        index_key = b64u_dec(settings.index_key) if settings.index_key else None
        return cls(keys, settings.active_key_version, index_key)

    @staticmethod
    def generate_key() -> str:
        """New urlsafe-base64 key suitable for the `crypto.keys` config section"""
        return b64u(AESGCM.generate_key(bit_length=256))

    def encrypt(self, value: str, field: str = "") -> str:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._keys[self.active_version].encrypt(nonce, value.encode("utf-8"), field.encode("utf-8"))
        return f"{self.active_version}:{b64u(nonce + sealed)}"

    def decrypt(self, token: str, field: str = "") -> str:
        version, sep, body = (token or "").partition(":")
        if not sep or not body:
            raise DecryptionError("malformed ciphertext")
        aead = self._keys.get(version)
        if aead is None:
            raise DecryptionError(f"unknown key version {version!r}")
        try:
            raw = b64u_dec(body)
            plain = aead.decrypt(raw[:NONCE_BYTES], raw[NONCE_BYTES:], field.encode("utf-8"))
        except (InvalidTag, ValueError) as e:
            raise DecryptionError(f"cannot decrypt {field or 'value'}") from e
        return plain.decode("utf-8")

    def digest(self, parts: Iterable[str]) -> str:
        """Deterministic keyed digest of an ordered tuple of plaintext values"""
        mac = hmac.new(self._index_key, digestmod=hashlib.sha256)
        for part in parts:
            encoded = part.encode("utf-8")
            # length prefix keeps ("ab", "c") distinct from ("a", "bc")
            mac.update(len(encoded).to_bytes(4, "big"))
            mac.update(encoded)
        return mac.hexdigest()
