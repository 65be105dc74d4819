"""
Field-level encryption for sensitive audit metadata (AES-GCM).

Encrypted values are stored as ``{"iv": <hex nonce>, "data": <hex ciphertext+tag>}``
so the JSON column stays JSON and the entry can list which fields are encrypted.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Mapping

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

_NONCE_BYTES = 12


class FieldEncryptor:
    def __init__(self, key_hex: str) -> None:
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as exc:
            raise ValueError("audit encryption key must be hex encoded") from exc
        if len(key) not in (16, 24, 32):
            raise ValueError("audit encryption key must be 16, 24 or 32 bytes")
        self._aead = AESGCM(key)

    def encrypt(self, value: Any) -> dict[str, str]:
        nonce = os.urandom(_NONCE_BYTES)
        plaintext = json.dumps(value, default=str).encode("utf-8")
        return {"iv": nonce.hex(), "data": self._aead.encrypt(nonce, plaintext, None).hex()}

    def decrypt(self, envelope: Mapping[str, str]) -> Any:
        nonce = bytes.fromhex(envelope["iv"])
        plaintext = self._aead.decrypt(nonce, bytes.fromhex(envelope["data"]), None)
        return json.loads(plaintext.decode("utf-8"))

    def encrypt_fields(self, metadata: Mapping[str, Any], fields: tuple[str, ...] | list[str]) -> tuple[dict[str, Any], tuple[str, ...]]:
        """Encrypt the listed fields that are present; returns (metadata, encrypted field names)."""

        result = dict(metadata)
        encrypted: list[str] = []
        for name in fields:
            if result.get(name) is None:
                continue
            result[name] = self.encrypt(result[name])
            encrypted.append(name)
        return result, tuple(encrypted)

    def decrypt_fields(self, metadata: Mapping[str, Any], fields: tuple[str, ...]) -> dict[str, Any]:
        result = dict(metadata)
        for name in fields:
            envelope = result.get(name)
            if not isinstance(envelope, Mapping):
                continue
            try:
                result[name] = self.decrypt(envelope)
            except (InvalidTag, KeyError, ValueError):
                # Left encrypted; a wrong or rotated key must not break trail reads.
                logger.warning("Could not decrypt audit field=%s", name)
        return result
