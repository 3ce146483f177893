"""Symmetric encryption for vendor credentials kept in integration state."""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any

from cryptography.fernet import Fernet, InvalidToken


def _fernet(secret_key: str) -> Fernet:
    """Build a Fernet instance keyed by SHA-256 of the application secret."""
    digest = hashlib.sha256(secret_key.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_value(plaintext: str, secret_key: str) -> str:
    """Encrypt a string and return the ciphertext as a URL-safe string."""
    return _fernet(secret_key).encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str, secret_key: str) -> str:
    """Decrypt a ciphertext string. Raises ValueError on failure."""
    try:
        return _fernet(secret_key).decrypt(ciphertext.encode()).decode()
    except InvalidToken as exc:
        raise ValueError("Failed to decrypt credential data") from exc


def encrypt_payload(payload: dict[str, Any], secret_key: str) -> str:
    """Serialize a JSON payload and encrypt it."""
    return encrypt_value(json.dumps(payload, sort_keys=True), secret_key)


def decrypt_payload(ciphertext: str, secret_key: str) -> dict[str, Any]:
    """Decrypt a payload produced by :func:`encrypt_payload`."""
    data = json.loads(decrypt_value(ciphertext, secret_key))
    if not isinstance(data, dict):
        raise ValueError("Decrypted credential data is not an object")
    return data
