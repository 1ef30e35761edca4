import base64
import binascii
import hashlib
import json
import logging
import os
import sqlite3

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from engine.clock import now_string

_IV_LENGTH = 12
_TAG_LENGTH = 16


class SecretError(RuntimeError):
    pass


def _derive_key(secret):
    if not secret:
        raise SecretError("Encryption key is required.")
    return hashlib.sha256(secret.encode("utf-8")).digest()


def encrypt_text(plaintext, secret):
    if plaintext == "":
        return ""
    iv = os.urandom(_IV_LENGTH)
    sealed = AESGCM(_derive_key(secret)).encrypt(iv, plaintext.encode("utf-8"), None)
    # Stored as iv + tag + ciphertext.
    ciphertext, tag = sealed[:-_TAG_LENGTH], sealed[-_TAG_LENGTH:]
    return base64.b64encode(iv + tag + ciphertext).decode("ascii")


def decrypt_text(payload, secret):
    if payload == "":
        return ""
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise SecretError("Encrypted payload is not valid base64.") from exc
    if len(raw) <= _IV_LENGTH + _TAG_LENGTH:
        raise SecretError("Encrypted payload is too short.")
    iv = raw[:_IV_LENGTH]
    tag = raw[_IV_LENGTH:_IV_LENGTH + _TAG_LENGTH]
    ciphertext = raw[_IV_LENGTH + _TAG_LENGTH:]
    try:
        plaintext = AESGCM(_derive_key(secret)).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise SecretError("Decryption failed.") from exc
    return plaintext.decode("utf-8")


def encrypt_config(config, secret):
    return encrypt_text(json.dumps(config or {}), secret)


def decrypt_config(row, secret, db_path=None):
    """Decrypts a provider row's config; plaintext JSON is accepted and re-encrypted in place."""
    payload = str(row.get("config_json") or "")
    if not payload:
        return {}
    try:
        decoded = json.loads(decrypt_text(payload, secret))
    except SecretError as exc:
        try:
            decoded = json.loads(payload)
        except json.JSONDecodeError:
            raise exc from None
        if not isinstance(decoded, dict):
            raise exc
        _migrate_plaintext(row.get("id"), payload, secret, db_path)
        return decoded
    return decoded if isinstance(decoded, dict) else {}


def _migrate_plaintext(provider_id, payload, secret, db_path):
    if not provider_id or not secret or not db_path:
        return
    try:
        encrypted = encrypt_text(payload, secret)
        with sqlite3.connect(db_path, timeout=30) as conn:
            conn.execute(
                "UPDATE providers SET config_json=?, updated_at=? WHERE id=?",
                (encrypted, now_string(), int(provider_id)),
            )
    except (SecretError, sqlite3.Error) as exc:
        logging.warning("Unable to re-encrypt provider %s config: %s", provider_id, exc)
        return
    logging.info("Re-encrypted plaintext config for provider %s", provider_id)
