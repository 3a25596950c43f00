"""Helpers shared by the memory and postgres credential stores."""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
import uuid
from ipaddress import ip_address
from pathlib import Path
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from officegate.logging import get_logger

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    """Emails are unique case-insensitively; stores keep the lower-case form."""
    return email.strip().lower()


def normalize_ip_address(raw_ip: Any) -> Optional[str]:
    """Return a canonical IP string, or None for blank or unparseable input.

    Origin metadata is kept for audit only, so a malformed header value is
    dropped rather than failing the login.
    """
    if raw_ip is None:
        return None
    stripped = str(raw_ip).strip()
    if not stripped:
        return None
    try:
        return str(ip_address(stripped))
    except ValueError:
        logger.warning("session_ip_unparseable")
        return None


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Extract a column from a dict row or attribute-style row."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def generate_uuid() -> str:
    return str(uuid.uuid4())


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_mfa_cipher(key_material: Optional[str], fs_root: Path) -> Fernet:
    """Build the Fernet cipher that protects TOTP secrets at rest.

    The runtime passes ``Settings.mfa_encryption_key`` (MFA_SECRET_KEY, else the
    resolved access-token secret). Without key material a key persisted under
    ``fs_root`` is used so encrypted secrets remain readable after a restart.
    """
    material = key_material
    if not material:
        key_path = fs_root / ".mfa_key"
        try:
            if key_path.exists():
                material = key_path.read_text().strip()
        except OSError as exc:
            logger.warning("mfa_key_read_failed", error=str(exc), path=str(key_path))
        if not material:
            generated = secrets.token_urlsafe(64)
            try:
                key_path.parent.mkdir(parents=True, exist_ok=True)
                key_path.write_text(generated)
                os.chmod(key_path, 0o600)
            except OSError as exc:
                raise RuntimeError("Unable to persist MFA encryption key") from exc
            material = generated
    return Fernet(_derive_cipher_key(material))


def encrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return None
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return None
    try:
        return cipher.decrypt(secret.encode()).decode()
    except InvalidToken as exc:
        # A key change makes every stored secret unreadable; surface it
        logger.error("mfa_secret_decrypt_failed")
        raise RuntimeError("stored MFA secret cannot be decrypted with the configured key") from exc
