"""Account secret generation, encryption at rest and login hashing."""
from __future__ import annotations

import base64
import hashlib
import os
import secrets
import string
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from passlib.hash import sha512_crypt

SECRET_ALPHABET = string.ascii_letters + string.digits
DEFAULT_SECRET_LENGTH = 16
LOGIN_HASH_ROUNDS = 5000


def generate_secret(length: int = DEFAULT_SECRET_LENGTH) -> str:
    return "".join(secrets.choice(SECRET_ALPHABET) for _ in range(length))


def hash_login_password(secret: str) -> str:
    """Return a SHA-512 crypt hash suitable for ``useradd --password``.

    Uses the glibc default of 5000 rounds, matching ``openssl passwd -6``.
    """

    return sha512_crypt.using(rounds=LOGIN_HASH_ROUNDS).hash(secret)


class SecretVault:
    """Encrypts account secrets so re-activation can re-provision backends.

    Without a key the vault is disabled: nothing is stored and callers must
    issue a fresh secret when they need one.
    """

    def __init__(self, key: Optional[str] = None) -> None:
        if key is None:
            key = os.getenv("VPNPANEL_SECRET_KEY")
        self._cipher = self._build_cipher(key)

    @property
    def enabled(self) -> bool:
        return self._cipher is not None

    def encrypt(self, secret: str) -> Optional[str]:
        if self._cipher is None:
            return None
        return self._cipher.encrypt(secret.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        """Return the stored secret, or ``None`` if it cannot be recovered."""

        if self._cipher is None or not token:
            return None
        try:
            return self._cipher.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            return None

    @staticmethod
    def _build_cipher(key: Optional[str]) -> Optional[Fernet]:
        if not key:
            return None
        digest = hashlib.sha256(key.encode("utf-8")).digest()
        return Fernet(base64.urlsafe_b64encode(digest))


__all__ = ["SecretVault", "generate_secret", "hash_login_password", "DEFAULT_SECRET_LENGTH"]
