"""Tests for secret generation, encryption at rest and login hashing."""

from __future__ import annotations

import os
import sys
import unittest
from pathlib import Path
from unittest import mock

from passlib.hash import sha512_crypt

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vpnpanel.vault import SECRET_ALPHABET, SecretVault, generate_secret, hash_login_password


class SecretVaultTests(unittest.TestCase):
    def test_generated_secrets_use_the_alphabet(self) -> None:
        secret = generate_secret()
        self.assertEqual(len(secret), 16)
        self.assertTrue(set(secret) <= set(SECRET_ALPHABET))
        self.assertNotEqual(secret, generate_secret())

    def test_encrypt_and_decrypt_round_trip(self) -> None:
        vault = SecretVault("panel-key")
        token = vault.encrypt("s3cret-value")
        self.assertIsNotNone(token)
        self.assertNotIn("s3cret-value", token)
        self.assertEqual(vault.decrypt(token), "s3cret-value")

    def test_wrong_key_cannot_decrypt(self) -> None:
        token = SecretVault("panel-key").encrypt("s3cret-value")
        self.assertIsNone(SecretVault("other-key").decrypt(token))
        self.assertIsNone(SecretVault("panel-key").decrypt("not-a-token"))

    def test_vault_without_key_is_disabled(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            vault = SecretVault()
        self.assertFalse(vault.enabled)
        self.assertIsNone(vault.encrypt("s3cret-value"))
        self.assertIsNone(vault.decrypt("anything"))

    def test_vault_reads_key_from_environment(self) -> None:
        with mock.patch.dict(os.environ, {"VPNPANEL_SECRET_KEY": "env-key"}, clear=False):
            vault = SecretVault()
        self.assertTrue(vault.enabled)
        self.assertEqual(SecretVault("env-key").decrypt(vault.encrypt("value-1234")), "value-1234")

    def test_login_hash_is_sha512_crypt(self) -> None:
        hashed = hash_login_password("plain-secret")
        self.assertTrue(hashed.startswith("$6$"))
        self.assertTrue(sha512_crypt.verify("plain-secret", hashed))
        self.assertFalse(sha512_crypt.verify("incorrect", hashed))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
