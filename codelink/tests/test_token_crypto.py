import unittest
from unittest.mock import patch

from cryptography.fernet import Fernet

from codelink import config
from codelink.token_crypto import TokenDecryptionError, decrypt_token, encrypt_token


class TokenCryptoTests(unittest.TestCase):
    def test_ciphertext_hides_token(self) -> None:
        with patch.object(config, "TOKEN_ENCRYPTION_KEY", Fernet.generate_key().decode()):
            encrypted = encrypt_token("gho_plain")
            self.assertNotIn("gho_plain", encrypted)
            self.assertEqual(decrypt_token(encrypted), "gho_plain")

    def test_rotated_key_raises(self) -> None:
        with patch.object(config, "TOKEN_ENCRYPTION_KEY", Fernet.generate_key().decode()):
            encrypted = encrypt_token("gho_plain")
        with patch.object(config, "TOKEN_ENCRYPTION_KEY", Fernet.generate_key().decode()):
            with self.assertRaises(TokenDecryptionError):
                decrypt_token(encrypted)

    def test_missing_key_falls_back_to_process_key(self) -> None:
        with patch.object(config, "TOKEN_ENCRYPTION_KEY", ""):
            self.assertEqual(decrypt_token(encrypt_token("gho_plain")), "gho_plain")


if __name__ == "__main__":
    unittest.main()
