"""At-rest encryption for session secrets held in the file credential store."""

import base64
import secrets

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .exceptions import CredentialStoreError


class CredentialEncryptionError(CredentialStoreError):
    """Raised when a secret cannot be encrypted."""

    pass


class CredentialDecryptionError(CredentialStoreError):
    """Raised when a stored secret cannot be decrypted."""

    pass


class CredentialCipher:
    """Encrypts individual store values with a key bound to a store identity.

    Uses PBKDF2 with SHA-256 for key derivation and AES-256-CBC for
    encryption. The identity (typically local user name plus store path)
    ties a copied store file to the account and location that wrote it.
    Every value gets a fresh salt and IV; the encoded form is
    base64(salt + iv + ciphertext).
    """

    def __init__(self, identity: str, iterations: int = 100_000):
        self.identity = identity
        self.iterations = iterations
        self.key_length = 32  # AES-256
        self.salt_length = 16
        self.iv_length = 16  # AES block size

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.key_length,
            salt=salt,
            iterations=self.iterations,
        )
        derived_key: bytes = kdf.derive(self.identity.encode("utf-8"))
        return derived_key

    def encrypt(self, value: str) -> str:
        """Encrypt a secret string.

        Raises:
            CredentialEncryptionError: If encryption fails
        """
        try:
            salt = secrets.token_bytes(self.salt_length)
            iv = secrets.token_bytes(self.iv_length)
            key = self._derive_key(salt)

            padder = padding.PKCS7(algorithms.AES.block_size).padder()
            padded = padder.update(value.encode("utf-8")) + padder.finalize()

            encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
            ciphertext = encryptor.update(padded) + encryptor.finalize()

            del key, padded
            return base64.b64encode(salt + iv + ciphertext).decode("ascii")
        except Exception as e:
            raise CredentialEncryptionError(f"Failed to encrypt secret: {e}")

    def decrypt(self, encoded: str) -> str:
        """Decrypt a value produced by :meth:`encrypt`.

        Raises:
            CredentialDecryptionError: If the value is corrupt or was written
                under a different identity
        """
        try:
            raw = base64.b64decode(encoded.encode("ascii"), validate=True)
            if len(raw) <= self.salt_length + self.iv_length:
                raise ValueError("Encrypted data too short")

            salt = raw[: self.salt_length]
            iv = raw[self.salt_length : self.salt_length + self.iv_length]
            ciphertext = raw[self.salt_length + self.iv_length :]
            key = self._derive_key(salt)

            decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()

            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()

            del key, padded
            return plaintext.decode("utf-8")
        except Exception as e:
            raise CredentialDecryptionError(f"Failed to decrypt secret: {e}")
