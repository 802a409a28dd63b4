"""
Passphrase encryption for backup archives and the version history.

Payloads are compatible with OpenSSL's salted format, so any piece can be
decrypted without this application:

    openssl enc -d -aes-256-cbc -pbkdf2 -md sha256 -k [passphrase] -in [file] > [out]

Layout: b"Salted__" | 8-byte salt | AES-256-CBC ciphertext (PKCS#7 padded).
Key and IV are derived together with PBKDF2-HMAC-SHA256.
"""

import os
from typing import Tuple

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


MAGIC = b'Salted__'
SALT_SIZE = 8
KEY_SIZE = 32
IV_SIZE = 16
ITERATIONS = 10000  # openssl enc -pbkdf2 default


class DecryptionError(Exception):
    """Raised when a payload cannot be decrypted (wrong passphrase or corrupt data)."""
    pass


class OpenSSLCipher:
    """Encrypts and decrypts opaque buffers with a passphrase."""

    def __init__(self, passphrase: str, iterations: int = ITERATIONS):
        """
        Initialize the cipher.

        Args:
            passphrase: Passphrase to derive keys from
            iterations: PBKDF2 iteration count (must match on both sides)
        """
        if not passphrase:
            raise ValueError("Passphrase must not be empty")

        self._passphrase = passphrase.encode('utf-8')
        self.iterations = iterations

    def _derive(self, salt: bytes) -> Tuple[bytes, bytes]:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE + IV_SIZE,
            salt=salt,
            iterations=self.iterations,
        )
        key_iv = kdf.derive(self._passphrase)
        return key_iv[:KEY_SIZE], key_iv[KEY_SIZE:]

    def encrypt(self, plaintext: bytes, salt: bytes = None) -> bytes:
        """
        Encrypt a buffer.

        Args:
            plaintext: Data to encrypt
            salt: Optional 8-byte salt (random if None)

        Returns:
            Salted payload
        """
        if salt is None:
            salt = os.urandom(SALT_SIZE)
        if len(salt) != SALT_SIZE:
            raise ValueError(f"Salt must be {SALT_SIZE} bytes")

        key, iv = self._derive(salt)

        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext) + padder.finalize()

        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        return MAGIC + salt + ciphertext

    def decrypt(self, payload: bytes) -> bytes:
        """
        Decrypt a salted payload.

        Raises:
            DecryptionError: If the payload is malformed or the passphrase is wrong
        """
        header_size = len(MAGIC) + SALT_SIZE
        if len(payload) < header_size:
            raise DecryptionError("Encrypted data is too short")
        if payload[:len(MAGIC)] != MAGIC:
            raise DecryptionError("Encrypted data has no salt header")

        ciphertext = payload[header_size:]
        if not ciphertext or len(ciphertext) % IV_SIZE != 0:
            raise DecryptionError("Encrypted data has an invalid length")

        key, iv = self._derive(payload[len(MAGIC):header_size])

        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()

        # A wrong passphrase almost always shows up as broken padding
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as e:
            raise DecryptionError(f"Failed to decrypt (wrong passphrase?): {e}")
