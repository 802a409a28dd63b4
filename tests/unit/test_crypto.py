"""
Unit tests for cryptography module (diffzip/utils/crypto.py).

Tests OpenSSLCipher for encrypting/decrypting archive pieces.
"""

import hashlib

import pytest
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from diffzip.utils.crypto import (
    ITERATIONS,
    MAGIC,
    SALT_SIZE,
    DecryptionError,
    OpenSSLCipher,
)


class TestOpenSSLCipherInitialization:
    """Test OpenSSLCipher initialization."""

    def test_empty_passphrase_rejected(self):
        with pytest.raises(ValueError):
            OpenSSLCipher('')

    def test_default_iterations_match_openssl(self):
        assert OpenSSLCipher('secret').iterations == ITERATIONS == 10000


class TestEncryption:
    """Test encrypting buffers."""

    def test_encrypt_produces_salted_header(self):
        cipher = OpenSSLCipher('secret')

        payload = cipher.encrypt(b'hello world')

        assert payload.startswith(MAGIC)
        assert len(payload[len(MAGIC):len(MAGIC) + SALT_SIZE]) == SALT_SIZE
        # One padded AES block follows the header
        assert len(payload) == len(MAGIC) + SALT_SIZE + 16

    def test_encrypt_uses_random_salt(self):
        cipher = OpenSSLCipher('secret')

        assert cipher.encrypt(b'data') != cipher.encrypt(b'data')

    def test_encrypt_with_fixed_salt_is_deterministic(self):
        cipher = OpenSSLCipher('secret')
        salt = b'12345678'

        assert cipher.encrypt(b'data', salt=salt) == cipher.encrypt(b'data', salt=salt)

    def test_encrypt_rejects_bad_salt_size(self):
        with pytest.raises(ValueError):
            OpenSSLCipher('secret').encrypt(b'data', salt=b'short')

    def test_payload_matches_openssl_key_derivation(self):
        """Key and IV come from one PBKDF2-SHA256 derivation, as with openssl enc -pbkdf2."""
        salt = b'abcdefgh'
        payload = OpenSSLCipher('secret').encrypt(b'compatible', salt=salt)

        key_iv = hashlib.pbkdf2_hmac('sha256', b'secret', salt, 10000, 48)
        decryptor = Cipher(algorithms.AES(key_iv[:32]), modes.CBC(key_iv[32:])).decryptor()
        padded = decryptor.update(payload[16:]) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()

        assert unpadder.update(padded) + unpadder.finalize() == b'compatible'


class TestDecryption:
    """Test decrypting payloads."""

    def test_round_trip_binary(self):
        cipher = OpenSSLCipher('secret')
        data = bytes(range(256)) * 40

        assert cipher.decrypt(cipher.encrypt(data)) == data

    def test_round_trip_empty(self):
        cipher = OpenSSLCipher('secret')

        assert cipher.decrypt(cipher.encrypt(b'')) == b''

    def test_wrong_passphrase_fails(self):
        payload = OpenSSLCipher('secret').encrypt(b'some private data' * 10)

        with pytest.raises(DecryptionError):
            OpenSSLCipher('another').decrypt(payload)

    def test_too_short_payload(self):
        with pytest.raises(DecryptionError, match='too short'):
            OpenSSLCipher('secret').decrypt(b'Salted__')

    def test_missing_magic(self):
        with pytest.raises(DecryptionError, match='salt header'):
            OpenSSLCipher('secret').decrypt(b'NotSalty' + b'x' * 24)

    def test_truncated_ciphertext(self):
        payload = OpenSSLCipher('secret').encrypt(b'x' * 40)

        with pytest.raises(DecryptionError, match='invalid length'):
            OpenSSLCipher('secret').decrypt(payload[:-3])
