# vaultcore/crypto.py
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag
from argon2.low_level import hash_secret_raw, Type
from argon2.exceptions import HashingError
import hashlib
import os

from vaultcore.errors import DerivationFailure, AuthenticationFailure

class KeyDerivationService:
    KEY_LENGTH = 32  # 256 bits
    SALT_LENGTH = 32
    NONCE_LENGTH = 16

    def __init__(self, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 1):
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism

    def derive(self, password: str, salt) -> tuple[bytes, str]:
        """
        Derive a 32-byte key from the master password using Argon2id.
        Returns (key, fingerprint) tuple; the fingerprint is the SHA-256 hex of the key.
        `salt` may be raw bytes or a hex string as stored on records, and must
        be SALT_LENGTH bytes.
        """
        try:
            salt_bytes = salt if isinstance(salt, bytes) else bytes.fromhex(salt)
            if len(salt_bytes) != self.SALT_LENGTH:
                raise ValueError(f"Salt must be {self.SALT_LENGTH} bytes")
            key = hash_secret_raw(
                secret=password.encode('utf-8'),
                salt=salt_bytes,
                time_cost=self.time_cost,
                memory_cost=self.memory_cost,
                parallelism=self.parallelism,
                hash_len=self.KEY_LENGTH,
                type=Type.ID
            )
        except (HashingError, ValueError, TypeError, AttributeError) as e:
            raise DerivationFailure() from e

        return key, self.fingerprint(key)

    @staticmethod
    def fingerprint(key: bytes) -> str:
        return hashlib.sha256(key).hexdigest()

    def generate_salt(self) -> str:
        """Random 32-byte salt, hex encoded"""
        return os.urandom(self.SALT_LENGTH).hex()

    def generate_nonce(self) -> str:
        """Random 16-byte nonce, hex encoded"""
        return os.urandom(self.NONCE_LENGTH).hex()

class CipherService:
    """
    AES-256-GCM over single strings.

    Envelope layout is hex(nonce) + hex(tag) + hex(ciphertext). Segment
    lengths are fixed so decryption slices by position.
    """
    NONCE_LENGTH = 16
    TAG_LENGTH = 16
    ASSOCIATED_DATA = b'password-manager'

    _NONCE_HEX = NONCE_LENGTH * 2
    _HEADER_HEX = (NONCE_LENGTH + TAG_LENGTH) * 2

    def encrypt(self, plaintext, key: bytes, nonce) -> str | None:
        """Encrypt a string. Empty or missing plaintext yields None."""
        if not plaintext:
            return None

        nonce_bytes = nonce if isinstance(nonce, bytes) else bytes.fromhex(nonce)
        if len(nonce_bytes) != self.NONCE_LENGTH:
            raise ValueError(f"Nonce must be {self.NONCE_LENGTH} bytes")

        sealed = AESGCM(key).encrypt(nonce_bytes, plaintext.encode('utf-8'), self.ASSOCIATED_DATA)
        ciphertext, tag = sealed[:-self.TAG_LENGTH], sealed[-self.TAG_LENGTH:]

        return nonce_bytes.hex() + tag.hex() + ciphertext.hex()

    def decrypt(self, envelope, key: bytes) -> str | None:
        """Decrypt an envelope produced by encrypt(). Raises AuthenticationFailure."""
        if not envelope:
            return None

        if len(envelope) < self._HEADER_HEX:
            raise AuthenticationFailure('malformed envelope: too short')

        try:
            nonce = bytes.fromhex(envelope[:self._NONCE_HEX])
            tag = bytes.fromhex(envelope[self._NONCE_HEX:self._HEADER_HEX])
            ciphertext = bytes.fromhex(envelope[self._HEADER_HEX:])
        except ValueError as e:
            raise AuthenticationFailure('malformed envelope: invalid hex') from e

        try:
            plaintext = AESGCM(key).decrypt(nonce, ciphertext + tag, self.ASSOCIATED_DATA)
            return plaintext.decode('utf-8')
        except InvalidTag as e:
            raise AuthenticationFailure('authentication tag mismatch') from e
        except UnicodeDecodeError as e:
            raise AuthenticationFailure('plaintext is not valid UTF-8') from e
