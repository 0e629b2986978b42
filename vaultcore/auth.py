# vaultcore/auth.py
import hmac

from vaultcore.errors import (
    InvalidMasterPassword, MasterPasswordRequired, WeakMasterPassword
)

class MasterSecretAuthenticator:
    """Checks master passwords against stored key fingerprints"""

    def __init__(self, kdf, min_length: int = 8):
        self.kdf = kdf
        self.min_length = min_length

    def verify(self, password: str, stored_fingerprint: str, stored_salt: str) -> bool:
        """Re-derive the key from password + salt and compare fingerprints in constant time"""
        if not stored_fingerprint or not stored_salt:
            return False
        _, fingerprint = self.kdf.derive(password, stored_salt)
        return hmac.compare_digest(fingerprint, stored_fingerprint)

    def unlock(self, password: str, stored_fingerprint: str, stored_salt: str) -> bytes:
        """
        Same check as verify() but returns the derived key so the caller
        can decrypt without deriving a second time.
        """
        if not stored_fingerprint or not stored_salt:
            raise InvalidMasterPassword()
        key, fingerprint = self.kdf.derive(password, stored_salt)
        if not hmac.compare_digest(fingerprint, stored_fingerprint):
            raise InvalidMasterPassword()
        return key

    def set_or_change(self, existing, new_password: str, current_password: str = None) -> tuple[str, str]:
        """
        Produce new master key material.
        `existing` is the current MasterKeyRecord (or None). Returns (salt, fingerprint);
        the salt is always fresh, never reused.
        """
        if not isinstance(new_password, str) or len(new_password) < self.min_length:
            raise WeakMasterPassword(
                f"Master password must be at least {self.min_length} characters"
            )

        if existing is not None and existing.is_configured:
            if not current_password:
                raise MasterPasswordRequired()
            if not self.verify(current_password, existing.key_fingerprint, existing.salt):
                raise InvalidMasterPassword()

        salt = self.kdf.generate_salt()
        _, fingerprint = self.kdf.derive(new_password, salt)
        return salt, fingerprint
