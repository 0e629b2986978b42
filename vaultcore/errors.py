# vaultcore/errors.py

AUTH_FAILURE_MESSAGE = 'Wrong master password or corrupted data'

class VaultError(Exception):
    """Base class for every error raised by the vault engine"""
    code = 'VAULT_ERROR'
    status_code = 500
    default_message = 'Internal vault error'

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self):
        return {'message': self.message, 'code': self.code}

class DerivationFailure(VaultError):
    """Key derivation failed (bad salt, bad password type, primitive error)"""
    code = 'DERIVATION_FAILURE'
    default_message = 'Key derivation failed'

class InvalidMasterPassword(VaultError):
    """Derived key fingerprint does not match the stored one"""
    code = 'INVALID_MASTER_PASSWORD'
    status_code = 401
    default_message = AUTH_FAILURE_MESSAGE

class AuthenticationFailure(VaultError):
    """
    AEAD decryption failed.

    The user-facing message is the same as InvalidMasterPassword so callers
    cannot tell a wrong key from tampered ciphertext. `reason` keeps the
    internal distinction for logs.
    """
    code = 'INVALID_MASTER_PASSWORD'
    status_code = 401
    default_message = AUTH_FAILURE_MESSAGE

    def __init__(self, reason='authentication tag mismatch'):
        self.reason = reason
        super().__init__(AUTH_FAILURE_MESSAGE)

class CorruptArtifact(VaultError):
    """Backup decrypted but its content is not a valid backup document"""
    code = 'CORRUPT_BACKUP'
    status_code = 400
    default_message = 'Backup file is corrupted or truncated'

class UnsupportedBackupVersion(CorruptArtifact):
    code = 'UNSUPPORTED_BACKUP_VERSION'
    default_message = 'Backup format version is not supported'

class SecretNotFound(VaultError):
    code = 'SECRET_NOT_FOUND'
    status_code = 404
    default_message = 'Secret not found'

class VersionNotFound(VaultError):
    code = 'VERSION_NOT_FOUND'
    status_code = 404
    default_message = 'Version not found'

class NoteNotFound(VaultError):
    code = 'NOTE_NOT_FOUND'
    status_code = 404
    default_message = 'Note not found'

class UserNotFound(VaultError):
    code = 'USER_NOT_FOUND'
    status_code = 404
    default_message = 'User not found'

class MasterPasswordNotConfigured(VaultError):
    code = 'MASTER_PASSWORD_NOT_CONFIGURED'
    status_code = 400
    default_message = 'Master password not configured'

class MasterPasswordRequired(VaultError):
    code = 'CURRENT_MASTER_PASSWORD_REQUIRED'
    status_code = 400
    default_message = 'Current master password is required to change it'

class WeakMasterPassword(VaultError, ValueError):
    code = 'MASTER_PASSWORD_WEAK'
    status_code = 400
    default_message = 'Master password is too short'

class VersionConflict(VaultError):
    """Could not allocate a unique version number after the configured retries"""
    code = 'VERSION_CONFLICT'
    status_code = 409
    default_message = 'Concurrent modification detected, try again'
