# vaultcore/vault.py
from flask import current_app
from sqlalchemy.exc import IntegrityError
import hashlib

from vaultcore.models import db, SecretVersion
from vaultcore.errors import VersionNotFound, VersionConflict

SECRET_FIELDS = ('identifier', 'secret_value', 'notes')

class SecretVaultManager:
    """
    Encrypts the sensitive fields of a secret as one envelope and keeps
    its version history.

    Envelope keys: encrypted_identifier, encrypted_secret_value,
    encrypted_notes, key_fingerprint, iv, salt.
    """
    NONCE_MODES = ('per-field', 'shared')

    def __init__(self, kdf, cipher, authenticator, nonce_mode='per-field', version_retries=3):
        if nonce_mode not in self.NONCE_MODES:
            raise ValueError(f"Unsupported nonce mode: {nonce_mode}")
        self.kdf = kdf
        self.cipher = cipher
        self.authenticator = authenticator
        self.nonce_mode = nonce_mode
        self.version_retries = version_retries

    def _field_nonce(self, iv: str, field: str) -> bytes:
        """Nonce used for one field of an envelope"""
        iv_bytes = bytes.fromhex(iv)
        if self.nonce_mode == 'shared':
            return iv_bytes
        digest = hashlib.sha256(iv_bytes + field.encode('utf-8')).digest()
        return digest[:self.cipher.NONCE_LENGTH]

    # ---------- ENVELOPES ----------

    def encrypt_secret(self, fields: dict, master_password: str) -> dict:
        """
        Encrypt identifier, secret_value and notes under one freshly derived key.
        secret_value is mandatory; the other two may be missing or None.
        """
        if not fields or not fields.get('secret_value'):
            raise ValueError('secret_value is required')

        salt = self.kdf.generate_salt()
        iv = self.kdf.generate_nonce()
        key, fingerprint = self.kdf.derive(master_password, salt)

        encrypted = {
            field: self.cipher.encrypt(fields.get(field), key, self._field_nonce(iv, field))
            for field in SECRET_FIELDS
        }

        return {
            'encrypted_identifier': encrypted['identifier'],
            'encrypted_secret_value': encrypted['secret_value'],
            'encrypted_notes': encrypted['notes'],
            'key_fingerprint': fingerprint,
            'iv': iv,
            'salt': salt
        }

    def decrypt_secret(self, envelope: dict, master_password: str) -> dict:
        """
        Decrypt an envelope. The fingerprint is checked before any ciphertext is
        touched, so a wrong password is always reported as InvalidMasterPassword.
        """
        key = self.authenticator.unlock(
            master_password, envelope.get('key_fingerprint'), envelope.get('salt')
        )

        return {
            'identifier': self.cipher.decrypt(envelope.get('encrypted_identifier'), key),
            'secret_value': self.cipher.decrypt(envelope.get('encrypted_secret_value'), key),
            'notes': self.cipher.decrypt(envelope.get('encrypted_notes'), key)
        }

    def update_secret(self, envelope: dict, changed_fields: dict, master_password: str) -> dict:
        """Decrypt, merge the changed fields, and re-encrypt everything with a new salt and IV"""
        current = self.decrypt_secret(envelope, master_password)
        for field in SECRET_FIELDS:
            if field in changed_fields:
                current[field] = changed_fields[field]
        return self.encrypt_secret(current, master_password)

    # ---------- VERSIONS ----------

    def _next_version(self, secret_id):
        current_max = db.session.query(db.func.max(SecretVersion.version)).filter(
            SecretVersion.secret_id == secret_id
        ).scalar()
        return (current_max or 0) + 1

    def snapshot_version(self, record) -> SecretVersion:
        """
        Append a version row holding a full copy of the record's envelope and metadata.
        The (secret_id, version) unique constraint catches a racing writer; the insert
        is retried with a recomputed number inside a savepoint.
        """
        for attempt in range(1, self.version_retries + 1):
            version = SecretVersion(
                secret_id=record.id,
                user_id=record.user_id,
                version=self._next_version(record.id),
                title=record.title,
                description=record.description,
                category=record.category,
                is_favorite=record.is_favorite,
                is_active=record.is_active,
                **record.to_envelope()
            )
            try:
                with db.session.begin_nested():
                    db.session.add(version)
                return version
            except IntegrityError:
                current_app.logger.warning(
                    f"Version number conflict for secret {record.id} (attempt {attempt})"
                )

        raise VersionConflict()

    def list_versions(self, secret_id) -> list:
        """Versions of a record, newest first"""
        return SecretVersion.query.filter_by(secret_id=secret_id).order_by(
            SecretVersion.version.desc()
        ).all()

    def get_version(self, secret_id, version_number) -> SecretVersion:
        version = SecretVersion.query.filter_by(
            secret_id=secret_id, version=version_number
        ).first()
        if not version:
            raise VersionNotFound()
        return version

    def restore_version(self, record, target_version: int, master_password: str,
                        snapshot_password: str = None):
        """
        Bring a record back to the state of one of its versions.

        The snapshot is opened with `snapshot_password` (defaults to
        `master_password`), checked against the version's own fingerprint and
        salt. Its fields are re-encrypted under `master_password` with a fresh
        salt/IV rather than copied, then a new version is appended for the
        restore itself.
        """
        snapshot = self.get_version(record.id, target_version)
        fields = self.decrypt_secret(snapshot.to_envelope(), snapshot_password or master_password)

        record.apply_envelope(self.encrypt_secret(fields, master_password))
        record.title = snapshot.title
        record.description = snapshot.description
        record.category = snapshot.category
        record.is_favorite = snapshot.is_favorite

        self.snapshot_version(record)
        return record
