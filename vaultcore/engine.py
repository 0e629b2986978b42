# vaultcore/engine.py
from contextlib import contextmanager
from datetime import datetime, UTC

from flask import current_app

from vaultcore.models import db, User, MasterKeyRecord, SecretRecord, SecureNote
from vaultcore.crypto import KeyDerivationService, CipherService
from vaultcore.auth import MasterSecretAuthenticator
from vaultcore.vault import SecretVaultManager, SECRET_FIELDS
from vaultcore.backup import BackupCrypto, BackupCodec
from vaultcore.passwords import generate_password, analyze_password_strength
from vaultcore.errors import (
    VaultError, InvalidMasterPassword, AuthenticationFailure, MasterPasswordNotConfigured,
    SecretNotFound, NoteNotFound, UserNotFound
)

TITLE_MAX_LENGTH = 100
NOTE_TITLE_MAX_LENGTH = 200
SECRET_METADATA_FIELDS = ('title', 'description', 'category', 'is_favorite')
NOTE_METADATA_FIELDS = ('title', 'tags', 'is_favorite', 'color')
PASSWORD_OPTIONS = (
    'length', 'include_uppercase', 'include_lowercase',
    'include_numbers', 'include_symbols', 'exclude_similar'
)

class VaultEngine:
    """
    Entry point for everything the vault does.

    Built from the app config and registered as app.extensions['vault_engine'].
    Every method takes and returns plain dicts, lists and strings. Methods that
    write rows run as one transaction: commit on success, rollback and re-raise
    on failure.
    """

    def __init__(self, app=None):
        self.kdf = None
        self.cipher = None
        self.authenticator = None
        self.vault = None
        self.backup = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        config = app.config
        self.kdf = KeyDerivationService(
            time_cost=config.get('ARGON2_TIME_COST', 3),
            memory_cost=config.get('ARGON2_MEMORY_COST', 65536),
            parallelism=config.get('ARGON2_PARALLELISM', 1)
        )
        self.cipher = CipherService()
        self.authenticator = MasterSecretAuthenticator(
            self.kdf, min_length=config.get('MASTER_PASSWORD_MIN_LENGTH', 8)
        )
        self.vault = SecretVaultManager(
            self.kdf, self.cipher, self.authenticator,
            nonce_mode=config.get('FIELD_NONCE_MODE', 'per-field'),
            version_retries=config.get('VERSION_INSERT_RETRIES', 3)
        )
        self.backup = BackupCodec(
            BackupCrypto(iterations=config.get('BACKUP_PBKDF2_ITERATIONS', 100_000)),
            cipher=config.get('BACKUP_CIPHER', 'aes-256-gcm'),
            import_ciphers=config.get('BACKUP_IMPORT_CIPHERS')
        )

        app.extensions['vault_engine'] = self

    # ---------- HELPERS ----------

    @contextmanager
    def _transaction(self, action):
        try:
            yield
            db.session.commit()
        except InvalidMasterPassword:
            db.session.rollback()
            current_app.logger.info(f"{action}: master password rejected")
            raise
        except AuthenticationFailure as e:
            db.session.rollback()
            current_app.logger.warning(f"{action}: ciphertext failed authentication ({e.reason})")
            raise
        except (VaultError, ValueError):
            db.session.rollback()
            raise
        except Exception as e:
            db.session.rollback()
            current_app.logger.error(f"{action} error: {str(e)}")
            raise

    def _get_user(self, user_id):
        user = db.session.get(User, user_id)
        if not user:
            raise UserNotFound()
        return user

    def _get_master_record(self, user_id):
        record = MasterKeyRecord.query.filter_by(user_id=user_id).first()
        if not record or not record.is_configured:
            raise MasterPasswordNotConfigured()
        return record

    def _check_master_password(self, user_id, master_password):
        """Gate for every path that encrypts something new"""
        record = self._get_master_record(user_id)
        if not self.authenticator.verify(master_password, record.key_fingerprint, record.salt):
            raise InvalidMasterPassword()

    def _get_secret(self, user_id, secret_id, active_only=True):
        query = SecretRecord.query.filter_by(id=secret_id, user_id=user_id)
        if active_only:
            query = query.filter_by(is_active=True)
        secret = query.first()
        if not secret:
            raise SecretNotFound()
        return secret

    def _get_note(self, user_id, note_id):
        note = SecureNote.query.filter_by(id=note_id, user_id=user_id, is_active=True).first()
        if not note:
            raise NoteNotFound()
        return note

    @staticmethod
    def _validate_title(title, max_length):
        if not isinstance(title, str) or not title.strip():
            raise ValueError('Title is required')
        if len(title) > max_length:
            raise ValueError(f"Title must be at most {max_length} characters")
        return title.strip()

    # ---------- KEYS & MASTER PASSWORD ----------

    def derive_key(self, password, salt):
        """Returns (key, fingerprint)"""
        return self.kdf.derive(password, salt)

    def verify_master_password(self, user_id, password) -> bool:
        record = self._get_master_record(user_id)
        return self.authenticator.verify(password, record.key_fingerprint, record.salt)

    def set_master_password(self, user_id, new_password, current_password=None) -> dict:
        """
        Set the master password, or change it.

        On a change every active secret and note is re-encrypted under the new
        password in the same transaction, and each re-encrypted secret gets a
        version. Records that do not open with the current password are left
        untouched and counted as skipped.
        """
        with self._transaction('Set master password'):
            self._get_user(user_id)
            existing = MasterKeyRecord.query.filter_by(user_id=user_id).first()
            changing = existing is not None and existing.is_configured
            salt, fingerprint = self.authenticator.set_or_change(existing, new_password, current_password)

            reencrypted_secrets = 0
            reencrypted_notes = 0
            skipped = 0
            if changing:
                secrets = SecretRecord.query.filter_by(user_id=user_id, is_active=True).all()
                for secret in secrets:
                    try:
                        fields = self.vault.decrypt_secret(secret.to_envelope(), current_password)
                    except InvalidMasterPassword:
                        current_app.logger.warning(
                            f"Secret {secret.id} was not encrypted with the current master password, left as is"
                        )
                        skipped += 1
                        continue
                    secret.apply_envelope(self.vault.encrypt_secret(fields, new_password))
                    self.vault.snapshot_version(secret)
                    reencrypted_secrets += 1

                notes = SecureNote.query.filter_by(user_id=user_id, is_active=True).all()
                for note in notes:
                    try:
                        fields = self.vault.decrypt_secret(note.to_envelope(), current_password)
                    except InvalidMasterPassword:
                        current_app.logger.warning(
                            f"Note {note.id} was not encrypted with the current master password, left as is"
                        )
                        skipped += 1
                        continue
                    note.apply_envelope(self.vault.encrypt_secret(fields, new_password))
                    reencrypted_notes += 1

            if existing is None:
                existing = MasterKeyRecord(user_id=user_id)
                db.session.add(existing)
            existing.salt = salt
            existing.key_fingerprint = fingerprint

        action = 'changed' if changing else 'configured'
        current_app.logger.info(f"Master password {action} for user {user_id}")
        return {
            'changed': changing,
            'reencrypted_secrets': reencrypted_secrets,
            'reencrypted_notes': reencrypted_notes,
            'skipped': skipped
        }

    # ---------- ENVELOPES ----------

    def encrypt_secret(self, fields, master_password) -> dict:
        return self.vault.encrypt_secret(fields, master_password)

    def decrypt_secret(self, envelope, master_password) -> dict:
        return self.vault.decrypt_secret(envelope, master_password)

    def update_secret_envelope(self, envelope, changed_fields, master_password) -> dict:
        return self.vault.update_secret(envelope, changed_fields, master_password)

    # ---------- SECRETS ----------

    def create_secret(self, user_id, data, master_password) -> dict:
        """Encrypt and store a new secret; its first version is recorded immediately"""
        if not data:
            raise ValueError('Secret data is required')
        title = self._validate_title(data.get('title'), TITLE_MAX_LENGTH)

        with self._transaction('Create secret'):
            self._get_user(user_id)
            self._check_master_password(user_id, master_password)

            envelope = self.vault.encrypt_secret(
                {field: data.get(field) for field in SECRET_FIELDS}, master_password
            )
            secret = SecretRecord(
                user_id=user_id,
                title=title,
                description=data.get('description'),
                category=data.get('category') or 'General',
                is_favorite=bool(data.get('is_favorite', False)),
                is_active=True,
                access_count=0
            )
            secret.apply_envelope(envelope)
            db.session.add(secret)
            db.session.flush()
            self.vault.snapshot_version(secret)

        current_app.logger.info(f"Secret {secret.id} created for user {user_id}")
        return secret.to_dict()

    def get_secret(self, user_id, secret_id, master_password) -> dict:
        """Decrypted secret; counts as an access"""
        with self._transaction('Get secret'):
            secret = self._get_secret(user_id, secret_id)
            fields = self.vault.decrypt_secret(secret.to_envelope(), master_password)
            secret.access_count = (secret.access_count or 0) + 1
            secret.last_accessed = datetime.now(UTC)

        result = secret.to_dict()
        result.update(fields)
        return result

    def list_secrets(self, user_id, category=None, favorites_only=False, search=None) -> list:
        """Active secrets, metadata only"""
        query = SecretRecord.query.filter_by(user_id=user_id, is_active=True)
        if category:
            query = query.filter_by(category=category)
        if favorites_only:
            query = query.filter_by(is_favorite=True)
        if search:
            pattern = f'%{search}%'
            query = query.filter(db.or_(
                SecretRecord.title.ilike(pattern),
                SecretRecord.description.ilike(pattern)
            ))
        return [secret.to_dict() for secret in query.order_by(SecretRecord.title).all()]

    def list_categories(self, user_id) -> list:
        rows = db.session.query(SecretRecord.category).filter_by(
            user_id=user_id, is_active=True
        ).distinct().order_by(SecretRecord.category).all()
        return [row[0] for row in rows]

    def update_secret(self, user_id, secret_id, changes, master_password) -> dict:
        """
        Apply metadata and/or sensitive field changes.
        Every update re-encrypts identifier, secret_value and notes together
        under a fresh salt and IV, then appends a version.
        """
        if not changes:
            raise ValueError('No changes given')
        if 'title' in changes:
            changes = dict(changes, title=self._validate_title(changes['title'], TITLE_MAX_LENGTH))

        with self._transaction('Update secret'):
            secret = self._get_secret(user_id, secret_id)
            self._check_master_password(user_id, master_password)

            sensitive = {field: changes[field] for field in SECRET_FIELDS if field in changes}
            secret.apply_envelope(
                self.vault.update_secret(secret.to_envelope(), sensitive, master_password)
            )

            for field in SECRET_METADATA_FIELDS:
                if field in changes:
                    setattr(secret, field, changes[field])
            if not secret.category:
                secret.category = 'General'

            self.vault.snapshot_version(secret)

        current_app.logger.info(f"Secret {secret_id} updated for user {user_id}")
        return secret.to_dict()

    def delete_secret(self, user_id, secret_id) -> dict:
        """Soft delete; the record keeps its versions and cannot be revived"""
        with self._transaction('Delete secret'):
            secret = self._get_secret(user_id, secret_id)
            secret.is_active = False
            self.vault.snapshot_version(secret)

        current_app.logger.info(f"Secret {secret_id} deleted for user {user_id}")
        return secret.to_dict()

    # ---------- VERSIONS ----------

    def snapshot_version(self, user_id, secret_id) -> dict:
        with self._transaction('Snapshot version'):
            secret = self._get_secret(user_id, secret_id, active_only=False)
            version = self.vault.snapshot_version(secret)
        return version.to_dict()

    def list_versions(self, user_id, secret_id) -> list:
        """Newest first. Works for deleted secrets too."""
        versions = [v for v in self.vault.list_versions(secret_id) if v.user_id == user_id]
        if not versions:
            self._get_secret(user_id, secret_id, active_only=False)
        return [version.to_dict() for version in versions]

    def get_version(self, user_id, secret_id, version, master_password=None) -> dict:
        """Version metadata, plus the decrypted fields when a master password is given"""
        snapshot = self.vault.get_version(secret_id, version)
        if snapshot.user_id != user_id:
            raise SecretNotFound()

        result = snapshot.to_dict()
        if master_password is not None:
            try:
                result.update(self.vault.decrypt_secret(snapshot.to_envelope(), master_password))
            except AuthenticationFailure as e:
                current_app.logger.warning(
                    f"Version {version} of secret {secret_id} failed authentication ({e.reason})"
                )
                raise
        return result

    def restore_version(self, user_id, secret_id, version, master_password, version_password=None) -> dict:
        """
        Restore a secret to one of its versions.

        The result is always encrypted under the current master password. A
        version saved before a master password change is opened with
        `version_password`, the password that was current when it was written.
        """
        with self._transaction('Restore version'):
            secret = self._get_secret(user_id, secret_id)
            self._check_master_password(user_id, master_password)
            self.vault.restore_version(secret, version, master_password, snapshot_password=version_password)

        current_app.logger.info(f"Secret {secret_id} restored to version {version} for user {user_id}")
        return secret.to_dict()

    # ---------- NOTES ----------

    def create_note(self, user_id, data, master_password) -> dict:
        if not data:
            raise ValueError('Note data is required')
        title = self._validate_title(data.get('title'), NOTE_TITLE_MAX_LENGTH)
        if not data.get('content'):
            raise ValueError('Note content is required')

        with self._transaction('Create note'):
            self._get_user(user_id)
            self._check_master_password(user_id, master_password)

            note = SecureNote(
                user_id=user_id,
                title=title,
                is_favorite=bool(data.get('is_favorite', False)),
                color=data.get('color') or '#4ECDC4',
                is_active=True
            )
            note.tags = data.get('tags') or []
            note.apply_envelope(
                self.vault.encrypt_secret({'secret_value': data['content']}, master_password)
            )
            db.session.add(note)

        current_app.logger.info(f"Note {note.id} created for user {user_id}")
        return note.to_dict()

    def get_note(self, user_id, note_id, master_password) -> dict:
        note = self._get_note(user_id, note_id)
        try:
            fields = self.vault.decrypt_secret(note.to_envelope(), master_password)
        except InvalidMasterPassword:
            current_app.logger.info(f"Get note: master password rejected for note {note_id}")
            raise
        except AuthenticationFailure as e:
            current_app.logger.warning(f"Note {note_id} failed authentication ({e.reason})")
            raise

        result = note.to_dict()
        result['content'] = fields['secret_value']
        return result

    def list_notes(self, user_id, favorites_only=False, search=None, tag=None) -> list:
        query = SecureNote.query.filter_by(user_id=user_id, is_active=True)
        if favorites_only:
            query = query.filter_by(is_favorite=True)
        if search:
            query = query.filter(SecureNote.title.ilike(f'%{search}%'))
        notes = query.order_by(SecureNote.updated_at.desc(), SecureNote.id.desc()).all()
        if tag:
            notes = [note for note in notes if tag in note.tags]
        return [note.to_dict() for note in notes]

    def update_note(self, user_id, note_id, changes, master_password) -> dict:
        if not changes:
            raise ValueError('No changes given')
        if 'title' in changes:
            changes = dict(changes, title=self._validate_title(changes['title'], NOTE_TITLE_MAX_LENGTH))
        if 'content' in changes and not changes['content']:
            raise ValueError('Note content is required')

        with self._transaction('Update note'):
            note = self._get_note(user_id, note_id)
            self._check_master_password(user_id, master_password)

            if 'content' in changes:
                note.apply_envelope(
                    self.vault.encrypt_secret({'secret_value': changes['content']}, master_password)
                )
            for field in NOTE_METADATA_FIELDS:
                if field in changes:
                    setattr(note, field, changes[field])

        current_app.logger.info(f"Note {note_id} updated for user {user_id}")
        return note.to_dict()

    def delete_note(self, user_id, note_id) -> dict:
        with self._transaction('Delete note'):
            note = self._get_note(user_id, note_id)
            note.is_active = False

        current_app.logger.info(f"Note {note_id} deleted for user {user_id}")
        return {'id': note_id, 'deleted': True}

    def toggle_note_favorite(self, user_id, note_id) -> dict:
        with self._transaction('Toggle note favorite'):
            note = self._get_note(user_id, note_id)
            note.is_favorite = not note.is_favorite

        current_app.logger.info(f"Note {note_id} favorite set to {note.is_favorite} for user {user_id}")
        return note.to_dict()

    def note_stats(self, user_id) -> dict:
        """Counts over active notes. Every note is encrypted, so none are 'normal'."""
        query = SecureNote.query.filter_by(user_id=user_id, is_active=True)
        total = query.count()
        return {
            'total': total,
            'secure': total,
            'favorites': query.filter_by(is_favorite=True).count(),
            'normal': 0
        }

    # ---------- BACKUP ----------

    def export_backup(self, user_id, master_password) -> dict:
        """Encrypted artifact of every active secret, every version and every active note"""
        user = self._get_user(user_id)
        try:
            self._check_master_password(user_id, master_password)
        except InvalidMasterPassword:
            current_app.logger.info(f"Export backup: master password rejected for user {user_id}")
            raise

        artifact, metadata = self.backup.export(user, master_password)
        filename = f"backup_{user.email}_{datetime.now(UTC).strftime('%Y-%m-%d')}.encrypted"

        current_app.logger.info(
            f"Backup exported for user {user_id}: {metadata['totalCredentials']} credentials, "
            f"{metadata['totalVersions']} versions, {metadata['totalNotes']} notes"
        )
        return {'filename': filename, 'data': artifact, 'metadata': metadata}

    def export_plaintext(self, user_id, master_password) -> dict:
        """
        Every active secret and note, decrypted.

        Meant for moving a vault to another tool; the result holds plaintext and
        must never be persisted by the engine.
        """
        self._get_user(user_id)
        try:
            self._check_master_password(user_id, master_password)

            credentials = []
            secrets = SecretRecord.query.filter_by(user_id=user_id, is_active=True).order_by(SecretRecord.id).all()
            for secret in secrets:
                fields = self.vault.decrypt_secret(secret.to_envelope(), master_password)
                metadata = secret.to_dict()
                credentials.append({
                    'id': secret.id,
                    'title': secret.title,
                    'description': secret.description,
                    'category': secret.category,
                    'username': fields['identifier'],
                    'password': fields['secret_value'],
                    'notes': fields['notes'],
                    'isFavorite': secret.is_favorite,
                    'createdAt': metadata['created_at'],
                    'updatedAt': metadata['updated_at']
                })

            notes = []
            for note in SecureNote.query.filter_by(user_id=user_id, is_active=True).order_by(SecureNote.id).all():
                fields = self.vault.decrypt_secret(note.to_envelope(), master_password)
                metadata = note.to_dict()
                notes.append({
                    'id': note.id,
                    'title': note.title,
                    'content': fields['secret_value'],
                    'isSecure': True,
                    'tags': note.tags,
                    'isFavorite': note.is_favorite,
                    'color': note.color,
                    'createdAt': metadata['created_at'],
                    'updatedAt': metadata['updated_at']
                })
        except InvalidMasterPassword:
            current_app.logger.info(f"Plaintext export: master password rejected for user {user_id}")
            raise
        except AuthenticationFailure as e:
            current_app.logger.warning(f"Plaintext export for user {user_id} failed authentication ({e.reason})")
            raise

        current_app.logger.info(
            f"Plaintext export for user {user_id}: {len(credentials)} credentials, {len(notes)} notes"
        )
        return {
            'exportedAt': datetime.now(UTC).isoformat(),
            'credentials': credentials,
            'notes': notes
        }

    def import_backup(self, artifact, master_password) -> dict:
        """Decrypt and validate an artifact without writing anything"""
        try:
            return self.backup.import_(artifact, master_password)
        except InvalidMasterPassword:
            current_app.logger.info('Import backup: artifact did not decrypt with the given password')
            raise

    def restore_backup(self, user_id, artifact, master_password) -> dict:
        """Insert the contents of an artifact into the user's vault"""
        parsed = self.import_backup(artifact, master_password)

        with self._transaction('Restore backup'):
            user = self._get_user(user_id)
            summary = self.backup.restore_into(user, parsed)

        current_app.logger.info(
            f"Backup restored for user {user_id}: {summary['restoredCredentials']} credentials, "
            f"{summary['restoredVersions']} versions ({summary['droppedVersions']} dropped), "
            f"{summary['restoredNotes']} notes"
        )
        return summary

    # ---------- PASSWORD TOOLS ----------

    def generate_password(self, options=None) -> str:
        options = dict(options or {})
        unknown = sorted(set(options) - set(PASSWORD_OPTIONS))
        if unknown:
            raise ValueError(f"Unknown password option: {', '.join(unknown)}")
        return generate_password(**options)

    def analyze_password_strength(self, password) -> dict:
        return analyze_password_strength(password)

def get_engine() -> VaultEngine:
    """The engine of the current app"""
    return current_app.extensions['vault_engine']
