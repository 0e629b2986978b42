# vaultcore/backup.py
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag
from flask import current_app
from datetime import datetime, UTC
import binascii
import base64
import json
import os

from vaultcore.models import db, SecretRecord, SecretVersion, SecureNote
from vaultcore.errors import InvalidMasterPassword, CorruptArtifact, UnsupportedBackupVersion

FORMAT_VERSION = '1.0'
SUPPORTED_FORMAT_VERSIONS = ('1.0',)
REQUIRED_FIELDS = ('version', 'credentials', 'versions')

class BackupCrypto:
    """
    Password-based encryption of whole backup artifacts.

    Independent of per-secret crypto: PBKDF2-HMAC-SHA256 derives the key and
    the artifact layout is salt(32) + iv(16) + ciphertext. Two schemes share
    that layout:
      - aes-256-gcm: ciphertext carries the 16-byte tag at its end
      - aes-256-cbc: PKCS7 padded, compatible with legacy artifacts
    """
    SALT_LENGTH = 32
    IV_LENGTH = 16
    KEY_LENGTH = 32
    SCHEMES = ('aes-256-gcm', 'aes-256-cbc')

    _HEADER_SIZE = SALT_LENGTH + IV_LENGTH

    def __init__(self, iterations: int = 100_000):
        self.iterations = iterations

    def derive_key(self, master_password: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.KEY_LENGTH,
            salt=salt,
            iterations=self.iterations
        )
        return kdf.derive(master_password.encode('utf-8'))

    def encrypt(self, data: bytes, master_password: str, scheme: str = 'aes-256-gcm') -> bytes:
        if scheme not in self.SCHEMES:
            raise ValueError(f"Unsupported backup cipher: {scheme}")

        salt = os.urandom(self.SALT_LENGTH)
        iv = os.urandom(self.IV_LENGTH)
        key = self.derive_key(master_password, salt)

        if scheme == 'aes-256-gcm':
            ciphertext = AESGCM(key).encrypt(iv, data, None)
        else:
            padder = padding.PKCS7(128).padder()
            padded = padder.update(data) + padder.finalize()
            encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
            ciphertext = encryptor.update(padded) + encryptor.finalize()

        return salt + iv + ciphertext

    def decrypt(self, blob: bytes, master_password: str, scheme: str = 'aes-256-gcm') -> bytes:
        """
        Decrypt an artifact.
        Raises ValueError for truncated blobs and bad CBC padding, InvalidTag for GCM failures.
        """
        if scheme not in self.SCHEMES:
            raise ValueError(f"Unsupported backup cipher: {scheme}")
        if len(blob) <= self._HEADER_SIZE:
            raise ValueError('Encrypted data too short to be a valid backup')

        salt = blob[:self.SALT_LENGTH]
        iv = blob[self.SALT_LENGTH:self._HEADER_SIZE]
        ciphertext = blob[self._HEADER_SIZE:]
        key = self.derive_key(master_password, salt)

        if scheme == 'aes-256-gcm':
            return AESGCM(key).decrypt(iv, ciphertext, None)

        if len(ciphertext) % 16:
            raise ValueError('Ciphertext is not a whole number of blocks')
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        return unpadder.update(padded) + unpadder.finalize()

def _isoformat(value):
    return value.isoformat() if value else None

class BackupCodec:
    """Serializes a user's vault into a single encrypted artifact and back"""

    def __init__(self, crypto: BackupCrypto, cipher='aes-256-gcm', import_ciphers=None):
        if cipher not in BackupCrypto.SCHEMES:
            raise ValueError(f"Unsupported backup cipher: {cipher}")
        self.crypto = crypto
        self.cipher = cipher
        self.import_ciphers = tuple(import_ciphers or (cipher,))

    # ---------- EXPORT ----------

    @staticmethod
    def _credential_to_dict(secret):
        return {
            'id': secret.id,
            'title': secret.title,
            'description': secret.description,
            'category': secret.category,
            'username': secret.encrypted_identifier,
            'password': secret.encrypted_secret_value,
            'notes': secret.encrypted_notes,
            'isFavorite': secret.is_favorite,
            'encryptionKey': secret.key_fingerprint,
            'iv': secret.iv,
            'salt': secret.salt,
            'createdAt': _isoformat(secret.created_at),
            'updatedAt': _isoformat(secret.updated_at)
        }

    @staticmethod
    def _version_to_dict(version):
        return {
            'id': version.id,
            'credentialId': version.secret_id,
            'version': version.version,
            'title': version.title,
            'description': version.description,
            'category': version.category,
            'isFavorite': version.is_favorite,
            'isActive': version.is_active,
            'username': version.encrypted_identifier,
            'password': version.encrypted_secret_value,
            'notes': version.encrypted_notes,
            'encryptionKey': version.key_fingerprint,
            'iv': version.iv,
            'salt': version.salt,
            'createdAt': _isoformat(version.created_at),
            'updatedAt': _isoformat(version.created_at)
        }

    @staticmethod
    def _note_to_dict(note):
        return {
            'id': note.id,
            'title': note.title,
            'content': note.encrypted_content,
            'isSecure': True,
            'tags': note.tags,
            'isFavorite': note.is_favorite,
            'color': note.color,
            'encryptionKey': note.key_fingerprint,
            'iv': note.iv,
            'salt': note.salt,
            'createdAt': _isoformat(note.created_at),
            'updatedAt': _isoformat(note.updated_at)
        }

    def build_document(self, user) -> dict:
        """Collect the plain backup document; per-secret envelopes are kept as they are"""
        secrets = SecretRecord.query.filter_by(user_id=user.id, is_active=True).order_by(SecretRecord.id).all()
        versions = SecretVersion.query.filter_by(user_id=user.id).order_by(
            SecretVersion.secret_id, SecretVersion.version
        ).all()
        notes = SecureNote.query.filter_by(user_id=user.id, is_active=True).order_by(SecureNote.id).all()

        return {
            'version': FORMAT_VERSION,
            'timestamp': datetime.now(UTC).isoformat(),
            'user': user.to_profile(),
            'credentials': [self._credential_to_dict(s) for s in secrets],
            'versions': [self._version_to_dict(v) for v in versions],
            'notes': [self._note_to_dict(n) for n in notes],
            'metadata': {
                'totalCredentials': len(secrets),
                'totalVersions': len(versions),
                'totalNotes': len(notes),
                'backupSize': 0,  # artifact size is only known after encryption
                'formatVersion': FORMAT_VERSION,
                'cipher': self.cipher
            }
        }

    def export(self, user, master_password: str) -> tuple[str, dict]:
        """
        Build, serialize and encrypt the user's vault.
        Returns (artifact, metadata) where artifact is base64 text and
        metadata.backupSize is the artifact length.
        """
        document = self.build_document(user)
        payload = json.dumps(document).encode('utf-8')
        blob = self.crypto.encrypt(payload, master_password, self.cipher)
        artifact = base64.b64encode(blob).decode('utf-8')

        metadata = dict(document['metadata'], backupSize=len(artifact))
        return artifact, metadata

    # ---------- IMPORT ----------

    def _decrypt_artifact(self, artifact, master_password):
        try:
            if isinstance(artifact, str):
                artifact = artifact.strip().encode('ascii')
            blob = base64.b64decode(artifact, validate=True)
        except (binascii.Error, UnicodeEncodeError, ValueError) as e:
            raise InvalidMasterPassword() from e

        for scheme in self.import_ciphers:
            try:
                payload = self.crypto.decrypt(blob, master_password, scheme)
            except (InvalidTag, ValueError):
                continue

            try:
                return payload.decode('utf-8')
            except UnicodeDecodeError as e:
                # CBC has no tag: a wrong key can still unpad cleanly and yields garbage
                if scheme == 'aes-256-cbc':
                    continue
                raise CorruptArtifact() from e

        raise InvalidMasterPassword()

    def import_(self, artifact, master_password: str) -> dict:
        """
        Decrypt and validate an artifact.
        Decryption failures raise InvalidMasterPassword; anything wrong with the
        decrypted document raises CorruptArtifact.
        """
        payload = self._decrypt_artifact(artifact, master_password)

        try:
            document = json.loads(payload)
        except json.JSONDecodeError as e:
            raise CorruptArtifact() from e

        if not isinstance(document, dict):
            raise CorruptArtifact('Backup content is not a JSON object')

        missing = [field for field in REQUIRED_FIELDS if field not in document]
        if missing:
            raise CorruptArtifact(f"Backup is missing required fields: {', '.join(missing)}")

        if document['version'] not in SUPPORTED_FORMAT_VERSIONS:
            raise UnsupportedBackupVersion(f"Unsupported backup format version: {document['version']}")

        notes = document.get('notes') or []
        if not isinstance(document['credentials'], list) or not isinstance(document['versions'], list) \
                or not isinstance(notes, list):
            raise CorruptArtifact('Backup sections must be lists')

        return {
            'profile': document.get('user') or {},
            'secrets': document['credentials'],
            'versions': document['versions'],
            'notes': notes,
            'metadata': document.get('metadata') or {},
            'timestamp': document.get('timestamp')
        }

    # ---------- RESTORE ----------

    @staticmethod
    def _has_envelope(entry, value_key):
        return isinstance(entry, dict) and all(
            isinstance(entry.get(key), str) and entry.get(key)
            for key in (value_key, 'encryptionKey', 'iv', 'salt')
        )

    @staticmethod
    def _text(entry, key, default=None):
        value = entry.get(key)
        return value if isinstance(value, str) and value else default

    @staticmethod
    def _flag(entry, key, default=False):
        value = entry.get(key, default)
        return value if isinstance(value, bool) else default

    @staticmethod
    def _entry_id(value):
        """Backup ids are ints or strings; anything else cannot be mapped"""
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            return None
        return value

    def restore_into(self, user, parsed: dict) -> dict:
        """
        Insert the secrets, versions and notes of a parsed backup for `user`.
        Secrets get new ids; versions are re-pointed through the id map and
        dropped when their secret was not restored. Entries with missing or
        mistyped fields are skipped. Caller owns the transaction.
        """
        id_map = {}
        restored_credentials = 0
        for entry in parsed['secrets']:
            if not self._has_envelope(entry, 'password'):
                current_app.logger.warning(
                    f"Skipping malformed credential in backup: "
                    f"{entry.get('id') if isinstance(entry, dict) else type(entry).__name__!r}"
                )
                continue

            secret = SecretRecord(
                user_id=user.id,
                title=self._text(entry, 'title', 'Untitled')[:100],
                description=self._text(entry, 'description'),
                category=self._text(entry, 'category', 'General')[:50],
                is_favorite=self._flag(entry, 'isFavorite'),
                is_active=True,
                encrypted_identifier=self._text(entry, 'username'),
                encrypted_secret_value=entry['password'],
                encrypted_notes=self._text(entry, 'notes'),
                key_fingerprint=entry['encryptionKey'],
                iv=entry['iv'],
                salt=entry['salt']
            )
            db.session.add(secret)
            db.session.flush()
            restored_credentials += 1
            backup_id = self._entry_id(entry.get('id'))
            if backup_id is not None:
                id_map[backup_id] = secret.id

        restored_versions = 0
        dropped_versions = 0
        seen = set()
        for entry in parsed['versions']:
            if not self._has_envelope(entry, 'password'):
                dropped_versions += 1
                continue

            credential_id = self._entry_id(entry.get('credentialId'))
            new_id = id_map.get(credential_id) if credential_id is not None else None
            version_number = entry.get('version')
            if new_id is None or isinstance(version_number, bool) or not isinstance(version_number, int) \
                    or version_number < 1 or (new_id, version_number) in seen \
                    or not isinstance(entry.get('isActive', True), bool):
                dropped_versions += 1
                continue

            seen.add((new_id, version_number))
            db.session.add(SecretVersion(
                secret_id=new_id,
                user_id=user.id,
                version=version_number,
                title=self._text(entry, 'title', 'Untitled')[:100],
                description=self._text(entry, 'description'),
                category=self._text(entry, 'category', 'General')[:50],
                is_favorite=self._flag(entry, 'isFavorite'),
                is_active=entry.get('isActive', True),
                encrypted_identifier=self._text(entry, 'username'),
                encrypted_secret_value=entry['password'],
                encrypted_notes=self._text(entry, 'notes'),
                key_fingerprint=entry['encryptionKey'],
                iv=entry['iv'],
                salt=entry['salt']
            ))
            restored_versions += 1

        if dropped_versions:
            current_app.logger.warning(f"Dropped {dropped_versions} orphaned or malformed versions from backup")

        restored_notes = 0
        for entry in parsed.get('notes', []):
            if not self._has_envelope(entry, 'content'):
                current_app.logger.warning('Skipping note without an encryption envelope')
                continue

            tags = entry.get('tags')
            note = SecureNote(
                user_id=user.id,
                title=self._text(entry, 'title', 'Untitled')[:200],
                encrypted_content=entry['content'],
                is_favorite=self._flag(entry, 'isFavorite'),
                color=self._text(entry, 'color', '#4ECDC4')[:7],
                key_fingerprint=entry['encryptionKey'],
                iv=entry['iv'],
                salt=entry['salt']
            )
            note.tags = [tag for tag in tags if isinstance(tag, str)] if isinstance(tags, list) else []
            db.session.add(note)
            restored_notes += 1

        db.session.flush()
        return {
            'restoredCredentials': restored_credentials,
            'restoredVersions': restored_versions,
            'restoredNotes': restored_notes,
            'droppedVersions': dropped_versions,
            'totalCredentials': len(parsed['secrets']),
            'totalVersions': len(parsed['versions']),
            'totalNotes': len(parsed.get('notes', []))
        }
