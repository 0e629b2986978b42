# vaultcore/models.py
from flask_sqlalchemy import SQLAlchemy
import json

db = SQLAlchemy()

def _isoformat(value):
    return value.isoformat() if value else None

class User(db.Model):
    """Minimal profile; accounts are managed outside the vault engine"""
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    first_name = db.Column(db.String(80))
    last_name = db.Column(db.String(80))
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    def to_profile(self):
        return {
            'id': self.id,
            'email': self.email,
            'firstName': self.first_name,
            'lastName': self.last_name,
            'createdAt': _isoformat(self.created_at)
        }

class MasterKeyRecord(db.Model):
    """
    Fingerprint + salt of the user's master key.
    Both columns are set together or not at all.
    """
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), unique=True, nullable=False)
    key_fingerprint = db.Column(db.String(64), nullable=True)
    salt = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, onupdate=db.func.now())

    __table_args__ = (
        db.CheckConstraint(
            '(key_fingerprint IS NULL AND salt IS NULL) OR '
            '(key_fingerprint IS NOT NULL AND salt IS NOT NULL)',
            name='ck_master_key_complete'
        ),
    )

    user = db.relationship('User', backref=db.backref('master_key', uselist=False))

    @property
    def is_configured(self):
        return bool(self.key_fingerprint and self.salt)

class EnvelopeMixin:
    """Columns shared by every record that carries an encryption envelope"""
    key_fingerprint = db.Column(db.String(64), nullable=False)  # SHA-256 of the derived key
    iv = db.Column(db.String(32), nullable=False)
    salt = db.Column(db.String(64), nullable=False)

    def to_envelope(self):
        return {
            'encrypted_identifier': self.encrypted_identifier,
            'encrypted_secret_value': self.encrypted_secret_value,
            'encrypted_notes': self.encrypted_notes,
            'key_fingerprint': self.key_fingerprint,
            'iv': self.iv,
            'salt': self.salt
        }

class SecretRecord(EnvelopeMixin, db.Model):
    """
    A stored secret. Metadata is plaintext; identifier, secret value and
    notes are encrypted together under one derived key.
    """
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    title = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    category = db.Column(db.String(50), nullable=False, default='General')
    is_favorite = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True, index=True)

    encrypted_identifier = db.Column(db.Text, nullable=True)
    encrypted_secret_value = db.Column(db.Text, nullable=False)
    encrypted_notes = db.Column(db.Text, nullable=True)

    access_count = db.Column(db.Integer, default=0)
    last_accessed = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, server_default=db.func.now(), onupdate=db.func.now())

    def apply_envelope(self, envelope):
        self.encrypted_identifier = envelope['encrypted_identifier']
        self.encrypted_secret_value = envelope['encrypted_secret_value']
        self.encrypted_notes = envelope['encrypted_notes']
        self.key_fingerprint = envelope['key_fingerprint']
        self.iv = envelope['iv']
        self.salt = envelope['salt']

    def to_dict(self):
        """Metadata only, no envelope"""
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'category': self.category,
            'is_favorite': self.is_favorite,
            'is_active': self.is_active,
            'access_count': self.access_count,
            'last_accessed': _isoformat(self.last_accessed),
            'created_at': _isoformat(self.created_at),
            'updated_at': _isoformat(self.updated_at)
        }

    def __repr__(self):
        return f'<SecretRecord {self.id}>'

class SecretVersion(EnvelopeMixin, db.Model):
    """
    Immutable snapshot of a SecretRecord.
    secret_id is deliberately not an enforced foreign key: history outlives the live row.
    """
    id = db.Column(db.Integer, primary_key=True)
    secret_id = db.Column(db.Integer, nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    version = db.Column(db.Integer, nullable=False)

    title = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    category = db.Column(db.String(50), nullable=False)
    is_favorite = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)

    encrypted_identifier = db.Column(db.Text, nullable=True)
    encrypted_secret_value = db.Column(db.Text, nullable=False)
    encrypted_notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    __table_args__ = (
        db.UniqueConstraint('secret_id', 'version', name='uq_secret_version'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'secret_id': self.secret_id,
            'version': self.version,
            'title': self.title,
            'description': self.description,
            'category': self.category,
            'is_favorite': self.is_favorite,
            'is_active': self.is_active,
            'created_at': _isoformat(self.created_at)
        }

class SecureNote(EnvelopeMixin, db.Model):
    """Free-text note; the content is encrypted, title and tags are not"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    encrypted_content = db.Column(db.Text, nullable=False)
    tags_json = db.Column('tags', db.Text, nullable=True)
    is_favorite = db.Column(db.Boolean, default=False)
    color = db.Column(db.String(7), default='#4ECDC4')
    is_active = db.Column(db.Boolean, default=True, index=True)
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, server_default=db.func.now(), onupdate=db.func.now())

    @property
    def tags(self):
        if not self.tags_json:
            return []
        try:
            return json.loads(self.tags_json)
        except json.JSONDecodeError:
            return []

    @tags.setter
    def tags(self, value):
        self.tags_json = json.dumps(list(value)) if value else None

    def to_envelope(self):
        return {
            'encrypted_identifier': None,
            'encrypted_secret_value': self.encrypted_content,
            'encrypted_notes': None,
            'key_fingerprint': self.key_fingerprint,
            'iv': self.iv,
            'salt': self.salt
        }

    def apply_envelope(self, envelope):
        self.encrypted_content = envelope['encrypted_secret_value']
        self.key_fingerprint = envelope['key_fingerprint']
        self.iv = envelope['iv']
        self.salt = envelope['salt']

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'tags': self.tags,
            'is_favorite': self.is_favorite,
            'color': self.color,
            'created_at': _isoformat(self.created_at),
            'updated_at': _isoformat(self.updated_at)
        }
