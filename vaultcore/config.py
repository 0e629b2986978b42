# vaultcore/config.py
import os

class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get('VAULT_DATABASE_URI', 'sqlite:///vault.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging
    LOG_LEVEL = 'INFO'

    # Per-secret key derivation (Argon2id)
    ARGON2_TIME_COST = 3
    ARGON2_MEMORY_COST = 65536  # KiB (64 MiB)
    ARGON2_PARALLELISM = 1

    # 'per-field' derives one sub-nonce per encrypted field, 'shared' reuses the record IV
    FIELD_NONCE_MODE = 'per-field'

    # Attempts to insert a version row before giving up on a (secret_id, version) conflict
    VERSION_INSERT_RETRIES = 3

    MASTER_PASSWORD_MIN_LENGTH = 8

    # Backup artifacts (PBKDF2-HMAC-SHA256)
    BACKUP_PBKDF2_ITERATIONS = 100_000
    BACKUP_CIPHER = 'aes-256-gcm'
    BACKUP_IMPORT_CIPHERS = ('aes-256-gcm', 'aes-256-cbc')

    # Additional app settings
    DEBUG = False
    TESTING = False
