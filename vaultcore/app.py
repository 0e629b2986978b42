# vaultcore/app.py
import logging
from datetime import datetime, UTC

from flask import Flask

from vaultcore.config import Config
from vaultcore.models import db
from vaultcore.engine import VaultEngine

def create_app(config_class=Config):
    """Application factory function."""
    app = Flask(__name__)
    app.config.from_object(config_class)

    # Configure logging
    app.start_time = datetime.now(UTC).isoformat()
    app.logger.setLevel(getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    VaultEngine(app)

    # Create tables if they don't exist (don't drop existing tables)
    with app.app_context():
        db.create_all()
        app.logger.info(
            f"Vault engine ready (nonce mode: {app.config['FIELD_NONCE_MODE']}, "
            f"backup cipher: {app.config['BACKUP_CIPHER']})"
        )

    return app
