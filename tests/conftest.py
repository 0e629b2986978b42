# tests/conftest.py
import pytest
import logging

from vaultcore.app import create_app
from vaultcore.models import db, User
from vaultcore.config import Config
from vaultcore.engine import get_engine

class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Keep derivation cheap in tests
    ARGON2_TIME_COST = 1
    ARGON2_MEMORY_COST = 1024
    BACKUP_PBKDF2_ITERATIONS = 1000

@pytest.fixture(scope='function')
def app():
    """Create application for the tests."""
    app = create_app(TestConfig)
    app.logger.setLevel(logging.DEBUG)
    return app

@pytest.fixture(scope='function')
def app_context(app):
    """Create app context for the tests."""
    with app.app_context() as ctx:
        db.create_all()

        yield ctx

        # Cleanup
        db.session.remove()
        db.drop_all()

@pytest.fixture(scope='function')
def engine(app_context):
    return get_engine()

@pytest.fixture(scope='function')
def master_password():
    return 'correct-horse'

@pytest.fixture(scope='function')
def user(app_context):
    """A user without a master password"""
    user = User(email='test_user@test.com', first_name='Test', last_name='User')
    db.session.add(user)
    db.session.commit()
    return user

@pytest.fixture(scope='function')
def vault_user(engine, user, master_password):
    """A user whose master password is configured"""
    engine.set_master_password(user.id, master_password)
    return user

@pytest.fixture(scope='function')
def secret(engine, vault_user, master_password):
    return engine.create_secret(vault_user.id, {
        'title': 'Email',
        'description': 'Work mailbox',
        'category': 'Work',
        'identifier': 'alice@example.com',
        'secret_value': 'Sup3r$ecret',
        'notes': 'recovery codes in the drawer'
    }, master_password)
