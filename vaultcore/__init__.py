# vaultcore/__init__.py
from vaultcore.app import create_app
from vaultcore.engine import VaultEngine, get_engine

__all__ = ['create_app', 'VaultEngine', 'get_engine']
