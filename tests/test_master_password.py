# tests/test_master_password.py
import pytest

from vaultcore.models import MasterKeyRecord
from vaultcore.errors import (
    InvalidMasterPassword, MasterPasswordNotConfigured, MasterPasswordRequired,
    WeakMasterPassword, UserNotFound
)

def test_set_master_password(engine, user, master_password):
    result = engine.set_master_password(user.id, master_password)

    assert result['changed'] is False
    record = MasterKeyRecord.query.filter_by(user_id=user.id).first()
    assert record.is_configured
    assert len(record.salt) == 64
    assert len(record.key_fingerprint) == 64

def test_verify_master_password(engine, vault_user, master_password):
    assert engine.verify_master_password(vault_user.id, master_password) is True
    assert engine.verify_master_password(vault_user.id, 'wrong-horse') is False

def test_verify_without_master_password(engine, user):
    with pytest.raises(MasterPasswordNotConfigured):
        engine.verify_master_password(user.id, 'anything')

def test_weak_master_password(engine, user):
    with pytest.raises(WeakMasterPassword):
        engine.set_master_password(user.id, 'short')
    # also a ValueError for callers validating input
    with pytest.raises(ValueError):
        engine.set_master_password(user.id, '')
    assert MasterKeyRecord.query.filter_by(user_id=user.id).first() is None

def test_unknown_user(engine):
    with pytest.raises(UserNotFound):
        engine.set_master_password(999, 'correct-horse')

def test_change_requires_current_password(engine, vault_user, master_password):
    before = MasterKeyRecord.query.filter_by(user_id=vault_user.id).first().salt

    with pytest.raises(MasterPasswordRequired):
        engine.set_master_password(vault_user.id, 'battery-staple')
    with pytest.raises(InvalidMasterPassword):
        engine.set_master_password(vault_user.id, 'battery-staple', 'wrong-horse')

    record = MasterKeyRecord.query.filter_by(user_id=vault_user.id).first()
    assert record.salt == before
    assert engine.verify_master_password(vault_user.id, master_password)

def test_change_uses_fresh_salt(engine, vault_user, master_password):
    before = MasterKeyRecord.query.filter_by(user_id=vault_user.id).first().salt

    result = engine.set_master_password(vault_user.id, master_password, master_password)

    assert result['changed'] is True
    record = MasterKeyRecord.query.filter_by(user_id=vault_user.id).first()
    assert record.salt != before

def test_change_reencrypts_vault(engine, vault_user, master_password, secret):
    """After a change the old password is rejected and the new one opens every record"""
    note = engine.create_note(vault_user.id, {'title': 'Wifi', 'content': 'hunter2-at-home'}, master_password)

    result = engine.set_master_password(vault_user.id, 'battery-staple', master_password)

    assert result == {
        'changed': True,
        'reencrypted_secrets': 1,
        'reencrypted_notes': 1,
        'skipped': 0
    }
    assert engine.verify_master_password(vault_user.id, 'battery-staple')
    assert not engine.verify_master_password(vault_user.id, master_password)

    with pytest.raises(InvalidMasterPassword):
        engine.get_secret(vault_user.id, secret['id'], master_password)
    assert engine.get_secret(vault_user.id, secret['id'], 'battery-staple')['secret_value'] == 'Sup3r$ecret'
    assert engine.get_note(vault_user.id, note['id'], 'battery-staple')['content'] == 'hunter2-at-home'

    # the re-encryption is recorded as a version
    versions = engine.list_versions(vault_user.id, secret['id'])
    assert [v['version'] for v in versions] == [2, 1]

def test_encryption_requires_configured_master_password(engine, user):
    with pytest.raises(MasterPasswordNotConfigured):
        engine.create_secret(user.id, {'title': 'Bank', 'secret_value': 'x'}, 'correct-horse')

def test_encryption_requires_matching_master_password(engine, vault_user):
    with pytest.raises(InvalidMasterPassword):
        engine.create_secret(vault_user.id, {'title': 'Bank', 'secret_value': 'x'}, 'wrong-horse')
    assert engine.list_secrets(vault_user.id) == []

def test_authenticator_without_material(engine):
    assert engine.authenticator.verify('pw', None, None) is False
    with pytest.raises(InvalidMasterPassword):
        engine.authenticator.unlock('pw', '', '')

def test_engine_derive_key(engine):
    salt = engine.kdf.generate_salt()
    key, fingerprint = engine.derive_key('correct-horse', salt)

    assert len(key) == 32
    assert engine.derive_key('correct-horse', salt) == (key, fingerprint)
    assert engine.derive_key('wrong-horse', salt)[1] != fingerprint
