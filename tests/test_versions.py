# tests/test_versions.py
import logging
import pytest
from sqlalchemy.exc import IntegrityError

from vaultcore.models import db, SecretRecord, SecretVersion
from vaultcore.errors import InvalidMasterPassword, VersionNotFound, VersionConflict

def _update_value(engine, user_id, secret_id, value, master_password):
    return engine.update_secret(user_id, secret_id, {'secret_value': value}, master_password)

def test_create_records_first_version(engine, vault_user, secret):
    versions = engine.list_versions(vault_user.id, secret['id'])

    assert len(versions) == 1
    assert versions[0]['version'] == 1
    assert versions[0]['title'] == 'Email'
    assert versions[0]['is_active'] is True

def test_versions_are_listed_newest_first(engine, vault_user, master_password, secret):
    """Create then two updates give versions [3, 2, 1]"""
    _update_value(engine, vault_user.id, secret['id'], 'second', master_password)
    _update_value(engine, vault_user.id, secret['id'], 'third', master_password)

    versions = engine.list_versions(vault_user.id, secret['id'])
    assert [v['version'] for v in versions] == [3, 2, 1]

def test_versions_keep_their_own_envelope(engine, vault_user, master_password, secret):
    _update_value(engine, vault_user.id, secret['id'], 'second', master_password)

    first = engine.get_version(vault_user.id, secret['id'], 1, master_password)
    second = engine.get_version(vault_user.id, secret['id'], 2, master_password)

    assert first['secret_value'] == 'Sup3r$ecret'
    assert second['secret_value'] == 'second'
    assert second['identifier'] == 'alice@example.com'

def test_get_version_without_password_is_metadata_only(engine, vault_user, secret):
    version = engine.get_version(vault_user.id, secret['id'], 1)
    assert version['version'] == 1
    assert 'secret_value' not in version

def test_missing_version(engine, vault_user, master_password, secret):
    with pytest.raises(VersionNotFound):
        engine.get_version(vault_user.id, secret['id'], 42)
    with pytest.raises(VersionNotFound):
        engine.restore_version(vault_user.id, secret['id'], 42, master_password)

def test_restore_version(engine, vault_user, master_password, secret):
    engine.update_secret(vault_user.id, secret['id'], {
        'title': 'Renamed', 'secret_value': 'second'
    }, master_password)
    before = db.session.get(SecretRecord, secret['id']).to_envelope()

    result = engine.restore_version(vault_user.id, secret['id'], 1, master_password)

    assert result['title'] == 'Email'
    assert result['is_active'] is True
    current = engine.get_secret(vault_user.id, secret['id'], master_password)
    assert current['secret_value'] == 'Sup3r$ecret'

    # re-encrypted, not copied from the snapshot
    record = db.session.get(SecretRecord, secret['id'])
    snapshot = SecretVersion.query.filter_by(secret_id=secret['id'], version=1).first()
    assert record.salt not in (before['salt'], snapshot.salt)
    assert record.iv != snapshot.iv

    # the restore itself is a new version
    versions = engine.list_versions(vault_user.id, secret['id'])
    assert [v['version'] for v in versions] == [3, 2, 1]
    assert versions[0]['title'] == 'Email'

def test_restore_with_wrong_password(engine, vault_user, master_password, secret):
    _update_value(engine, vault_user.id, secret['id'], 'second', master_password)

    with pytest.raises(InvalidMasterPassword):
        engine.restore_version(vault_user.id, secret['id'], 1, 'wrong-horse')

    assert [v['version'] for v in engine.list_versions(vault_user.id, secret['id'])] == [2, 1]
    assert engine.get_secret(vault_user.id, secret['id'], master_password)['secret_value'] == 'second'

def test_deleted_secret_keeps_history(engine, vault_user, secret):
    engine.delete_secret(vault_user.id, secret['id'])

    versions = engine.list_versions(vault_user.id, secret['id'])
    assert [v['version'] for v in versions] == [2, 1]
    assert versions[0]['is_active'] is False

def test_explicit_snapshot(engine, vault_user, secret):
    version = engine.snapshot_version(vault_user.id, secret['id'])

    assert version['version'] == 2
    assert version['secret_id'] == secret['id']

def test_version_numbers_are_unique(engine, vault_user, secret):
    duplicate = SecretVersion(
        secret_id=secret['id'],
        user_id=vault_user.id,
        version=1,
        title='Duplicate',
        category='General',
        **db.session.get(SecretRecord, secret['id']).to_envelope()
    )
    db.session.add(duplicate)
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()

def test_version_conflict_is_retried(engine, vault_user, secret, monkeypatch, caplog):
    """A racing writer took the next number; the insert retries with a fresh one"""
    original = engine.vault._next_version
    calls = []

    def racing_next_version(secret_id):
        calls.append(secret_id)
        if len(calls) == 1:
            return 1
        return original(secret_id)

    monkeypatch.setattr(engine.vault, '_next_version', racing_next_version)

    with caplog.at_level(logging.WARNING):
        version = engine.snapshot_version(vault_user.id, secret['id'])

    assert version['version'] == 2
    assert len(calls) == 2
    assert 'Version number conflict' in caplog.text

def test_version_conflict_gives_up(engine, vault_user, secret, monkeypatch):
    monkeypatch.setattr(engine.vault, '_next_version', lambda secret_id: 1)

    with pytest.raises(VersionConflict):
        engine.snapshot_version(vault_user.id, secret['id'])

    assert [v['version'] for v in engine.list_versions(vault_user.id, secret['id'])] == [1]

def test_restore_after_master_password_change(engine, vault_user, master_password, secret):
    """A version written under a retired password comes back under the current one"""
    _update_value(engine, vault_user.id, secret['id'], 'second', master_password)
    engine.set_master_password(vault_user.id, 'battery-staple', master_password)

    engine.restore_version(vault_user.id, secret['id'], 1, 'battery-staple', version_password=master_password)

    assert engine.get_secret(vault_user.id, secret['id'], 'battery-staple')['secret_value'] == 'Sup3r$ecret'
    with pytest.raises(InvalidMasterPassword):
        engine.get_secret(vault_user.id, secret['id'], master_password)
    engine.update_secret(vault_user.id, secret['id'], {'notes': 'rotated'}, 'battery-staple')

def test_restore_with_retired_password_only(engine, vault_user, master_password, secret):
    engine.set_master_password(vault_user.id, 'battery-staple', master_password)

    with pytest.raises(InvalidMasterPassword):
        engine.restore_version(vault_user.id, secret['id'], 1, master_password)
    # without the retired password the old version cannot be opened
    with pytest.raises(InvalidMasterPassword):
        engine.restore_version(vault_user.id, secret['id'], 1, 'battery-staple')

    assert engine.get_secret(vault_user.id, secret['id'], 'battery-staple')['secret_value'] == 'Sup3r$ecret'
    assert [v['version'] for v in engine.list_versions(vault_user.id, secret['id'])] == [2, 1]
