import json
import os
from datetime import datetime, timezone

import pytest

from storage import (BACKUP_FORMAT_VERSION, BackupRotation, build_full_backup, parse_backup,
                     parse_iso, read_json, store_lock, write_json_atomic)


@pytest.mark.parametrize('value,expected', [
    ('2025-01-03T10:00:00Z', datetime(2025, 1, 3, 10, tzinfo=timezone.utc)),
    ('2025-01-03T10:00:00+00:00', datetime(2025, 1, 3, 10, tzinfo=timezone.utc)),
    ('2025-01-03T10:00:00', datetime(2025, 1, 3, 10, tzinfo=timezone.utc)),
    ('2025-01-03', datetime(2025, 1, 3, tzinfo=timezone.utc)),
])
def test_parse_iso_accepts_stored_formats(value, expected):
    assert parse_iso(value) == expected


@pytest.mark.parametrize('value', [None, '', 'yesterday', 42])
def test_parse_iso_returns_none_for_junk(value):
    assert parse_iso(value) is None


def test_write_json_atomic_round_trip(tmp_path):
    path = tmp_path / 'nested' / 'doc.json'
    write_json_atomic(str(path), {'name': 'Kundan Necklace', 'price': '₹'})
    assert read_json(str(path), None) == {'name': 'Kundan Necklace', 'price': '₹'}
    assert [p.name for p in path.parent.iterdir()] == ['doc.json']


def test_read_json_returns_default_for_missing_file(tmp_path):
    assert read_json(str(tmp_path / 'missing.json'), {'all': []}) == {'all': []}


def test_read_json_raises_on_corrupt_file(tmp_path):
    path = tmp_path / 'broken.json'
    path.write_text('{"all": [', encoding='utf-8')
    with pytest.raises(ValueError):
        read_json(str(path), None)


def test_store_lock_is_shared_per_path(tmp_path):
    path = str(tmp_path / 'inventory.json')
    assert store_lock(path) is store_lock(os.path.join(str(tmp_path), '.', 'inventory.json'))
    assert store_lock(path) is not store_lock(str(tmp_path / 'orders.json'))


def test_snapshot_skips_missing_source(tmp_path):
    rotation = BackupRotation(str(tmp_path / 'backups'))
    assert rotation.snapshot(str(tmp_path / 'nothing.json'), 'inventory-backup') is None


def test_snapshot_copies_source(tmp_path):
    source = tmp_path / 'inventory.json'
    source.write_text('{"all": []}', encoding='utf-8')
    rotation = BackupRotation(str(tmp_path / 'backups'))
    target = rotation.snapshot(str(source), 'inventory-backup')
    assert os.path.basename(target).startswith('inventory-backup-')
    with open(target, encoding='utf-8') as handle:
        assert json.load(handle) == {'all': []}


def test_prune_keeps_newest_per_prefix(tmp_path):
    backup_dir = tmp_path / 'backups'
    backup_dir.mkdir()
    for day in range(1, 5):
        (backup_dir / f'inventory-backup-2025-01-0{day}T00-00-00-000000Z.json').write_text('{}')
    (backup_dir / 'orders-backup-2025-01-01T00-00-00-000000Z.json').write_text('{}')

    rotation = BackupRotation(str(backup_dir), retention=2)
    rotation.prune('inventory-backup')

    assert rotation.list('inventory-backup') == [
        'inventory-backup-2025-01-04T00-00-00-000000Z.json',
        'inventory-backup-2025-01-03T00-00-00-000000Z.json',
    ]
    assert rotation.list('orders-backup') == ['orders-backup-2025-01-01T00-00-00-000000Z.json']


def test_list_does_not_mix_prefixes(tmp_path):
    backup_dir = tmp_path / 'backups'
    backup_dir.mkdir()
    (backup_dir / 'pre-restore-backup-2025-01-01T00-00-00-000000Z.json').write_text('{}')
    (backup_dir / 'backup-2025-01-01T00-00-00-000000Z.json').write_text('{}')
    rotation = BackupRotation(str(backup_dir))
    assert rotation.list('backup') == ['backup-2025-01-01T00-00-00-000000Z.json']


def test_build_full_backup_shape():
    backup = build_full_backup([{'id': 'p1'}], [], created_by='owner@nurvijewel.com', reason='Pre-restore backup')
    assert backup['version'] == BACKUP_FORMAT_VERSION
    assert backup['data'] == {'inventory': {'all': [{'id': 'p1'}]}, 'orders': []}
    assert backup['metadata'] == {
        'createdBy': 'owner@nurvijewel.com',
        'totalProducts': 1,
        'totalOrders': 0,
        'reason': 'Pre-restore backup',
    }


def test_parse_backup_accepts_both_inventory_shapes():
    products = [{'id': 'p1'}]
    assert parse_backup({'data': {'inventory': {'all': products}}}) == (products, None)
    assert parse_backup({'data': {'inventory': products, 'orders': {'orders': []}}}) == (products, [])


@pytest.mark.parametrize('backup', [
    None,
    [],
    {'data': []},
    {'data': {}},
    {'data': {'inventory': {'all': 'nope'}}},
    {'data': {'inventory': [], 'orders': 'nope'}},
])
def test_parse_backup_rejects_malformed_payloads(backup):
    with pytest.raises(ValueError):
        parse_backup(backup)
