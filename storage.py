import json
import os
import shutil
import tempfile
import threading
from datetime import datetime, timezone
from typing import Any, Optional

BACKUP_FORMAT_VERSION = '1.0.0'

MIN_DATE = datetime.min.replace(tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso(value) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        try:
            parsed = datetime.strptime(value[:10], '%Y-%m-%d')
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

_STORE_LOCKS = {}
_STORE_LOCKS_GUARD = threading.Lock()


def store_lock(path: str) -> threading.RLock:
    """One lock per store file, shared by every store object in the process."""
    key = os.path.abspath(path)
    with _STORE_LOCKS_GUARD:
        if key not in _STORE_LOCKS:
            _STORE_LOCKS[key] = threading.RLock()
        return _STORE_LOCKS[key]


def backup_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime('%Y-%m-%dT%H-%M-%S-%fZ')


def write_json_atomic(path: str, payload: Any) -> None:
    """Write JSON to a temp file beside ``path`` and swap it in."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix='.tmp-', suffix='.json', dir=directory)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def read_json(path: str, default: Any) -> Any:
    if not os.path.exists(path):
        return default
    with open(path, 'r', encoding='utf-8') as handle:
        return json.load(handle)


class BackupRotation:
    """Timestamped copies of a store file, pruned to the newest ``retention``."""

    def __init__(self, backup_dir: str, retention: int = 10):
        self.backup_dir = backup_dir
        self.retention = retention

    def snapshot(self, source_path: str, prefix: str) -> Optional[str]:
        if not os.path.exists(source_path):
            return None
        os.makedirs(self.backup_dir, exist_ok=True)
        target = os.path.join(self.backup_dir, f'{prefix}-{backup_timestamp()}.json')
        shutil.copyfile(source_path, target)
        self.prune(prefix)
        return target

    def save(self, payload: Any, prefix: str) -> str:
        os.makedirs(self.backup_dir, exist_ok=True)
        target = os.path.join(self.backup_dir, f'{prefix}-{backup_timestamp()}.json')
        write_json_atomic(target, payload)
        self.prune(prefix)
        return target

    def list(self, prefix: str) -> list:
        if not os.path.isdir(self.backup_dir):
            return []
        marker = f'{prefix}-'
        names = [
            name for name in os.listdir(self.backup_dir)
            if name.startswith(marker) and name.endswith('.json')
            and name[len(marker):len(marker) + 1].isdigit()
        ]
        return sorted(names, reverse=True)

    def prune(self, prefix: str) -> None:
        for name in self.list(prefix)[self.retention:]:
            try:
                os.unlink(os.path.join(self.backup_dir, name))
            except OSError as e:
                print(f"[WARN] Could not remove old backup {name}: {e}")


def build_full_backup(products: list, orders: list, created_by: str, reason: Optional[str] = None) -> dict:
    metadata = {
        'createdBy': created_by,
        'totalProducts': len(products),
        'totalOrders': len(orders),
    }
    if reason:
        metadata['reason'] = reason
    return {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'version': BACKUP_FORMAT_VERSION,
        'data': {
            'inventory': {'all': products},
            'orders': orders,
        },
        'metadata': metadata,
    }


def parse_backup(backup: Any) -> tuple:
    """Return (products, orders) from an uploaded backup, or raise ValueError.

    ``orders`` is None when the backup carries no order data.
    """
    if not isinstance(backup, dict) or not isinstance(backup.get('data'), dict):
        raise ValueError('Invalid backup format')
    inventory = backup['data'].get('inventory')
    if isinstance(inventory, dict):
        products = inventory.get('all')
    else:
        products = inventory
    if not isinstance(products, list):
        raise ValueError('Invalid backup format')

    orders = backup['data'].get('orders')
    if isinstance(orders, dict):
        orders = orders.get('orders')
    if orders is not None and not isinstance(orders, list):
        raise ValueError('Invalid backup format')
    return products, orders
