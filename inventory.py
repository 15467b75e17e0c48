import re
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Tuple

from errors import ConflictError, ValidationError
from storage import (MIN_DATE, BackupRotation, parse_iso, read_json, store_lock, utc_now,
                     write_json_atomic)

DEFAULT_STOCK = 10
DEFAULT_LOW_STOCK_THRESHOLD = 5
DEFAULT_SIZE_STOCK = 5
DEFAULT_BRAND = 'Nurvi Jewel'
DEFAULT_CARE_INSTRUCTIONS = 'Clean with jewelry cloth, store separately'
MAX_FEATURED = 5

# Never taken from a client patch; the store owns these.
PROTECTED_FIELDS = ('id', 'dateAdded', 'lastUpdated', 'priceHistory', 'inStock')

STOREFRONT_CATEGORIES = ('rings', 'necklaces', 'earrings', 'bracelets', 'anklets')


def _as_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return [item for item in value if item not in (None, '')]
    if isinstance(value, str):
        separator = '|' if '|' in value else ','
        return [item.strip() for item in value.split(separator) if item.strip()]
    return [value]


def _first_present(*values):
    for value in values:
        if value is not None:
            return value
    return None


def _as_int(value, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _whole(value):
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return value


def _parsed(value):
    if not isinstance(value, str):
        return value
    try:
        parsed = float(value)
    except ValueError:
        return value
    return int(parsed) if parsed.is_integer() else parsed


def _stored_count(product: dict, key: str, value, default: int) -> int:
    if isinstance(value, bool):
        value = None
    try:
        return max(int(float(value)), 0)
    except (TypeError, ValueError):
        print(f"[WARN] Product {product.get('id')} has unreadable {key}: {value!r}, using {default}")
        return default


def normalize_product(raw: dict) -> dict:
    """Bring a stored or incoming record into the canonical product shape.

    Older writers stored stock flat on the record (``stock``,
    ``lowStockAlert``, ``stockQuantity``, ``minimumStock``) and tags as a
    delimited string; those are folded into ``inventory`` and lists here.
    """
    product = dict(raw)
    inventory = product.get('inventory') if isinstance(product.get('inventory'), dict) else {}

    stock = _first_present(
        inventory.get('stock'),
        product.pop('stock', None),
        product.pop('stockQuantity', None),
        DEFAULT_STOCK,
    )
    threshold = _first_present(
        inventory.get('lowStockThreshold'),
        product.pop('lowStockAlert', None),
        product.pop('minimumStock', None),
        DEFAULT_LOW_STOCK_THRESHOLD,
    )
    product.pop('stock', None)
    product.pop('stockQuantity', None)
    product.pop('lowStockAlert', None)
    product.pop('minimumStock', None)

    sizes = _as_list(product.get('sizes'))
    size_stock = inventory.get('sizes')
    if not isinstance(size_stock, list):
        size_stock = [{'name': size, 'available': True, 'stock': DEFAULT_SIZE_STOCK} for size in sizes]

    product['inventory'] = {
        'stock': _whole(stock),
        'lowStockThreshold': _whole(threshold),
        'sizes': size_stock,
    }

    for key in ('price', 'originalPrice'):
        product[key] = _parsed(product.get(key))
    if product['originalPrice'] in (None, ''):
        product.pop('originalPrice')

    images = _as_list(product.get('images'))
    if not images and product.get('image'):
        images = [product['image']]
    product['images'] = images
    product['image'] = product.get('image') or (images[0] if images else '')

    product['colors'] = _as_list(product.get('colors'))
    product['sizes'] = sizes
    product['tags'] = _as_list(product.get('tags'))

    product.setdefault('description', '')
    product.setdefault('material', '')
    product.setdefault('sku', '')
    product['brand'] = product.get('brand') or DEFAULT_BRAND
    product['careInstructions'] = product.get('careInstructions') or DEFAULT_CARE_INSTRUCTIONS
    product['rating'] = product.get('rating') or 0
    product['reviews'] = product.get('reviews') or 0
    product['isNew'] = bool(product.get('isNew', False))
    product['isSale'] = bool(product.get('isSale', False))
    product['featured'] = bool(product.get('featured', False))
    product['inStock'] = _as_int(stock, 0) > 0
    return product


def readable_product(raw: dict) -> dict:
    """Normalize a stored record for reading.

    Stock, threshold and price that older writers left unreadable are
    replaced with usable numbers so listings and reports never fail on
    one bad record. Writes still go through ``conform_product``.
    """
    product = normalize_product(raw)
    inventory = product['inventory']
    inventory['stock'] = _stored_count(product, 'stock', inventory['stock'], 0)
    inventory['lowStockThreshold'] = _stored_count(
        product, 'lowStockThreshold', inventory['lowStockThreshold'], DEFAULT_LOW_STOCK_THRESHOLD)
    product['inStock'] = inventory['stock'] > 0
    if isinstance(product.get('price'), bool) or not isinstance(product.get('price'), (int, float)):
        print(f"[WARN] Product {product.get('id')} has unreadable price: {product.get('price')!r}, using 0")
        product['price'] = 0
    return product


def _number(value, field_name: str):
    if isinstance(value, bool) or value is None or value == '':
        raise ValidationError(f'{field_name} must be a valid number')
    if isinstance(value, (int, float)):
        return value
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field_name} must be a valid number')
    return int(parsed) if parsed.is_integer() else parsed


def _count(value, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f'{field_name} must be a whole number')
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field_name} must be a whole number')
    if not parsed.is_integer():
        raise ValidationError(f'{field_name} must be a whole number')
    if parsed < 0:
        raise ValidationError(f'{field_name} cannot be negative')
    return int(parsed)


def conform_product(product: dict) -> dict:
    """Validate a product before it is written; raises ValidationError."""
    name = str(product.get('name') or '').strip()
    if not name:
        raise ValidationError('Missing required field: name')
    category = str(product.get('category') or '').strip()
    if not category:
        raise ValidationError('Missing required field: category')

    price = _number(product.get('price'), 'price')
    if price < 0:
        raise ValidationError('price cannot be negative')

    conformed = dict(product)
    conformed['name'] = name
    conformed['category'] = category
    conformed['price'] = price
    if conformed.get('originalPrice') not in (None, ''):
        conformed['originalPrice'] = _number(conformed['originalPrice'], 'originalPrice')
    else:
        conformed.pop('originalPrice', None)

    inventory = dict(conformed.get('inventory') or {})
    inventory['stock'] = _count(inventory.get('stock', 0), 'stock')
    inventory['lowStockThreshold'] = _count(
        inventory.get('lowStockThreshold', DEFAULT_LOW_STOCK_THRESHOLD), 'lowStockThreshold')
    inventory.setdefault('sizes', [])
    conformed['inventory'] = inventory
    conformed['inStock'] = inventory['stock'] > 0

    if conformed.get('images') and not conformed.get('image'):
        conformed['image'] = conformed['images'][0]
    return conformed


def _stock(product: dict) -> int:
    return product['inventory']['stock']


def _threshold(product: dict) -> int:
    return product['inventory']['lowStockThreshold']


SORT_KEYS = {
    'name': lambda p: str(p.get('name', '')).lower(),
    'price': lambda p: float(p.get('price') or 0),
    'dateAdded': lambda p: parse_iso(p.get('dateAdded')) or MIN_DATE,
    'stock': _stock,
}


class ProductStore:
    """Product catalog kept as one JSON document (``{"all": [...]}``).

    Every mutation is a read-modify-write of the whole document, serialized
    by a per-file lock. ``lastUpdated`` doubles as the record's version:
    callers may pass the value they last read, and a mismatch raises
    ConflictError instead of overwriting someone else's change.
    """

    def __init__(self, path: str, backups: Optional[BackupRotation] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.path = path
        self.backups = backups
        self.clock = clock
        self._lock = store_lock(path)

    # ---------- persistence ----------

    def _load(self) -> List[dict]:
        data = read_json(self.path, {'all': []})
        records = data.get('all', []) if isinstance(data, dict) else data
        if not isinstance(records, list):
            raise ValueError(f'{self.path} does not hold a product list')
        return [readable_product(record) for record in records if isinstance(record, dict)]

    def _save(self, products: List[dict]) -> None:
        if self.backups:
            try:
                self.backups.snapshot(self.path, 'inventory-backup')
            except OSError as e:
                print(f"[WARN] Error creating inventory backup: {e}")
        write_json_atomic(self.path, {'all': products})

    def _mutate(self, change):
        """Run ``change(products)`` under the store lock.

        ``change`` returns ``(result, dirty)``; the document is rewritten only
        when ``dirty`` is true.
        """
        with self._lock:
            products = self._load()
            result, dirty = change(products)
            if dirty:
                self._save(products)
            return result

    def replace_all(self, records: Iterable[dict]) -> List[dict]:
        """Swap the whole catalog (backup restore); every record is validated."""
        incoming = [conform_product(normalize_product(record)) for record in records]
        ids = [product.get('id') for product in incoming]
        if any(not product_id for product_id in ids):
            raise ValidationError('Every product needs an id')
        if len(set(ids)) != len(ids):
            raise ValidationError('Duplicate product ids in backup')

        def change(products):
            products[:] = incoming
            return incoming, True

        return self._mutate(change)

    def _now_iso(self) -> str:
        return self.clock().isoformat()

    def _next_stamp(self, previous: Optional[str]) -> str:
        now = self.clock()
        last = parse_iso(previous)
        if last is not None and now <= last:
            now = last + timedelta(microseconds=1)
        return now.isoformat()

    # ---------- reads ----------

    def get_all(self) -> List[dict]:
        try:
            return self._load()
        except (OSError, ValueError) as e:
            print(f"[ERROR] Error reading inventory: {str(e)}")
            return []

    def get_by_id(self, product_id: str) -> Optional[dict]:
        for product in self.get_all():
            if product.get('id') == product_id:
                return product
        return None

    def get_by_category(self, category: str) -> List[dict]:
        wanted = category.lower()
        return [p for p in self.get_all() if str(p.get('category', '')).lower() == wanted]

    def search(self, category: Optional[str] = None, in_stock: Optional[bool] = None,
               price_range: Optional[Tuple[float, float]] = None, search: Optional[str] = None,
               sort_by: Optional[str] = None, sort_order: str = 'asc') -> List[dict]:
        products = self.get_all()

        if category:
            wanted = category.lower()
            products = [p for p in products if str(p.get('category', '')).lower() == wanted]

        if in_stock is not None:
            products = [p for p in products if p['inStock'] == in_stock]

        if price_range:
            low, high = price_range
            products = [p for p in products if low <= p['price'] <= high]

        if search:
            term = search.lower()
            products = [
                p for p in products
                if term in str(p.get('name', '')).lower()
                or term in str(p.get('description', '')).lower()
                or term in ' '.join(str(tag) for tag in p.get('tags', [])).lower()
                or term in str(p.get('sku', '')).lower()
            ]

        if sort_by in SORT_KEYS:
            products = sorted(products, key=SORT_KEYS[sort_by], reverse=(sort_order == 'desc'))

        return products

    # ---------- writes ----------

    def _generate_id(self, category: str, taken: set) -> str:
        slug = re.sub(r'[^a-z0-9]+', '-', category.lower()).strip('-') or 'product'
        stamp = int(self.clock().timestamp() * 1000)
        while f'{slug}-{stamp}' in taken:
            stamp += 1
        return f'{slug}-{stamp}'

    def create(self, data: dict) -> dict:
        def change(products):
            product = normalize_product(data)
            product.pop('priceHistory', None)
            product = conform_product(product)

            taken = {p.get('id') for p in products}
            product_id = str(data.get('id') or '').strip()
            if product_id and product_id in taken:
                raise ConflictError(f'Product id already exists: {product_id}')
            if not product_id:
                product_id = self._generate_id(product['category'], taken)

            now = self._now_iso()
            product['id'] = product_id
            product['dateAdded'] = now
            product['lastUpdated'] = now
            if not product.get('sku'):
                product['sku'] = product_id.upper()

            products.append(product)
            return product, True

        return self._mutate(change)

    def _apply_patch(self, product: dict, patch: Optional[dict], reason: str) -> dict:
        patch = {k: v for k, v in (patch or {}).items() if k not in PROTECTED_FIELDS}
        inventory = dict(product.get('inventory') or {})
        inventory_patch = patch.pop('inventory', None)
        if isinstance(inventory_patch, dict):
            inventory.update(inventory_patch)
        if 'stock' in patch:
            inventory['stock'] = patch.pop('stock')
        for flat_key in ('lowStockAlert', 'lowStockThreshold'):
            if flat_key in patch:
                inventory['lowStockThreshold'] = patch.pop(flat_key)

        updated = dict(product)
        updated.update(patch)
        updated['inventory'] = inventory
        updated = conform_product(updated)

        if 'price' in patch and updated['price'] != product.get('price'):
            history = list(product.get('priceHistory') or [])
            history.append({
                'date': self._now_iso(),
                'price': product.get('price'),
                'reason': reason,
            })
            updated['priceHistory'] = history

        updated['lastUpdated'] = self._next_stamp(product.get('lastUpdated'))
        return updated

    @staticmethod
    def _check_version(product: dict, expected_last_updated: Optional[str]) -> None:
        if expected_last_updated is not None and expected_last_updated != product.get('lastUpdated'):
            raise ConflictError(
                f"Product {product.get('id')} was modified by another request; reload and try again")

    def update(self, product_id: str, patch: dict, expected_last_updated: Optional[str] = None,
               reason: str = 'Price update via admin panel') -> Optional[dict]:
        def change(products):
            for index, product in enumerate(products):
                if product.get('id') == product_id:
                    self._check_version(product, expected_last_updated)
                    products[index] = self._apply_patch(product, patch, reason)
                    return products[index], True
            return None, False

        return self._mutate(change)

    def update_stock(self, product_id: str, stock, expected_last_updated: Optional[str] = None) -> Optional[dict]:
        return self.update(product_id, {'inventory': {'stock': stock}},
                           expected_last_updated=expected_last_updated)

    def bulk_update(self, entries: Iterable[dict],
                    reason: str = 'Bulk price update via admin panel') -> Tuple[List[dict], List[str]]:
        """Apply ``[{'id': ..., 'data': {...}}]`` in one write.

        Returns ``(updated, skipped_ids)``. A validation error in any entry
        aborts the whole batch.
        """
        entries = list(entries)

        def change(products):
            index_by_id = {p.get('id'): i for i, p in enumerate(products)}
            updated, skipped = [], []
            for entry in entries:
                product_id = entry.get('id')
                index = index_by_id.get(product_id)
                if index is None:
                    skipped.append(product_id)
                    continue
                products[index] = self._apply_patch(products[index], entry.get('data') or {}, reason)
                updated.append(products[index])
            return (updated, skipped), bool(updated)

        return self._mutate(change)

    def bulk_update_stock(self, entries: Iterable[dict]) -> Tuple[List[dict], List[str]]:
        return self.bulk_update(
            {'id': entry.get('id'), 'data': {'inventory': {'stock': entry.get('stock')}}}
            for entry in entries
        )

    def delete(self, product_id: str) -> bool:
        def change(products):
            for index, product in enumerate(products):
                if product.get('id') == product_id:
                    del products[index]
                    return True, True
            return False, False

        return self._mutate(change)

    def bulk_delete(self, product_ids: Iterable[str]) -> Tuple[List[str], List[str]]:
        wanted = list(product_ids)

        def change(products):
            present = {p.get('id') for p in products}
            deleted = [pid for pid in wanted if pid in present]
            missing = [pid for pid in wanted if pid not in present]
            if deleted:
                gone = set(deleted)
                products[:] = [p for p in products if p.get('id') not in gone]
            return (deleted, missing), bool(deleted)

        return self._mutate(change)

    def duplicate(self, product_id: str) -> Optional[dict]:
        with self._lock:
            product = self.get_by_id(product_id)
            if product is None:
                return None
            copy = dict(product)
            copy.pop('id', None)
            copy['name'] = f"{product['name']} (Copy)"
            copy['sku'] = f"{product.get('sku') or product_id}-copy-{int(self.clock().timestamp() * 1000)}"
            copy['featured'] = False
            return self.create(copy)

    def set_featured(self, product_id: str, featured: bool) -> Optional[dict]:
        def change(products):
            for index, product in enumerate(products):
                if product.get('id') != product_id:
                    continue
                if featured and not product.get('featured'):
                    count = sum(1 for p in products if p.get('featured'))
                    if count >= MAX_FEATURED:
                        raise ValidationError(f'Maximum {MAX_FEATURED} products can be featured on homepage')
                updated = dict(product)
                updated['featured'] = bool(featured)
                updated['lastUpdated'] = self._next_stamp(product.get('lastUpdated'))
                products[index] = updated
                return updated, True
            return None, False

        return self._mutate(change)

    # ---------- reports ----------

    def featured(self) -> List[dict]:
        products = [p for p in self.get_all() if p.get('featured')]
        products.sort(key=lambda p: parse_iso(p.get('lastUpdated')) or MIN_DATE, reverse=True)
        return products[:MAX_FEATURED]

    def low_stock(self) -> List[dict]:
        return [p for p in self.get_all() if _stock(p) <= _threshold(p)]

    def stock_stats(self) -> dict:
        products = self.get_all()
        return {
            'totalProducts': len(products),
            'inStock': sum(1 for p in products if _stock(p) > 0),
            'lowStock': sum(1 for p in products if 0 < _stock(p) <= _threshold(p)),
            'outOfStock': sum(1 for p in products if _stock(p) == 0),
            'totalValue': sum(p['price'] * _stock(p) for p in products),
        }

    def catalog(self) -> dict:
        products = self.get_all()
        catalog = {
            'all': products,
            'featured': ([p for p in products if p.get('featured')]
                         or [p for p in products if p.get('isNew') or p.get('isSale')])[:6],
            'onSale': [p for p in products if p.get('isSale')],
            'newArrivals': [p for p in products if p.get('isNew')],
            'inStock': [p for p in products if p['inStock']],
        }
        for name in STOREFRONT_CATEGORIES:
            # 'rings' matches 'Ring' and 'Rings'
            stem = name[:-1]
            catalog[name] = [p for p in products if stem in str(p.get('category', '')).lower()]
        return catalog

    def analytics(self, orders: Optional[List[dict]] = None) -> dict:
        products = self.get_all()
        now = self.clock()
        total = len(products)
        in_stock = sum(1 for p in products if p['inStock'])
        low_stock = self.low_stock()

        category_breakdown = Counter(p.get('category') or 'Uncategorized' for p in products)
        material_breakdown = Counter(p.get('material') or 'Unknown' for p in products)

        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        week_ago = now - timedelta(days=7)
        thirty_days_ago = now - timedelta(days=30)

        def added(p):
            return parse_iso(p.get('dateAdded')) or MIN_DATE

        def touched(p):
            return parse_iso(p.get('lastUpdated')) or MIN_DATE

        recent = [p for p in products if added(p) >= thirty_days_ago or touched(p) >= thirty_days_ago]
        recent.sort(key=touched, reverse=True)

        price_ranges = {
            'Under ₹500': sum(1 for p in products if p['price'] < 500),
            '₹500 - ₹1000': sum(1 for p in products if 500 <= p['price'] < 1000),
            '₹1000 - ₹2000': sum(1 for p in products if 1000 <= p['price'] < 2000),
            '₹2000 - ₹5000': sum(1 for p in products if 2000 <= p['price'] < 5000),
            'Above ₹5000': sum(1 for p in products if p['price'] >= 5000),
        }

        return {
            'overview': {
                'totalProducts': total,
                'inStockProducts': in_stock,
                'outOfStockProducts': total - in_stock,
                'lowStockProducts': len(low_stock),
                'categoryBreakdown': dict(category_breakdown),
                'averagePrice': (sum(p['price'] for p in products) / total) if total else 0,
                'totalInventoryValue': sum(p['price'] * _stock(p) for p in products),
                'newProductsThisMonth': sum(1 for p in products if added(p) >= month_start),
                'recentlyUpdated': sum(1 for p in products if touched(p) >= week_ago),
            },
            'categoryStats': [
                {'category': category, 'count': count}
                for category, count in category_breakdown.most_common()
            ],
            'priceRanges': price_ranges,
            'stockStatus': {
                'inStock': in_stock,
                'outOfStock': total - in_stock,
                'lowStock': len(low_stock),
            },
            'materialBreakdown': dict(material_breakdown),
            'lowStockProducts': [
                {
                    'id': p['id'],
                    'name': p['name'],
                    'category': p.get('category'),
                    'stock': _stock(p),
                    'threshold': _threshold(p),
                    'image': p.get('image'),
                }
                for p in low_stock
            ],
            'recentActivity': [
                {
                    'id': p['id'],
                    'name': p['name'],
                    'action': 'updated' if touched(p) > added(p) else 'added',
                    'date': p.get('lastUpdated'),
                    'category': p.get('category'),
                }
                for p in recent[:10]
            ],
            'salesInsights': sales_insights(orders or []),
        }


def sales_insights(orders: List[dict]) -> dict:
    paid = [o for o in orders if o.get('orderStatus') != 'cancelled']
    revenue = sum(float(o.get('totalAmount') or 0) for o in paid)
    sold = Counter()
    for order in paid:
        for item in order.get('items') or []:
            sold[item.get('name') or item.get('productName') or 'Unknown'] += _as_int(item.get('quantity'), 1)
    return {
        'totalOrders': len(orders),
        'totalRevenue': revenue,
        'averageOrderValue': (revenue / len(paid)) if paid else 0,
        'ordersByStatus': dict(Counter(o.get('orderStatus') or 'unknown' for o in orders)),
        'topSellingProducts': [{'name': name, 'quantity': qty} for name, qty in sold.most_common(5)],
    }
