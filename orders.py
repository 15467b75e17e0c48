import csv
import io
import random
import string
import uuid
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, List, Optional

import firebase_admin
from firebase_admin import credentials, firestore
from google.api_core.exceptions import FailedPrecondition, GoogleAPIError
from google.cloud.firestore_v1.base_query import FieldFilter

from errors import (CancellationWindowError, ConflictError, InvalidTransitionError,
                    ValidationError)
from storage import BackupRotation, parse_iso, read_json, store_lock, utc_now, write_json_atomic

ORDER_STATUSES = ('processing', 'confirmed', 'shipped', 'delivered', 'cancelled')

ALLOWED_TRANSITIONS = {
    'processing': {'confirmed', 'shipped', 'cancelled'},
    'confirmed': {'shipped', 'cancelled'},
    'shipped': {'delivered'},
    'delivered': set(),
    'cancelled': set(),
}

REQUIRED_FIELDS = ('customerName', 'customerEmail', 'items', 'totalAmount')

FINISHED_NOTIFICATION_STATES = ('sent', 'failed')

# Storage backend failures (Firestore or the local file), not rejected orders.
BACKEND_ERRORS = (GoogleAPIError, OSError, ValueError)

CSV_HEADERS = [
    'Order ID',
    'Customer Name',
    'Customer Email',
    'Customer Phone',
    'Order Date',
    'Total Amount (₹)',
    'Items',
    'Shipping Address',
    'Payment ID',
    'Payment Status',
    'Order Status',
    'Tracking Number',
    'Estimated Delivery',
    'Notes',
    'Created At',
    'Updated At',
]


def add_business_days(start: date, days: int) -> date:
    current = start
    added = 0
    while added < days:
        current += timedelta(days=1)
        # Monday=0 ... Saturday=5, Sunday=6
        if current.weekday() < 5:
            added += 1
    return current


def format_delivery_date(value: date) -> str:
    return f"{value:%A}, {value.day} {value:%B %Y}"


def generate_order_id(now: datetime) -> str:
    suffix = ''.join(random.choices(string.ascii_uppercase + string.digits, k=9))
    return f"ORD-{int(now.timestamp() * 1000)}-{suffix}"


def check_transition(current: Optional[str], requested: str) -> None:
    if current == requested:
        return
    if requested not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(current, requested)


def new_notification(order: dict, channel: str, template: str, now: datetime) -> dict:
    return {
        'id': uuid.uuid4().hex,
        'orderId': order['orderId'],
        'channel': channel,
        'template': template,
        'recipient': order.get('customerEmail') if channel == 'email' else order.get('customerPhone'),
        'status': 'pending',
        'attempts': 0,
        'lastError': None,
        'createdAt': now.isoformat(),
        'sentAt': None,
    }


def _format_address(address) -> str:
    if isinstance(address, dict):
        parts = [address.get('address'), address.get('city'), address.get('state')]
        text = ', '.join(str(part) for part in parts if part)
        if address.get('pincode'):
            text = f"{text} - {address['pincode']}"
        return text
    return str(address or '')


def orders_csv(orders: Iterable[dict]) -> str:
    """Spreadsheet export with every cell quoted."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator='\n')
    writer.writerow(CSV_HEADERS)
    for order in orders:
        items = ', '.join(
            f"{item.get('name')} (Qty: {item.get('quantity')})" for item in order.get('items') or []
        )
        writer.writerow([
            order.get('orderId', ''),
            order.get('customerName', ''),
            order.get('customerEmail', ''),
            order.get('customerPhone', ''),
            order.get('orderDate', ''),
            order.get('totalAmount', ''),
            items,
            _format_address(order.get('shippingAddress')),
            order.get('paymentId') or '',
            order.get('paymentStatus', ''),
            order.get('orderStatus', ''),
            order.get('trackingNumber') or '',
            order.get('estimatedDelivery') or '',
            order.get('notes') or '',
            order.get('createdAt', ''),
            order.get('updatedAt', ''),
        ])
    return buffer.getvalue()


def _sort_newest_first(orders: List[dict]) -> List[dict]:
    return sorted(orders, key=lambda o: o.get('createdAt') or '', reverse=True)


class OrderStore:
    """Order rules shared by the JSON file and Firestore backends.

    Subclasses provide the storage primitives. An order and the notification
    records it produces are always persisted in the same write, so a crash
    can never leave an order without its pending confirmation.
    """

    backend = 'unknown'

    def __init__(self, delivery_days: int = 7, enforce_transitions: bool = False,
                 enforce_cancellation_window: bool = False, cancellation_window_hours: int = 48,
                 clock: Callable[[], datetime] = utc_now):
        self.delivery_days = delivery_days
        self.enforce_transitions = enforce_transitions
        self.enforce_cancellation_window = enforce_cancellation_window
        self.cancellation_window_hours = cancellation_window_hours
        self.clock = clock

    # ---------- backend primitives ----------

    def list_all(self) -> List[dict]:
        raise NotImplementedError

    def get(self, order_id: str) -> Optional[dict]:
        raise NotImplementedError

    def _insert(self, order: dict, notifications: List[dict]) -> None:
        raise NotImplementedError

    def _replace(self, order_id: str, build) -> Optional[dict]:
        """Replace one order with ``build(current) -> (updated, notifications)``."""
        raise NotImplementedError

    def pending_notifications(self) -> List[dict]:
        raise NotImplementedError

    def mark_notification(self, notification_id: str, changes: dict) -> None:
        raise NotImplementedError

    # ---------- order rules ----------

    def prepare(self, order_data: dict) -> dict:
        missing = [name for name in REQUIRED_FIELDS if not order_data.get(name)]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        if not isinstance(order_data['items'], list):
            raise ValidationError('items must be a list')
        try:
            total = float(order_data['totalAmount'])
        except (TypeError, ValueError):
            raise ValidationError('totalAmount must be a valid number')
        if total < 0:
            raise ValidationError('totalAmount cannot be negative')

        now = self.clock()
        stamp = now.isoformat()
        order = dict(order_data)
        order['orderId'] = str(order.get('orderId') or generate_order_id(now))
        order['totalAmount'] = int(total) if total.is_integer() else total
        order.setdefault('customerPhone', '')
        order['orderDate'] = order.get('orderDate') or stamp
        order['createdAt'] = stamp
        order['updatedAt'] = stamp
        order['cancellationDeadline'] = (now + timedelta(hours=self.cancellation_window_hours)).isoformat()
        order['estimatedDelivery'] = format_delivery_date(add_business_days(now.date(), self.delivery_days))
        order['orderStatus'] = 'processing'
        if order.get('paymentId'):
            order['paymentStatus'] = 'completed'
        else:
            order['paymentStatus'] = order.get('paymentStatus') or 'pending'
        order['statusHistory'] = [{'status': 'processing', 'timestamp': stamp}]
        return order

    def _notifications_for(self, order: dict, channels: Iterable[str], template: str) -> List[dict]:
        now = self.clock()
        records = []
        for channel in channels:
            if channel == 'sms' and not order.get('customerPhone'):
                continue
            records.append(new_notification(order, channel, template, now))
        return records

    def save(self, order_data: dict, channels: Iterable[str] = ()) -> dict:
        order = self.prepare(order_data)
        notifications = self._notifications_for(order, channels, 'order_confirmation')
        self._insert(order, notifications)
        print(f"[SUCCESS] Order {order['orderId']} saved ({self.backend}), "
              f"{len(notifications)} notification(s) queued")
        return order

    def find(self, email: Optional[str] = None, phone: Optional[str] = None) -> List[dict]:
        orders = self.list_all()
        if email:
            wanted = email.strip().lower()
            orders = [o for o in orders if str(o.get('customerEmail', '')).lower() == wanted]
        if phone:
            orders = [o for o in orders if o.get('customerPhone') == phone]
        return orders

    def apply_status(self, order: dict, status: str, tracking_number: Optional[str] = None,
                     notes: Optional[str] = None) -> dict:
        status = (status or '').strip()
        if not status:
            raise ValidationError('Order ID and status are required')

        current = order.get('orderStatus')
        if self.enforce_transitions:
            check_transition(current, status)

        now = self.clock()
        if self.enforce_cancellation_window and status == 'cancelled' and current != 'cancelled':
            deadline = parse_iso(order.get('cancellationDeadline'))
            if deadline is None:
                created = parse_iso(order.get('createdAt'))
                if created is not None:
                    deadline = created + timedelta(hours=self.cancellation_window_hours)
            if deadline is not None and now > deadline:
                raise CancellationWindowError(
                    f"Order {order.get('orderId')} is past its {self.cancellation_window_hours}-hour "
                    f"cancellation window")

        updated = dict(order)
        updated['orderStatus'] = status
        updated['trackingNumber'] = tracking_number or order.get('trackingNumber')
        updated['notes'] = notes or order.get('notes')
        updated['updatedAt'] = now.isoformat()
        if status != current:
            entry = {'status': status, 'timestamp': updated['updatedAt']}
            if notes:
                entry['notes'] = notes
            updated['statusHistory'] = list(order.get('statusHistory') or []) + [entry]
        return updated

    def update_status(self, order_id: str, status: str, tracking_number: Optional[str] = None,
                      notes: Optional[str] = None, expected_updated_at: Optional[str] = None,
                      channels: Iterable[str] = ()) -> Optional[dict]:
        channels = list(channels)

        def build(current):
            if expected_updated_at is not None and expected_updated_at != current.get('updatedAt'):
                raise ConflictError(f'Order {order_id} was modified by another request; reload and try again')
            updated = self.apply_status(current, status, tracking_number, notes)
            notifications = []
            if updated['orderStatus'] != current.get('orderStatus'):
                notifications = self._notifications_for(updated, channels, 'status_update')
            return updated, notifications

        order = self._replace(order_id, build)
        if order is not None:
            print(f"[INFO] Order {order_id} status -> {order['orderStatus']}")
        return order


class JsonOrderStore(OrderStore):
    """Orders and their outbox in one JSON document."""

    backend = 'json'

    def __init__(self, path: str, backups: Optional[BackupRotation] = None,
                 outbox_retention_days: Optional[int] = 30, **kwargs):
        super().__init__(**kwargs)
        self.path = path
        self.backups = backups
        self.outbox_retention_days = outbox_retention_days
        self._lock = store_lock(path)

    def _load(self) -> dict:
        data = read_json(self.path, {'orders': [], 'outbox': []})
        if isinstance(data, list):
            # files written before the outbox existed hold a bare order list
            return {'orders': data, 'outbox': []}
        if not isinstance(data, dict) or not isinstance(data.get('orders', []), list):
            raise ValueError(f'{self.path} does not hold an order list')
        return {'orders': data.get('orders', []), 'outbox': data.get('outbox', [])}

    def _prune_outbox(self, document: dict) -> None:
        """Drop sent and failed records last touched before the retention window."""
        if not self.outbox_retention_days:
            return
        cutoff = self.clock() - timedelta(days=self.outbox_retention_days)
        kept = []
        for record in document['outbox']:
            touched = parse_iso(record.get('updatedAt') or record.get('sentAt') or record.get('createdAt'))
            if record.get('status') in FINISHED_NOTIFICATION_STATES and touched is not None and touched < cutoff:
                continue
            kept.append(record)
        dropped = len(document['outbox']) - len(kept)
        if dropped:
            document['outbox'] = kept
            print(f"[INFO] Pruned {dropped} finished notification(s) from {self.path}")

    def _save(self, document: dict) -> None:
        self._prune_outbox(document)
        if self.backups:
            try:
                self.backups.snapshot(self.path, 'orders-backup')
            except OSError as e:
                print(f"[WARN] Error creating orders backup: {e}")
        write_json_atomic(self.path, document)

    def list_all(self) -> List[dict]:
        try:
            return _sort_newest_first(self._load()['orders'])
        except (OSError, ValueError) as e:
            print(f"[ERROR] Error reading orders file: {str(e)}")
            return []

    def get(self, order_id: str) -> Optional[dict]:
        for order in self.list_all():
            if order.get('orderId') == order_id:
                return order
        return None

    def _insert(self, order: dict, notifications: List[dict]) -> None:
        with self._lock:
            document = self._load()
            if any(o.get('orderId') == order['orderId'] for o in document['orders']):
                raise ConflictError(f"Order id already exists: {order['orderId']}")
            document['orders'].append(order)
            document['outbox'].extend(notifications)
            self._save(document)

    def _replace(self, order_id: str, build) -> Optional[dict]:
        with self._lock:
            document = self._load()
            for index, order in enumerate(document['orders']):
                if order.get('orderId') == order_id:
                    updated, notifications = build(order)
                    document['orders'][index] = updated
                    document['outbox'].extend(notifications)
                    self._save(document)
                    return updated
            return None

    def replace_orders(self, orders: List[dict]) -> None:
        """Swap in a restored order list; queued notifications are kept."""
        if not all(isinstance(order, dict) and order.get('orderId') for order in orders):
            raise ValidationError('Every order needs an orderId')
        with self._lock:
            document = self._load()
            document['orders'] = list(orders)
            self._save(document)

    def pending_notifications(self) -> List[dict]:
        try:
            outbox = self._load()['outbox']
        except (OSError, ValueError) as e:
            print(f"[ERROR] Error reading orders file: {str(e)}")
            return []
        return [n for n in outbox if n.get('status') == 'pending']

    def mark_notification(self, notification_id: str, changes: dict) -> None:
        with self._lock:
            document = self._load()
            for record in document['outbox']:
                if record.get('id') == notification_id:
                    record.update(changes)
                    record['updatedAt'] = self.clock().isoformat()
                    self._prune_outbox(document)
                    write_json_atomic(self.path, document)
                    return


def get_firestore_client(config_path: str):
    """Initialise the default Firebase app on first use and return Firestore."""
    try:
        firebase_admin.get_app()
    except ValueError:
        firebase_admin.initialize_app(credentials.Certificate(config_path))
    return firestore.client()


class FirestoreOrderStore(OrderStore):
    """Orders in the ``orders`` collection, keyed by orderId.

    Notification records go to ``notifications`` in the same batch as the
    order write. Status updates are preconditioned on the document's
    ``update_time`` so a concurrent writer surfaces as ConflictError.
    """

    backend = 'firestore'

    def __init__(self, client=None, client_factory: Optional[Callable] = None, **kwargs):
        super().__init__(**kwargs)
        self._client = client
        self.client_factory = client_factory

    @property
    def client(self):
        if self._client is None:
            self._client = self.client_factory()
        return self._client

    def _orders(self):
        return self.client.collection('orders')

    def _notifications(self):
        return self.client.collection('notifications')

    def list_all(self) -> List[dict]:
        return _sort_newest_first([doc.to_dict() for doc in self._orders().stream()])

    def get(self, order_id: str) -> Optional[dict]:
        snapshot = self._orders().document(order_id).get()
        if not snapshot.exists:
            return None
        return snapshot.to_dict()

    def find(self, email: Optional[str] = None, phone: Optional[str] = None) -> List[dict]:
        query = self._orders()
        if phone:
            query = query.where(filter=FieldFilter('customerPhone', '==', phone))
        orders = [doc.to_dict() for doc in query.stream()]
        # Firestore equality is case-sensitive; emails are matched here instead.
        if email:
            wanted = email.strip().lower()
            orders = [o for o in orders if str(o.get('customerEmail', '')).lower() == wanted]
        return _sort_newest_first(orders)

    def _insert(self, order: dict, notifications: List[dict]) -> None:
        order_ref = self._orders().document(order['orderId'])
        if order_ref.get().exists:
            raise ConflictError(f"Order id already exists: {order['orderId']}")
        batch = self.client.batch()
        batch.set(order_ref, order)
        for record in notifications:
            batch.set(self._notifications().document(record['id']), record)
        batch.commit()

    def _replace(self, order_id: str, build) -> Optional[dict]:
        order_ref = self._orders().document(order_id)
        snapshot = order_ref.get()
        if not snapshot.exists:
            return None
        updated, notifications = build(snapshot.to_dict())
        batch = self.client.batch()
        batch.update(order_ref, updated, option=self.client.write_option(last_update_time=snapshot.update_time))
        for record in notifications:
            batch.set(self._notifications().document(record['id']), record)
        try:
            batch.commit()
        except FailedPrecondition:
            raise ConflictError(f'Order {order_id} was modified by another request; reload and try again')
        return updated

    def pending_notifications(self) -> List[dict]:
        query = self._notifications().where(filter=FieldFilter('status', '==', 'pending'))
        return [doc.to_dict() for doc in query.stream()]

    def mark_notification(self, notification_id: str, changes: dict) -> None:
        self._notifications().document(notification_id).update(changes)
