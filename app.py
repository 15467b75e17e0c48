import os
from datetime import datetime
from typing import Optional

import click
from flask import Blueprint, Flask, Response, current_app, jsonify, redirect, request, send_from_directory
from flask_cors import CORS

import config
from admin_auth import AdminAuth, LoginRateLimiter, has_permission, hash_password
from admin_gate import current_admin, init_admin_gate, json_error, require_permission
from admin_routes import admin_api
from errors import PaymentGatewayError, StoreError
from inventory import STOREFRONT_CATEGORIES, ProductStore
from notifications import EmailSender, NotificationDispatcher, SmsSender
from orders import BACKEND_ERRORS, FirestoreOrderStore, JsonOrderStore, get_firestore_client, orders_csv
from payments import create_gateway_order, get_razorpay_client, verify_payment_signature
from storage import BackupRotation

DEV_JWT_SECRET = 'nurvi-dev-only-secret'

storefront = Blueprint('storefront', __name__)


def create_app(overrides: Optional[dict] = None) -> Flask:
    app = Flask(__name__, static_folder='public')
    app.config.from_object(config)
    if overrides:
        app.config.update(overrides)
    app.config['IS_PRODUCTION'] = app.config['APP_ENV'] == 'production'
    CORS(app)

    if not app.config['JWT_SECRET']:
        if app.config['IS_PRODUCTION']:
            raise RuntimeError('JWT_SECRET must be set in production')
        print("[WARN] JWT_SECRET not set. Using the development secret; never deploy like this.")
        app.config['JWT_SECRET'] = DEV_JWT_SECRET
    if not app.config['CSRF_SECRET']:
        app.config['CSRF_SECRET'] = app.config['JWT_SECRET']
    if not app.config['ADMIN_PASSWORD_HASH']:
        print("[WARN] ADMIN_PASSWORD_HASH not set. Admin login is disabled until `flask hash-password` "
              "output is configured.")

    init_services(app)
    init_admin_gate(app)
    app.register_blueprint(admin_api)
    app.register_blueprint(storefront)
    register_commands(app)
    return app


def init_services(app: Flask) -> None:
    cfg = app.config
    data_dir = cfg['DATA_DIR']
    backups = BackupRotation(os.path.join(data_dir, 'backups'), retention=cfg['BACKUP_RETENTION'])

    order_options = {
        'delivery_days': cfg['ORDER_DELIVERY_BUSINESS_DAYS'],
        'enforce_transitions': cfg['ENFORCE_ORDER_TRANSITIONS'],
        'enforce_cancellation_window': cfg['ENFORCE_CANCELLATION_WINDOW'],
        'cancellation_window_hours': cfg['CANCELLATION_WINDOW_HOURS'],
    }
    json_orders = JsonOrderStore(os.path.join(data_dir, 'orders.json'), backups=backups,
                                 outbox_retention_days=cfg['NOTIFICATION_RETENTION_DAYS'], **order_options)
    firestore_orders = FirestoreOrderStore(
        client_factory=lambda: get_firestore_client(cfg['FIREBASE_CONFIG_PATH']),
        **order_options,
    )

    email_sender = EmailSender(cfg['SMTP_SERVER'], cfg['SMTP_PORT'], cfg['EMAIL_USER'], cfg['EMAIL_PASS'],
                               from_address=cfg['EMAIL_FROM'], site_url=cfg['PUBLIC_APP_URL'])
    sms_sender = SmsSender(cfg['TWILIO_ACCOUNT_SID'], cfg['TWILIO_AUTH_TOKEN'], cfg['TWILIO_PHONE_NUMBER'],
                           site_url=cfg['PUBLIC_APP_URL'])
    outbox_stores = [json_orders] + ([firestore_orders] if cfg['FIRESTORE_ENABLED'] else [])

    app.extensions.update({
        'admin_auth': AdminAuth(
            admin_email=cfg['ADMIN_EMAIL'],
            password_hash=cfg['ADMIN_PASSWORD_HASH'],
            jwt_secret=cfg['JWT_SECRET'],
            expires_in=cfg['JWT_EXPIRES_IN'],
            session_timeout=cfg['SESSION_TIMEOUT_SECONDS'],
            admin_name=cfg['ADMIN_NAME'],
        ),
        'login_limiter': LoginRateLimiter(
            max_attempts=cfg['LOGIN_RATE_LIMIT_ATTEMPTS'],
            window_seconds=cfg['LOGIN_RATE_LIMIT_WINDOW_MINUTES'] * 60,
        ),
        'backups': backups,
        'products': ProductStore(os.path.join(data_dir, 'inventory.json'), backups=backups),
        'json_orders': json_orders,
        'firestore_orders': firestore_orders,
        'orders': firestore_orders if cfg['ORDER_BACKEND'] == 'firestore' else json_orders,
        'email_sender': email_sender,
        'sms_sender': sms_sender,
        'dispatcher': NotificationDispatcher(outbox_stores, email_sender, sms_sender,
                                             max_attempts=cfg['NOTIFICATION_MAX_ATTEMPTS']),
        'razorpay_client': get_razorpay_client(cfg['RAZORPAY_KEY_ID'], cfg['RAZORPAY_KEY_SECRET']),
    })


def register_commands(app: Flask) -> None:
    @app.cli.command('hash-password')
    @click.password_option()
    def hash_password_command(password):
        """Print a bcrypt hash to use as ADMIN_PASSWORD_HASH."""
        click.echo(hash_password(password))

    @app.cli.command('process-notifications')
    def process_notifications_command():
        """Retry pending order notifications (run from cron)."""
        totals = app.extensions['dispatcher'].process_pending()
        print(f"[INFO] Notifications sent: {totals['sent']}, retrying: {totals['retrying']}, "
              f"failed: {totals['failed']}")


# ---------- helpers ----------

def notification_channels(include_sms: bool = True) -> list:
    channels = []
    if current_app.extensions['email_sender'].configured:
        channels.append('email')
    else:
        print("[WARN] Email credentials not configured - skipping email notification")
    if include_sms and current_app.extensions['sms_sender'].configured:
        channels.append('sms')
    return channels


def dispatch_notifications() -> None:
    mode = current_app.config['NOTIFICATION_DISPATCH']
    dispatcher = current_app.extensions['dispatcher']
    if mode == 'thread':
        dispatcher.dispatch_in_background()
    elif mode == 'inline':
        try:
            dispatcher.process_pending()
        except Exception as e:
            print(f"[WARN] Notification dispatch failed: {e}")


def order_stores() -> list:
    """Primary order store first, then the JSON file if it is a different store."""
    primary = current_app.extensions['orders']
    fallback = current_app.extensions['json_orders']
    return [primary] if primary is fallback else [primary, fallback]


def read_orders(read):
    """Run ``read(store)`` on the primary store, falling back to the JSON file."""
    stores = order_stores()
    for store in stores[:-1]:
        try:
            return read(store), store.backend
        except BACKEND_ERRORS as e:
            print(f"[WARN] {store.backend} order read failed, using local file: {e}")
    return read(stores[-1]), stores[-1].backend


def save_order(store, data: dict):
    order = store.save(data, channels=notification_channels())
    dispatch_notifications()
    return jsonify({'success': True, 'order': order, 'source': store.backend})


# ---------- pages ----------

@storefront.route('/admin')
def admin_login_page():
    if current_admin() is not None:
        return redirect('/admin/dashboard')
    return send_from_directory('public', 'admin-login.html')


@storefront.route('/admin/dashboard')
def admin_dashboard_page():
    return send_from_directory('public', 'admin-dashboard.html')


# ---------- storefront catalog ----------

@storefront.route('/api/inventory', methods=['GET'])
def get_inventory():
    try:
        return jsonify(current_app.extensions['products'].catalog())
    except Exception as e:
        print(f"Error loading inventory: {str(e)}")
        empty = {'all': [], 'featured': [], 'onSale': [], 'newArrivals': [], 'inStock': []}
        empty.update({name: [] for name in STOREFRONT_CATEGORIES})
        return jsonify(empty)


# ---------- orders ----------

@storefront.route('/api/orders/save', methods=['POST'])
def save_order_local():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return json_error('Order data is required', 400)
    try:
        return save_order(current_app.extensions['json_orders'], data)
    except StoreError as e:
        return json_error(str(e), e.status_code)
    except Exception as e:
        print(f"Error saving order: {str(e)}")
        return json_error('Failed to save order', 500)


@storefront.route('/api/orders/save-firebase', methods=['POST'])
def save_order_firebase():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return json_error('Order data is required', 400)
    try:
        if current_app.config['FIRESTORE_ENABLED']:
            try:
                return save_order(current_app.extensions['firestore_orders'], data)
            except BACKEND_ERRORS as e:
                print(f"[WARN] Firestore order save failed, saving locally: {e}")
        return save_order(current_app.extensions['json_orders'], data)
    except StoreError as e:
        return json_error(str(e), e.status_code)
    except Exception as e:
        print(f"Error saving order: {str(e)}")
        return json_error('Failed to save order', 500)


@storefront.route('/api/orders/get', methods=['GET'])
def get_orders():
    order_id = request.args.get('orderId')
    email = request.args.get('email')
    phone = request.args.get('phone')
    try:
        if order_id:
            stores = order_stores()
            for store in stores:
                try:
                    order = store.get(order_id)
                except BACKEND_ERRORS as e:
                    if store is stores[-1]:
                        raise
                    print(f"[WARN] {store.backend} order lookup failed: {e}")
                    continue
                if order is not None:
                    return jsonify({'success': True, 'order': order, 'source': store.backend})
            return json_error('Order not found', 404)

        if email or phone:
            orders, source = read_orders(lambda store: store.find(email=email, phone=phone))
        else:
            identity = current_admin()
            if identity is None:
                return json_error('Authentication required', 401)
            if not has_permission(identity, 'view_orders'):
                return json_error('Insufficient permissions', 403)
            orders, source = read_orders(lambda store: store.list_all())
        return jsonify({'success': True, 'orders': orders, 'count': len(orders), 'source': source})
    except Exception as e:
        print(f"Error fetching orders: {str(e)}")
        return jsonify({'success': False, 'error': 'Failed to fetch orders', 'orders': []}), 500


@storefront.route('/api/orders/update-status', methods=['PUT'])
@require_permission('edit_orders')
def update_order_status():
    data = request.get_json(silent=True) or {}
    order_id = data.get('orderId')
    status = data.get('orderStatus')
    if not order_id or not status:
        return json_error('Order ID and status are required', 400)

    try:
        stores = order_stores()
        for store in stores:
            try:
                order = store.update_status(
                    order_id,
                    status,
                    tracking_number=data.get('trackingNumber'),
                    notes=data.get('notes'),
                    expected_updated_at=data.get('expectedUpdatedAt'),
                    channels=notification_channels(include_sms=False),
                )
            except BACKEND_ERRORS as e:
                if store is stores[-1]:
                    raise
                print(f"[WARN] {store.backend} status update failed: {e}")
                continue
            if order is not None:
                dispatch_notifications()
                return jsonify({'success': True, 'message': 'Order status updated successfully', 'order': order})
        return json_error('Order not found', 404)
    except StoreError as e:
        return json_error(str(e), e.status_code)
    except Exception as e:
        print(f"Error updating order status: {str(e)}")
        return json_error('Failed to update order status', 500)


@storefront.route('/api/orders/download', methods=['GET'])
@require_permission('view_orders')
def download_orders():
    try:
        orders, _ = read_orders(lambda store: store.list_all())
        if not orders:
            return json_error('No orders found', 404)

        if request.args.get('format', 'csv') == 'csv':
            filename = f"nurvi-jewels-orders-{datetime.now():%Y-%m-%d}.csv"
            return Response(
                orders_csv(orders),
                mimetype='text/csv',
                headers={'Content-Disposition': f'attachment; filename="{filename}"'},
            )
        return jsonify({'success': True, 'orders': orders, 'totalOrders': len(orders)})
    except Exception as e:
        print(f"Error downloading orders: {str(e)}")
        return json_error('Failed to download orders', 500)


# ---------- payments ----------

@storefront.route('/api/create-order', methods=['POST'])
def create_payment_order():
    client = current_app.extensions['razorpay_client']
    if client is None:
        print("[ERROR] Razorpay credentials missing")
        return json_error('Payment gateway configuration error', 500)

    data = request.get_json(silent=True) or {}
    try:
        order = create_gateway_order(client, data.get('amount'), data.get('currency') or 'INR')
        return jsonify({'success': True, **order})
    except StoreError as e:
        return json_error(str(e), e.status_code)
    except PaymentGatewayError as e:
        print(f"Error creating payment order: {str(e)}")
        return json_error('Failed to create order', 502)
    except Exception as e:
        print(f"Error creating payment order: {str(e)}")
        return json_error('Failed to create order', 500)


@storefront.route('/api/razorpay/verify-payment', methods=['POST'])
def verify_payment():
    client = current_app.extensions['razorpay_client']
    if client is None:
        print("[ERROR] RAZORPAY_KEY_SECRET is missing")
        return json_error('Payment gateway configuration error', 500)

    data = request.get_json(silent=True) or {}
    order_id = data.get('razorpay_order_id')
    payment_id = data.get('razorpay_payment_id')
    if verify_payment_signature(client, order_id, payment_id, data.get('razorpay_signature')):
        print(f"[SUCCESS] Payment verified: {payment_id} for {order_id}")
        return jsonify({'success': True, 'message': 'Payment verified successfully'})
    print(f"[WARN] Payment verification failed for {order_id}")
    return jsonify({'success': False, 'message': 'Payment verification failed'}), 400


@storefront.route('/api/razorpay/config', methods=['GET'])
def razorpay_config():
    key_id = current_app.config['RAZORPAY_KEY_ID']
    if not key_id:
        return jsonify({'success': False, 'error': 'Razorpay not configured', 'keyId': None}), 500
    return jsonify({'success': True, 'keyId': key_id, 'configured': True})


if __name__ == '__main__':
    app = create_app()
    print("Starting Flask server...")
    print(f"Nurvi Jewel back office running on {app.config['PUBLIC_APP_URL']}")
    app.run(debug=not app.config['IS_PRODUCTION'], port=5000)
