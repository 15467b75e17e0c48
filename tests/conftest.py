import bcrypt
import pytest
from flask import jsonify, request

from admin_auth import AdminIdentity
from app import create_app

ADMIN_EMAIL = 'owner@nurvijewel.com'
ADMIN_PASSWORD = 'correct-horse-battery'
# work factor 4 keeps the suite fast; production uses 12
ADMIN_HASH = bcrypt.hashpw(ADMIN_PASSWORD.encode('utf-8'), bcrypt.gensalt(rounds=4)).decode('utf-8')


def make_app(tmp_path, **overrides):
    settings = {
        'TESTING': True,
        'APP_ENV': 'testing',
        'DATA_DIR': str(tmp_path / 'data'),
        'ADMIN_EMAIL': ADMIN_EMAIL,
        'ADMIN_PASSWORD_HASH': ADMIN_HASH,
        'JWT_SECRET': 'test-secret',
        'CSRF_SECRET': 'test-csrf-secret',
        'CSRF_PROTECTION': True,
        'TRUST_FORWARDED_FOR': False,
        'ORDER_BACKEND': 'json',
        'FIRESTORE_ENABLED': False,
        'ENFORCE_ORDER_TRANSITIONS': False,
        'ENFORCE_CANCELLATION_WINDOW': False,
        'NOTIFICATION_DISPATCH': 'off',
        'EMAIL_USER': '',
        'EMAIL_PASS': '',
        'TWILIO_ACCOUNT_SID': '',
        'TWILIO_AUTH_TOKEN': '',
        'TWILIO_PHONE_NUMBER': '',
        'RAZORPAY_KEY_ID': '',
        'RAZORPAY_KEY_SECRET': '',
    }
    settings.update(overrides)
    app = create_app(settings)

    @app.route('/api/whoami')
    def whoami():
        return jsonify({
            'id': request.headers.get('X-Admin-Id'),
            'email': request.headers.get('X-Admin-Email'),
            'role': request.headers.get('X-Admin-Role'),
        })

    return app


@pytest.fixture
def app(tmp_path):
    return make_app(tmp_path)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def token_for(app):
    def issue(role='super_admin'):
        identity = AdminIdentity.for_role('admin-1', ADMIN_EMAIL, 'Admin User', role, login_time=0)
        return app.extensions['admin_auth'].issue_token(identity)
    return issue


@pytest.fixture
def admin_headers(token_for):
    return {'Authorization': f'Bearer {token_for()}'}


@pytest.fixture
def sample_product():
    return {
        'name': 'Gold Ring',
        'price': 2000,
        'category': 'Rings',
        'description': 'Hand-finished 22k band',
        'material': 'Gold',
        'tags': ['gold', 'band'],
    }


@pytest.fixture
def sample_order():
    return {
        'customerName': 'Asha Rao',
        'customerEmail': 'asha@example.com',
        'customerPhone': '+919800000000',
        'items': [{'name': 'Gold Ring', 'quantity': 1, 'price': 2000}],
        'totalAmount': 2000,
        'shippingAddress': {
            'address': '12 MG Road',
            'city': 'Bengaluru',
            'state': 'Karnataka',
            'pincode': '560001',
        },
    }
