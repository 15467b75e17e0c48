import os

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


def env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        print(f"[WARN] {name}={value!r} is not an integer, using {default}")
        return default


APP_ENV = os.getenv('APP_ENV', 'development').strip().lower()
IS_PRODUCTION = APP_ENV == 'production'

# Admin identity
ADMIN_EMAIL = os.getenv('ADMIN_EMAIL', 'owner@nurvijewel.com')
ADMIN_NAME = os.getenv('ADMIN_NAME', 'Admin User')
ADMIN_PASSWORD_HASH = os.getenv('ADMIN_PASSWORD_HASH', '')

# Tokens and sessions
JWT_SECRET = os.getenv('JWT_SECRET', '')
JWT_EXPIRES_IN = os.getenv('JWT_EXPIRES_IN', '24h')
SESSION_TIMEOUT_SECONDS = 24 * 60 * 60
CSRF_SECRET = os.getenv('CSRF_SECRET', '')
CSRF_PROTECTION = env_flag('CSRF_PROTECTION', True)

# Login throttling
LOGIN_RATE_LIMIT_ATTEMPTS = env_int('LOGIN_RATE_LIMIT_ATTEMPTS', 5)
LOGIN_RATE_LIMIT_WINDOW_MINUTES = env_int('LOGIN_RATE_LIMIT_WINDOW_MINUTES', 15)
TRUST_FORWARDED_FOR = env_flag('TRUST_FORWARDED_FOR', False)

# Storage
DATA_DIR = os.getenv('DATA_DIR', os.path.join(BASE_DIR, 'data'))
BACKUP_RETENTION = env_int('BACKUP_RETENTION', 10)
ORDER_BACKEND = os.getenv('ORDER_BACKEND', 'json').strip().lower()
FIREBASE_CONFIG_PATH = os.getenv('FIREBASE_CONFIG_PATH', os.path.join(BASE_DIR, 'firebase_config.json'))
FIRESTORE_ENABLED = ORDER_BACKEND == 'firestore' or os.path.exists(FIREBASE_CONFIG_PATH)

# Orders
ORDER_DELIVERY_BUSINESS_DAYS = env_int('ORDER_DELIVERY_BUSINESS_DAYS', 7)
ENFORCE_ORDER_TRANSITIONS = env_flag('ENFORCE_ORDER_TRANSITIONS', False)
ENFORCE_CANCELLATION_WINDOW = env_flag('ENFORCE_CANCELLATION_WINDOW', False)
CANCELLATION_WINDOW_HOURS = env_int('CANCELLATION_WINDOW_HOURS', 48)

# Payment gateway
RAZORPAY_KEY_ID = os.getenv('RAZORPAY_KEY_ID', '')
RAZORPAY_KEY_SECRET = os.getenv('RAZORPAY_KEY_SECRET', '')

# Email configuration
SMTP_SERVER = os.getenv('SMTP_SERVER', 'smtp.gmail.com')
SMTP_PORT = env_int('SMTP_PORT', 587)
EMAIL_USER = os.getenv('EMAIL_USER', '')
EMAIL_PASS = os.getenv('EMAIL_PASS', '')
EMAIL_FROM = os.getenv('EMAIL_FROM', '') or EMAIL_USER

# SMS configuration
TWILIO_ACCOUNT_SID = os.getenv('TWILIO_ACCOUNT_SID', '')
TWILIO_AUTH_TOKEN = os.getenv('TWILIO_AUTH_TOKEN', '')
TWILIO_PHONE_NUMBER = os.getenv('TWILIO_PHONE_NUMBER', '')

# Notification outbox
NOTIFICATION_DISPATCH = os.getenv('NOTIFICATION_DISPATCH', 'thread').strip().lower()
NOTIFICATION_MAX_ATTEMPTS = env_int('NOTIFICATION_MAX_ATTEMPTS', 5)
# sent or failed records older than this are dropped from orders.json
NOTIFICATION_RETENTION_DAYS = env_int('NOTIFICATION_RETENTION_DAYS', 30)

PUBLIC_APP_URL = os.getenv('PUBLIC_APP_URL', 'http://localhost:5000').rstrip('/')
