import os
import tempfile
from datetime import timedelta
from urllib.parse import urlparse

basedir = os.path.abspath(os.path.dirname(__file__))

DEFAULT_DISPOSABLE_EMAIL_DOMAINS = (
    'mailinator.com',
    'guerrillamail.com',
    'temp-mail.org',
    'throwaway.email',
    'fakeinbox.com',
    'yopmail.com',
    'maildrop.cc',
    '10minutemail.com',
    'trashmail.com',
    'tempail.com',
    'sharklasers.com',
    'guerrillamailblock.com',
    'grr.la',
    'dispostable.com',
    'mailnesia.com',
)
DEFAULT_SPAM_PHRASES = (
    'viagra',
    'cialis',
    'casino',
    'get rich',
    'buy now',
    'free money',
    'lottery',
    'guaranteed income',
)
# (max submissions, window seconds) per form kind.
DEFAULT_RATE_LIMITS = {
    'auth': (5, 900),
    'contact': (3, 3600),
    'quote': (3, 3600),
    'newsletter': (3, 86400),
    'comment': (5, 600),
    'inquiry': (3, 3600),
    'application': (3, 3600),
    'review': (5, 3600),
    'profile': (10, 3600),
}


def _is_managed_runtime():
    return bool(
        os.environ.get('RAILWAY_ENVIRONMENT')
        or os.environ.get('RENDER')
        or os.environ.get('VERCEL')
    )


def _is_production_runtime():
    flask_env = (os.environ.get('FLASK_ENV') or '').strip().lower()
    railway_env = (os.environ.get('RAILWAY_ENVIRONMENT') or '').strip().lower()
    vercel_env = (os.environ.get('VERCEL_ENV') or '').strip().lower()
    return flask_env == 'production' or railway_env == 'production' or vercel_env == 'production'


def _as_bool(value, default=False):
    if value is None:
        return default
    return str(value).strip().lower() in {'1', 'true', 'yes', 'on'}


def _as_int(value, default):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value, default):
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_list(value, default):
    if value is None or not str(value).strip():
        return tuple(default)
    return tuple(item.strip().lower() for item in str(value).split(',') if item.strip())


def _database_url():
    raw = (os.environ.get('DATABASE_URL') or '').strip()
    if raw.startswith('postgres://'):
        raw = raw.replace('postgres://', 'postgresql://', 1)
    if raw:
        return raw
    if os.environ.get('VERCEL'):
        return 'sqlite:////tmp/greenlabel.db'
    return 'sqlite:///' + os.path.join(basedir, 'greenlabel.db')


def _database_engine_options(database_url):
    if not database_url.startswith('sqlite'):
        options = {
            'pool_pre_ping': True,
            'pool_recycle': 300,
        }
        parsed = urlparse(database_url)
        if parsed.scheme.startswith('postgresql'):
            connect_timeout_seconds = max(1, _as_int(os.environ.get('DB_CONNECT_TIMEOUT_SECONDS'), 5))
            statement_timeout_ms = max(1000, _as_int(os.environ.get('DB_STATEMENT_TIMEOUT_MS'), 8000))
            idle_tx_timeout_ms = max(1000, _as_int(os.environ.get('DB_IDLE_IN_TX_TIMEOUT_MS'), 15000))
            pg_options = [
                f'-c statement_timeout={statement_timeout_ms}',
                f'-c idle_in_transaction_session_timeout={idle_tx_timeout_ms}',
            ]
            options['connect_args'] = {
                'connect_timeout': connect_timeout_seconds,
                'options': ' '.join(pg_options),
            }
        return options
    return {}


def _rate_limits():
    limits = {}
    for kind, (default_max, default_window) in DEFAULT_RATE_LIMITS.items():
        prefix = kind.upper()
        limits[kind] = (
            max(1, _as_int(os.environ.get(f'{prefix}_FORM_LIMIT'), default_max)),
            max(1, _as_int(os.environ.get(f'{prefix}_FORM_WINDOW_SECONDS'), default_window)),
        )
    return limits


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or ''
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_ENGINE_OPTIONS = _database_engine_options(SQLALCHEMY_DATABASE_URI)
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    UPLOAD_FOLDER = (os.environ.get('UPLOAD_FOLDER') or '').strip() or (
        os.path.join(tempfile.gettempdir(), 'greenlabel-uploads') if os.environ.get('VERCEL') else os.path.join(basedir, 'uploads')
    )
    MAX_CONTENT_LENGTH = 8 * 1024 * 1024
    MAX_RESUME_BYTES = _as_int(os.environ.get('MAX_RESUME_BYTES'), 5 * 1024 * 1024)
    MAX_PHOTO_BYTES = _as_int(os.environ.get('MAX_PHOTO_BYTES'), 2 * 1024 * 1024)
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    SESSION_COOKIE_SECURE = _as_bool(os.environ.get('SESSION_COOKIE_SECURE'), _is_production_runtime())
    REMEMBER_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_SAMESITE = 'Lax'
    REMEMBER_COOKIE_SECURE = SESSION_COOKIE_SECURE
    PERMANENT_SESSION_LIFETIME = timedelta(seconds=_as_int(os.environ.get('SESSION_LIFETIME_SECONDS'), 7 * 24 * 3600))
    TRUST_PROXY_HEADERS = _as_bool(os.environ.get('TRUST_PROXY_HEADERS'), _is_managed_runtime())
    SITE_URL = (os.environ.get('SITE_URL') or 'https://greenlabelservicesug.com').rstrip('/')
    SITE_NAME = 'Green Label Services'
    SUPPORT_PHONE = '+256 772 423 092'
    HSTS_ENABLED = _as_bool(os.environ.get('HSTS_ENABLED'), True)
    HSTS_MAX_AGE = _as_int(os.environ.get('HSTS_MAX_AGE'), 31536000)
    CSRF_EXEMPT_ENDPOINTS = ('api.revalidate', 'api.newsletter_unsubscribe')

    PROTECTED_ROUTE_PREFIXES = ('/dashboard', '/profile', '/reviews/create', '/reviews/my-reviews')
    PROTECTED_ROUTE_PATTERNS = (r'^/reviews/[^/]+/edit$',)
    AUTH_ROUTE_PREFIXES = ('/login', '/register')
    LOGIN_PATH = '/login'
    AUTHENTICATED_LANDING_PATH = '/dashboard'

    RATE_LIMITS = _rate_limits()
    RATE_LIMIT_BACKEND = (os.environ.get('RATE_LIMIT_BACKEND') or 'database').strip().lower()
    RATE_LIMIT_SWEEP_EVERY = max(1, _as_int(os.environ.get('RATE_LIMIT_SWEEP_EVERY'), 50))
    DISPOSABLE_EMAIL_DOMAINS = _as_list(os.environ.get('DISPOSABLE_EMAIL_DOMAINS'), DEFAULT_DISPOSABLE_EMAIL_DOMAINS)
    SPAM_PHRASES = _as_list(os.environ.get('SPAM_PHRASES'), DEFAULT_SPAM_PHRASES)

    TURNSTILE_SITE_KEY = (os.environ.get('TURNSTILE_SITE_KEY') or '').strip()
    TURNSTILE_SECRET_KEY = (os.environ.get('TURNSTILE_SECRET_KEY') or '').strip()
    TURNSTILE_ENFORCED = _as_bool(os.environ.get('TURNSTILE_ENFORCED'), True)

    RESEND_API_KEY = (os.environ.get('RESEND_API_KEY') or '').strip()
    MAILGUN_API_KEY = (os.environ.get('MAILGUN_API_KEY') or '').strip()
    MAILGUN_DOMAIN = (os.environ.get('MAILGUN_DOMAIN') or '').strip()
    SMTP_HOST = (os.environ.get('SMTP_HOST') or '').strip()
    SMTP_PORT = _as_int(os.environ.get('SMTP_PORT'), 587)
    SMTP_USERNAME = (os.environ.get('SMTP_USERNAME') or '').strip()
    SMTP_PASSWORD = os.environ.get('SMTP_PASSWORD') or ''
    SMTP_USE_TLS = _as_bool(os.environ.get('SMTP_USE_TLS'), True)
    SMTP_USE_SSL = _as_bool(os.environ.get('SMTP_USE_SSL'), False)
    MAIL_FROM = (os.environ.get('MAIL_FROM') or 'Green Label Services <info@greenlabelservicesug.com>').strip()
    ADMIN_EMAIL = (os.environ.get('ADMIN_EMAIL') or 'info@greenlabelservicesug.com').strip()
    EMAIL_HTTP_TIMEOUT_SECONDS = _as_float(os.environ.get('EMAIL_HTTP_TIMEOUT_SECONDS'), 15.0)
    NOTIFICATIONS_ASYNC = _as_bool(os.environ.get('NOTIFICATIONS_ASYNC'), True)
    NOTIFICATION_WORKERS = max(1, _as_int(os.environ.get('NOTIFICATION_WORKERS'), 4))

    CMS_REVALIDATE_SECRET = (os.environ.get('CMS_REVALIDATE_SECRET') or '').strip()
    CMS_CACHE_TTL_SECONDS = max(0, _as_int(os.environ.get('CMS_CACHE_TTL_SECONDS'), 300))
    CMS_CACHE_MAX_ENTRIES = max(1, _as_int(os.environ.get('CMS_CACHE_MAX_ENTRIES'), 1000))

    SENTRY_DSN = (os.environ.get('SENTRY_DSN') or '').strip()
    SENTRY_ENVIRONMENT = (os.environ.get('SENTRY_ENVIRONMENT') or '').strip()
    SENTRY_TRACES_SAMPLE_RATE = _as_float(os.environ.get('SENTRY_TRACES_SAMPLE_RATE'), 0.0)
    LOG_JSON = _as_bool(os.environ.get('LOG_JSON'), True)
    LOG_LEVEL = (os.environ.get('LOG_LEVEL') or 'INFO').strip().upper()
