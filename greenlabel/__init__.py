import os
import re
import secrets
import json
import logging
from urllib.parse import urlparse
from flask import Flask, flash, g, has_request_context, jsonify, redirect, render_template, request, url_for
from flask_login import LoginManager
from sqlalchemy import text
from werkzeug.middleware.proxy_fix import ProxyFix

from .cms import init_content_cache
from .config import Config
from .models import db, User
from .rate_limit import init_rate_limiter
from .session_guard import csrf_input, get_csrf_token, init_request_pipeline
from .spam import SpamFilter, turnstile_enabled
from .tasks import NotificationQueue

login_manager = LoginManager()
login_manager.login_view = 'main.login'
login_manager.login_message = None
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,80}$")
_sentry_initialized = False


class JsonLogFormatter(logging.Formatter):
    def format(self, record):
        payload = {
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'time': self.formatTime(record, self.datefmt),
        }
        if has_request_context():
            payload.update(
                {
                    'request_id': getattr(g, 'request_id', ''),
                    'method': request.method,
                    'path': request.path,
                    'remote_ip': request.remote_addr,
                }
            )
        if record.exc_info:
            payload['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(app):
    app.logger.setLevel(getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO))
    if not app.config.get('LOG_JSON', True):
        return
    formatter = JsonLogFormatter()
    for handler in app.logger.handlers:
        handler.setFormatter(formatter)


@login_manager.user_loader
def load_user(user_id):
    try:
        parsed_id = int(user_id)
    except (TypeError, ValueError):
        return None
    return db.session.get(User, parsed_id)


def wants_json():
    return request.path.startswith('/api/') or request.is_json


def safe_referrer_path(fallback):
    raw_referrer = (request.referrer or '').strip()
    if not raw_referrer:
        return fallback

    parsed = urlparse(raw_referrer)
    if parsed.scheme and parsed.scheme not in {'http', 'https'}:
        return fallback
    if parsed.netloc and parsed.netloc != request.host:
        return fallback

    path = parsed.path or '/'
    if not path.startswith('/'):
        return fallback

    target = path
    if parsed.query:
        target = f"{target}?{parsed.query}"
    return target


def init_sentry(app):
    global _sentry_initialized
    if _sentry_initialized:
        return

    dsn = (app.config.get('SENTRY_DSN') or '').strip()
    if not dsn:
        return

    try:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration
        from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

        traces_sample_rate = float(app.config.get('SENTRY_TRACES_SAMPLE_RATE') or 0.0)
        sentry_sdk.init(
            dsn=dsn,
            integrations=[FlaskIntegration(), SqlalchemyIntegration()],
            traces_sample_rate=traces_sample_rate,
            environment=(app.config.get('SENTRY_ENVIRONMENT') or None),
        )
        _sentry_initialized = True
        app.logger.info('Sentry monitoring enabled.')
    except Exception:
        app.logger.exception('Failed to initialize Sentry monitoring.')


def create_app(config_overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)
    configure_logging(app)

    if not app.config.get('SECRET_KEY'):
        import warnings
        app.config['SECRET_KEY'] = secrets.token_urlsafe(32)
        warnings.warn(
            'SECRET_KEY is not set; using a random key. '
            'Sessions will not survive restarts. '
            'Set the SECRET_KEY environment variable for production.',
            stacklevel=2,
        )

    if app.config.get('TRUST_PROXY_HEADERS'):
        # Only trust one proxy hop (the platform edge) when explicitly enabled.
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)

    init_sentry(app)
    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)

    db.init_app(app)
    login_manager.init_app(app)
    app.extensions['spam_filter'] = SpamFilter.from_config(app.config)
    init_rate_limiter(app)
    init_content_cache(app)
    NotificationQueue(app)

    @app.before_request
    def assign_request_id():
        incoming = (request.headers.get('X-Request-ID') or '').strip()
        if _REQUEST_ID_RE.match(incoming):
            g.request_id = incoming
        else:
            g.request_id = secrets.token_hex(16)

    # Session guard, then CSRF. Registered after the request id so log lines carry it.
    init_request_pipeline(app)

    @app.context_processor
    def inject_globals():
        return dict(
            site_name=app.config.get('SITE_NAME', ''),
            support_phone=app.config.get('SUPPORT_PHONE', ''),
            csrf_token=get_csrf_token,
            csrf_input=csrf_input,
            turnstile_enabled=turnstile_enabled(),
            turnstile_site_key=(app.config.get('TURNSTILE_SITE_KEY') or ''),
        )

    @app.after_request
    def add_security_headers(response):
        response.headers['X-Request-ID'] = getattr(g, 'request_id', '')
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers.setdefault('X-Frame-Options', 'DENY')
        response.headers.setdefault('Referrer-Policy', 'strict-origin-when-cross-origin')
        response.headers.setdefault('Permissions-Policy', 'geolocation=(), microphone=(), camera=()')
        response.headers.setdefault('Cross-Origin-Opener-Policy', 'same-origin')
        if request.is_secure and app.config.get('HSTS_ENABLED', True):
            hsts_max_age = max(0, int(app.config.get('HSTS_MAX_AGE', 31536000)))
            response.headers.setdefault('Strict-Transport-Security', f'max-age={hsts_max_age}; includeSubDomains')
        if response.content_type and response.content_type.startswith('text/html'):
            response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
            response.headers.setdefault(
                'Content-Security-Policy',
                "default-src 'self'; frame-ancestors 'none'; base-uri 'self'; form-action 'self'; "
                "object-src 'none'; script-src 'self' https://challenges.cloudflare.com; "
                "frame-src https://challenges.cloudflare.com",
            )
        return response

    @app.errorhandler(400)
    def handle_bad_request(error):
        description = str(getattr(error, 'description', '') or '')
        if 'CSRF' in description:
            if wants_json():
                return jsonify({'success': False, 'message': 'Your session expired. Please reload the page and try again.'}), 400
            flash('Your form session expired. Please retry your action.', 'danger')
            return redirect(safe_referrer_path(url_for('main.index')))
        if wants_json():
            return jsonify({'success': False, 'message': 'Bad request.'}), 400
        return error

    @app.errorhandler(404)
    def handle_not_found(error):
        if wants_json():
            return jsonify({'success': False, 'message': 'Not found.'}), 404
        return render_template('errors/404.html'), 404

    @app.errorhandler(413)
    def handle_too_large(error):
        message = 'The uploaded file is too large.'
        if wants_json():
            return jsonify({'success': False, 'message': message}), 413
        flash(message, 'danger')
        return redirect(safe_referrer_path(url_for('main.index')))

    @app.errorhandler(500)
    def handle_server_error(error):
        if wants_json():
            phone = app.config.get('SUPPORT_PHONE', '')
            return jsonify({'success': False, 'message': f'Something went wrong. Please try again or call us at {phone}.'}), 500
        return render_template('errors/500.html'), 500

    @app.get('/healthz')
    def healthz():
        try:
            db.session.execute(text('SELECT 1'))
            return {'status': 'ok'}, 200
        except Exception:
            db.session.rollback()
            app.logger.exception('Health check DB probe failed.')
            return {'status': 'degraded'}, 503

    @app.get('/readyz')
    def readyz():
        checks = {
            'database': False,
            'upload_folder_writable': os.access(app.config['UPLOAD_FOLDER'], os.W_OK),
            'email_configured': bool(
                app.config.get('RESEND_API_KEY')
                or (app.config.get('MAILGUN_API_KEY') and app.config.get('MAILGUN_DOMAIN'))
                or app.config.get('SMTP_HOST')
            ),
        }
        try:
            db.session.execute(text('SELECT 1'))
            checks['database'] = True
        except Exception:
            db.session.rollback()
            app.logger.exception('Readiness check failed.')
            return {'status': 'degraded', 'checks': checks}, 503
        ready = checks['database'] and checks['upload_folder_writable']
        return {'status': 'ready' if ready else 'warming', 'checks': checks}, (200 if ready else 503)

    from .routes.main import main_bp
    from .routes.api import api_bp
    app.register_blueprint(main_bp)
    app.register_blueprint(api_bp, url_prefix='/api')

    with app.app_context():
        try:
            db.create_all()
        except Exception:
            app.logger.exception('db.create_all() failed; tables may need manual migration.')

    return app
