"""Per-request session guard.

Runs before any view. A request for a protected page without a session is
redirected to the login page with the original path preserved; a signed-in
user asking for the login or register page is sent to the dashboard.
Everything else passes through untouched.
"""
import re
import secrets
from urllib.parse import urlencode

from flask import abort, current_app, redirect, request, session
from flask_login import current_user
from markupsafe import Markup, escape

from .errors import SessionError

PROTECTED = 'protected'
AUTH_ONLY = 'auth_only'
PUBLIC = 'public'

UNSAFE_METHODS = ('POST', 'PUT', 'PATCH', 'DELETE')


def _matches_prefix(path, prefix):
    prefix = prefix.rstrip('/') or '/'
    return path == prefix or path.startswith(prefix + '/')


class RouteClassifier:
    def __init__(self, protected_prefixes=(), protected_patterns=(), auth_prefixes=()):
        self.protected_prefixes = tuple(protected_prefixes)
        self.protected_patterns = tuple(re.compile(p) for p in protected_patterns)
        self.auth_prefixes = tuple(auth_prefixes)

    @classmethod
    def from_config(cls, config):
        return cls(
            protected_prefixes=config.get('PROTECTED_ROUTE_PREFIXES', ()),
            protected_patterns=config.get('PROTECTED_ROUTE_PATTERNS', ()),
            auth_prefixes=config.get('AUTH_ROUTE_PREFIXES', ()),
        )

    def classify(self, path):
        path = path or '/'
        if any(_matches_prefix(path, prefix) for prefix in self.protected_prefixes):
            return PROTECTED
        if any(pattern.match(path) for pattern in self.protected_patterns):
            return PROTECTED
        if any(_matches_prefix(path, prefix) for prefix in self.auth_prefixes):
            return AUTH_ONLY
        return PUBLIC


def load_session_user():
    """Return the signed-in user or ``None``.

    A failing lookup (for example the user table is unreachable) raises
    ``SessionError`` so the guard can log it and carry on as anonymous.
    """
    try:
        user = current_user._get_current_object()
    except Exception as exc:
        raise SessionError('Failed to load the current session.') from exc
    if user is None or not getattr(user, 'is_authenticated', False):
        return None
    return user


def login_redirect_url(path):
    login_path = current_app.config.get('LOGIN_PATH', '/login')
    return f'{login_path}?{urlencode({"redirectTo": path})}'


class SessionGuard:
    def __init__(self, classifier):
        self.classifier = classifier

    def __call__(self):
        path = request.path
        route_class = self.classifier.classify(path)
        if route_class == PUBLIC:
            return None

        try:
            user = load_session_user()
        except SessionError:
            current_app.logger.exception(f'Session lookup failed for {path}; treating as anonymous.')
            user = None

        if route_class == PROTECTED:
            if user is None:
                return redirect(login_redirect_url(path))
            # Sliding expiry: touching the session re-issues the cookie.
            session.permanent = True
            session.modified = True
            return None

        if user is not None:
            return redirect(current_app.config.get('AUTHENTICATED_LANDING_PATH', '/dashboard'))
        return None


def get_csrf_token():
    token = session.get('_csrf_token')
    if not token:
        token = secrets.token_urlsafe(32)
        session['_csrf_token'] = token
    return token


def csrf_input():
    token = get_csrf_token()
    return Markup(f'<input type="hidden" name="_csrf_token" value="{escape(token)}">')  # nosec B704


def enforce_csrf():
    if request.method not in UNSAFE_METHODS:
        return None
    if request.endpoint in current_app.config.get('CSRF_EXEMPT_ENDPOINTS', ()):
        return None
    expected = session.get('_csrf_token')
    provided = request.form.get('_csrf_token') or request.headers.get('X-CSRF-Token')
    if not expected or not provided or not secrets.compare_digest(expected, provided):
        abort(400, description='Invalid or missing CSRF token.')
    return None


class RequestPipeline:
    """Ordered ``before_request`` steps; the first step to return a response wins."""

    def __init__(self, steps=()):
        self.steps = list(steps)

    def add(self, step):
        self.steps.append(step)
        return step

    def __call__(self):
        for step in self.steps:
            response = step()
            if response is not None:
                return response
        return None


def init_request_pipeline(app):
    pipeline = RequestPipeline([
        SessionGuard(RouteClassifier.from_config(app.config)),
        enforce_csrf,
    ])
    app.before_request(pipeline)
    app.extensions['request_pipeline'] = pipeline
    return pipeline
