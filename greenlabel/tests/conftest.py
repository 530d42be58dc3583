import uuid

import pytest

from greenlabel import create_app
from greenlabel import notifications
from greenlabel.models import db, User
from greenlabel.notifications import EmailResult

CSRF_TOKEN = "test-csrf-token"
REVALIDATE_SECRET = "test-revalidate-secret"


def build_test_app(tmp_path, overrides=None):
    db_path = tmp_path / f"site_test_{uuid.uuid4().hex[:8]}.db"
    upload_path = tmp_path / f"uploads_{uuid.uuid4().hex[:8]}"

    config = {
        "TESTING": True,
        "SECRET_KEY": "test-secret-key",
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
        "SQLALCHEMY_ENGINE_OPTIONS": {},
        "UPLOAD_FOLDER": str(upload_path),
        "TURNSTILE_SITE_KEY": "",
        "TURNSTILE_SECRET_KEY": "",
        "RATE_LIMIT_BACKEND": "memory",
        "NOTIFICATIONS_ASYNC": False,
        "CMS_REVALIDATE_SECRET": REVALIDATE_SECRET,
        "RESEND_API_KEY": "",
        "MAILGUN_API_KEY": "",
        "SMTP_HOST": "",
        "SENTRY_DSN": "",
        "LOG_JSON": False,
    }
    if overrides:
        config.update(overrides)
    return create_app(config)


@pytest.fixture()
def app(tmp_path):
    return build_test_app(tmp_path)


@pytest.fixture()
def client(app):
    return app.test_client()


def set_csrf_token(client, token=CSRF_TOKEN):
    with client.session_transaction() as sess:
        sess["_csrf_token"] = token
    return token


@pytest.fixture()
def csrf_client(client):
    set_csrf_token(client)
    return client


def post_json(client, path, payload):
    return client.post(path, json=payload, headers={"X-CSRF-Token": CSRF_TOKEN})


@pytest.fixture()
def sent_emails(monkeypatch):
    """Record every admin alert and user confirmation instead of sending it."""
    sent = []

    def fake_admin(subject, lines, reply_to=None):
        sent.append({"kind": "admin", "subject": subject, "lines": list(lines), "reply_to": reply_to})
        return EmailResult(True, f"admin-{len(sent)}", None)

    def fake_user(to, subject, lines):
        sent.append({"kind": "user", "to": to, "subject": subject, "lines": list(lines)})
        return EmailResult(True, f"user-{len(sent)}", None)

    monkeypatch.setattr(notifications, "send_admin_notification", fake_admin)
    monkeypatch.setattr(notifications, "send_user_confirmation", fake_user)
    return sent


def create_user(app, email="jane@example.com", password="secret123", username="jane"):
    with app.app_context():
        user = User(username=username, email=email, first_name="Jane")
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user.id


def login(client, email="jane@example.com", password="secret123", redirect_to=None):
    set_csrf_token(client)
    data = {"_csrf_token": CSRF_TOKEN, "email": email, "password": password}
    if redirect_to:
        data["redirectTo"] = redirect_to
    response = client.post("/login", data=data, follow_redirects=False)
    # Signing in clears the session, so issue a fresh token for later posts.
    set_csrf_token(client)
    return response
