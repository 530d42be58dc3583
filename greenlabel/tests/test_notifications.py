import json

from greenlabel import notifications
from greenlabel.notifications import EmailResult, render_lines, send_admin_notification, send_email
from greenlabel.tasks import NotificationQueue

from conftest import build_test_app


class FakeResponse:
    def __init__(self, body):
        self._body = body

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_send_email_without_provider_reports_failure(app):
    with app.app_context():
        result = send_email("someone@example.com", "Hello", "<p>Hi</p>")
    assert result == EmailResult(False, None, "Email service not configured")


def test_send_email_without_recipients_is_refused(app):
    with app.app_context():
        assert send_email("", "Hello", "<p>Hi</p>").error == "No recipients"


def test_render_lines_escapes_submitted_text():
    html = str(render_lines(["Name: <script>x</script>", "Line two"]))
    assert "<script>" not in html
    assert "&lt;script&gt;" in html
    assert "<br>" in html


def test_resend_is_used_when_configured(app, monkeypatch):
    captured = {}

    def fake_urlopen(req, timeout):
        captured["url"] = req.full_url
        captured["payload"] = json.loads(req.data.decode("utf-8"))
        captured["timeout"] = timeout
        return FakeResponse(b'{"id": "email-1"}')

    monkeypatch.setattr(notifications.urllib.request, "urlopen", fake_urlopen)
    app.config.update(RESEND_API_KEY="re_test", ADMIN_EMAIL="ops@example.com")

    with app.app_context():
        result = send_admin_notification("New Quote\r\nBcc: victim@example.com", ["Hello"], reply_to="jane@example.com")

    assert result == EmailResult(True, "email-1", None)
    assert captured["url"] == notifications.RESEND_API_URL
    assert captured["payload"]["to"] == ["ops@example.com"]
    assert captured["payload"]["reply_to"] == "jane@example.com"
    assert "\n" not in captured["payload"]["subject"]
    assert captured["payload"]["subject"].startswith("[Green Label] New Quote")


def test_provider_http_error_is_reported_not_raised(app, monkeypatch):
    def failing_urlopen(req, timeout):
        raise OSError("connection reset")

    monkeypatch.setattr(notifications.urllib.request, "urlopen", failing_urlopen)
    app.config.update(RESEND_API_KEY="re_test")

    with app.app_context():
        result = send_email("someone@example.com", "Hello", "<p>Hi</p>")

    assert result.success is False
    assert result.error == "Failed to send email"


def test_inline_queue_runs_immediately_and_swallows_failures(app):
    queue = app.extensions["notification_queue"]
    assert not queue.is_async

    def boom():
        raise RuntimeError("provider down")

    with app.app_context():
        assert queue.dispatch("ok", lambda: EmailResult(True, "1", None)) is True
        assert queue.dispatch("failed-result", lambda: EmailResult(False, None, "nope")) is False
        assert queue.dispatch("raised", boom) is False


def test_async_queue_runs_off_the_request_thread(tmp_path):
    app = build_test_app(tmp_path, {"NOTIFICATIONS_ASYNC": True, "NOTIFICATION_WORKERS": 1})
    queue = app.extensions["notification_queue"]
    assert isinstance(queue, NotificationQueue)
    assert queue.is_async

    with app.app_context():
        future = queue.dispatch("async", lambda: EmailResult(True, "1", None))
    assert future.result(timeout=5) is True
    queue.shutdown()
