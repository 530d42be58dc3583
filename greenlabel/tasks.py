"""Detached execution for side effects that must not hold up a response."""
from concurrent.futures import ThreadPoolExecutor

from flask import current_app

from .errors import NotificationError


class NotificationQueue:
    """Runs notification callables off the request path.

    With ``NOTIFICATIONS_ASYNC`` disabled the callables run inline, which is
    what the tests use. Either way a failure is logged and swallowed: by the
    time a notification is queued the record it describes is already stored.
    """

    def __init__(self, app=None):
        self._executor = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        if app.config.get('NOTIFICATIONS_ASYNC', True):
            self._executor = ThreadPoolExecutor(
                max_workers=app.config.get('NOTIFICATION_WORKERS', 4),
                thread_name_prefix='notify',
            )
        app.extensions['notification_queue'] = self

    @property
    def is_async(self):
        return self._executor is not None

    def dispatch(self, label, func, *args, **kwargs):
        app = current_app._get_current_object()
        if self._executor is None:
            return self._run(app, label, func, args, kwargs)
        return self._executor.submit(self._run, app, label, func, args, kwargs)

    @staticmethod
    def _run(app, label, func, args, kwargs):
        with app.app_context():
            try:
                result = func(*args, **kwargs)
                if result is not None and not getattr(result, 'success', True):
                    raise NotificationError(getattr(result, 'error', None) or 'delivery failed')
            except NotificationError as exc:
                app.logger.warning(f'Notification "{label}" was not delivered: {exc}')
                return False
            except Exception:
                app.logger.exception(f'Notification "{label}" failed.')
                return False
            app.logger.info(f'Notification "{label}" delivered.')
            return True

    def shutdown(self, wait=True):
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


def dispatch_notification(label, func, *args, **kwargs):
    return current_app.extensions['notification_queue'].dispatch(label, func, *args, **kwargs)
