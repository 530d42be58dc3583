"""Exceptions raised by the submission pipeline and the session guard.

Everything here is converted into a ``SubmissionResult`` or a redirect before
it reaches a route handler; none of these are meant to propagate to Flask.
"""


class SubmissionError(Exception):
    """Base class for a rejected form submission."""


class ValidationFailed(SubmissionError):
    """One or more fields failed schema validation.

    Attributes:
        field_errors: mapping of field name to a list of messages.
    """

    def __init__(self, field_errors):
        super().__init__('Submission failed validation.')
        self.field_errors = field_errors


class RateLimitExceeded(SubmissionError):
    def __init__(self, kind, retry_after_seconds):
        super().__init__(f'Rate limit exceeded for {kind}.')
        self.kind = kind
        self.retry_after_seconds = retry_after_seconds


class RateLimitUnavailable(SubmissionError):
    """The rate-limit store could not be reached. Submissions are rejected."""


class SpamRejected(SubmissionError):
    def __init__(self, reason):
        super().__init__(f'Submission rejected as spam ({reason}).')
        self.reason = reason


class PersistenceError(SubmissionError):
    pass


class NotificationError(Exception):
    pass


class SessionError(Exception):
    """The current-user lookup failed; callers treat this as no session."""


class SubmissionRejected(SubmissionError):
    """A well-formed submission that conflicts with stored state.

    Examples are an already-active newsletter address or a second review of
    the same service. The message is safe to show to the submitter.
    """

    def __init__(self, message, field_errors=None, status_code=409):
        super().__init__(message)
        self.message = message
        self.field_errors = field_errors or {}
        self.status_code = status_code
