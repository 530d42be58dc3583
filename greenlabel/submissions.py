"""Form action dispatcher.

Every public form goes through the same gates, in order::

    received -> validated -> rate checked -> spam checked -> persisted -> notified

A submission that fails a gate is rejected and nothing is stored. Each form
kind is a ``FormAction`` subclass that supplies its schema, how the accepted
data is persisted, and which notifications follow.
"""
import os

from flask import current_app, request
from slugify import slugify
from sqlalchemy.exc import IntegrityError
from werkzeug.datastructures import MultiDict
from werkzeug.utils import secure_filename

from . import notifications
from .errors import (
    PersistenceError,
    RateLimitExceeded,
    RateLimitUnavailable,
    SpamRejected,
    SubmissionRejected,
    ValidationFailed,
)
from .forms import (
    ApplicationForm,
    CommentForm,
    ContactForm,
    InquiryForm,
    NewsletterForm,
    ProfileForm,
    QuickInquiryForm,
    QuoteForm,
    RegisterForm,
    ReviewForm,
)
from .models import (
    db,
    BlogComment,
    ContactSubmission,
    JobApplication,
    NewsletterSubscriber,
    QuoteRequest,
    Review,
    SecurityEvent,
    ServiceInquiry,
    User,
    COMMENT_STATUS_PENDING,
    generate_unsubscribe_token,
)
from .rate_limit import check_rate_limit, retry_after_minutes
from .spam import REASON_CHALLENGE_FAILED, REASON_HONEYPOT, verify_turnstile_token
from .tasks import dispatch_notification
from .utils import clean_text, get_request_ip, get_user_agent, utc_now_naive

STAGE_RECEIVED = 'received'
STAGE_VALIDATED = 'validated'
STAGE_RATE_CHECKED = 'rate_checked'
STAGE_SPAM_CHECKED = 'spam_checked'
STAGE_PERSISTED = 'persisted'
STAGE_NOTIFIED = 'notified'
STAGE_REJECTED = 'rejected'

VALIDATION_MESSAGE = 'Please fix the errors below.'
SPAM_MESSAGE = 'We could not process your submission.'
UNAVAILABLE_MESSAGE = 'Submissions are temporarily unavailable. Please try again shortly.'
LOGIN_REQUIRED_MESSAGE = 'You must be logged in.'
QUICK_INQUIRY_PLACEHOLDER = 'Quick inquiry - no message provided'

SERVICE_TYPE_LABELS = {
    'medical_waste': 'Medical Waste Management',
    'oil_gas_waste': 'Oil & Gas Waste Management',
    'liquid_waste': 'Liquid Waste Management',
    'retail_waste': 'Retail Waste Management',
    'equipment_supply': 'Equipment Supply',
    'training': 'Training & Consultation',
    'logistics': 'Transport & Logistics',
    'consulting': 'Environmental Consulting',
    'other': 'Other Services',
}


class SubmissionResult:
    def __init__(self, success, message, field_errors=None, status_code=200, stage=STAGE_NOTIFIED, record=None,
                 retry_after_seconds=None):
        self.success = success
        self.message = message
        self.field_errors = field_errors or {}
        self.status_code = status_code
        self.stage = stage
        self.record = record
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self):
        payload = {'success': self.success, 'message': self.message}
        if self.field_errors:
            payload['fieldErrors'] = self.field_errors
        return payload

    def __repr__(self):
        return f'<SubmissionResult success={self.success} stage={self.stage} status={self.status_code}>'


def generic_failure_message():
    phone = current_app.config.get('SUPPORT_PHONE')
    if phone:
        return f'Something went wrong. Please try again or call us at {phone}.'
    return 'Something went wrong. Please try again.'


def record_security_event(event_type, scope, details=''):
    try:
        event = SecurityEvent(
            event_type=clean_text(event_type, 40),
            scope=clean_text(scope, 80),
            ip=get_request_ip(),
            path=clean_text(request.path, 255) or '/',
            method=clean_text(request.method, 10) or 'GET',
            user_agent=get_user_agent(),
            details=clean_text(details, 2000),
        )
        db.session.add(event)
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception('Failed to persist security event.')


def as_formdata(raw):
    if isinstance(raw, MultiDict):
        return raw
    return MultiDict(raw or {})


class FormAction:
    """One submission kind. Subclasses set ``kind``/``form_class`` and implement ``persist``."""

    kind = None
    form_class = None
    rate_limit_kind = None
    requires_user = False
    spam_checked = True
    challenge_required = True

    def __init__(self, user=None):
        self.user = user

    def submit(self, raw):
        formdata = as_formdata(raw)
        if self.requires_user and not getattr(self.user, 'is_authenticated', False):
            return SubmissionResult(False, LOGIN_REQUIRED_MESSAGE, status_code=401, stage=STAGE_REJECTED)
        try:
            form, data = self.validate(formdata)
            self.check_rate_limit()
            if self.spam_checked:
                self.check_spam(form, formdata)
            record = self.persist_guarded(data)
        except ValidationFailed as exc:
            return SubmissionResult(False, VALIDATION_MESSAGE, exc.field_errors, 400, STAGE_REJECTED)
        except RateLimitExceeded as exc:
            return SubmissionResult(
                False,
                f'Too many requests. Please try again in {retry_after_minutes(exc.retry_after_seconds)} minutes.',
                status_code=429,
                stage=STAGE_REJECTED,
                retry_after_seconds=exc.retry_after_seconds,
            )
        except RateLimitUnavailable:
            current_app.logger.error(f'Rate limiter unavailable; rejecting {self.kind} submission.')
            return SubmissionResult(False, UNAVAILABLE_MESSAGE, status_code=503, stage=STAGE_REJECTED)
        except SpamRejected as exc:
            current_app.logger.info(f'Rejected {self.kind} submission as spam ({exc.reason}).')
            return SubmissionResult(False, SPAM_MESSAGE, status_code=400, stage=STAGE_REJECTED)
        except SubmissionRejected as exc:
            return SubmissionResult(False, exc.message, exc.field_errors, exc.status_code, STAGE_REJECTED)
        except PersistenceError:
            return SubmissionResult(False, generic_failure_message(), status_code=500, stage=STAGE_REJECTED)

        stage = STAGE_PERSISTED
        if self.dispatch_notifications(record, data):
            stage = STAGE_NOTIFIED
        return SubmissionResult(True, self.success_message(record, data), stage=stage, record=record)

    def validate(self, formdata):
        form = self.form_class(formdata=formdata)
        valid = form.validate()
        if form.honeypot_tripped():
            record_security_event('spam_rejected', self.kind, f'reason={REASON_HONEYPOT}')
            raise SpamRejected(REASON_HONEYPOT)
        field_errors = {name: list(messages) for name, messages in form.errors.items()}
        for name in form.unexpected_fields(formdata):
            field_errors[name] = ['Unexpected field.']
        if not valid or field_errors:
            raise ValidationFailed(field_errors)
        return form, form.cleaned_data()

    def check_rate_limit(self):
        kind = self.rate_limit_kind or self.kind
        result = check_rate_limit(kind)
        if not result.allowed:
            limit = current_app.config.get('RATE_LIMITS', {}).get(kind)
            record_security_event('rate_limited', kind, f'limit={limit} retry_after={result.retry_after_seconds}s')
            raise RateLimitExceeded(kind, result.retry_after_seconds)

    def check_spam(self, form, formdata):
        token = clean_text(formdata.get('cf-turnstile-response', ''), 4096)
        if self.challenge_required and not verify_turnstile_token(token, get_request_ip()):
            record_security_event('turnstile_failed', self.kind, 'missing_or_invalid_turnstile_token')
            raise SpamRejected(REASON_CHALLENGE_FAILED)
        verdict = current_app.extensions['spam_filter'].classify(
            form.spam_content(),
            form.honeypot_value(),
            form.email_domain(),
        )
        if verdict.is_spam:
            record_security_event('spam_rejected', self.kind, f'reason={verdict.reason}')
            raise SpamRejected(verdict.reason)

    def persist_guarded(self, data):
        try:
            return self.persist(data)
        except SubmissionRejected:
            db.session.rollback()
            raise
        except Exception as exc:
            db.session.rollback()
            current_app.logger.exception(f'Failed to persist {self.kind} submission.')
            raise PersistenceError(str(exc)) from exc

    def persist(self, data):
        raise NotImplementedError

    def save(self, record):
        db.session.add(record)
        db.session.commit()
        return record

    def notifications(self, record, data):
        """Return ``(label, callable, args)`` tuples to run after persistence."""
        return ()

    def dispatch_notifications(self, record, data):
        pending = list(self.notifications(record, data))
        if not pending:
            return False
        # Detach so worker threads can read the committed row without this session.
        db.session.refresh(record)
        db.session.expunge(record)
        for label, func, args in pending:
            dispatch_notification(label, func, *args)
        return True

    def success_message(self, record, data):
        return 'Thank you! Your submission has been received.'

    def request_meta(self):
        return {'ip_address': get_request_ip(), 'user_agent': get_user_agent()}


class QuoteAction(FormAction):
    kind = 'quote'
    form_class = QuoteForm

    def persist(self, data):
        meta = self.request_meta()
        return self.save(QuoteRequest(
            name=data['name'],
            email=data['email'],
            phone=data['phone'] or None,
            company=data['company'] or None,
            service_type=data['service_type'],
            location=data['location'],
            frequency=data['frequency'] or None,
            estimated_volume=data['estimated_volume'] or None,
            message=data['message'],
            timeline=data['timeline'] or None,
            budget_range=data['budget_range'] or None,
            marketing_consent=bool(data['marketing_consent']),
            ip_address=meta['ip_address'],
            user_agent=meta['user_agent'],
        ))

    def notifications(self, record, data):
        label = SERVICE_TYPE_LABELS.get(data['service_type'], data['service_type'])
        return [('quote_admin', notifications.notify_quote_admin, (record, label))]

    def success_message(self, record, data):
        return (
            f"Thank you {data['name']}! Your quote request has been submitted successfully. "
            "We will review your requirements and get back to you within 24 hours."
        )


class InquiryAction(FormAction):
    kind = 'inquiry'
    form_class = InquiryForm

    def persist(self, data):
        return self.save(ServiceInquiry(
            service_slug=data['service_slug'],
            name=data['name'],
            email=data['email'],
            phone=data['phone'],
            company=data['company'] or None,
            message=data['message'],
            location=data['location'],
            preferred_contact=data['preferred_contact'] or 'email',
            ip_address=get_request_ip(),
        ))

    def notifications(self, record, data):
        return [('inquiry_admin', notifications.notify_inquiry_admin, (record,))]

    def success_message(self, record, data):
        return 'Your inquiry has been submitted successfully! We will contact you soon.'


class QuickInquiryAction(InquiryAction):
    kind = 'quick_inquiry'
    form_class = QuickInquiryForm
    rate_limit_kind = 'inquiry'

    def persist(self, data):
        return self.save(ServiceInquiry(
            service_slug=data['service_slug'],
            name=data['name'],
            email=data['email'],
            phone=data['phone'] or None,
            message=data['message'] or QUICK_INQUIRY_PLACEHOLDER,
            location='',
            ip_address=get_request_ip(),
        ))

    def success_message(self, record, data):
        return 'Your inquiry has been submitted! We will contact you soon.'


class CommentAction(FormAction):
    kind = 'comment'
    form_class = CommentForm

    def persist(self, data):
        parent_id = data.get('parent_id')
        if parent_id and not db.session.get(BlogComment, parent_id):
            raise SubmissionRejected(
                'The comment you are replying to no longer exists.',
                {'parent_id': ['Unknown comment']},
                status_code=400,
            )
        meta = self.request_meta()
        return self.save(BlogComment(
            post_slug=data['post_slug'],
            parent_id=parent_id or None,
            name=data['name'],
            email=data['email'],
            website=data['website'] or None,
            content=data['content'],
            status=COMMENT_STATUS_PENDING,
            ip_address=meta['ip_address'],
            user_agent=meta['user_agent'],
        ))

    def success_message(self, record, data):
        return 'Your comment has been submitted and is awaiting moderation.'


class NewsletterAction(FormAction):
    kind = 'newsletter'
    form_class = NewsletterForm

    def persist(self, data):
        subscriber = NewsletterSubscriber.query.filter_by(email=data['email']).first()
        if subscriber is not None and subscriber.is_active:
            raise SubmissionRejected("You're already subscribed to our newsletter!", status_code=409)
        if subscriber is not None:
            subscriber.is_active = True
            subscriber.name = data['name'] or None
            subscriber.frequency = data['frequency']
            subscriber.updated_at = utc_now_naive()
            db.session.commit()
            return subscriber
        return self.save(NewsletterSubscriber(
            email=data['email'],
            name=data['name'] or None,
            frequency=data['frequency'],
            unsubscribe_token=generate_unsubscribe_token(),
        ))

    def notifications(self, record, data):
        return [
            ('newsletter_welcome', notifications.notify_newsletter_welcome, (record,)),
            ('newsletter_admin', notifications.notify_newsletter_admin, (record,)),
        ]

    def success_message(self, record, data):
        return 'Thank you for subscribing! You should receive a confirmation email shortly.'


class ApplicationAction(FormAction):
    kind = 'application'
    form_class = ApplicationForm

    def store_resume(self, job_slug, storage):
        folder_name = slugify(job_slug)[:80] or 'general'
        target_dir = os.path.join(current_app.config['UPLOAD_FOLDER'], 'resumes', folder_name)
        os.makedirs(target_dir, exist_ok=True)
        filename = secure_filename(storage.filename) or 'resume'
        stamp = utc_now_naive().strftime('%Y%m%d%H%M%S%f')
        stored_name = f'{stamp}-{filename}'[:180]
        storage.save(os.path.join(target_dir, stored_name))
        return f'resumes/{folder_name}/{stored_name}'

    def persist(self, data):
        relative_path = self.store_resume(data['job_slug'], data['resume'])
        meta = self.request_meta()
        try:
            return self.save(JobApplication(
                job_slug=data['job_slug'],
                first_name=data['first_name'],
                last_name=data['last_name'],
                email=data['email'],
                phone=data['phone'],
                resume_path=relative_path,
                cover_letter=data['cover_letter'] or None,
                current_company=data['current_company'] or None,
                current_position=data['current_position'] or None,
                linkedin_profile=data['linkedin_profile'] or None,
                portfolio_url=data['portfolio_url'] or None,
                ip_address=meta['ip_address'],
                user_agent=meta['user_agent'],
            ))
        except Exception:
            # No row references the upload, so drop it.
            full_path = os.path.join(current_app.config['UPLOAD_FOLDER'], relative_path)
            if os.path.exists(full_path):
                os.remove(full_path)
            raise

    def notifications(self, record, data):
        return [
            ('application_confirmation', notifications.notify_application_confirmation, (record, data['job_title'])),
            ('application_admin', notifications.notify_application_admin, (record, data['job_title'])),
        ]

    def success_message(self, record, data):
        return (
            f"Your application for {data['job_title']} has been submitted successfully! "
            "We will review your application and contact you soon."
        )


class ContactAction(FormAction):
    kind = 'contact'
    form_class = ContactForm

    def persist(self, data):
        meta = self.request_meta()
        return self.save(ContactSubmission(
            full_name=data['full_name'],
            email=data['email'],
            phone=data['phone'] or None,
            company=data['company'] or None,
            subject=data['subject'],
            message=data['message'],
            location=data['location'] or None,
            preferred_contact=data['preferred_contact'] or 'email',
            marketing_consent=bool(data['marketing_consent']),
            ip_address=meta['ip_address'],
            user_agent=meta['user_agent'],
        ))

    def notifications(self, record, data):
        return [
            ('contact_confirmation', notifications.notify_contact_confirmation, (record,)),
            ('contact_admin', notifications.notify_contact_admin, (record,)),
        ]

    def success_message(self, record, data):
        return (
            f"Thank you, {data['full_name']}! Your message has been sent successfully. "
            "We'll get back to you within 24 hours."
        )


class ProfileAction(FormAction):
    kind = 'profile'
    form_class = ProfileForm
    requires_user = True
    challenge_required = False

    def store_photo(self, storage):
        """Save the upload under a temporary name; return ``(temp_path, relative_path)``."""
        target_dir = os.path.join(current_app.config['UPLOAD_FOLDER'], 'avatars')
        os.makedirs(target_dir, exist_ok=True)
        extension = secure_filename(storage.filename).rsplit('.', 1)[-1].lower()
        stored_name = f'{self.user.id}.{extension}'
        stamp = utc_now_naive().strftime('%Y%m%d%H%M%S%f')
        temp_path = os.path.join(target_dir, f'.{stamp}-{stored_name}.tmp')
        storage.save(temp_path)
        return temp_path, f'avatars/{stored_name}'

    def persist(self, data):
        user = self.user
        previous_photo = user.photo_path
        temp_path = None
        if data.get('photo') is not None:
            temp_path, user.photo_path = self.store_photo(data['photo'])
        user.first_name = data['first_name']
        user.last_name = data['last_name'] or None
        user.bio = data['bio'] or None
        user.date_of_birth = data['date_of_birth']
        user.phone = data['phone'] or None
        user.location = data['location'] or None
        try:
            db.session.commit()
        except Exception:
            if temp_path and os.path.exists(temp_path):
                os.remove(temp_path)
            raise

        if temp_path:
            upload_root = current_app.config['UPLOAD_FOLDER']
            os.replace(temp_path, os.path.join(upload_root, user.photo_path))
            if previous_photo and previous_photo != user.photo_path:
                stale = os.path.join(upload_root, previous_photo)
                if os.path.exists(stale):
                    os.remove(stale)
        return user

    def success_message(self, record, data):
        return 'Profile updated successfully!'


class ReviewAction(FormAction):
    kind = 'review'
    form_class = ReviewForm
    requires_user = True
    challenge_required = False

    def __init__(self, user=None, review_id=None):
        super().__init__(user=user)
        self.review_id = review_id

    def _duplicate_exists(self, data, exclude_id=None):
        query = Review.query.filter_by(
            user_id=self.user.id,
            service_type=data['service_type'],
            service_name=data['service_name'],
        )
        if exclude_id is not None:
            query = query.filter(Review.id != exclude_id)
        return db.session.query(query.exists()).scalar()

    def _apply(self, review, data):
        for name in (
            'service_type',
            'service_name',
            'title',
            'overall_rating',
            'quality_rating',
            'value_rating',
            'customer_service_rating',
            'comment',
        ):
            setattr(review, name, data[name])
        review.would_recommend = bool(data['would_recommend'])

    def persist(self, data):
        duplicate = SubmissionRejected('You have already reviewed this service. Please edit your existing review.')
        if self.review_id is None:
            if self._duplicate_exists(data):
                raise duplicate
            review = Review(user_id=self.user.id)
            db.session.add(review)
        else:
            review = Review.query.filter_by(id=self.review_id, user_id=self.user.id).first()
            if review is None:
                raise SubmissionRejected('Review not found.', status_code=404)
            if self._duplicate_exists(data, exclude_id=review.id):
                raise duplicate
        self._apply(review, data)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise duplicate
        return review

    def success_message(self, record, data):
        if self.review_id is None:
            return 'Thank you! Your review has been published.'
        return 'Your review has been updated.'


class RegisterAction(FormAction):
    kind = 'register'
    form_class = RegisterForm
    rate_limit_kind = 'auth'
    challenge_required = False

    def persist(self, data):
        if User.query.filter_by(username=data['username']).first():
            raise SubmissionRejected(
                'Username is already taken.',
                {'username': ['This username is already taken']},
            )
        if User.query.filter_by(email=data['email']).first():
            raise SubmissionRejected(
                'This email is already registered.',
                {'email': ['This email is already registered']},
            )
        user = User(username=data['username'], first_name=data['first_name'], email=data['email'])
        user.set_password(data['password'])
        return self.save(user)

    def success_message(self, record, data):
        return 'Account created. Please sign in.'


def delete_review(user, review_id):
    if not getattr(user, 'is_authenticated', False):
        return SubmissionResult(False, LOGIN_REQUIRED_MESSAGE, status_code=401, stage=STAGE_REJECTED)
    review = Review.query.filter_by(id=review_id, user_id=user.id).first()
    if review is None:
        return SubmissionResult(False, 'Review not found.', status_code=404, stage=STAGE_REJECTED)
    try:
        db.session.delete(review)
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception(f'Failed to delete review {review_id}.')
        return SubmissionResult(False, generic_failure_message(), status_code=500, stage=STAGE_REJECTED)
    return SubmissionResult(True, 'Your review has been deleted.', stage=STAGE_PERSISTED)


FORM_ACTIONS = {
    action.kind: action
    for action in (
        QuoteAction,
        InquiryAction,
        QuickInquiryAction,
        CommentAction,
        NewsletterAction,
        ApplicationAction,
        ContactAction,
        ProfileAction,
        ReviewAction,
    )
}


def submit_form(kind, raw, user=None):
    action_class = FORM_ACTIONS.get(kind)
    if action_class is None:
        raise KeyError(f'Unknown form kind: {kind}')
    return action_class(user=user).submit(raw)
