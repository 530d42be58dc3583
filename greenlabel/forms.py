"""Form schemas, one per submission kind.

Every schema declares its exact field set. Values are normalized by filters
and by the validators in ``validators.py``; ``form.errors`` collects every
failing field so the caller can render all of them at once.
"""
import os

import bleach
from flask import current_app
from flask_wtf import FlaskForm
from flask_wtf.file import FileField
from PIL import Image, UnidentifiedImageError
from wtforms import BooleanField, DateField, IntegerField, PasswordField, StringField, TextAreaField
from wtforms.validators import (
    AnyOf,
    DataRequired,
    EqualTo,
    Length,
    NumberRange,
    Optional,
    Regexp,
    StopValidation,
)

from . import validators as v
from .models import NEWSLETTER_FREQUENCIES

TRANSPORT_FIELDS = frozenset({'_csrf_token', 'cf-turnstile-response'})


def _strip(value):
    return value.strip() if isinstance(value, str) else value


def _strip_html(value):
    if not isinstance(value, str):
        return value
    return bleach.clean(value, tags=[], attributes={}, strip=True).strip()


def _title_case_words(value):
    if not isinstance(value, str):
        return value
    return ' '.join(word[:1].upper() + word[1:].lower() for word in value.split())


def file_size(storage):
    stream = getattr(storage, 'stream', None)
    if stream is None:
        return 0
    position = stream.tell()
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(position)
    return size


def _has_upload(storage):
    return bool(storage and getattr(storage, 'filename', ''))


class EmailAddress:
    def __init__(self, check_disposable=False):
        self.check_disposable = check_disposable

    def __call__(self, form, field):
        domains = current_app.config.get('DISPOSABLE_EMAIL_DOMAINS', ()) if self.check_disposable else ()
        try:
            field.data = v.validate_email(field.data, domains)
        except v.FieldError as exc:
            raise StopValidation(exc.message)


class PhoneNumber:
    def __init__(self, required=False):
        self.required = required

    def __call__(self, form, field):
        try:
            field.data = v.validate_phone(field.data, required=self.required)
        except v.FieldError as exc:
            raise StopValidation(exc.message)


class PersonName:
    def __call__(self, form, field):
        try:
            field.data = v.validate_person_name(field.data, required=False)
        except v.FieldError as exc:
            raise StopValidation(exc.message)


class Honeypot:
    def __call__(self, form, field):
        try:
            v.validate_honeypot(field.data)
        except v.FieldError as exc:
            raise StopValidation(exc.message)


class NoSpamPhrases:
    def __init__(self, message='Message contains prohibited content'):
        self.message = message

    def __call__(self, form, field):
        spam_filter = current_app.extensions['spam_filter']
        if spam_filter.contains_spam_phrase(field.data):
            raise StopValidation(self.message)


class ResumeUpload:
    def __call__(self, form, field):
        storage = field.data
        if not _has_upload(storage):
            raise StopValidation('Please upload your resume')
        try:
            extension = v.validate_resume_upload(
                storage.filename,
                storage.mimetype,
                file_size(storage),
                current_app.config.get('MAX_RESUME_BYTES', 5 * 1024 * 1024),
            )
        except v.FieldError as exc:
            raise StopValidation(exc.message)
        if extension == 'pdf':
            position = storage.stream.tell()
            signature = storage.stream.read(5)
            storage.stream.seek(position)
            if signature != b'%PDF-':
                raise StopValidation('Invalid file type. Please upload a PDF, DOC, or DOCX file')


class PhotoUpload:
    def __call__(self, form, field):
        storage = field.data
        if not _has_upload(storage):
            field.data = None
            raise StopValidation()
        try:
            v.validate_photo_upload(
                storage.filename,
                storage.mimetype,
                file_size(storage),
                current_app.config.get('MAX_PHOTO_BYTES', 2 * 1024 * 1024),
            )
        except v.FieldError as exc:
            raise StopValidation(exc.message)
        try:
            with Image.open(storage.stream) as image:
                image.verify()
        except (UnidentifiedImageError, OSError, SyntaxError, Image.DecompressionBombError):
            raise StopValidation('File must be an image')
        finally:
            storage.stream.seek(0)


class SubmissionForm(FlaskForm):
    class Meta:
        # CSRF is enforced for every unsafe request by the app's guard pipeline.
        csrf = False

    honeypot_field = 'honeypot'
    email_field = 'email'
    spam_content_fields = ()

    def unexpected_fields(self, formdata):
        return sorted(
            key for key in formdata.keys()
            if key not in self._fields and key not in TRANSPORT_FIELDS
        )

    def honeypot_value(self):
        field = self._fields.get(self.honeypot_field)
        return (field.data or '') if field is not None else ''

    def honeypot_tripped(self):
        return v.is_honeypot_filled(self.honeypot_value())

    def email_domain(self):
        field = self._fields.get(self.email_field)
        return v.email_domain(field.data) if field is not None else ''

    def spam_content(self):
        parts = [self._fields[name].data or '' for name in self.spam_content_fields if name in self._fields]
        return '\n'.join(parts)

    def cleaned_data(self):
        return {
            name: field.data
            for name, field in self._fields.items()
            if name != self.honeypot_field
        }


def _honeypot():
    return StringField('Leave empty', validators=[Honeypot()], default='')


class QuoteForm(SubmissionForm):
    spam_content_fields = ('message',)

    name = StringField('Name', filters=[_strip], validators=[DataRequired('Name is required'), Length(max=100)])
    email = StringField('Email', validators=[EmailAddress()])
    phone = StringField('Phone', validators=[PhoneNumber()], default='')
    company = StringField('Company', filters=[_strip], validators=[Length(max=200)], default='')
    service_type = StringField('Service type', filters=[_strip], validators=[DataRequired('Service type is required'), Length(max=80)])
    location = StringField('Location', filters=[_strip], validators=[DataRequired('Location is required'), Length(max=200)])
    frequency = StringField('Frequency', filters=[_strip], validators=[Length(max=40)], default='')
    estimated_volume = StringField('Estimated volume', filters=[_strip], validators=[Length(max=80)], default='')
    message = TextAreaField('Message', filters=[_strip], validators=[
        DataRequired('Please provide more details about your requirements (at least 20 characters)'),
        Length(min=20, message='Please provide more details about your requirements (at least 20 characters)'),
        Length(max=5000),
    ])
    timeline = StringField('Timeline', filters=[_strip], validators=[Length(max=40)], default='')
    budget_range = StringField('Budget range', filters=[_strip], validators=[Length(max=40)], default='')
    marketing_consent = BooleanField('Marketing consent')
    honeypot = _honeypot()


class InquiryForm(SubmissionForm):
    spam_content_fields = ('message',)

    service_slug = StringField('Service', filters=[_strip], validators=[DataRequired('Service is required'), Length(max=200)])
    name = StringField('Name', filters=[_strip], validators=[DataRequired('Name is required'), Length(max=100)])
    email = StringField('Email', validators=[EmailAddress()])
    phone = StringField('Phone', validators=[PhoneNumber(required=True)])
    company = StringField('Company', filters=[_strip], validators=[Length(max=200)], default='')
    message = TextAreaField('Message', filters=[_strip], validators=[
        DataRequired('Please provide more details (at least 20 characters)'),
        Length(min=20, message='Please provide more details (at least 20 characters)'),
        Length(max=2000, message='Message must be less than 2000 characters'),
    ])
    location = StringField('Location', filters=[_strip], validators=[DataRequired('Location is required'), Length(max=200)])
    preferred_contact = StringField('Preferred contact', filters=[_strip], validators=[
        AnyOf(('email', 'phone', 'whatsapp'), message='Please choose email, phone or WhatsApp'),
    ], default='email')
    honeypot = _honeypot()


class QuickInquiryForm(SubmissionForm):
    spam_content_fields = ('message',)

    service_slug = StringField('Service', filters=[_strip], validators=[DataRequired('Service is required'), Length(max=200)])
    name = StringField('Name', filters=[_strip], validators=[DataRequired('Name is required'), Length(max=100)])
    email = StringField('Email', validators=[EmailAddress()])
    phone = StringField('Phone', validators=[PhoneNumber()], default='')
    message = TextAreaField('Message', filters=[_strip], validators=[Length(max=2000)], default='')
    honeypot = _honeypot()


class CommentForm(SubmissionForm):
    spam_content_fields = ('content',)

    post_slug = StringField('Post', filters=[_strip], validators=[DataRequired('Post is required'), Length(max=200)])
    parent_id = IntegerField('Reply to', validators=[Optional(), NumberRange(min=1)])
    name = StringField('Name', filters=[_strip], validators=[DataRequired('Name is required'), Length(max=100)])
    email = StringField('Email', validators=[EmailAddress()])
    website = StringField('Website', filters=[_strip], validators=[
        Optional(),
        Regexp(v.HTTP_URL_RE, message='Please enter a valid URL'),
        Length(max=300),
    ], default='')
    content = TextAreaField('Comment', filters=[_strip_html], validators=[
        DataRequired('Comment must be at least 3 characters'),
        Length(min=3, message='Comment must be at least 3 characters'),
        Length(max=1000, message='Comment must be less than 1000 characters'),
        NoSpamPhrases('Comment contains prohibited content'),
    ])
    honeypot = _honeypot()


class NewsletterForm(SubmissionForm):
    spam_content_fields = ('name',)

    email = StringField('Email', validators=[EmailAddress(check_disposable=True)])
    name = StringField('Name', filters=[_strip], validators=[Length(max=100), PersonName()], default='')
    frequency = StringField('Frequency', filters=[_strip], validators=[
        AnyOf(NEWSLETTER_FREQUENCIES, message='Please choose daily, weekly or monthly'),
    ], default='W')
    honeypot = _honeypot()


class ApplicationForm(SubmissionForm):
    spam_content_fields = ('cover_letter',)

    job_slug = StringField('Job', filters=[_strip], validators=[DataRequired('Job is required'), Length(max=200)])
    job_title = StringField('Job title', filters=[_strip], validators=[DataRequired('Job title is required'), Length(max=200)])
    first_name = StringField('First name', filters=[_strip], validators=[DataRequired('First name is required'), Length(max=100)])
    last_name = StringField('Last name', filters=[_strip], validators=[DataRequired('Last name is required'), Length(max=100)])
    email = StringField('Email', validators=[EmailAddress()])
    phone = StringField('Phone', validators=[PhoneNumber(required=True)])
    current_company = StringField('Current company', filters=[_strip], validators=[Length(max=200)], default='')
    current_position = StringField('Current position', filters=[_strip], validators=[Length(max=200)], default='')
    linkedin_profile = StringField('LinkedIn', filters=[_strip], validators=[
        Optional(),
        Regexp(v.LINKEDIN_URL_RE, message='Please enter a valid LinkedIn URL'),
        Length(max=300),
    ], default='')
    portfolio_url = StringField('Portfolio', filters=[_strip], validators=[
        Optional(),
        Regexp(v.HTTP_URL_RE, message='Please enter a valid URL'),
        Length(max=300),
    ], default='')
    cover_letter = TextAreaField('Cover letter', filters=[_strip], validators=[Length(max=5000)], default='')
    resume = FileField('Resume', validators=[ResumeUpload()])
    honeypot = _honeypot()


class ContactForm(SubmissionForm):
    spam_content_fields = ('subject',)

    full_name = StringField('Full name', filters=[_strip], validators=[
        DataRequired('Name must be at least 2 characters'),
        Length(min=2, max=100, message='Name must be between 2 and 100 characters'),
        Regexp(v.PERSON_NAME_RE, message='Name can only contain letters, spaces, hyphens, and apostrophes'),
    ])
    email = StringField('Email', validators=[EmailAddress()])
    phone = StringField('Phone', validators=[PhoneNumber()], default='')
    company = StringField('Company', filters=[_strip], validators=[Length(max=200)], default='')
    subject = StringField('Subject', filters=[_strip], validators=[DataRequired('Subject is required'), Length(max=300)])
    message = TextAreaField('Message', filters=[_strip], validators=[
        DataRequired('Message must be at least 20 characters'),
        Length(min=20, message='Message must be at least 20 characters'),
        Length(max=2000, message='Message must be less than 2000 characters'),
        NoSpamPhrases(),
    ])
    location = StringField('Location', filters=[_strip], validators=[Length(max=200)], default='')
    preferred_contact = StringField('Preferred contact', filters=[_strip], validators=[
        AnyOf(('email', 'phone', 'whatsapp'), message='Please choose email, phone or WhatsApp'),
    ], default='email')
    marketing_consent = BooleanField('Marketing consent')
    privacy_agreement = BooleanField('Privacy agreement', validators=[
        DataRequired('You must agree to the privacy policy'),
    ])
    honeypot = _honeypot()


class ProfileForm(SubmissionForm):
    honeypot_field = None
    email_field = None
    spam_content_fields = ('bio',)

    first_name = StringField('First name', filters=[_strip], validators=[DataRequired('First name is required'), Length(max=100)])
    last_name = StringField('Last name', filters=[_strip], validators=[Length(max=100)], default='')
    bio = TextAreaField('Bio', filters=[_strip], validators=[Length(max=500, message='Bio must be less than 500 characters')], default='')
    date_of_birth = DateField('Date of birth', validators=[Optional()], format='%Y-%m-%d')
    phone = StringField('Phone', validators=[PhoneNumber()], default='')
    location = StringField('Location', filters=[_strip], validators=[Length(max=120)], default='')
    photo = FileField('Photo', validators=[PhotoUpload()])


class ReviewForm(SubmissionForm):
    honeypot_field = None
    email_field = None
    spam_content_fields = ('title', 'comment')

    service_type = StringField('Service type', filters=[_strip], validators=[DataRequired('Service type is required'), Length(max=80)])
    service_name = StringField('Service name', filters=[_title_case_words], validators=[
        DataRequired('Service name is required'),
        Length(max=200),
    ])
    title = StringField('Title', filters=[_strip], validators=[DataRequired('Review title is required'), Length(max=200)])
    overall_rating = IntegerField('Overall rating', validators=[
        DataRequired('Rating is required'),
        NumberRange(min=1, max=5, message='Rating must be between 1 and 5'),
    ])
    quality_rating = IntegerField('Quality', validators=[DataRequired('Rating is required'), NumberRange(min=1, max=5)])
    value_rating = IntegerField('Value', validators=[DataRequired('Rating is required'), NumberRange(min=1, max=5)])
    customer_service_rating = IntegerField('Customer service', validators=[
        DataRequired('Rating is required'),
        NumberRange(min=1, max=5),
    ])
    comment = TextAreaField('Comment', filters=[_strip_html], validators=[
        DataRequired('Please write at least 10 characters'),
        Length(min=10, message='Please write at least 10 characters'),
        Length(max=2000),
    ])
    would_recommend = BooleanField('Would recommend')


class RegisterForm(SubmissionForm):
    honeypot_field = None

    username = StringField('Username', filters=[_strip], validators=[
        DataRequired('Username must be at least 3 characters'),
        Length(min=3, message='Username must be at least 3 characters'),
        Length(max=30, message='Username must be less than 30 characters'),
        Regexp(r'^[A-Za-z0-9_]+$', message='Username can only contain letters, numbers, and underscores'),
    ])
    first_name = StringField('First name', filters=[_strip], validators=[DataRequired('First name is required'), Length(max=100)])
    email = StringField('Email', validators=[EmailAddress()])
    password = PasswordField('Password', validators=[
        DataRequired('Password must be at least 8 characters'),
        Length(min=8, message='Password must be at least 8 characters'),
        Regexp(r'.*[A-Za-z]', message='Password must contain at least one letter'),
        Regexp(r'.*[0-9]', message='Password must contain at least one number'),
    ])
    password2 = PasswordField('Confirm password', validators=[
        DataRequired('Please confirm your password'),
        EqualTo('password', message='Passwords do not match'),
    ])


class LoginForm(SubmissionForm):
    honeypot_field = None

    email = StringField('Email', validators=[EmailAddress()])
    password = PasswordField('Password', validators=[DataRequired('Password is required')])

