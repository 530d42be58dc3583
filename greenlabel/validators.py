"""Pure field validators shared by the form schemas.

Each ``validate_*`` function returns the normalized value or raises
``FieldError`` carrying a machine-readable code and a display message.
"""
import os
import re

REQUIRED = 'required'
INVALID_FORMAT = 'invalid_format'
DISPOSABLE_DOMAIN = 'disposable_domain'
INVALID_PHONE = 'invalid_phone'
SPAM_DETECTED = 'spam_detected'
INVALID_FILE = 'invalid_file'

EMAIL_MAX_LENGTH = 254
EMAIL_RE = re.compile(
    r"^[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+(?:\.[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+)*"
    r"@(?:[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?\.)+[A-Za-z]{2,63}$"
)
PHONE_RE = re.compile(r"^\+?256\d{9}$|^0\d{9}$|^\d{10,15}$")
_PHONE_SEPARATORS_RE = re.compile(r"[\s\-()]")
PERSON_NAME_RE = re.compile(r"^[A-Za-z\s\-']+$")
LINKEDIN_URL_RE = re.compile(r"^https?://(www\.)?linkedin\.com/")
HTTP_URL_RE = re.compile(r"^https?://\S+$")

PHONE_MESSAGE = 'Please enter a valid Uganda phone number (e.g., +256 772 423 092 or 0772 423 092)'
DISPOSABLE_MESSAGE = 'Please use a permanent email address. Disposable email addresses are not accepted.'

RESUME_EXTENSIONS = {'pdf', 'doc', 'docx'}
RESUME_MIME_TYPES = {
    'application/pdf',
    'application/msword',
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
}
PHOTO_EXTENSIONS = {'jpg', 'jpeg', 'png', 'webp', 'avif'}


class FieldError(ValueError):
    def __init__(self, code, message):
        super().__init__(message)
        self.code = code
        self.message = message


def email_domain(value):
    _, sep, domain = (value or '').rpartition('@')
    return domain.strip().lower() if sep else ''


def is_disposable_email(value, disposable_domains):
    domain = email_domain(value)
    return bool(domain) and domain in {d.lower() for d in disposable_domains}


def validate_email(value, disposable_domains=()):
    email = (value or '').strip().lower()
    if not email:
        raise FieldError(REQUIRED, 'Email is required')
    if len(email) > EMAIL_MAX_LENGTH:
        raise FieldError(INVALID_FORMAT, 'Email must be less than 254 characters')
    if not EMAIL_RE.match(email):
        raise FieldError(INVALID_FORMAT, 'Please enter a valid email address')
    if disposable_domains and is_disposable_email(email, disposable_domains):
        raise FieldError(DISPOSABLE_DOMAIN, DISPOSABLE_MESSAGE)
    return email


def clean_phone(value):
    return _PHONE_SEPARATORS_RE.sub('', value or '')


def is_valid_phone(value):
    return bool(PHONE_RE.match(clean_phone(value)))


def validate_phone(value, required=False):
    phone = clean_phone(value)
    if not phone:
        if required:
            raise FieldError(REQUIRED, 'Phone number is required')
        return ''
    if not PHONE_RE.match(phone):
        raise FieldError(INVALID_PHONE, PHONE_MESSAGE)
    return phone


def is_honeypot_filled(value):
    return bool(value)


def validate_honeypot(value):
    if is_honeypot_filled(value):
        raise FieldError(SPAM_DETECTED, 'Spam detected')
    return ''


def validate_person_name(value, required=True):
    name = (value or '').strip()
    if not name:
        if required:
            raise FieldError(REQUIRED, 'Name is required')
        return ''
    if len(name) < 2 or not PERSON_NAME_RE.match(name):
        raise FieldError(INVALID_FORMAT, 'Name must be at least 2 characters and contain only letters')
    return name


def _extension(filename):
    _, ext = os.path.splitext(filename or '')
    return ext.lstrip('.').lower()


def validate_resume_upload(filename, mimetype, size, max_bytes):
    if not filename or not size:
        raise FieldError(REQUIRED, 'Please upload your resume')
    if size > max_bytes:
        raise FieldError(INVALID_FILE, f'Resume file must be less than {max_bytes // (1024 * 1024)}MB')
    if _extension(filename) not in RESUME_EXTENSIONS:
        raise FieldError(INVALID_FILE, 'Resume must be a PDF, DOC, or DOCX file')
    if (mimetype or '').lower() not in RESUME_MIME_TYPES:
        raise FieldError(INVALID_FILE, 'Invalid file type. Please upload a PDF, DOC, or DOCX file')
    return _extension(filename)


def validate_photo_upload(filename, mimetype, size, max_bytes):
    if size > max_bytes:
        raise FieldError(INVALID_FILE, f'Photo must be less than {max_bytes // (1024 * 1024)}MB')
    if not (mimetype or '').lower().startswith('image/'):
        raise FieldError(INVALID_FILE, 'File must be an image')
    ext = _extension(filename)
    if ext not in PHOTO_EXTENSIONS:
        raise FieldError(INVALID_FILE, 'Invalid image format. Accepted: JPG, PNG, WebP, AVIF.')
    return ext
