from datetime import datetime, timezone
import secrets

from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

db = SQLAlchemy()

NEWSLETTER_FREQUENCIES = ('D', 'W', 'M')
NEWSLETTER_FREQUENCY_LABELS = {
    'D': 'Daily',
    'W': 'Weekly',
    'M': 'Monthly',
}
COMMENT_STATUS_PENDING = 'pending'
COMMENT_STATUS_APPROVED = 'approved'
COMMENT_STATUS_REJECTED = 'rejected'


def utc_now_naive():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_unsubscribe_token():
    return secrets.token_urlsafe(32)


class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(30), unique=True, nullable=False)
    email = db.Column(db.String(254), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100))
    bio = db.Column(db.String(500))
    date_of_birth = db.Column(db.Date)
    phone = db.Column(db.String(20))
    location = db.Column(db.String(120))
    photo_path = db.Column(db.String(300))
    last_login_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now_naive)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    reviews = db.relationship('Review', backref='author', lazy=True, cascade='all, delete-orphan')

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    @property
    def display_name(self):
        return ' '.join(part for part in (self.first_name, self.last_name) if part) or self.username


class QuoteRequest(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(254), nullable=False, index=True)
    phone = db.Column(db.String(20))
    company = db.Column(db.String(200))
    service_type = db.Column(db.String(80), nullable=False)
    location = db.Column(db.String(200), nullable=False)
    frequency = db.Column(db.String(40))
    estimated_volume = db.Column(db.String(80))
    message = db.Column(db.Text, nullable=False)
    timeline = db.Column(db.String(40))
    budget_range = db.Column(db.String(40))
    marketing_consent = db.Column(db.Boolean, default=False)
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.String(300))
    created_at = db.Column(db.DateTime, default=utc_now_naive, index=True)


class ServiceInquiry(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    service_slug = db.Column(db.String(200), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(254), nullable=False)
    phone = db.Column(db.String(20))
    company = db.Column(db.String(200))
    message = db.Column(db.Text, nullable=False)
    location = db.Column(db.String(200), default='')
    preferred_contact = db.Column(db.String(20), default='email')
    ip_address = db.Column(db.String(64))
    created_at = db.Column(db.DateTime, default=utc_now_naive, index=True)


class ContactSubmission(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(254), nullable=False)
    phone = db.Column(db.String(20))
    company = db.Column(db.String(200))
    subject = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, nullable=False)
    location = db.Column(db.String(200))
    preferred_contact = db.Column(db.String(20), default='email')
    marketing_consent = db.Column(db.Boolean, default=False)
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.String(300))
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utc_now_naive, index=True)


class BlogComment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    post_slug = db.Column(db.String(200), nullable=False, index=True)
    parent_id = db.Column(db.Integer, db.ForeignKey('blog_comment.id'))
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(254), nullable=False)
    website = db.Column(db.String(300))
    content = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=COMMENT_STATUS_PENDING, index=True)
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.String(300))
    created_at = db.Column(db.DateTime, default=utc_now_naive, index=True)


class NewsletterSubscriber(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(254), unique=True, nullable=False, index=True)
    name = db.Column(db.String(100))
    frequency = db.Column(db.String(1), nullable=False, default='W')
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    unsubscribe_token = db.Column(db.String(64), unique=True, nullable=False, default=generate_unsubscribe_token)
    created_at = db.Column(db.DateTime, default=utc_now_naive)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)


class JobApplication(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    job_slug = db.Column(db.String(200), nullable=False, index=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(254), nullable=False)
    phone = db.Column(db.String(20), nullable=False)
    resume_path = db.Column(db.String(500), nullable=False)
    cover_letter = db.Column(db.Text)
    current_company = db.Column(db.String(200))
    current_position = db.Column(db.String(200))
    linkedin_profile = db.Column(db.String(300))
    portfolio_url = db.Column(db.String(300))
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.String(300))
    created_at = db.Column(db.DateTime, default=utc_now_naive, index=True)


class Review(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    service_type = db.Column(db.String(80), nullable=False, index=True)
    service_name = db.Column(db.String(200), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    overall_rating = db.Column(db.Integer, nullable=False)
    quality_rating = db.Column(db.Integer, nullable=False)
    value_rating = db.Column(db.Integer, nullable=False)
    customer_service_rating = db.Column(db.Integer, nullable=False)
    comment = db.Column(db.Text, nullable=False)
    would_recommend = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now_naive)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    __table_args__ = (
        db.UniqueConstraint('user_id', 'service_type', 'service_name', name='uq_review_user_service'),
    )


class RateLimitBucket(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(80), nullable=False, index=True)
    ip = db.Column(db.String(64), nullable=False, index=True)
    count = db.Column(db.Integer, nullable=False, default=0)
    reset_at = db.Column(db.DateTime, nullable=False)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    __table_args__ = (
        db.UniqueConstraint('scope', 'ip', name='uq_rate_limit_scope_ip'),
        db.Index('ix_rate_limit_scope_reset_at', 'scope', 'reset_at'),
    )


class SecurityEvent(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(40), nullable=False, index=True)  # rate_limited, spam_rejected, turnstile_failed
    scope = db.Column(db.String(80), nullable=False, index=True)       # quote, newsletter, comment, etc.
    ip = db.Column(db.String(64), nullable=False, index=True)
    path = db.Column(db.String(255), nullable=False)
    method = db.Column(db.String(10), nullable=False)
    user_agent = db.Column(db.String(300))
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now_naive, index=True)

    __table_args__ = (
        db.Index('ix_security_event_scope_created_at', 'scope', 'created_at'),
    )


class CmsDocument(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    doc_type = db.Column(db.String(60), nullable=False, index=True)
    slug = db.Column(db.String(200), nullable=False)
    payload = db.Column(db.Text, nullable=False, default='{}')
    is_published = db.Column(db.Boolean, default=False, index=True)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    __table_args__ = (
        db.UniqueConstraint('doc_type', 'slug', name='uq_cms_document_type_slug'),
    )
