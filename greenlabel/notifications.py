import base64
import json
import smtplib
import urllib.error
import urllib.parse
import urllib.request
from collections import namedtuple
from email.message import EmailMessage

from flask import current_app
from markupsafe import Markup, escape

from .models import NEWSLETTER_FREQUENCY_LABELS

EmailResult = namedtuple('EmailResult', ['success', 'id', 'error'])

RESEND_API_URL = 'https://api.resend.com/emails'
SUBJECT_PREFIX = '[Green Label]'


def _safe_header_value(value, max_length=240):
    # Prevent header injection by stripping CR/LF and collapsing whitespace.
    cleaned = ' '.join((value or '').replace('\r', ' ').replace('\n', ' ').split())
    return cleaned[:max_length]


def _split_recipients(raw):
    if isinstance(raw, (list, tuple)):
        raw = ','.join(raw)
    recipients = []
    seen = set()
    for item in (raw or '').split(','):
        cleaned = _safe_header_value(item, max_length=320)
        normalized = cleaned.lower()
        if cleaned and normalized not in seen:
            recipients.append(cleaned)
            seen.add(normalized)
    return recipients


def render_lines(lines):
    """Join plain text lines into an escaped HTML body."""
    return Markup('<br>\n').join(escape(line) for line in lines)


def _timeout():
    return float(current_app.config.get('EMAIL_HTTP_TIMEOUT_SECONDS') or 15)


def _send_via_resend(subject, html, text, recipients, mail_from, reply_to):
    api_key = (current_app.config.get('RESEND_API_KEY') or '').strip()
    if not api_key:
        return None

    payload = {
        'from': mail_from,
        'to': recipients,
        'subject': subject,
        'html': str(html),
        'text': text,
    }
    if reply_to:
        payload['reply_to'] = reply_to
    req = urllib.request.Request(RESEND_API_URL, data=json.dumps(payload).encode('utf-8'), method='POST')
    req.add_header('Authorization', f'Bearer {api_key}')
    req.add_header('Content-Type', 'application/json')

    try:
        with urllib.request.urlopen(req, timeout=_timeout()) as resp:  # nosec B310
            body = json.loads(resp.read().decode('utf-8') or '{}')
        return EmailResult(True, body.get('id'), None)
    except urllib.error.HTTPError as e:
        error_body = e.read().decode('utf-8', errors='replace')
        current_app.logger.error(f'Resend API error {e.code}: {error_body}')
        return EmailResult(False, None, f'Resend API error {e.code}')
    except Exception:
        current_app.logger.exception('Resend email delivery failed.')
        return EmailResult(False, None, 'Failed to send email')


def _send_via_mailgun(subject, html, text, recipients, mail_from, reply_to):
    """Send email via Mailgun HTTP API (no SMTP needed)."""
    api_key = (current_app.config.get('MAILGUN_API_KEY') or '').strip()
    domain = (current_app.config.get('MAILGUN_DOMAIN') or '').strip()
    if not api_key or not domain:
        return None

    url = f"https://api.mailgun.net/v3/{domain}/messages"
    fields = {
        'from': mail_from,
        'to': ', '.join(recipients),
        'subject': subject,
        'text': text,
        'html': str(html),
    }
    if reply_to:
        fields['h:Reply-To'] = reply_to
    data = urllib.parse.urlencode(fields).encode('utf-8')

    auth = base64.b64encode(f"api:{api_key}".encode()).decode()
    req = urllib.request.Request(url, data=data, method='POST')
    req.add_header('Authorization', f'Basic {auth}')

    try:
        with urllib.request.urlopen(req, timeout=_timeout()) as resp:  # nosec B310
            body = json.loads(resp.read().decode('utf-8') or '{}')
        return EmailResult(True, body.get('id'), None)
    except urllib.error.HTTPError as e:
        error_body = e.read().decode('utf-8', errors='replace')
        current_app.logger.error(f'Mailgun API error {e.code}: {error_body}')
        return EmailResult(False, None, f'Mailgun API error {e.code}')
    except Exception:
        current_app.logger.exception('Mailgun email delivery failed.')
        return EmailResult(False, None, 'Failed to send email')


def _send_via_smtp(subject, html, text, recipients, mail_from, reply_to):
    host = (current_app.config.get('SMTP_HOST') or '').strip()
    if not host:
        return None

    port = int(current_app.config.get('SMTP_PORT') or 587)
    username = current_app.config.get('SMTP_USERNAME') or ''
    password = current_app.config.get('SMTP_PASSWORD') or ''
    use_ssl = bool(current_app.config.get('SMTP_USE_SSL'))
    use_tls = bool(current_app.config.get('SMTP_USE_TLS'))

    message = EmailMessage()
    message['Subject'] = subject
    message['From'] = mail_from
    message['To'] = ', '.join(recipients)
    if reply_to:
        message['Reply-To'] = reply_to
    message.set_content(text)
    message.add_alternative(str(html), subtype='html')

    try:
        if use_ssl:
            smtp = smtplib.SMTP_SSL(host=host, port=port, timeout=12)
        else:
            smtp = smtplib.SMTP(host=host, port=port, timeout=12)

        with smtp:
            if use_tls and not use_ssl:
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(message)
        return EmailResult(True, message.get('Message-ID'), None)
    except Exception:
        current_app.logger.exception('SMTP email delivery failed.')
        return EmailResult(False, None, 'Failed to send email')


def send_email(to, subject, html, reply_to=None, text=None):
    recipients = _split_recipients(to)
    if not recipients:
        return EmailResult(False, None, 'No recipients')

    mail_from = _safe_header_value(current_app.config.get('MAIL_FROM') or 'no-reply@localhost', max_length=254)
    safe_subject = _safe_header_value(subject, max_length=240)
    safe_reply_to = _safe_header_value(reply_to, max_length=320) or None
    text = text if text is not None else str(html)

    for provider in (_send_via_resend, _send_via_mailgun, _send_via_smtp):
        result = provider(safe_subject, html, text, recipients, mail_from, safe_reply_to)
        if result is not None:
            return result

    current_app.logger.warning('No email provider configured (set RESEND_API_KEY, MAILGUN_API_KEY+MAILGUN_DOMAIN or SMTP_HOST).')
    return EmailResult(False, None, 'Email service not configured')


def send_admin_notification(subject, lines, reply_to=None):
    return send_email(
        current_app.config.get('ADMIN_EMAIL'),
        f'{SUBJECT_PREFIX} {subject}',
        render_lines(lines),
        reply_to=reply_to,
        text='\n'.join(lines),
    )


def send_user_confirmation(to, subject, lines):
    return send_email(to, subject, render_lines(lines), text='\n'.join(lines))


def _site_url(path=''):
    return f"{current_app.config.get('SITE_URL', '').rstrip('/')}{path}"


def unsubscribe_url(token):
    return _site_url(f"/api/newsletter/unsubscribe/{urllib.parse.quote(token, safe='')}")


def notify_quote_admin(quote, service_label):
    lines = [
        "A new quote request has been received.",
        "",
        f"Name: {quote.name}",
        f"Email: {quote.email}",
        f"Phone: {quote.phone or 'Not provided'}",
        f"Company: {quote.company or 'Not provided'}",
        f"Service: {service_label}",
        f"Location: {quote.location}",
        f"Frequency: {quote.frequency or 'Not specified'}",
        f"Estimated volume: {quote.estimated_volume or 'Not specified'}",
        f"Timeline: {quote.timeline or 'Not specified'}",
        f"Budget: {quote.budget_range or 'Not specified'}",
        f"Marketing consent: {'Yes' if quote.marketing_consent else 'No'}",
        "",
        "Message:",
        quote.message or "",
    ]
    return send_admin_notification(f'New Quote Request: {service_label}', lines, reply_to=quote.email)


def notify_inquiry_admin(inquiry):
    lines = [
        f"A new inquiry was submitted for service '{inquiry.service_slug}'.",
        "",
        f"Name: {inquiry.name}",
        f"Email: {inquiry.email}",
        f"Phone: {inquiry.phone or 'Not provided'}",
        f"Company: {inquiry.company or 'Not provided'}",
        f"Location: {inquiry.location or 'Not provided'}",
        f"Preferred contact: {inquiry.preferred_contact or 'email'}",
        "",
        "Message:",
        inquiry.message or "",
    ]
    return send_admin_notification(f'New Service Inquiry: {inquiry.service_slug}', lines, reply_to=inquiry.email)


def notify_contact_admin(submission):
    lines = [
        "A new contact form submission has been received.",
        "",
        f"Name: {submission.full_name}",
        f"Email: {submission.email}",
        f"Phone: {submission.phone or 'Not provided'}",
        f"Company: {submission.company or 'Not provided'}",
        f"Location: {submission.location or 'Not provided'}",
        f"Preferred contact: {submission.preferred_contact}",
        f"Subject: {submission.subject}",
        "",
        "Message:",
        submission.message or "",
    ]
    return send_admin_notification(f'New Contact: {submission.subject}', lines, reply_to=submission.email)


def notify_contact_confirmation(submission):
    lines = [
        f"Dear {submission.full_name},",
        "",
        "Thank you for contacting Green Label Services. We have received your message",
        f"regarding \"{submission.subject}\" and will get back to you within 24 hours.",
    ]
    return send_user_confirmation(submission.email, 'Thank You for Contacting Green Label Services', lines)


def notify_newsletter_welcome(subscriber):
    frequency = NEWSLETTER_FREQUENCY_LABELS.get(subscriber.frequency, 'Weekly')
    lines = [
        f"Hello {subscriber.name or 'there'},",
        "",
        "Thank you for subscribing to the Green Label Services newsletter.",
        f"You will receive {frequency.lower()} updates at {subscriber.email}.",
        "",
        f"Unsubscribe at any time: {unsubscribe_url(subscriber.unsubscribe_token)}",
    ]
    return send_user_confirmation(subscriber.email, 'Welcome to Green Label Services Newsletter', lines)


def notify_newsletter_admin(subscriber):
    lines = [
        f"New subscriber: {subscriber.email}",
        f"Name: {subscriber.name or 'Not provided'}",
        f"Frequency: {subscriber.frequency}",
    ]
    return send_admin_notification('New Newsletter Subscriber', lines)


def notify_newsletter_unsubscribed(email):
    lines = [
        "You have been removed from the Green Label Services newsletter.",
        "",
        f"If this was a mistake you can resubscribe at {_site_url('/')}.",
    ]
    return send_user_confirmation(email, 'Unsubscribed from Green Label Services Newsletter', lines)


def notify_application_confirmation(application, job_title):
    lines = [
        f"Dear {application.first_name},",
        "",
        f"Thank you for applying for the {job_title} position at Green Label Services.",
        "Our team will review your application and contact you if you are shortlisted.",
    ]
    return send_user_confirmation(application.email, f'Application Received: {job_title}', lines)


def notify_application_admin(application, job_title):
    lines = [
        f"A new application was received for {job_title} ({application.job_slug}).",
        "",
        f"Name: {application.first_name} {application.last_name}",
        f"Email: {application.email}",
        f"Phone: {application.phone}",
        f"Current company: {application.current_company or 'Not provided'}",
        f"Current position: {application.current_position or 'Not provided'}",
        f"LinkedIn: {application.linkedin_profile or 'Not provided'}",
        f"Portfolio: {application.portfolio_url or 'Not provided'}",
        f"Resume: {application.resume_path}",
        "",
        "Cover letter:",
        application.cover_letter or "",
    ]
    return send_admin_notification(f'New Application: {job_title}', lines, reply_to=application.email)
