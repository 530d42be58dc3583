import secrets
import time

from flask import Blueprint, current_app, jsonify, redirect, render_template, request
from werkzeug.datastructures import CombinedMultiDict, MultiDict

from ..cms import get_document, revalidate as revalidate_content
from ..models import db, NewsletterSubscriber
from ..notifications import notify_newsletter_unsubscribed
from ..session_guard import UNSAFE_METHODS, get_csrf_token
from ..submissions import submit_form
from ..tasks import dispatch_notification
from ..utils import clean_text, utc_now_naive

api_bp = Blueprint('api', __name__)


def submission_payload(**extra):
    """Collect the submitted fields from a JSON body or a (multipart) form post."""
    if request.is_json:
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            body = {}
        data = MultiDict()
        for key, value in body.items():
            if value is None:
                continue
            data.add(key, value if isinstance(value, bool) else str(value))
        for key, value in extra.items():
            data[key] = value
        return data
    if extra:
        form = request.form.copy()
        for key, value in extra.items():
            form[key] = value
        return CombinedMultiDict([form, request.files])
    return CombinedMultiDict([request.form, request.files])


def submission_response(kind, **extra):
    result = submit_form(kind, submission_payload(**extra))
    response = jsonify(result.to_dict())
    if result.retry_after_seconds:
        response.headers['Retry-After'] = str(result.retry_after_seconds)
    return response, result.status_code


@api_bp.get('/csrf')
def csrf():
    return jsonify({'csrfToken': get_csrf_token()})


@api_bp.post('/quote')
def quote():
    return submission_response('quote')


@api_bp.post('/inquiry')
def inquiry():
    return submission_response('inquiry')


@api_bp.post('/inquiry/quick')
def quick_inquiry():
    return submission_response('quick_inquiry')


@api_bp.post('/contact')
def contact():
    return submission_response('contact')


@api_bp.post('/comments')
def comments():
    return submission_response('comment')


@api_bp.post('/newsletter')
def newsletter():
    return submission_response('newsletter')


@api_bp.post('/careers/<job_slug>/apply')
def apply(job_slug):
    return submission_response('application', job_slug=clean_text(job_slug, 200))


@api_bp.post('/revalidate')
def revalidate():
    expected = current_app.config.get('CMS_REVALIDATE_SECRET') or ''
    provided = request.args.get('secret') or ''
    if not expected or not secrets.compare_digest(expected.encode(), provided.encode()):
        return jsonify({'message': 'Invalid secret'}), 401

    try:
        body = request.get_json(force=True)
        doc_type = body.get('_type') if isinstance(body, dict) else None
        tags = revalidate_content(doc_type)
    except Exception:
        current_app.logger.exception('Content revalidation failed.')
        return jsonify({'message': 'Error revalidating'}), 500
    return jsonify({'revalidated': True, 'tags': tags, 'now': int(time.time() * 1000)})


@api_bp.get('/newsletter/unsubscribe/<token>')
def newsletter_unsubscribe(token):
    subscriber = NewsletterSubscriber.query.filter_by(unsubscribe_token=clean_text(token, 64)).first()
    if subscriber is None:
        return redirect('/?error=invalid-token')
    if not subscriber.is_active:
        return redirect('/?message=already-unsubscribed')

    subscriber.is_active = False
    subscriber.updated_at = utc_now_naive()
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception(f'Failed to unsubscribe newsletter subscriber {subscriber.id}.')
        return render_template('errors/500.html'), 500

    dispatch_notification('newsletter_unsubscribed', notify_newsletter_unsubscribed, subscriber.email)
    return render_template('newsletter/unsubscribed.html', email=subscriber.email)


@api_bp.get('/content/<doc_type>/<slug>')
def content(doc_type, slug):
    return jsonify({'content': get_document(clean_text(doc_type, 60), clean_text(slug, 200))})


@api_bp.after_request
def no_store(response):
    if request.method in UNSAFE_METHODS:
        response.headers['Cache-Control'] = 'no-store'
    return response
