from flask import Blueprint, current_app, flash, redirect, render_template, request, session, url_for
from flask_login import current_user, login_required, login_user, logout_user
from werkzeug.datastructures import CombinedMultiDict
from werkzeug.security import check_password_hash, generate_password_hash

from ..forms import LoginForm
from ..models import db, Review, User
from ..rate_limit import check_rate_limit, retry_after_minutes
from ..submissions import (
    ProfileAction,
    RegisterAction,
    ReviewAction,
    SERVICE_TYPE_LABELS,
    delete_review,
    record_security_event,
)
from ..utils import safe_local_path, utc_now_naive

main_bp = Blueprint('main', __name__)
AUTH_DUMMY_HASH = generate_password_hash('GreenLabel::dummy-auth-check')
INVALID_LOGIN_MESSAGE = 'Invalid email or password.'

REVIEW_FIELDS = (
    'service_type',
    'service_name',
    'title',
    'overall_rating',
    'quality_rating',
    'value_rating',
    'customer_service_rating',
    'comment',
    'would_recommend',
)


def posted_data():
    return CombinedMultiDict([request.form, request.files])


def flash_result(result):
    flash(result.message, 'success' if result.success else 'danger')


@main_bp.route('/')
def index():
    return render_template(
        'index.html',
        error=request.args.get('error', ''),
        message=request.args.get('message', ''),
    )


@main_bp.route('/login', methods=['GET', 'POST'])
def login():
    redirect_to = safe_local_path(request.values.get('redirectTo'), url_for('main.dashboard'))
    if request.method == 'GET':
        return render_template('auth/login.html', redirect_to=redirect_to, field_errors={})

    form = LoginForm(formdata=request.form)
    if not form.validate():
        return render_template('auth/login.html', redirect_to=redirect_to, field_errors=form.errors), 400

    limit = check_rate_limit('auth')
    if not limit.allowed:
        record_security_event('rate_limited', 'auth', f'retry_after={limit.retry_after_seconds}s')
        flash(f'Too many login attempts. Please try again in {retry_after_minutes(limit.retry_after_seconds)} minutes.', 'danger')
        return render_template('auth/login.html', redirect_to=redirect_to, field_errors={}), 429

    user = User.query.filter_by(email=form.email.data).first()
    if user:
        password_ok = user.check_password(form.password.data)
    else:
        # Keep response timing close for unknown addresses.
        check_password_hash(AUTH_DUMMY_HASH, form.password.data or '')
        password_ok = False
    if not password_ok:
        flash(INVALID_LOGIN_MESSAGE, 'danger')
        return render_template('auth/login.html', redirect_to=redirect_to, field_errors={}), 401

    session.clear()
    login_user(user)
    session.permanent = True
    user.last_login_at = utc_now_naive()
    db.session.commit()
    current_app.logger.info(f'User {user.id} signed in.')
    return redirect(redirect_to)


@main_bp.route('/register', methods=['GET', 'POST'])
def register():
    if request.method == 'GET':
        return render_template('auth/register.html', field_errors={})
    result = RegisterAction().submit(request.form)
    if not result.success:
        flash_result(result)
        return render_template('auth/register.html', field_errors=result.field_errors), result.status_code
    flash_result(result)
    return redirect(url_for('main.login'))


@main_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    session.clear()
    return redirect(url_for('main.index'))


@main_bp.route('/dashboard')
@login_required
def dashboard():
    reviews = Review.query.filter_by(user_id=current_user.id).order_by(Review.created_at.desc()).limit(5).all()
    return render_template('account/dashboard.html', reviews=reviews)


@main_bp.route('/profile/edit', methods=['GET', 'POST'])
@login_required
def profile_edit():
    if request.method == 'GET':
        return render_template('account/profile_edit.html', field_errors={})
    result = ProfileAction(user=current_user._get_current_object()).submit(posted_data())
    flash_result(result)
    if not result.success:
        return render_template('account/profile_edit.html', field_errors=result.field_errors), result.status_code
    return redirect(url_for('main.dashboard'))


@main_bp.route('/reviews/create', methods=['GET', 'POST'])
@login_required
def review_create():
    if request.method == 'GET':
        return render_template(
            'reviews/form.html',
            review=None,
            values=request.args,
            service_types=SERVICE_TYPE_LABELS,
            field_errors={},
        )
    result = ReviewAction(user=current_user._get_current_object()).submit(request.form)
    flash_result(result)
    if not result.success:
        return render_template(
            'reviews/form.html',
            review=None,
            values=request.form,
            service_types=SERVICE_TYPE_LABELS,
            field_errors=result.field_errors,
        ), result.status_code
    return redirect(url_for('main.my_reviews'))


@main_bp.route('/reviews/my-reviews')
@login_required
def my_reviews():
    reviews = Review.query.filter_by(user_id=current_user.id).order_by(Review.created_at.desc()).all()
    return render_template('reviews/my_reviews.html', reviews=reviews, service_types=SERVICE_TYPE_LABELS)


@main_bp.route('/reviews/<int:review_id>/edit', methods=['GET', 'POST'])
@login_required
def review_edit(review_id):
    review = Review.query.filter_by(id=review_id, user_id=current_user.id).first_or_404()
    if request.method == 'GET':
        values = {name: getattr(review, name) for name in REVIEW_FIELDS}
        return render_template(
            'reviews/form.html',
            review=review,
            values=values,
            service_types=SERVICE_TYPE_LABELS,
            field_errors={},
        )
    result = ReviewAction(user=current_user._get_current_object(), review_id=review.id).submit(request.form)
    flash_result(result)
    if not result.success:
        return render_template(
            'reviews/form.html',
            review=review,
            values=request.form,
            service_types=SERVICE_TYPE_LABELS,
            field_errors=result.field_errors,
        ), result.status_code
    return redirect(url_for('main.my_reviews'))


@main_bp.route('/reviews/<int:review_id>/delete', methods=['POST'])
@login_required
def review_delete(review_id):
    result = delete_review(current_user._get_current_object(), review_id)
    flash_result(result)
    return redirect(url_for('main.my_reviews'))
