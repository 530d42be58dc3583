from greenlabel.config import DEFAULT_DISPOSABLE_EMAIL_DOMAINS, DEFAULT_SPAM_PHRASES
from greenlabel.spam import (
    NOT_SPAM,
    REASON_DISPOSABLE_DOMAIN,
    REASON_HONEYPOT,
    REASON_PATTERN_MATCH,
    SpamFilter,
    verify_turnstile_token,
)


def make_filter():
    return SpamFilter(DEFAULT_SPAM_PHRASES, DEFAULT_DISPOSABLE_EMAIL_DOMAINS)


def test_clean_submission_is_not_spam():
    assert make_filter().classify("We need weekly medical waste pickup.", "", "example.com") == NOT_SPAM


def test_honeypot_wins_over_every_other_rule():
    verdict = make_filter().classify("Buy now! Casino bonus", "http://bot.example", "mailinator.com")
    assert verdict.is_spam
    assert verdict.reason == REASON_HONEYPOT


def test_pattern_match_wins_over_disposable_domain():
    verdict = make_filter().classify("Get rich with our LOTTERY", "", "mailinator.com")
    assert verdict.is_spam
    assert verdict.reason == REASON_PATTERN_MATCH


def test_disposable_domain_is_flagged_case_insensitively():
    verdict = make_filter().classify("Please call me back.", "", "GuerrillaMail.com")
    assert verdict.is_spam
    assert verdict.reason == REASON_DISPOSABLE_DOMAIN


def test_phrases_are_matched_literally():
    spam_filter = SpamFilter(["c++ jobs", "50% off"], ())
    assert spam_filter.contains_spam_phrase("Huge 50% OFF today")
    assert not spam_filter.contains_spam_phrase("we pay 50 dollars")


def test_empty_phrase_list_never_matches():
    assert not SpamFilter([], ()).contains_spam_phrase("viagra")


def test_filter_is_built_from_app_config(app):
    spam_filter = app.extensions["spam_filter"]
    assert spam_filter.contains_spam_phrase("Free money inside")
    assert "guerrillamail.com" in spam_filter.disposable_domains


def test_turnstile_is_skipped_when_not_configured(app):
    with app.app_context():
        assert verify_turnstile_token("", "127.0.0.1")


def test_turnstile_requires_a_token_when_configured(app):
    app.config.update(TURNSTILE_SITE_KEY="site", TURNSTILE_SECRET_KEY="secret")
    with app.app_context():
        assert not verify_turnstile_token("", "127.0.0.1")
