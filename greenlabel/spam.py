import json
import re
from collections import namedtuple
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from flask import current_app

from .validators import is_disposable_email, is_honeypot_filled

REASON_HONEYPOT = 'honeypot'
REASON_PATTERN_MATCH = 'pattern_match'
REASON_DISPOSABLE_DOMAIN = 'disposable_domain'
REASON_RATE_LIMITED = 'rate_limited'
REASON_CHALLENGE_FAILED = 'challenge_failed'
REASON_NONE = 'none'

TURNSTILE_VERIFY_URL = 'https://challenges.cloudflare.com/turnstile/v0/siteverify'

SpamVerdict = namedtuple('SpamVerdict', ['is_spam', 'reason'])
NOT_SPAM = SpamVerdict(False, REASON_NONE)


def compile_phrase_pattern(phrases):
    cleaned = [p.strip() for p in phrases if p and p.strip()]
    if not cleaned:
        return None
    return re.compile('|'.join(re.escape(p) for p in cleaned), re.IGNORECASE)


class SpamFilter:
    """Ordered spam rules; the first matching rule decides the verdict."""

    def __init__(self, phrases=(), disposable_domains=()):
        self.pattern = compile_phrase_pattern(phrases)
        self.disposable_domains = tuple(d.lower() for d in disposable_domains)

    @classmethod
    def from_config(cls, config):
        return cls(
            phrases=config.get('SPAM_PHRASES', ()),
            disposable_domains=config.get('DISPOSABLE_EMAIL_DOMAINS', ()),
        )

    def contains_spam_phrase(self, content):
        return bool(self.pattern and content and self.pattern.search(content))

    def classify(self, content, honeypot_value, email_domain):
        if is_honeypot_filled(honeypot_value):
            return SpamVerdict(True, REASON_HONEYPOT)
        if self.contains_spam_phrase(content):
            return SpamVerdict(True, REASON_PATTERN_MATCH)
        if email_domain and is_disposable_email(f'@{email_domain}', self.disposable_domains):
            return SpamVerdict(True, REASON_DISPOSABLE_DOMAIN)
        return NOT_SPAM


def turnstile_enabled():
    return bool(current_app.config.get('TURNSTILE_SITE_KEY') and current_app.config.get('TURNSTILE_SECRET_KEY'))


def verify_turnstile_token(token, remote_ip=None):
    if not turnstile_enabled():
        return True
    if not token:
        return False

    payload = {
        'secret': current_app.config.get('TURNSTILE_SECRET_KEY'),
        'response': token,
    }
    if remote_ip and remote_ip != 'unknown':
        payload['remoteip'] = remote_ip

    req = Request(
        TURNSTILE_VERIFY_URL,
        data=urlencode(payload).encode(),
        headers={'Content-Type': 'application/x-www-form-urlencoded'},
    )
    try:
        with urlopen(req, timeout=10) as response:  # nosec B310
            result = json.loads(response.read().decode('utf-8'))
        return bool(result.get('success'))
    except Exception:
        current_app.logger.exception('Turnstile verification request failed.')
        return not current_app.config.get('TURNSTILE_ENFORCED', True)
