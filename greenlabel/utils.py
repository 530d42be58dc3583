"""Shared utility functions used across route and service modules."""
import ipaddress
from datetime import datetime, timezone
from urllib.parse import urlparse

from flask import request


def utc_now_naive():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def clean_text(value, max_length=255):
    return str(value or '').strip()[:max_length]


def normalized_ip(value):
    candidate = (value or '').split(',', 1)[0].strip()
    if not candidate:
        return ''
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return ''


def get_request_ip():
    # request.remote_addr is proxy-aware when ProxyFix is enabled by app config.
    remote_ip = normalized_ip(request.remote_addr)
    return remote_ip or 'unknown'


def get_user_agent():
    return clean_text(request.headers.get('User-Agent', ''), 300)


def safe_local_path(target, fallback):
    """Return ``target`` when it is a same-site absolute path, else ``fallback``."""
    raw = (target or '').strip()
    if not raw:
        return fallback
    parsed = urlparse(raw)
    if parsed.scheme or parsed.netloc:
        return fallback
    if not raw.startswith('/') or raw.startswith('//') or '\\' in raw:
        return fallback
    return raw
