"""Published content lookups and the cache the revalidation webhook clears."""
import json
import threading
import time

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from .models import CmsDocument

ALL_TAG = 'all'

REVALIDATE_TAG_MAP = {
    'blogPost': ['posts', 'blog'],
    'blogCategory': ['categories', 'blog'],
    'blogTag': ['tags', 'blog'],
    'service': ['services'],
    'serviceCategory': ['services', 'serviceCategories'],
    'job': ['jobs'],
    'jobCategory': ['jobs', 'jobCategories'],
    'page': ['pages'],
    'teamMember': ['team'],
    'companyMilestone': ['milestones'],
    'nemaLicense': ['licenses'],
    'galleryImage': ['gallery'],
    'faqCategory': ['faqs'],
    'faqItem': ['faqs'],
    'award': ['awards'],
    'project': ['projects'],
}


def tags_for_type(doc_type):
    return list(REVALIDATE_TAG_MAP.get(doc_type, [ALL_TAG]))


class TaggedCache:
    """Small TTL cache whose entries can be dropped by tag.

    Expired entries are swept every ``sweep_every`` writes and whenever the
    cache reaches ``max_entries``; if it is still full the oldest entry goes.
    """

    def __init__(self, ttl_seconds=300, clock=time.monotonic, max_entries=1000, sweep_every=50):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self._sweep_every = max(1, sweep_every)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries = {}
        self._writes = 0

    def get(self, key):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False, None
            value, tags, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return False, None
            return True, value

    def set(self, key, value, tags=()):
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            now = self._clock()
            self._writes += 1
            self._entries.pop(key, None)
            if self._writes % self._sweep_every == 0 or len(self._entries) >= self.max_entries:
                self._sweep(now)
            while len(self._entries) >= self.max_entries:
                del self._entries[next(iter(self._entries))]
            self._entries[key] = (value, frozenset(tags), now + self.ttl_seconds)

    def _sweep(self, now):
        expired = [key for key, (_, _, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]

    def invalidate_tags(self, tags):
        tags = set(tags)
        with self._lock:
            if ALL_TAG in tags:
                dropped = len(self._entries)
                self._entries.clear()
                return dropped
            stale = [key for key, (_, entry_tags, _) in self._entries.items() if entry_tags & tags]
            for key in stale:
                del self._entries[key]
            return len(stale)

    def __len__(self):
        return len(self._entries)


def init_content_cache(app):
    cache = TaggedCache(
        ttl_seconds=app.config.get('CMS_CACHE_TTL_SECONDS', 300),
        max_entries=app.config.get('CMS_CACHE_MAX_ENTRIES', 1000),
    )
    app.extensions['content_cache'] = cache
    return cache


def get_content_cache():
    return current_app.extensions['content_cache']


def _load_document(doc_type, slug):
    document = CmsDocument.query.filter_by(doc_type=doc_type, slug=slug, is_published=True).first()
    if document is None:
        return None
    try:
        payload = json.loads(document.payload or '{}')
    except (TypeError, json.JSONDecodeError):
        current_app.logger.warning(f'Ignoring malformed content payload for {doc_type}/{slug}.')
        return None
    return payload if isinstance(payload, dict) else None


def get_document(doc_type, slug):
    """Return the published document as a dict, or ``None`` when there is none.

    Lookup failures are logged and reported as a missing document so pages
    can render their fallback copy.
    """
    cache = get_content_cache()
    key = (doc_type, slug)
    hit, value = cache.get(key)
    if hit:
        return value
    try:
        value = _load_document(doc_type, slug)
    except SQLAlchemyError:
        current_app.logger.exception(f'Content lookup failed for {doc_type}/{slug}.')
        return None
    if value is not None:
        cache.set(key, value, tags=tags_for_type(doc_type) + [ALL_TAG])
    return value


def revalidate(doc_type):
    tags = tags_for_type(doc_type)
    dropped = get_content_cache().invalidate_tags(tags)
    current_app.logger.info(f'Revalidated content tags {tags} ({dropped} cached entries dropped).')
    return tags
