"""Fixed-window rate limiting for public form actions.

Counters live behind a store with a single atomic ``increment`` operation so
the limiter can run against an in-process map (tests, single worker) or the
shared database table (multiple workers).
"""
import math
import threading
import time
from collections import namedtuple
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import RateLimitUnavailable
from .models import db, RateLimitBucket
from .utils import get_request_ip, utc_now_naive

RateLimitResult = namedtuple('RateLimitResult', ['allowed', 'remaining', 'retry_after_seconds'])
UNLIMITED = RateLimitResult(True, None, 0)


def retry_after_minutes(seconds):
    return max(1, math.ceil((seconds or 60) / 60))


class MemoryRateLimitStore:
    """Process-local counters guarded by a lock."""

    def __init__(self, clock=time.time, sweep_every=50):
        self._clock = clock
        self._sweep_every = max(1, sweep_every)
        self._lock = threading.Lock()
        self._buckets = {}
        self._calls = 0

    def increment(self, scope, identity, window_seconds):
        """Count one hit and return ``(count, seconds_until_reset)``."""
        key = (scope, identity)
        with self._lock:
            now = self._clock()
            self._calls += 1
            if self._calls % self._sweep_every == 0:
                self._sweep(now)
            bucket = self._buckets.get(key)
            if bucket is None or bucket[1] <= now:
                bucket = [0, now + window_seconds]
                self._buckets[key] = bucket
            bucket[0] += 1
            return bucket[0], bucket[1] - now

    def _sweep(self, now):
        expired = [key for key, (_, reset_at) in self._buckets.items() if reset_at <= now]
        for key in expired:
            del self._buckets[key]

    def __len__(self):
        return len(self._buckets)

    def reset(self):
        with self._lock:
            self._buckets.clear()


class DatabaseRateLimitStore:
    """Counters in the ``rate_limit_bucket`` table, shared by all workers."""

    def __init__(self, sweep_every=50):
        self._sweep_every = max(1, sweep_every)
        self._calls = 0
        self._lock = threading.Lock()

    def increment(self, scope, identity, window_seconds):
        with self._lock:
            self._calls += 1
            sweep = self._calls % self._sweep_every == 0
        try:
            if sweep:
                self._sweep()
            return self._increment(scope, identity, window_seconds)
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise RateLimitUnavailable('Rate limit store is unavailable.') from exc

    def _increment(self, scope, identity, window_seconds, retry=True):
        now = utc_now_naive()
        reset_at = now + timedelta(seconds=window_seconds)
        query = RateLimitBucket.query.filter_by(scope=scope, ip=identity)

        restarted = query.filter(RateLimitBucket.reset_at <= now).update(
            {RateLimitBucket.count: 1, RateLimitBucket.reset_at: reset_at},
            synchronize_session=False,
        )
        if not restarted:
            bumped = query.filter(RateLimitBucket.reset_at > now).update(
                {RateLimitBucket.count: RateLimitBucket.count + 1},
                synchronize_session=False,
            )
            if not bumped:
                db.session.add(RateLimitBucket(scope=scope, ip=identity, count=1, reset_at=reset_at))
                try:
                    db.session.commit()
                except IntegrityError:
                    # Another request created the bucket first.
                    db.session.rollback()
                    if not retry:
                        raise
                    return self._increment(scope, identity, window_seconds, retry=False)
                return 1, float(window_seconds)

        count, bucket_reset_at = db.session.query(RateLimitBucket.count, RateLimitBucket.reset_at)\
            .filter_by(scope=scope, ip=identity).one()
        db.session.commit()
        return count, max(0.0, (bucket_reset_at - now).total_seconds())

    def _sweep(self):
        RateLimitBucket.query.filter(RateLimitBucket.reset_at < utc_now_naive()).delete(synchronize_session=False)
        db.session.commit()

    def reset(self):
        RateLimitBucket.query.delete()
        db.session.commit()


class RateLimiter:
    def __init__(self, store, limits):
        self.store = store
        self.limits = dict(limits)

    def check(self, kind, identity):
        """Record one attempt for ``(kind, identity)`` and decide if it may proceed.

        Raises ``RateLimitUnavailable`` when the store fails; callers reject
        the request rather than letting it through unthrottled.
        """
        limit = self.limits.get(kind)
        if not limit:
            return UNLIMITED
        max_requests, window_seconds = limit
        count, seconds_left = self.store.increment(kind, identity, window_seconds)
        if count > max_requests:
            return RateLimitResult(False, 0, max(1, math.ceil(seconds_left)))
        return RateLimitResult(True, max_requests - count, 0)


def build_store(config):
    backend = (config.get('RATE_LIMIT_BACKEND') or 'database').lower()
    sweep_every = config.get('RATE_LIMIT_SWEEP_EVERY', 50)
    if backend == 'memory':
        return MemoryRateLimitStore(sweep_every=sweep_every)
    if backend == 'database':
        return DatabaseRateLimitStore(sweep_every=sweep_every)
    raise ValueError(f'Unknown RATE_LIMIT_BACKEND: {backend}')


def init_rate_limiter(app, store=None):
    limiter = RateLimiter(store or build_store(app.config), app.config.get('RATE_LIMITS', {}))
    app.extensions['rate_limiter'] = limiter
    return limiter


def get_rate_limiter():
    return current_app.extensions['rate_limiter']


def check_rate_limit(kind, identity=None):
    return get_rate_limiter().check(kind, identity or get_request_ip())
