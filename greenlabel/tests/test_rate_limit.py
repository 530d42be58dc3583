import threading

import pytest
from sqlalchemy.exc import OperationalError

from greenlabel.errors import RateLimitUnavailable
from greenlabel.models import db, RateLimitBucket
from greenlabel.rate_limit import (
    DatabaseRateLimitStore,
    MemoryRateLimitStore,
    RateLimiter,
    build_store,
    retry_after_minutes,
)

from conftest import build_test_app


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def test_allows_up_to_the_limit_then_rejects():
    limiter = RateLimiter(MemoryRateLimitStore(clock=FakeClock()), {"contact": (3, 3600)})
    results = [limiter.check("contact", "10.0.0.1") for _ in range(4)]

    assert [r.allowed for r in results] == [True, True, True, False]
    assert [r.remaining for r in results[:3]] == [2, 1, 0]
    assert results[3].retry_after_seconds == 3600


def test_window_expiry_resets_the_counter():
    clock = FakeClock()
    limiter = RateLimiter(MemoryRateLimitStore(clock=clock), {"quote": (3, 3600)})
    for _ in range(3):
        assert limiter.check("quote", "10.0.0.1").allowed
    assert not limiter.check("quote", "10.0.0.1").allowed

    clock.advance(1800)
    denied = limiter.check("quote", "10.0.0.1")
    assert not denied.allowed
    assert denied.retry_after_seconds == 1800

    clock.advance(1800)
    assert limiter.check("quote", "10.0.0.1").allowed


def test_identities_and_kinds_are_counted_separately():
    limiter = RateLimiter(MemoryRateLimitStore(clock=FakeClock()), {"quote": (1, 60), "contact": (1, 60)})
    assert limiter.check("quote", "10.0.0.1").allowed
    assert limiter.check("quote", "10.0.0.2").allowed
    assert limiter.check("contact", "10.0.0.1").allowed
    assert not limiter.check("quote", "10.0.0.1").allowed


def test_unconfigured_kind_is_not_limited():
    limiter = RateLimiter(MemoryRateLimitStore(), {})
    assert all(limiter.check("anything", "10.0.0.1").allowed for _ in range(50))


def test_retry_after_rounds_up_to_whole_seconds():
    clock = FakeClock()
    limiter = RateLimiter(MemoryRateLimitStore(clock=clock), {"auth": (1, 900)})
    limiter.check("auth", "10.0.0.1")
    clock.advance(0.4)
    assert limiter.check("auth", "10.0.0.1").retry_after_seconds == 900


def test_retry_after_minutes_is_at_least_one():
    assert retry_after_minutes(1) == 1
    assert retry_after_minutes(61) == 2
    assert retry_after_minutes(3600) == 60


def test_memory_store_sweeps_expired_buckets():
    clock = FakeClock()
    store = MemoryRateLimitStore(clock=clock, sweep_every=2)
    store.increment("quote", "10.0.0.1", 10)
    clock.advance(11)
    store.increment("quote", "10.0.0.2", 10)
    assert len(store) == 1


def test_concurrent_increments_are_not_lost():
    store = MemoryRateLimitStore()
    limiter = RateLimiter(store, {"comment": (50, 600)})
    results = []

    def hit():
        for _ in range(10):
            results.append(limiter.check("comment", "10.0.0.1"))

    threads = [threading.Thread(target=hit) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for r in results if r.allowed) == 50
    assert sum(1 for r in results if not r.allowed) == 50


def test_build_store_respects_backend(app):
    assert isinstance(build_store({"RATE_LIMIT_BACKEND": "memory"}), MemoryRateLimitStore)
    assert isinstance(build_store({"RATE_LIMIT_BACKEND": "database"}), DatabaseRateLimitStore)
    with pytest.raises(ValueError):
        build_store({"RATE_LIMIT_BACKEND": "carrier-pigeon"})


def test_database_store_counts_and_restarts_windows(tmp_path):
    app = build_test_app(tmp_path, {"RATE_LIMIT_BACKEND": "database"})
    with app.app_context():
        limiter = app.extensions["rate_limiter"]
        assert isinstance(limiter.store, DatabaseRateLimitStore)
        limiter.limits["contact"] = (2, 3600)

        assert limiter.check("contact", "10.0.0.9").allowed
        assert limiter.check("contact", "10.0.0.9").allowed
        denied = limiter.check("contact", "10.0.0.9")
        assert not denied.allowed
        assert 3590 <= denied.retry_after_seconds <= 3600

        bucket = RateLimitBucket.query.filter_by(scope="contact", ip="10.0.0.9").one()
        assert bucket.count == 3
        bucket.reset_at = bucket.reset_at.replace(year=2000)
        db.session.commit()

        assert limiter.check("contact", "10.0.0.9").allowed
        assert RateLimitBucket.query.filter_by(scope="contact", ip="10.0.0.9").one().count == 1


def test_database_store_failure_is_reported_as_unavailable(tmp_path, monkeypatch):
    app = build_test_app(tmp_path, {"RATE_LIMIT_BACKEND": "database"})
    with app.app_context():
        store = app.extensions["rate_limiter"].store

        def broken(*args, **kwargs):
            raise OperationalError("UPDATE rate_limit_bucket", {}, Exception("database is locked"))

        monkeypatch.setattr(store, "_increment", broken)
        with pytest.raises(RateLimitUnavailable):
            store.increment("contact", "10.0.0.9", 3600)
