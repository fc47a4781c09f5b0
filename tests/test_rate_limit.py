from sverify.rate_limit import InsertionRateLimiter, RateLimiter
from sverify.store import TrustScore, VerificationTicket


def test_check_does_not_count(clock):
    limiter = RateLimiter(limit=2, window_seconds=60, clock=clock)
    for _ in range(5):
        assert limiter.check("k").allowed
    assert limiter.get_stats("k")["current"] == 0


def test_limit_reached_after_hits(clock):
    limiter = RateLimiter(limit=2, window_seconds=60, clock=clock)
    limiter.hit("k")
    clock.advance(10)
    limiter.hit("k")

    result = limiter.check("k")
    assert not result.allowed
    assert result.remaining == 0
    assert result.retry_after == 50

    # keys are independent
    assert limiter.allow("other")


def test_window_slides(clock):
    limiter = RateLimiter(limit=2, window_seconds=60, clock=clock)
    limiter.hit("k")
    clock.advance(10)
    limiter.hit("k")
    clock.advance(50)
    # first hit is exactly one window old
    assert limiter.allow("k")
    assert limiter.get_stats("k")["current"] == 1


def test_reset(clock):
    limiter = RateLimiter(limit=1, window_seconds=60, clock=clock)
    limiter.hit("a")
    limiter.hit("b")
    limiter.reset("a")
    assert limiter.allow("a")
    assert not limiter.allow("b")
    limiter.reset()
    assert limiter.allow("b")


def test_insertion_limit(store, clock):
    limiter = InsertionRateLimiter(store, limit=10, window_seconds=300, clock=clock)
    for i in range(10):
        assert limiter.admit_insert()
        limiter.record_insert(f"198.51.100.{i}")
        clock.advance(1)
    assert not limiter.admit_insert()
    assert limiter.global_status().retry_after == 290

    clock.advance(290)
    assert limiter.admit_insert()
    assert limiter.stats()["current"] == 9


def test_identifier_debounce(store, clock):
    limiter = InsertionRateLimiter(store, debounce_seconds=30, clock=clock)
    assert limiter.admit_for_identifier("203.0.113.5")

    store.upsert(VerificationTicket("203.0.113.5", clock(), TrustScore.HIGH))
    assert not limiter.admit_for_identifier("203.0.113.5")
    assert limiter.admit_for_identifier("203.0.113.6")

    clock.advance(30)
    assert limiter.admit_for_identifier("203.0.113.5")
