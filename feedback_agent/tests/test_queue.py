"""Tests for per-tenant queues and token-bucket admission."""

import pytest

from feedback_agent.errors import Backpressure
from feedback_agent.services.queue_service import QueuedEvent, QueueManager, TenantQueue, TokenBucket


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _event(n, tenant="t1"):
    return QueuedEvent(tenant, f"evt-{n}", f"corr-{n}")


class TestTokenBucket:
    """Sustained rate with burst."""

    def test_starts_full(self):
        bucket = TokenBucket(rate_per_minute=60, burst=5, clock=FakeClock())
        assert bucket.tokens == 5

    def test_acquire_limited_by_tokens(self):
        bucket = TokenBucket(rate_per_minute=60, burst=3, clock=FakeClock())
        assert bucket.acquire(5) == 3
        assert bucket.acquire(1) == 0

    def test_refills_over_time(self):
        clock = FakeClock()
        bucket = TokenBucket(rate_per_minute=60, burst=3, clock=clock)
        bucket.acquire(3)
        clock.advance(2)
        assert bucket.acquire(5) == 2

    def test_never_exceeds_burst(self):
        clock = FakeClock()
        bucket = TokenBucket(rate_per_minute=600, burst=4, clock=clock)
        clock.advance(60)
        assert bucket.tokens == 4

    def test_seconds_until(self):
        clock = FakeClock()
        bucket = TokenBucket(rate_per_minute=30, burst=1, clock=clock)
        assert bucket.seconds_until(1) == 0.0
        bucket.acquire(1)
        assert bucket.seconds_until(1) == pytest.approx(2.0)


class TestTenantQueue:
    """Bounded FIFO with backpressure."""

    def _queue(self, capacity=3, rate=60, burst=10, clock=None):
        return TenantQueue("t1", capacity, TokenBucket(rate, burst, clock=clock or FakeClock()))

    def test_fifo_order(self):
        queue = self._queue()
        for n in range(3):
            queue.put(_event(n))
        assert [e.event_id for e in queue.take(10)] == ["evt-0", "evt-1", "evt-2"]

    def test_full_queue_raises_backpressure(self):
        queue = self._queue(capacity=2, rate=30)
        queue.put(_event(1))
        queue.put(_event(2))
        with pytest.raises(Backpressure) as exc:
            queue.put(_event(3))
        assert exc.value.retry_after == 2
        assert len(queue) == 2

    def test_retry_after_at_least_one_second(self):
        assert self._queue(rate=6000).retry_after() == 1

    def test_take_limited_by_admission_tokens(self):
        clock = FakeClock()
        queue = self._queue(capacity=10, rate=60, burst=2, clock=clock)
        for n in range(5):
            queue.put(_event(n))
        assert len(queue.take(10)) == 2
        assert queue.take(10) == []
        clock.advance(1)
        assert [e.event_id for e in queue.take(10)] == ["evt-2"]
        assert len(queue) == 2

    def test_contains(self):
        queue = self._queue()
        queue.put(_event(7))
        assert queue.contains("evt-7")
        assert not queue.contains("evt-8")


class TestQueueManager:
    """One queue per tenant."""

    def test_tenants_are_isolated(self):
        manager = QueueManager(capacity=1, rate_per_minute=60, burst=10)
        manager.get("t1").put(_event(1, "t1"))
        with pytest.raises(Backpressure):
            manager.get("t1").put(_event(2, "t1"))
        manager.get("t2").put(_event(1, "t2"))
        assert manager.size("t1") == 1
        assert manager.size("t2") == 1

    def test_configure_keeps_queued_items(self):
        manager = QueueManager(capacity=1, rate_per_minute=60, burst=10)
        manager.get("t1").put(_event(1))
        queue = manager.configure("t1", capacity=5, rate_per_minute=120, burst=20)
        assert queue.capacity == 5
        assert queue.bucket.burst == 20
        assert queue.contains("evt-1")

    def test_size_of_unknown_tenant(self):
        assert QueueManager().size("nobody") == 0
