"""
Per-tenant bounded queues and token-bucket admission.

The queue bounds how much a tenant may buffer (full queue -> Backpressure).
The token bucket bounds how fast buffered events are admitted into
processing, so one tenant's burst cannot starve the others.
"""

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional

from feedback_agent.config import settings
from feedback_agent.errors import Backpressure
from feedback_agent.utils.logging_config import StructuredLogger, metrics

logger = StructuredLogger(__name__)


@dataclass(frozen=True)
class QueuedEvent:
    """Reference to a stored RedactedFeedback awaiting processing."""
    tenant_id: str
    event_id: str
    correlation_id: str


class TokenBucket:
    """
    Token bucket with a sustained rate and a burst size.

    Refill is computed lazily from elapsed time on every call.
    """

    def __init__(
        self,
        rate_per_minute: int,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rate_per_minute = rate_per_minute
        self.burst = burst
        self.refill_rate = rate_per_minute / 60.0  # tokens per second
        self._clock = clock
        self._tokens = float(burst)
        self._last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        self._tokens = min(self.burst, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    @property
    def tokens(self) -> float:
        self._refill()
        return self._tokens

    def acquire(self, requested: int) -> int:
        """Take up to ``requested`` whole tokens; return how many were granted."""
        self._refill()
        granted = min(requested, int(self._tokens))
        self._tokens -= granted
        return granted

    def seconds_until(self, needed: float = 1.0) -> float:
        self._refill()
        if self._tokens >= needed or self.refill_rate <= 0:
            return 0.0
        return (needed - self._tokens) / self.refill_rate


class TenantQueue:
    """FIFO for one tenant. Thread-safe; admission is rate limited."""

    def __init__(self, tenant_id: str, capacity: int, bucket: TokenBucket):
        self.tenant_id = tenant_id
        self.capacity = capacity
        self.bucket = bucket
        self._items: Deque[QueuedEvent] = deque()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def retry_after(self) -> int:
        # Roughly the time for the bucket to admit one queued event.
        if self.bucket.refill_rate <= 0:
            return 60
        return max(1, math.ceil(1 / self.bucket.refill_rate))

    def ensure_capacity(self) -> None:
        if len(self._items) >= self.capacity:
            metrics.increment("queue.backpressure")
            logger.warning("Tenant queue full", tenant_id=self.tenant_id, capacity=self.capacity)
            raise Backpressure(
                f"Queue for tenant is full ({self.capacity} events)",
                retry_after=self.retry_after(),
            )

    def put(self, item: QueuedEvent) -> None:
        """Append, or raise Backpressure when at capacity. Never drops silently."""
        with self._lock:
            self.ensure_capacity()
            self._items.append(item)
            metrics.gauge(f"queue.{self.tenant_id}.size", len(self._items))

    def contains(self, event_id: str) -> bool:
        with self._lock:
            return any(item.event_id == event_id for item in self._items)

    def take(self, max_items: int) -> List[QueuedEvent]:
        """Pop up to max_items in FIFO order, limited by available tokens."""
        with self._lock:
            wanted = min(max_items, len(self._items))
            if wanted == 0:
                return []
            granted = self.bucket.acquire(wanted)
            batch = [self._items.popleft() for _ in range(granted)]
            metrics.gauge(f"queue.{self.tenant_id}.size", len(self._items))
            return batch


class QueueManager:
    """Holds one TenantQueue per tenant, created on first use."""

    def __init__(
        self,
        capacity: Optional[int] = None,
        rate_per_minute: Optional[int] = None,
        burst: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_capacity = capacity or settings.queue_capacity
        self.default_rate = rate_per_minute or settings.admission_rate_per_minute
        self.default_burst = burst or settings.admission_burst
        self._clock = clock
        self._queues: Dict[str, TenantQueue] = {}
        self._lock = threading.Lock()

    def get(self, tenant_id: str) -> TenantQueue:
        with self._lock:
            queue = self._queues.get(tenant_id)
            if queue is None:
                bucket = TokenBucket(self.default_rate, self.default_burst, clock=self._clock)
                queue = TenantQueue(tenant_id, self.default_capacity, bucket)
                self._queues[tenant_id] = queue
            return queue

    def configure(
        self,
        tenant_id: str,
        capacity: Optional[int] = None,
        rate_per_minute: Optional[int] = None,
        burst: Optional[int] = None,
    ) -> TenantQueue:
        """Apply per-tenant overrides. Queued items are kept."""
        queue = self.get(tenant_id)
        with queue._lock:
            if capacity:
                queue.capacity = capacity
            if rate_per_minute or burst:
                queue.bucket = TokenBucket(
                    rate_per_minute or queue.bucket.rate_per_minute,
                    burst or queue.bucket.burst,
                    clock=self._clock,
                )
        return queue

    def tenants(self) -> List[str]:
        with self._lock:
            return list(self._queues)

    def size(self, tenant_id: str) -> int:
        queue = self._queues.get(tenant_id)
        return len(queue) if queue is not None else 0
