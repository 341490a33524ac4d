"""
Step events and the per-run event stream.

The executor is the only producer. Each subscriber gets its own bounded
buffer; when a buffer is full the stream either drops the oldest event
("drop_oldest") or waits for the subscriber up to a timeout and then drops
the oldest event ("block"). A slow subscriber therefore never stalls a run
for longer than the block timeout per event.
"""

from typing import Any, AsyncIterator, Deque, Dict, List, Optional
from collections import deque
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
import asyncio
import logging


logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Kinds of events published during a run."""
    STEP = "step"
    ERROR = "error"
    CANCELLED = "cancelled"


class BackpressurePolicy(str, Enum):
    DROP_OLDEST = "drop_oldest"
    BLOCK = "block"


class StepEvent(BaseModel):
    """One entry of a run's event stream."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: str
    step: int
    kind: EventKind = EventKind.STEP
    node: Optional[str] = None
    delta: Dict[str, Any] = Field(default_factory=dict)
    iteration: int = 0
    attempts: int = 0
    skipped: bool = False
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)
    duration_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "step": self.step,
            "kind": self.kind.value,
            "node": self.node,
            "delta": self.delta,
            "iteration": self.iteration,
            "attempts": self.attempts,
            "skipped": self.skipped,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
            "duration_ms": self.duration_ms,
        }


class Subscription:
    """A subscriber's buffer; iterate it with `async for`."""

    def __init__(self, stream: "EventStream", maxsize: int):
        self._stream = stream
        self._maxsize = maxsize
        self._buffer: Deque[StepEvent] = deque()
        self._cond = asyncio.Condition()
        self._closed = False
        self.dropped = 0

    async def put(self, event: StepEvent, policy: BackpressurePolicy, block_timeout: float) -> None:
        async with self._cond:
            if len(self._buffer) >= self._maxsize and policy == BackpressurePolicy.BLOCK:
                try:
                    await asyncio.wait_for(
                        self._cond.wait_for(lambda: len(self._buffer) < self._maxsize),
                        timeout=block_timeout,
                    )
                except asyncio.TimeoutError:
                    logger.warning(
                        f"Subscriber of run {self._stream.run_id} did not keep up "
                        f"within {block_timeout}s; dropping oldest event"
                    )
            while len(self._buffer) >= self._maxsize:
                self._buffer.popleft()
                self.dropped += 1
                logger.warning(
                    f"Event buffer full for run {self._stream.run_id}; "
                    f"dropped {self.dropped} event(s) so far"
                )
            self._buffer.append(event)
            self._cond.notify_all()

    async def close(self) -> None:
        async with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __aiter__(self) -> AsyncIterator[StepEvent]:
        return self

    async def __anext__(self) -> StepEvent:
        async with self._cond:
            await self._cond.wait_for(lambda: self._buffer or self._closed)
            if self._buffer:
                event = self._buffer.popleft()
                self._cond.notify_all()
                return event
        self._stream._unsubscribe(self)
        raise StopAsyncIteration


class EventStream:
    """
    Ordered, single-producer, multi-consumer stream of StepEvents.

    Events are published in the order their deltas are merged. For a
    fan-out superstep that is branch declaration order, not the order in
    which the branches finished; `timestamp` and `duration_ms` still record
    when each branch ran.

    Usage:
        stream = EventStream(run_id)
        events = stream.subscribe()
        ...
        async for event in events:
            print(event.node, event.delta)
    """

    def __init__(
        self,
        run_id: str,
        buffer_size: int = 100,
        policy: BackpressurePolicy = BackpressurePolicy.DROP_OLDEST,
        block_timeout: float = 5.0,
    ):
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self.run_id = run_id
        self.buffer_size = buffer_size
        self.policy = BackpressurePolicy(policy)
        self.block_timeout = block_timeout
        self.history: List[StepEvent] = []
        self._subscribers: List[Subscription] = []
        self._closed = False
        self._next_step = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def next_step(self) -> int:
        """Allocate the next monotonic step index."""
        self._next_step += 1
        return self._next_step

    def subscribe(self) -> Subscription:
        """Subscribe to events published from now on."""
        subscription = Subscription(self, self.buffer_size)
        if self._closed:
            subscription._closed = True
        else:
            self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    async def publish(self, event: StepEvent) -> None:
        """Deliver an event to every subscriber in publication order."""
        if self._closed:
            raise RuntimeError(f"Event stream of run {self.run_id} is closed")
        self.history.append(event)
        for subscription in list(self._subscribers):
            await subscription.put(event, self.policy, self.block_timeout)

    async def close(self) -> None:
        """End the stream; subscribers finish after draining their buffers."""
        if self._closed:
            return
        self._closed = True
        for subscription in list(self._subscribers):
            await subscription.close()
