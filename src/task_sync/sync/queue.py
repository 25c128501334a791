"""Durable FIFO of outbound mutations with backoff and a dead-letter list.

Every operation is a read-modify-write transaction on the local store,
so a queue item is durable before ``enqueue`` returns and a process
restart never loses pending work.  Items are keyed by a monotonically
increasing sequence number (``syncQueueSeq``), which also defines FIFO
order.

Failed items stay in place with ``attempts`` incremented and are not
due again until ``next_attempt_at`` (exponential backoff with jitter).
Once ``attempts`` reaches ``max_attempts`` the item moves to the
dead-letter list (``syncDeadLetter``) and is excluded from future
drains until explicitly requeued.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from ..errors import QueueError
from .models import QueueItem, QueueItemType, utc_now
from .store import DEAD_LETTER_KEY, QUEUE_KEY, QUEUE_SEQ_KEY, StoreAdapter

logger = logging.getLogger(__name__)


def _parse_items(raw: Any) -> list[QueueItem]:
    items: list[QueueItem] = []
    for entry in raw or []:
        try:
            items.append(QueueItem.model_validate(entry))
        except ValidationError as exc:
            logger.warning("Dropping unreadable queue entry %r: %s", entry, exc)
    return items


def _item_type(value: QueueItemType | str) -> QueueItemType:
    try:
        return QueueItemType(value)
    except ValueError:
        raise QueueError(f"Unsupported queue item type: {value!r}") from None


class ChangeQueue:
    """Durable, sequence-keyed outbound queue.

    Args:
        adapter: Store adapter holding ``syncQueue`` and friends.
        max_attempts: Failures after which an item is dead-lettered.
        backoff_base: Delay in seconds after the first failure.
        backoff_max: Upper bound for the backoff delay.
        rng: Source of jitter in ``[0, 1)``; injectable for tests.
        clock: Current-time source; injectable for tests.
    """

    def __init__(
        self,
        adapter: StoreAdapter,
        *,
        max_attempts: int = 5,
        backoff_base: float = 2.0,
        backoff_max: float = 300.0,
        rng: Callable[[], float] = random.random,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._adapter = adapter
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._rng = rng
        self._clock = clock
        self._loaded = False

    async def load(self) -> list[QueueItem]:
        """Reload the queue from durable storage and return pending items."""
        items = await self.pending()
        if items and not self._loaded:
            logger.info("Recovered %d queued sync item(s) from storage", len(items))
        self._loaded = True
        return items

    def backoff_delay(self, attempts: int) -> float:
        """Seconds to wait after the *attempts*-th failure (with jitter)."""
        exponent = max(attempts - 1, 0)
        ceiling = min(self.backoff_max, self.backoff_base * (2**exponent))
        return ceiling * (0.5 + self._rng() / 2)

    async def enqueue(
        self, item_type: QueueItemType | str, payload: dict[str, Any]
    ) -> QueueItem:
        """Append one item; it is persisted before this returns."""
        items = await self.enqueue_many([(item_type, payload)])
        return items[0]

    async def enqueue_many(
        self, entries: Iterable[tuple[QueueItemType | str, dict[str, Any]]]
    ) -> list[QueueItem]:
        """Append several items in one durable write, preserving order."""
        typed = [(_item_type(t), dict(p)) for t, p in entries]
        if not typed:
            return []
        if not self._loaded:
            await self.load()

        now = self._clock()
        created: list[QueueItem] = []
        async with self._adapter.transaction(QUEUE_KEY, QUEUE_SEQ_KEY) as state:
            queue = list(state.get(QUEUE_KEY) or [])
            seq = int(state.get(QUEUE_SEQ_KEY) or 0)
            # Guard against a sequence counter that lags the stored items.
            seq = max([seq] + [int(e.get("id", 0)) for e in queue if isinstance(e, dict)])
            for item_type, payload in typed:
                seq += 1
                item = QueueItem(
                    id=seq, type=item_type, payload=payload, enqueued_at=now
                )
                queue.append(item.to_store())
                created.append(item)
            state[QUEUE_KEY] = queue
            state[QUEUE_SEQ_KEY] = seq

        logger.debug(
            "Enqueued %d item(s): %s",
            len(created),
            ", ".join(f"#{i.id} {i.type.value}" for i in created),
        )
        return created

    async def pending(self) -> list[QueueItem]:
        """All live items in FIFO order, due or not."""
        raw = await self._adapter.read([QUEUE_KEY])
        return sorted(_parse_items(raw.get(QUEUE_KEY)), key=lambda i: i.id)

    async def drain(self, now: datetime | None = None) -> list[QueueItem]:
        """Return the items due for processing, oldest first.

        Items are not removed here; the caller reports each one back via
        ``ack`` or ``fail``.
        """
        if not self._loaded:
            await self.load()
        now = now or self._clock()
        return [item for item in await self.pending() if item.is_due(now)]

    async def ack(self, ids: Iterable[int]) -> int:
        """Remove successfully processed items; returns how many were removed."""
        wanted = set(ids)
        if not wanted:
            return 0
        async with self._adapter.transaction(QUEUE_KEY) as state:
            queue = list(state.get(QUEUE_KEY) or [])
            kept = [e for e in queue if not (isinstance(e, dict) and e.get("id") in wanted)]
            state[QUEUE_KEY] = kept
        return len(queue) - len(kept)

    async def fail(self, ids: Iterable[int], error: str) -> list[QueueItem]:
        """Record a failed attempt for each item.

        Returns:
            The items that exhausted their attempts and were moved to the
            dead-letter list by this call.
        """
        wanted = set(ids)
        if not wanted:
            return []
        now = self._clock()
        dead: list[QueueItem] = []
        async with self._adapter.transaction(QUEUE_KEY, DEAD_LETTER_KEY) as state:
            live: list[dict[str, Any]] = []
            for item in _parse_items(state.get(QUEUE_KEY)):
                if item.id not in wanted:
                    live.append(item.to_store())
                    continue
                attempts = item.attempts + 1
                delay = self.backoff_delay(attempts)
                item = item.model_copy(
                    update={
                        "attempts": attempts,
                        "last_error": error[:1000],
                        "next_attempt_at": now + timedelta(seconds=delay),
                    }
                )
                if attempts >= self.max_attempts:
                    dead.append(item)
                else:
                    live.append(item.to_store())
            state[QUEUE_KEY] = live
            if dead:
                state[DEAD_LETTER_KEY] = list(state.get(DEAD_LETTER_KEY) or []) + [
                    d.to_store() for d in dead
                ]

        for item in dead:
            logger.error(
                "Queue item #%d (%s) dead-lettered after %d attempts: %s",
                item.id,
                item.type.value,
                item.attempts,
                error,
            )
        return dead

    async def dead_letters(self) -> list[QueueItem]:
        raw = await self._adapter.read([DEAD_LETTER_KEY])
        return _parse_items(raw.get(DEAD_LETTER_KEY))

    async def requeue_dead_letters(self, ids: Iterable[int] | None = None) -> int:
        """Move dead-lettered items back to the live queue.

        Args:
            ids: Items to requeue; ``None`` requeues all of them.

        Returns:
            Number of items moved.
        """
        wanted = set(ids) if ids is not None else None
        moved: list[QueueItem] = []
        async with self._adapter.transaction(QUEUE_KEY, DEAD_LETTER_KEY) as state:
            remaining: list[dict[str, Any]] = []
            for item in _parse_items(state.get(DEAD_LETTER_KEY)):
                if wanted is None or item.id in wanted:
                    moved.append(
                        item.model_copy(
                            update={"attempts": 0, "next_attempt_at": None}
                        )
                    )
                else:
                    remaining.append(item.to_store())
            if not moved:
                return 0
            queue = list(state.get(QUEUE_KEY) or []) + [m.to_store() for m in moved]
            queue.sort(key=lambda e: int(e.get("id", 0)))
            state[QUEUE_KEY] = queue
            state[DEAD_LETTER_KEY] = remaining

        logger.info("Requeued %d dead-lettered item(s)", len(moved))
        return len(moved)
