"""In-process change feed.

Collects change records published by the document store for watched
collections and delivers them to the dispatcher from background workers.
Delivery is at-least-once: a record whose dispatch fails with a store
error is requeued until it runs out of attempts.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from rollup import config
from rollup.errors import StoreError
from rollup.models import ChangeRecord

logger = logging.getLogger("rollup.feed")


class ChangeFeed:
    """Background delivery of store writes to the change dispatcher."""

    def __init__(
        self,
        collections: Iterable[str] | None = None,
        *,
        max_attempts: int | None = None,
        retry_delay_ms: int | None = None,
        workers: int = 1,
    ):
        self.collections = frozenset(collections or config.WATCHED_COLLECTIONS)
        self.max_attempts = max_attempts or config.FEED_MAX_ATTEMPTS
        self.retry_delay_ms = config.FEED_RETRY_DELAY_MS if retry_delay_ms is None else retry_delay_ms
        self.workers = max(1, workers)
        self._queue: asyncio.Queue[tuple[ChangeRecord, int]] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._running = False

    def publish(self, record: ChangeRecord) -> None:
        """Store change listener; ignores collections that are not watched."""
        if record.collection not in self.collections:
            return
        self._queue.put_nowait((record, 1))

    async def start(self, dispatcher) -> None:
        if self._running:
            logger.warning("Change feed already running")
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(self._deliver_loop(dispatcher))
            for _ in range(self.workers)
        ]
        logger.info(
            "Change feed started for %s (%s worker(s))",
            sorted(self.collections),
            self.workers,
        )

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Change feed stopped")

    async def drain(self) -> None:
        """Wait until every queued record has been delivered or dropped."""
        await self._queue.join()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _deliver_loop(self, dispatcher) -> None:
        while self._running:
            record, attempt = await self._queue.get()
            try:
                await self._deliver(dispatcher, record, attempt)
            except Exception:
                logger.exception(
                    "Unexpected error delivering %s/%s", record.collection, record.document_id
                )
            finally:
                self._queue.task_done()

    async def _deliver(self, dispatcher, record: ChangeRecord, attempt: int) -> None:
        try:
            await dispatcher.handle_record(record)
        except StoreError as exc:
            if attempt >= self.max_attempts:
                logger.error(
                    "Dropping change %s/%s after %s attempt(s): %s",
                    record.collection,
                    record.document_id,
                    attempt,
                    exc,
                )
                return
            logger.warning(
                "Redelivering change %s/%s (attempt %s/%s): %s",
                record.collection,
                record.document_id,
                attempt + 1,
                self.max_attempts,
                exc,
            )
            if self.retry_delay_ms > 0:
                await asyncio.sleep(self.retry_delay_ms / 1000)
            self._queue.put_nowait((record, attempt + 1))


_change_feed: Optional[ChangeFeed] = None


def get_change_feed() -> ChangeFeed:
    """Process-wide feed used by the application lifespan."""
    global _change_feed
    if _change_feed is None:
        _change_feed = ChangeFeed()
    return _change_feed
