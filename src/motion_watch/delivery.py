"""Asynchronous hand-off of finished segments to an uploader."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from .event_log import EventLog
from .uploader import Uploader

logger = logging.getLogger(__name__)

MIN_SEGMENT_DURATION = 6.0


@dataclass(frozen=True, slots=True)
class Delivery:
    """A finished segment waiting to be finalised, gated and uploaded."""

    path: Path
    duration_seconds: float
    captured_at: datetime
    finalised: asyncio.Task[bool] | None = None

    @property
    def caption(self) -> str:
        return f"Motion detected at {self.captured_at.isoformat()}"


class DeliveryDispatcher:
    """Fire-and-forget delivery of segments on a bounded pool of workers.

    :meth:`submit` only enqueues, so the frame loop never waits on I/O. The
    segment's ``flush`` callable (closing the encoder) starts in a thread
    straight away and does not wait for a free worker. A worker then waits for
    that flush, drops the segment when it is shorter than ``min_duration`` and
    otherwise makes a single upload attempt. Successful uploads remove the
    local file; failures leave it in place. Shutdown always waits for every
    flush, even when uploads are abandoned.
    """

    def __init__(
        self,
        uploader: Uploader | None,
        *,
        min_duration: float = MIN_SEGMENT_DURATION,
        workers: int = 2,
        event_log: EventLog | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self._uploader = uploader
        self._min_duration = float(min_duration)
        self._worker_count = int(workers)
        self._event_log = event_log
        self._queue: asyncio.Queue[Delivery] | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._finalisers: set[asyncio.Task[bool]] = set()
        self._closing = False
        self._active = 0

    @property
    def min_duration(self) -> float:
        return self._min_duration

    @property
    def pending(self) -> int:
        if self._queue is None:
            return 0
        return self._queue.qsize() + self._active

    def start(self) -> None:
        """Spawn the worker tasks on the running event loop."""

        if self._workers:
            return
        self._closing = False
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(), name=f"delivery-worker-{index}")
            for index in range(self._worker_count)
        ]

    def submit(
        self,
        path: Path | str,
        duration_seconds: float,
        captured_at: datetime,
        *,
        flush: Callable[[], object] | None = None,
    ) -> None:
        """Queue a segment for delivery without waiting for it."""

        if self._closing:
            raise RuntimeError("Delivery dispatcher is shutting down")
        if self._queue is None:
            self.start()
        assert self._queue is not None
        path = Path(path)
        finalised = None
        if flush is not None:
            finalised = asyncio.create_task(
                self._finalise(path, flush), name=f"finalise-{path.name}"
            )
            self._finalisers.add(finalised)
            finalised.add_done_callback(self._finalisers.discard)
        self._queue.put_nowait(Delivery(path, float(duration_seconds), captured_at, finalised))

    async def join(self) -> None:
        """Wait until every queued delivery has been processed."""

        if self._queue is not None:
            await self._queue.join()

    async def aclose(self, grace_period: float = 10.0) -> None:
        """Let in-flight deliveries finish for up to *grace_period* seconds.

        Segment files are always finalised before this returns; only the
        uploads are abandoned when the grace period runs out.
        """

        self._closing = True
        if self._queue is not None and self._workers:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=grace_period)
            except asyncio.TimeoutError:
                logger.warning(
                    "Abandoning %d pending deliveries after %.1fs grace period",
                    self.pending,
                    grace_period,
                )
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        if self._finalisers:
            await asyncio.gather(*list(self._finalisers), return_exceptions=True)

    async def _finalise(self, path: Path, flush: Callable[[], object]) -> bool:
        try:
            await asyncio.to_thread(flush)
        except Exception:
            logger.exception("Failed to finalise segment %s", path)
            return False
        return True

    async def _worker(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            delivery = await queue.get()
            self._active += 1
            try:
                await self._deliver(delivery)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unexpected failure delivering %s", delivery.path)
            finally:
                self._active -= 1
                queue.task_done()

    async def _deliver(self, delivery: Delivery) -> None:
        if delivery.finalised is not None:
            # Shielded so a cancelled worker never interrupts the encoder close.
            await asyncio.shield(delivery.finalised)

        if delivery.duration_seconds < self._min_duration:
            logger.info(
                "Discarding %s: %.2fs is shorter than %.1fs",
                delivery.path.name,
                delivery.duration_seconds,
                self._min_duration,
            )
            await asyncio.to_thread(delivery.path.unlink, missing_ok=True)
            self._record("segment_discarded", "Segment too short to deliver", delivery)
            return

        if self._uploader is None:
            logger.info("No uploader configured; keeping %s", delivery.path)
            self._record("segment_kept", "Segment kept locally", delivery)
            return

        try:
            await self._uploader.send(delivery.path, delivery.caption)
        except Exception as exc:
            logger.error("Failed to upload %s: %s", delivery.path.name, exc)
            self._record("delivery_failed", str(exc) or type(exc).__name__, delivery)
            return

        try:
            await asyncio.to_thread(delivery.path.unlink, missing_ok=True)
        except OSError as exc:
            logger.warning("Uploaded %s but could not remove it: %s", delivery.path, exc)
        self._record("segment_delivered", "Segment delivered", delivery)

    def _record(self, event: str, message: str, delivery: Delivery) -> None:
        if self._event_log is None:
            return
        self._event_log.record(
            "delivery",
            event,
            message,
            metadata={
                "path": str(delivery.path),
                "duration_seconds": round(delivery.duration_seconds, 3),
                "captured_at": delivery.captured_at.isoformat(),
            },
        )


__all__ = ["Delivery", "DeliveryDispatcher", "MIN_SEGMENT_DURATION"]
