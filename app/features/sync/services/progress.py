"""
Progress event channel between a running sync and its session row.

The sync routine and the job runner publish ``ProgressUpdate`` events
through a reporter; a single consumer task applies them to the session
tracker in order. When the tracker refuses an update because the session
is already terminal (typically a user cancellation) the channel flips its
``cancelled`` flag, which producers check between units of work.
"""

import asyncio
from typing import Any, Protocol

from app.features.sync.domain.exceptions import (
    InvalidProgressUpdateError,
    SessionNotFoundError,
    SessionTerminalError,
)
from app.features.sync.domain.progress import ProgressUpdate
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_CLOSE = object()


class ProgressReporter(Protocol):
    @property
    def cancelled(self) -> bool: ...

    async def report(self, **fields: Any) -> None: ...

    def phase(self, start: float, end: float) -> "ProgressReporter": ...


class NullProgressReporter:
    """Reporter for runs without a live session."""

    @property
    def cancelled(self) -> bool:
        return False

    async def report(self, **fields: Any) -> None:
        return None

    def phase(self, start: float, end: float) -> "NullProgressReporter":
        return self


class ProgressChannel:
    def __init__(self, tracker, session_id: str):
        self.tracker = tracker
        self.session_id = session_id
        self.applied = 0
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        self._cancelled = asyncio.Event()
        self._consumer: asyncio.Task | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def start(self) -> "ProgressChannel":
        if self._consumer is None:
            self._consumer = asyncio.create_task(
                self._consume(), name=f"progress-{self.session_id}"
            )
        return self

    def reporter(self, start: float = 0, end: float = 100) -> "ChannelProgressReporter":
        return ChannelProgressReporter(self, start, end)

    def publish(self, update: ProgressUpdate) -> None:
        if self._consumer is None:
            raise RuntimeError("Progress channel not started")
        self._queue.put_nowait(update)

    async def flush(self) -> None:
        """Wait until every published update has been applied or dropped."""
        await self._queue.join()

    async def close(self) -> None:
        if self._consumer is None:
            return
        self._queue.put_nowait(_CLOSE)
        await self._consumer
        self._consumer = None

    async def _consume(self) -> None:
        while True:
            update = await self._queue.get()
            try:
                if update is _CLOSE:
                    return
                if self.cancelled:
                    self.dropped += 1
                    continue
                await self._apply(update)
            finally:
                self._queue.task_done()

    async def _apply(self, update: ProgressUpdate) -> None:
        try:
            await self.tracker.update_progress(self.session_id, update)
            self.applied += 1
        except (SessionTerminalError, SessionNotFoundError) as e:
            logger.info(
                "Session no longer accepts progress, signalling cancellation",
                session_id=self.session_id,
                reason=str(e),
            )
            self._cancelled.set()
            self.dropped += 1
        except InvalidProgressUpdateError as e:
            logger.warning("Rejected progress update", session_id=self.session_id, error=str(e))
            self.dropped += 1
        except Exception as e:
            # progress is advisory; the sync itself carries on
            logger.error(
                "Failed to persist progress update",
                session_id=self.session_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            self.dropped += 1


class ChannelProgressReporter:
    """
    Publishes to a channel, mapping a phase-local 0-100 percentage onto the
    ``[start, end]`` slice of the overall run.
    """

    def __init__(self, channel: ProgressChannel, start: float = 0, end: float = 100):
        if not 0 <= start <= end <= 100:
            raise ValueError("phase bounds must satisfy 0 <= start <= end <= 100")
        self.channel = channel
        self.start = start
        self.end = end

    @property
    def cancelled(self) -> bool:
        return self.channel.cancelled

    def phase(self, start: float, end: float) -> "ChannelProgressReporter":
        span = self.end - self.start
        return ChannelProgressReporter(
            self.channel,
            self.start + span * start / 100,
            self.start + span * end / 100,
        )

    async def report(self, **fields: Any) -> None:
        update = ProgressUpdate.parse(fields, session_id=self.channel.session_id)
        if "progress_percentage" in update.model_fields_set and update.progress_percentage is not None:
            overall = self.start + (self.end - self.start) * update.progress_percentage / 100
            update = update.model_copy(update={"progress_percentage": overall})
        self.channel.publish(update)
        # let the consumer run between producer steps
        await asyncio.sleep(0)
