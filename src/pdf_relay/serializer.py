from __future__ import annotations

import asyncio
import collections
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

LOGGER = logging.getLogger(__name__)

FetchJob = Callable[[], Awaitable[bytes]]


class FetchFailedError(RuntimeError):
    """A queued job failed; the message carries the underlying error for diagnostics."""


@dataclass
class _PendingRequest:
    job: FetchJob
    future: asyncio.Future[bytes]


class FetchSerializer:
    """
    Run fetch jobs one at a time, in arrival order.

    Jobs share one browser, so at most one job is active at any instant. A job submitted
    while another one runs waits in an unbounded FIFO list. After each job its caller is
    resolved first; the next pending job starts only after `cooldown_seconds`.
    """

    def __init__(self, *, cooldown_seconds: float = 0.6) -> None:
        self.cooldown_seconds = max(0.0, cooldown_seconds)
        self._busy = False
        self._pending: collections.deque[_PendingRequest] = collections.deque()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def submit(self, job: FetchJob) -> bytes:
        loop = asyncio.get_running_loop()
        request = _PendingRequest(job=job, future=loop.create_future())
        if self._busy:
            self._pending.append(request)
            LOGGER.info("Fetch queued (pending=%d)", len(self._pending))
        else:
            self._busy = True
            self._spawn(request, delay=0.0)
        return await request.future

    def _spawn(self, request: _PendingRequest, *, delay: float) -> None:
        task = asyncio.create_task(self._process(request, delay=delay))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process(self, request: _PendingRequest, *, delay: float) -> None:
        try:
            if delay > 0:
                await asyncio.sleep(delay)
            result = await request.job()
        except Exception as exc:
            LOGGER.error("Error fetching PDF: %s", exc, exc_info=True)
            if not request.future.done():
                request.future.set_exception(
                    FetchFailedError(str(exc) or type(exc).__name__)
                )
        else:
            if not request.future.done():
                request.future.set_result(result)
        finally:
            # Cancellation skips the handlers above; the caller still gets an answer.
            if not request.future.done():
                request.future.set_exception(FetchFailedError("job cancelled"))
            self._advance()

    def _advance(self) -> None:
        if not self._pending:
            self._busy = False
            return
        request = self._pending.popleft()
        # Stay busy across the cooldown so late submitters queue behind the dequeued job.
        self._busy = True
        self._spawn(request, delay=self.cooldown_seconds)

    async def drain(self) -> None:
        """Wait for every running and pending job to finish (used on shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
