from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Coroutine

LOGGER = logging.getLogger(__name__)

PDF_SIGNATURE = b"%PDF-"
DEFAULT_MIN_PDF_BYTES = 100

BodyReader = Callable[[str], Awaitable["bytes | None"]]
InPageFetcher = Callable[[str], Awaitable["bytes | None"]]


def is_real_pdf(data: bytes | None, *, min_size: int = DEFAULT_MIN_PDF_BYTES) -> bool:
    """Return True iff `data` starts with the `%PDF-` signature and is larger than `min_size`."""
    if not data:
        return False
    return len(data) > min_size and data[: len(PDF_SIGNATURE)] == PDF_SIGNATURE


def looks_like_pdf_response(url: str, content_type: str | None) -> bool:
    if ".pdf" in (url or "").lower():
        return True
    return "pdf" in (content_type or "").lower()


@dataclass(frozen=True)
class PdfCandidate:
    url: str
    data: bytes
    via_fallback: bool = False

    def is_real(self, *, min_size: int = DEFAULT_MIN_PDF_BYTES) -> bool:
        return is_real_pdf(self.data, min_size=min_size)


class NetworkTracker:
    """
    Count in-flight requests of one tab.

    The network is "idle" once no more than `max_inflight` requests stay open for
    `idle_seconds` in a row (the same notion as Puppeteer's `networkidle2`).
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._inflight: set[str] = set()
        self._last_change = clock()

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def on_request(self, request_id: str) -> None:
        self._inflight.add(request_id)
        self._last_change = self._clock()

    def on_done(self, request_id: str) -> None:
        if request_id in self._inflight:
            self._inflight.discard(request_id)
            self._last_change = self._clock()

    def is_idle(self, *, idle_seconds: float = 0.5, max_inflight: int = 2) -> bool:
        if len(self._inflight) > max_inflight:
            return False
        return self._clock() - self._last_change >= idle_seconds

    async def wait_for_idle(
        self,
        *,
        idle_seconds: float = 0.5,
        max_inflight: int = 2,
        poll_seconds: float = 0.05,
    ) -> None:
        while not self.is_idle(idle_seconds=idle_seconds, max_inflight=max_inflight):
            await asyncio.sleep(poll_seconds)


class PdfCapture:
    """
    Per-job response interception state.

    Browser events arrive through `on_response` / `on_loading_finished`. Every response that
    looks like a PDF is read once its body finished loading and classified:

    - a real PDF becomes the result and sets `captured`;
    - a non-empty body that fails classification is a stub: the same URL is fetched again
      from inside the page (once per URL) and the result is classified with the same rule.

    The first real PDF wins; later candidates are ignored.
    """

    def __init__(
        self,
        *,
        read_body: BodyReader,
        fetch_in_page: InPageFetcher,
        min_size: int = DEFAULT_MIN_PDF_BYTES,
    ) -> None:
        self._read_body = read_body
        self._fetch_in_page = fetch_in_page
        self.min_size = min_size
        self.result: PdfCandidate | None = None
        self.captured = asyncio.Event()
        self._pending: dict[str, str] = {}
        self._fallback_urls: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    def on_response(
        self,
        request_id: str,
        url: str,
        content_type: str | None,
        status: int | None = None,
    ) -> None:
        LOGGER.debug("URL: %s | Type: %s | Status: %s", url, content_type or "", status)
        if looks_like_pdf_response(url, content_type):
            self._pending[request_id] = url

    async def on_loading_finished(self, request_id: str) -> None:
        url = self._pending.pop(request_id, None)
        if url is None or self.result is not None:
            return
        try:
            body = await self._read_body(request_id)
        except Exception as exc:
            LOGGER.warning("Failed to buffer response from %s: %s", url, exc)
            return
        await self.inspect(url, body)

    def on_loading_failed(self, request_id: str) -> None:
        self._pending.pop(request_id, None)

    async def inspect(self, url: str, body: bytes | None) -> None:
        if self.result is not None:
            return
        if is_real_pdf(body, min_size=self.min_size):
            self._accept(PdfCandidate(url=url, data=body or b""))
            return
        if not body:
            return

        LOGGER.warning(
            "Fake/stub PDF from %s (length %d), retrying with manual fetch", url, len(body)
        )
        if url in self._fallback_urls:
            return
        self._fallback_urls.add(url)
        raw = await self._fetch_in_page(url)
        if self.result is not None:
            return
        if is_real_pdf(raw, min_size=self.min_size):
            self._accept(PdfCandidate(url=url, data=raw or b"", via_fallback=True))
        else:
            LOGGER.warning("Manual fetch still did not return a valid PDF (%s)", url)

    def _accept(self, candidate: PdfCandidate) -> None:
        self.result = candidate
        self.captured.set()
        how = "via manual fetch" if candidate.via_fallback else "from"
        LOGGER.info(
            "Captured real PDF %s %s (length %d)", how, candidate.url, len(candidate.data)
        )

    def schedule(self, coro: Coroutine[object, object, None]) -> None:
        """Run an event handler in the background; handler errors are logged, never raised."""
        task = asyncio.ensure_future(self._guard(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, coro: Coroutine[object, object, None]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Response handler error: %s", exc)

    async def wait(self, timeout: float) -> bool:
        if self.captured.is_set():
            return True
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self.captured.wait(), timeout=max(0.0, timeout))
        return self.captured.is_set()

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
