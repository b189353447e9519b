from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import json
import logging
import tempfile
from typing import Any

from ..settings import Settings
from .browser import VIEWPORT_HEIGHT, VIEWPORT_WIDTH, BrowserSession, _import_nodriver
from .capture import NetworkTracker, PdfCapture

LOGGER = logging.getLogger(__name__)

NETWORK_IDLE_SECONDS = 0.5
NETWORK_IDLE_MAX_INFLIGHT = 2

# Chunked String.fromCharCode keeps large documents under the engine's argument limit.
_IN_PAGE_FETCH_JS = """
(async () => {
  const res = await fetch(__URL__, { credentials: 'omit' });
  const bytes = new Uint8Array(await res.arrayBuffer());
  let binary = '';
  for (let i = 0; i < bytes.length; i += 0x8000) {
    binary += String.fromCharCode.apply(null, bytes.subarray(i, i + 0x8000));
  }
  return btoa(binary);
})()
"""


class PdfAcquisitionError(RuntimeError):
    """Base class for failures while acquiring a PDF through the browser."""


class NoPdfCapturedError(PdfAcquisitionError):
    def __init__(self, message: str = "No real PDF captured (even after manual fetch)") -> None:
        super().__init__(message)


class NavigationTimeoutError(PdfAcquisitionError):
    pass


def _decode_body(body: str | None, base64_encoded: bool) -> bytes | None:
    if body is None:
        return None
    if base64_encoded:
        try:
            return base64.b64decode(body, validate=True)
        except (binascii.Error, ValueError):
            return None
    return body.encode("utf-8")


def build_in_page_fetch_script(url: str) -> str:
    return _IN_PAGE_FETCH_JS.replace("__URL__", json.dumps(url))


async def _prepare_tab(tab: Any, cdp: Any, *, settings: Settings) -> None:
    await tab.send(cdp.network.enable())
    await tab.send(
        cdp.emulation.set_device_metrics_override(
            width=VIEWPORT_WIDTH,
            height=VIEWPORT_HEIGHT,
            device_scale_factor=1,
            mobile=False,
        )
    )
    await tab.send(
        cdp.network.set_extra_http_headers(
            headers=cdp.network.Headers({"Accept-Language": settings.accept_language})
        )
    )
    # Download binary responses instead of opening them in the built-in viewer.
    try:
        await tab.send(
            cdp.page.set_download_behavior(
                behavior="allow",
                download_path=settings.download_dir or tempfile.gettempdir(),
            )
        )
    except Exception as exc:
        LOGGER.warning("Download behavior setup failed (non-fatal): %s", exc)


def _install_handlers(tab: Any, cdp: Any, capture: PdfCapture, tracker: NetworkTracker) -> None:
    # nodriver calls handlers as handler(event, connection) or handler(event).
    def on_request(event: Any, *_: Any) -> None:
        tracker.on_request(event.request_id)

    def on_response(event: Any, *_: Any) -> None:
        response = event.response
        headers = dict(getattr(response, "headers", None) or {})
        content_type = getattr(response, "mime_type", None) or next(
            (value for key, value in headers.items() if key.lower() == "content-type"),
            "",
        )
        capture.on_response(
            event.request_id,
            response.url,
            content_type,
            getattr(response, "status", None),
        )

    def on_finished(event: Any, *_: Any) -> None:
        tracker.on_done(event.request_id)
        capture.schedule(capture.on_loading_finished(event.request_id))

    def on_failed(event: Any, *_: Any) -> None:
        tracker.on_done(event.request_id)
        capture.on_loading_failed(event.request_id)

    tab.add_handler(cdp.network.RequestWillBeSent, on_request)
    tab.add_handler(cdp.network.ResponseReceived, on_response)
    tab.add_handler(cdp.network.LoadingFinished, on_finished)
    tab.add_handler(cdp.network.LoadingFailed, on_failed)


async def acquire_pdf(session: BrowserSession, url: str, *, settings: Settings) -> bytes:
    """
    Load `url` in a fresh tab of the shared browser and return the first real PDF seen.

    Responses that look like PDFs are buffered and classified as they finish loading. A stub
    (non-empty, not a PDF) triggers one same-URL fetch from inside the page. Navigation is
    bounded by `settings.navigation_timeout_seconds`; after network idle the job waits up to
    `settings.settle_seconds` for late responses unless a PDF is already captured.
    """
    cdp = _import_nodriver().cdp
    browser = await session.ensure_browser()
    tab = await browser.get("about:blank", new_tab=True)

    async def read_body(request_id: str) -> bytes | None:
        body, base64_encoded = await tab.send(
            cdp.network.get_response_body(request_id=request_id)
        )
        return _decode_body(body, base64_encoded)

    async def fetch_in_page(target_url: str) -> bytes | None:
        try:
            encoded = await tab.evaluate(
                build_in_page_fetch_script(target_url),
                await_promise=True,
                return_by_value=True,
            )
        except Exception as exc:
            LOGGER.warning("Manual fetch failed for %s: %s", target_url, exc)
            return None
        if not isinstance(encoded, str) or not encoded:
            LOGGER.warning("Manual fetch returned no data for %s", target_url)
            return None
        return _decode_body(encoded, True)

    capture = PdfCapture(
        read_body=read_body,
        fetch_in_page=fetch_in_page,
        min_size=settings.min_pdf_bytes,
    )
    tracker = NetworkTracker()

    async def navigate() -> None:
        result = await tab.send(cdp.page.navigate(url=url))
        error_text = result[2] if isinstance(result, tuple) and len(result) > 2 else None
        if error_text:
            # Chromium aborts navigations that turn into downloads; responses still arrive.
            LOGGER.debug("Navigation to %s reported %s", url, error_text)
        await tracker.wait_for_idle(
            idle_seconds=NETWORK_IDLE_SECONDS, max_inflight=NETWORK_IDLE_MAX_INFLIGHT
        )

    try:
        await _prepare_tab(tab, cdp, settings=settings)
        _install_handlers(tab, cdp, capture, tracker)

        nav_task = asyncio.ensure_future(navigate())
        captured_task = asyncio.ensure_future(capture.captured.wait())
        try:
            await asyncio.wait(
                {nav_task, captured_task},
                timeout=settings.navigation_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (nav_task, captured_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(nav_task, captured_task, return_exceptions=True)

        if not capture.captured.is_set():
            if not nav_task.done() or nav_task.cancelled():
                raise NavigationTimeoutError(
                    f"Navigation timeout of {settings.navigation_timeout_seconds:.0f}s exceeded for {url}"
                )
            nav_task.result()
            await capture.wait(settings.settle_seconds)

        if capture.result is None:
            raise NoPdfCapturedError()
        return capture.result.data
    finally:
        await capture.aclose()
        with contextlib.suppress(Exception):
            await tab.close()
