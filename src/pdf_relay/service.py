from __future__ import annotations

import functools
import logging

from .models import HealthResponse
from .scrape.acquire import acquire_pdf
from .scrape.browser import BrowserSession
from .serializer import FetchSerializer
from .settings import Settings

LOGGER = logging.getLogger(__name__)


class PdfFetchService:
    """Owns the shared browser session and the serializer that gates access to it."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.session = BrowserSession(browser_executable_path=settings.browser_executable_path)
        self.serializer = FetchSerializer(cooldown_seconds=settings.queue_cooldown_seconds)

    async def fetch(self, url: str) -> bytes:
        job = functools.partial(acquire_pdf, self.session, url, settings=self.settings)
        return await self.serializer.submit(job)

    def health(self) -> HealthResponse:
        return HealthResponse(
            browser_up=self.session.is_alive,
            queue_length=self.serializer.pending_count,
        )

    async def warm_up(self) -> None:
        try:
            await self.session.ensure_browser()
            LOGGER.info("Browser launched (warm).")
        except Exception as exc:
            LOGGER.warning(
                "Browser failed to start on boot; will start lazily on first request. %s", exc
            )

    async def close(self) -> None:
        await self.serializer.drain()
        await self.session.close()


_SERVICE: PdfFetchService | None = None


def get_service() -> PdfFetchService:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = PdfFetchService(Settings.from_env())
    return _SERVICE
