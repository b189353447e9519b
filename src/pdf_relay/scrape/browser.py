from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
import signal
import socket
import tempfile
import time
from typing import Any

import httpx

LOGGER = logging.getLogger(__name__)

DEVTOOLS_PROBE_TIMEOUT_SECONDS = 2.0
VIEWPORT_WIDTH = 1280
VIEWPORT_HEIGHT = 800


class BrowserStartError(RuntimeError):
    """Chromium could not be found, launched or connected to."""


def _resolve_browser_executable_path(explicit_path: str | None) -> str | None:
    if explicit_path and explicit_path.strip():
        return explicit_path.strip()

    for key in (
        "PDF_RELAY_BROWSER_EXECUTABLE_PATH",
        "BROWSER_EXECUTABLE_PATH",
        "CHROME_BIN",
        "CHROME_PATH",
    ):
        value = (os.environ.get(key) or "").strip()
        if value:
            return value

    for name in ("chromium", "google-chrome", "google-chrome-stable", "chrome", "chromium-browser"):
        resolved = shutil.which(name)
        if resolved:
            return resolved

    return None


def _resolve_sandbox_enabled() -> bool:
    """
    Determine whether Chromium sandbox should be enabled.

    - In containers the service usually runs as root; Chromium cannot start sandboxed as root.
    - Default is sandbox disabled, opt in with PDF_RELAY_SANDBOX=1.
    """
    try:
        if hasattr(os, "geteuid") and os.geteuid() == 0:
            return False
    except Exception:
        pass

    raw_sandbox = (os.environ.get("PDF_RELAY_SANDBOX") or "").strip().lower()
    return raw_sandbox in ("1", "true", "yes", "on")


def _resolve_start_retry_attempts() -> int:
    raw = (os.environ.get("PDF_RELAY_BROWSER_RETRY_ATTEMPTS") or "").strip()
    try:
        value = int(raw) if raw else 3
    except ValueError:
        value = 3
    return max(1, min(value, 5))


def _resolve_retry_backoff_seconds() -> float:
    raw = (os.environ.get("PDF_RELAY_BROWSER_RETRY_BACKOFF_SECONDS") or "").strip()
    try:
        value = float(raw) if raw else 0.5
    except ValueError:
        value = 0.5
    return max(0.0, min(value, 10.0))


def _resolve_devtools_ready_timeout_seconds() -> float:
    raw = (os.environ.get("PDF_RELAY_DEVTOOLS_READY_TIMEOUT_SECONDS") or "").strip()
    try:
        value = float(raw) if raw else 12.0
    except ValueError:
        value = 12.0
    return max(0.5, min(value, 120.0))


def _is_retryable_browser_connect_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(
        needle in message
        for needle in (
            "failed to connect to browser",
            "connection refused",
            "devtoolsactiveport",
            "devtools endpoint did not become ready",
        )
    )


def _pick_free_port(host: str = "127.0.0.1") -> int:
    # Best-effort selection: inherently racy, so startup must tolerate collisions.
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return int(s.getsockname()[1])


def _build_chromium_launch_args(
    *,
    user_data_dir: str,
    host: str,
    port: int,
    sandbox_enabled: bool,
) -> list[str]:
    return [
        # Only bind DevTools to loopback.
        f"--remote-debugging-host={host}",
        f"--remote-debugging-port={port}",
        f"--user-data-dir={user_data_dir}",
        "--headless=new",
        f"--window-size={VIEWPORT_WIDTH},{VIEWPORT_HEIGHT}",
        *([] if sandbox_enabled else ["--no-sandbox", "--disable-setuid-sandbox"]),
        "--disable-dev-shm-usage",
        "--disable-blink-features=AutomationControlled",
        "--disable-logging",
        "--log-level=3",
        "--no-first-run",
        "--no-default-browser-check",
    ]


async def _launch_chromium(
    executable_path: str,
    args: list[str],
) -> asyncio.subprocess.Process:
    # Discard Chromium stdout/stderr to avoid deadlocks on filled pipes.
    return await asyncio.create_subprocess_exec(
        executable_path,
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
        start_new_session=(os.name == "posix"),
    )


async def _terminate_process(proc: asyncio.subprocess.Process, *, grace_seconds: float = 1.5) -> None:
    if proc.returncode is not None:
        return

    terminated = False
    if os.name == "posix" and proc.pid is not None:
        try:
            os.killpg(proc.pid, signal.SIGTERM)
            terminated = True
        except OSError:
            terminated = False
    if not terminated:
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()

    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
        return
    except asyncio.TimeoutError:
        pass

    if os.name == "posix" and proc.pid is not None:
        with contextlib.suppress(OSError):
            os.killpg(proc.pid, signal.SIGKILL)
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
    with contextlib.suppress(Exception):
        await proc.wait()


async def _wait_for_devtools_ready(
    *,
    host: str,
    port: int,
    proc: asyncio.subprocess.Process,
    timeout_seconds: float,
) -> None:
    """
    Wait until the DevTools HTTP endpoint responds.

    Chrome exposes `webSocketDebuggerUrl` via GET `/json/version`. This is a stronger readiness signal
    than a raw TCP connect because it requires the browser to be responsive, not just listening.
    """
    deadline = time.monotonic() + max(0.1, timeout_seconds)
    url = f"http://{host}:{port}/json/version"

    # Never allow proxy env vars to hijack localhost traffic.
    async with httpx.AsyncClient(trust_env=False) as client:
        while time.monotonic() < deadline:
            if proc.returncode is not None:
                raise BrowserStartError(f"Chromium exited early (code={proc.returncode})")
            try:
                resp = await client.get(url, timeout=0.75)
                if resp.status_code == 200:
                    return
            except httpx.HTTPError:
                pass
            await asyncio.sleep(0.1)

    raise BrowserStartError("DevTools endpoint did not become ready in time")


def _import_nodriver() -> Any:
    try:
        import nodriver as uc  # type: ignore
    except Exception as exc:  # pragma: no cover
        raise BrowserStartError(
            "nodriver is required to drive Chromium. Install with: pip install nodriver"
        ) from exc
    return uc


class BrowserSession:
    """
    One shared Chromium process plus the nodriver connection to it.

    The browser is created lazily. When the process has exited or DevTools stops answering,
    the stale handle is dropped and the next `ensure_browser()` starts a fresh one.
    """

    def __init__(
        self,
        *,
        browser_executable_path: str | None = None,
        host: str = "127.0.0.1",
    ) -> None:
        self.browser_executable_path = browser_executable_path
        self.host = host
        self.port: int | None = None
        self.proc: asyncio.subprocess.Process | None = None
        self.user_data_dir: tempfile.TemporaryDirectory[str] | None = None
        self.browser: Any = None
        self.last_started: float | None = None
        self._lock = asyncio.Lock()

    @property
    def is_alive(self) -> bool:
        return (
            self.browser is not None
            and self.proc is not None
            and self.proc.returncode is None
        )

    async def ensure_browser(self) -> Any:
        async with self._lock:
            if self.browser is not None:
                if await self._probe():
                    return self.browser
                LOGGER.warning("Browser disconnected, clearing reference.")
                await self._shutdown()
            await self._start()
            return self.browser

    async def _probe(self) -> bool:
        if self.proc is None or self.proc.returncode is not None or self.port is None:
            return False
        try:
            await _wait_for_devtools_ready(
                host=self.host,
                port=self.port,
                proc=self.proc,
                timeout_seconds=DEVTOOLS_PROBE_TIMEOUT_SECONDS,
            )
        except BrowserStartError:
            return False
        return True

    async def _start(self) -> None:
        executable_path = _resolve_browser_executable_path(self.browser_executable_path)
        if not executable_path:
            raise BrowserStartError(
                "No Chromium-based browser executable found. "
                "Install Chromium/Chrome or set PDF_RELAY_BROWSER_EXECUTABLE_PATH."
            )
        uc = _import_nodriver()
        sandbox_enabled = _resolve_sandbox_enabled()
        attempts = _resolve_start_retry_attempts()
        backoff_seconds = _resolve_retry_backoff_seconds()
        ready_timeout_seconds = _resolve_devtools_ready_timeout_seconds()

        if self.user_data_dir is None:
            self.user_data_dir = tempfile.TemporaryDirectory(
                prefix="pdf-relay-chromium-", ignore_cleanup_errors=True
            )

        for attempt in range(attempts):
            self.port = _pick_free_port(self.host)
            args = _build_chromium_launch_args(
                user_data_dir=self.user_data_dir.name,
                host=self.host,
                port=self.port,
                sandbox_enabled=sandbox_enabled,
            )
            LOGGER.debug(
                "Launching Chromium (attempt %d/%d) on %s:%d",
                attempt + 1,
                attempts,
                self.host,
                self.port,
            )
            try:
                self.proc = await _launch_chromium(executable_path, args)
                await _wait_for_devtools_ready(
                    host=self.host,
                    port=self.port,
                    proc=self.proc,
                    timeout_seconds=ready_timeout_seconds,
                )
                # Connect nodriver to the already-running browser instead of spawning another.
                self.browser = await uc.start(host=self.host, port=self.port)
            except Exception as exc:
                if self.proc is not None:
                    await _terminate_process(self.proc)
                    self.proc = None
                if attempt >= attempts - 1 or not _is_retryable_browser_connect_error(exc):
                    await self._shutdown()
                    if isinstance(exc, BrowserStartError):
                        raise
                    raise BrowserStartError(
                        f"Failed to start browser after {attempt + 1} attempt(s): {exc}"
                    ) from exc
                await asyncio.sleep(backoff_seconds * (2**attempt))
                continue

            self.last_started = time.monotonic()
            LOGGER.info("Browser launched on %s:%d", self.host, self.port)
            return

    async def _shutdown(self) -> None:
        browser, self.browser = self.browser, None
        if browser is not None:
            stopper = getattr(browser, "stop", None)
            if callable(stopper):
                with contextlib.suppress(Exception):
                    maybe = stopper()
                    if asyncio.iscoroutine(maybe):
                        await maybe
        if self.proc is not None:
            await _terminate_process(self.proc)
            self.proc = None
        if self.user_data_dir is not None:
            self.user_data_dir.cleanup()
            self.user_data_dir = None
        self.port = None

    async def close(self) -> None:
        async with self._lock:
            await self._shutdown()
