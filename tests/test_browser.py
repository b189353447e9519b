from __future__ import annotations

import os
import sys
from pathlib import Path
from types import SimpleNamespace
import unittest
from unittest.mock import AsyncMock, patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from pdf_relay.scrape import browser as browser_module
from pdf_relay.scrape.browser import BrowserSession, BrowserStartError


class _FakeProc:
    def __init__(self) -> None:
        self.returncode: int | None = None
        self.pid = None

    def terminate(self) -> None:
        self.returncode = -15

    def kill(self) -> None:
        self.returncode = -9

    async def wait(self) -> int | None:
        return self.returncode


class _FakeNodriverBrowser:
    def __init__(self) -> None:
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class TestBrowserHelpers(unittest.TestCase):
    def test_launch_args_bind_devtools_to_loopback(self) -> None:
        args = browser_module._build_chromium_launch_args(
            user_data_dir="/tmp/profile",
            host="127.0.0.1",
            port=9333,
            sandbox_enabled=False,
        )
        self.assertIn("--remote-debugging-host=127.0.0.1", args)
        self.assertIn("--remote-debugging-port=9333", args)
        self.assertIn("--user-data-dir=/tmp/profile", args)
        self.assertIn("--headless=new", args)
        self.assertIn("--no-sandbox", args)
        self.assertIn("--disable-dev-shm-usage", args)

    def test_launch_args_keep_sandbox_when_enabled(self) -> None:
        args = browser_module._build_chromium_launch_args(
            user_data_dir="/tmp/profile",
            host="127.0.0.1",
            port=9333,
            sandbox_enabled=True,
        )
        self.assertNotIn("--no-sandbox", args)

    def test_executable_resolution_order(self) -> None:
        with patch.dict(os.environ, {"CHROME_BIN": "/opt/chrome"}, clear=True):
            self.assertEqual(
                browser_module._resolve_browser_executable_path(" /usr/local/bin/chromium "),
                "/usr/local/bin/chromium",
            )
            self.assertEqual(browser_module._resolve_browser_executable_path(None), "/opt/chrome")

        with patch.dict(
            os.environ,
            {"PDF_RELAY_BROWSER_EXECUTABLE_PATH": "/a", "CHROME_BIN": "/b"},
            clear=True,
        ):
            self.assertEqual(browser_module._resolve_browser_executable_path(None), "/a")

        with patch.dict(os.environ, {}, clear=True), patch(
            "pdf_relay.scrape.browser.shutil.which",
            side_effect=lambda name: "/usr/bin/chromium" if name == "chromium" else None,
        ):
            self.assertEqual(browser_module._resolve_browser_executable_path(None), "/usr/bin/chromium")

    def test_sandbox_disabled_by_default_and_for_root(self) -> None:
        with patch.dict(os.environ, {}, clear=True), patch.object(
            browser_module.os, "geteuid", return_value=1000, create=True
        ):
            self.assertFalse(browser_module._resolve_sandbox_enabled())

        with patch.dict(os.environ, {"PDF_RELAY_SANDBOX": "1"}, clear=True), patch.object(
            browser_module.os, "geteuid", return_value=1000, create=True
        ):
            self.assertTrue(browser_module._resolve_sandbox_enabled())

        with patch.dict(os.environ, {"PDF_RELAY_SANDBOX": "1"}, clear=True), patch.object(
            browser_module.os, "geteuid", return_value=0, create=True
        ):
            self.assertFalse(browser_module._resolve_sandbox_enabled())

    def test_retry_settings_are_clamped(self) -> None:
        with patch.dict(os.environ, {"PDF_RELAY_BROWSER_RETRY_ATTEMPTS": "99"}, clear=True):
            self.assertEqual(browser_module._resolve_start_retry_attempts(), 5)
        with patch.dict(os.environ, {"PDF_RELAY_BROWSER_RETRY_ATTEMPTS": "abc"}, clear=True):
            self.assertEqual(browser_module._resolve_start_retry_attempts(), 3)

    def test_retryable_errors(self) -> None:
        self.assertTrue(
            browser_module._is_retryable_browser_connect_error(RuntimeError("Connection refused"))
        )
        self.assertFalse(browser_module._is_retryable_browser_connect_error(ValueError("bad args")))


class TestBrowserSession(unittest.IsolatedAsyncioTestCase):
    def _patches(self, procs: list[_FakeProc], browsers: list[_FakeNodriverBrowser], *, ready=None):
        fake_start = AsyncMock(side_effect=browsers)
        return (
            fake_start,
            patch.dict("sys.modules", {"nodriver": SimpleNamespace(start=fake_start)}),
            patch.object(browser_module, "_launch_chromium", AsyncMock(side_effect=procs)),
            patch.object(browser_module, "_wait_for_devtools_ready", ready or AsyncMock()),
            patch.object(browser_module, "_terminate_process", AsyncMock()),
        )

    async def test_browser_is_created_lazily_and_reused(self) -> None:
        session = BrowserSession(browser_executable_path="/usr/bin/chromium")
        self.assertFalse(session.is_alive)

        proc = _FakeProc()
        nd_browser = _FakeNodriverBrowser()
        fake_start, p1, p2, p3, p4 = self._patches([proc], [nd_browser])
        with p1, p2 as launch, p3, p4:
            first = await session.ensure_browser()
            second = await session.ensure_browser()

        self.assertIs(first, nd_browser)
        self.assertIs(second, nd_browser)
        self.assertEqual(launch.await_count, 1)
        _, kwargs = fake_start.call_args
        self.assertEqual(kwargs["host"], "127.0.0.1")
        self.assertEqual(kwargs["port"], session.port)
        self.assertTrue(session.is_alive)
        await session.close()
        self.assertFalse(session.is_alive)
        self.assertTrue(nd_browser.stopped)

    async def test_disconnected_browser_is_replaced(self) -> None:
        session = BrowserSession(browser_executable_path="/usr/bin/chromium")
        first_proc, second_proc = _FakeProc(), _FakeProc()
        first_browser, second_browser = _FakeNodriverBrowser(), _FakeNodriverBrowser()

        fake_start, p1, p2, p3, p4 = self._patches(
            [first_proc, second_proc], [first_browser, second_browser]
        )
        with p1, p2 as launch, p3, p4:
            self.assertIs(await session.ensure_browser(), first_browser)
            first_proc.returncode = -9
            self.assertFalse(session.is_alive)
            self.assertIs(await session.ensure_browser(), second_browser)

        self.assertEqual(launch.await_count, 2)
        self.assertTrue(first_browser.stopped)
        self.assertTrue(session.is_alive)
        await session.close()

    async def test_unresponsive_devtools_counts_as_disconnected(self) -> None:
        session = BrowserSession(browser_executable_path="/usr/bin/chromium")
        ready = AsyncMock(side_effect=[None, BrowserStartError("DevTools endpoint did not become ready in time"), None])

        fake_start, p1, p2, p3, p4 = self._patches(
            [_FakeProc(), _FakeProc()],
            [_FakeNodriverBrowser(), _FakeNodriverBrowser()],
            ready=ready,
        )
        with p1, p2 as launch, p3, p4:
            await session.ensure_browser()
            await session.ensure_browser()

        self.assertEqual(launch.await_count, 2)
        await session.close()

    async def test_missing_executable_raises(self) -> None:
        session = BrowserSession()
        with patch.dict(os.environ, {}, clear=True), patch(
            "pdf_relay.scrape.browser.shutil.which", return_value=None
        ):
            with self.assertRaises(BrowserStartError):
                await session.ensure_browser()
        self.assertFalse(session.is_alive)

    async def test_non_retryable_launch_error_is_wrapped(self) -> None:
        session = BrowserSession(browser_executable_path="/usr/bin/chromium")
        fake_start = AsyncMock()
        with patch.dict("sys.modules", {"nodriver": SimpleNamespace(start=fake_start)}), patch.object(
            browser_module, "_launch_chromium", AsyncMock(side_effect=PermissionError("denied"))
        ):
            with self.assertRaises(BrowserStartError) as ctx:
                await session.ensure_browser()

        self.assertIn("denied", str(ctx.exception))
        fake_start.assert_not_awaited()
        self.assertIsNone(session.user_data_dir)


if __name__ == "__main__":
    unittest.main()
