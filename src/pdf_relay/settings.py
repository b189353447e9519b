from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass

DEFAULT_PORT = 3000
DEFAULT_API_KEY = "dev-key-change-me"
DEFAULT_REFERER = "https://www.bseindia.com/"
DEFAULT_NAVIGATION_TIMEOUT_SECONDS = 45.0
DEFAULT_SETTLE_SECONDS = 5.0
DEFAULT_QUEUE_COOLDOWN_SECONDS = 0.6
DEFAULT_MIN_PDF_BYTES = 100


def _get_str_env(key: str, default: str) -> str:
    raw = (os.environ.get(key) or "").strip()
    return raw or default


def _get_int_env(key: str, default: int) -> int:
    raw = (os.environ.get(key) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _get_float_env(key: str, default: float) -> float:
    raw = (os.environ.get(key) or "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(value, high))


def _resolve_port() -> int:
    value = _get_int_env("PORT", DEFAULT_PORT)
    if value <= 0 or value > 65535:
        return DEFAULT_PORT
    return value


def _resolve_navigation_timeout_seconds() -> float:
    value = _get_float_env(
        "PDF_RELAY_NAVIGATION_TIMEOUT_SECONDS", DEFAULT_NAVIGATION_TIMEOUT_SECONDS
    )
    if value <= 0:
        value = DEFAULT_NAVIGATION_TIMEOUT_SECONDS
    return _clamp(value, 1.0, 300.0)


def _resolve_settle_seconds() -> float:
    value = _get_float_env("PDF_RELAY_SETTLE_SECONDS", DEFAULT_SETTLE_SECONDS)
    return _clamp(value, 0.0, 60.0)


def _resolve_queue_cooldown_seconds() -> float:
    value = _get_float_env(
        "PDF_RELAY_QUEUE_COOLDOWN_SECONDS", DEFAULT_QUEUE_COOLDOWN_SECONDS
    )
    return _clamp(value, 0.0, 30.0)


def _resolve_min_pdf_bytes() -> int:
    value = _get_int_env("PDF_RELAY_MIN_PDF_BYTES", DEFAULT_MIN_PDF_BYTES)
    return max(0, value)


@dataclass(frozen=True)
class Settings:
    """Runtime configuration (env-first).

    Note: keep this module lightweight; it is imported by tests.
    """

    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    api_key: str = DEFAULT_API_KEY
    # Documented default referer. Reported at startup; navigation does not use it.
    referer: str = DEFAULT_REFERER
    navigation_timeout_seconds: float = DEFAULT_NAVIGATION_TIMEOUT_SECONDS
    settle_seconds: float = DEFAULT_SETTLE_SECONDS
    queue_cooldown_seconds: float = DEFAULT_QUEUE_COOLDOWN_SECONDS
    min_pdf_bytes: int = DEFAULT_MIN_PDF_BYTES
    download_dir: str = ""
    browser_executable_path: str | None = None
    accept_language: str = "en-US,en;q=0.9"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            host=_get_str_env("HOST", "0.0.0.0"),
            port=_resolve_port(),
            api_key=_get_str_env("API_KEY", DEFAULT_API_KEY),
            referer=_get_str_env("REFERER", DEFAULT_REFERER),
            navigation_timeout_seconds=_resolve_navigation_timeout_seconds(),
            settle_seconds=_resolve_settle_seconds(),
            queue_cooldown_seconds=_resolve_queue_cooldown_seconds(),
            min_pdf_bytes=_resolve_min_pdf_bytes(),
            download_dir=_get_str_env("PDF_RELAY_DOWNLOAD_DIR", tempfile.gettempdir()),
            browser_executable_path=(
                os.environ.get("PDF_RELAY_BROWSER_EXECUTABLE_PATH") or ""
            ).strip()
            or None,
        )
