"""Fetch real PDF documents through a headless Chromium, past stub responses."""

__version__ = "0.1.0"
