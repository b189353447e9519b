from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from pdf_relay import service


@pytest.fixture(autouse=True)
def reset_service():
    """
    Drop the process-wide service between tests so env/settings patches never leak.
    """
    service._SERVICE = None
    yield
    service._SERVICE = None
