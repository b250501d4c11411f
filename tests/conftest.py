from __future__ import annotations

import pytest

from helpers import FakeClock


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path}/test.db"


@pytest.fixture
def clock():
    return FakeClock()
