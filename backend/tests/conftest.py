# Ensure backend is at sys.path[0] when pytest runs (from repo root or from backend dir)
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

_tests_dir = Path(__file__).resolve().parent
_backend = _tests_dir.parent
_str_backend = str(_backend)
if sys.path[0:1] != [_str_backend]:
    sys.path.insert(0, _str_backend)

from database import build_engine, build_session_factory, init_schema  # noqa: E402
from modules.lifecycle import ReportLifecycleManager  # noqa: E402
from modules.report_store import ReportStore  # noqa: E402

T0 = datetime(2025, 6, 1, 18, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine():
    """In-memory SQLite with the reports table."""
    engine = build_engine("sqlite://")
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return ReportStore(build_session_factory(engine))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(store, clock):
    return ReportLifecycleManager(store, clock=clock)
