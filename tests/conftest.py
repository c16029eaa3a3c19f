import os
import tempfile
from datetime import datetime, timezone

import pytest

from jobengine.core.clock import ManualClock
from jobengine.core.config import EngineConfig
from jobengine.scheduling.engine import JobEngine
from jobengine.storage.database import Storage

START = datetime(2024, 1, 1, 12, 0, 30, tzinfo=timezone.utc)


@pytest.fixture
def temp_db():
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = f.name
    yield db_path
    try:
        os.unlink(db_path)
    except (PermissionError, FileNotFoundError):
        pass  # File might still be locked, will be cleaned up later


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def storage(temp_db, clock):
    store = Storage(temp_db, clock=clock)
    yield store
    store.close()



@pytest.fixture
def make_engine(storage, clock):
    engines = []

    def _make(registry=None, **settings):
        settings.setdefault("job_timeout", 5)
        settings.setdefault("recover_orphans", False)
        engine = JobEngine(EngineConfig(**settings), store=storage, registry=registry, clock=clock)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.stop()
