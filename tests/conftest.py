from datetime import datetime, timedelta, timezone

import pytest

from common.config import load_settings
from common.job_schema import ImagePayload, ScoreFeatures, SimulatedScore
from common.repository import JobRepository
from common.storage import MemoryStore


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def settings(tmp_path):
    return load_settings(
        env={},
        storage_backend="memory",
        data_dir=tmp_path / "data",
        timeout_seconds=2,
        stale_after_seconds=60,
        orphan_grace_seconds=30,
        poll_interval=0.01,
        sweep_interval_seconds=0.05,
        store_retry_attempts=3,
        store_retry_base_seconds=0.01,
        store_retry_max_seconds=0.02,
        max_image_bytes=1024,
    )


@pytest.fixture
def repo(store, clock):
    return JobRepository(
        store,
        max_attempts=3,
        stale_after_seconds=60,
        orphan_grace_seconds=30,
        max_image_bytes=1024,
        clock=clock,
    )


@pytest.fixture
def payload():
    return ImagePayload.from_inline("data")


@pytest.fixture
def make_score():
    def _make(score=0.9):
        return SimulatedScore(
            score=score,
            confidence=0.95,
            rank=round(score * 100, 2),
            vibe="radiant",
            features=ScoreFeatures(symmetry=0.8, clarity=0.7, lighting=0.75),
        )

    return _make
