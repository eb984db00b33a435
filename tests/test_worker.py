import subprocess
import sys
import threading
import time
from pathlib import Path

import pytest

from common.errors import StoreUnavailable
from common.job_schema import JobState, SimulatedScore
from common.repository import JobRepository
from common.scoring import simulated_score
from worker.worker import ScoringTimeout, Sweeper, Worker, WorkerPool, score_with_timeout


def _boom(payload):
    raise RuntimeError("model exploded")


def test_run_once_completes_a_job(repo, payload, settings):
    job = repo.enqueue(payload)
    done = Worker(repo, simulated_score, settings).run_once()
    assert done.id == job.id
    assert done.state == JobState.COMPLETED
    assert isinstance(done.result, SimulatedScore)
    assert repo.result(job.id) == done.result


def test_run_once_when_idle(repo, settings):
    assert Worker(repo, simulated_score, settings).run_once() is None


def test_scoring_error_is_retried_then_recorded(repo, payload, settings):
    job = repo.enqueue(payload)
    worker = Worker(repo, _boom, settings)

    first = worker.run_once()
    assert first.state == JobState.WAITING
    assert first.attempts == 1

    worker.run_once()
    final = worker.run_once()
    assert final.state == JobState.FAILED
    assert final.attempts == 3
    assert final.error == "RuntimeError: model exploded"
    assert worker.run_once() is None
    assert repo.get(job.id) == final


def test_malformed_scorer_output_fails_the_job(store, payload, settings):
    repo = JobRepository(store, max_attempts=1)
    repo.enqueue(payload)
    done = Worker(repo, lambda p: {"score": 0.9}, settings).run_once()
    assert done.state == JobState.FAILED
    assert done.result is None


def test_slow_scorer_times_out(store, payload, settings):
    release = threading.Event()

    def slow(p):
        release.wait(5)
        return simulated_score(p)

    repo = JobRepository(store, max_attempts=1)
    repo.enqueue(payload)
    fast_settings = settings.model_copy(update={"timeout_seconds": 0.1})
    try:
        done = Worker(repo, slow, fast_settings).run_once()
    finally:
        release.set()
    assert done.state == JobState.FAILED
    assert "timed out" in done.error


def test_score_with_timeout():
    assert score_with_timeout(lambda p: p * 2, 21, 1) == 42
    with pytest.raises(ScoringTimeout):
        score_with_timeout(lambda p: time.sleep(0.5), None, 0.05)
    with pytest.raises(ValueError):
        score_with_timeout(lambda p: int("x"), None, 1)


HUNG_SCORER_SCRIPT = """
import threading

from worker.worker import ScoringTimeout, score_with_timeout

try:
    score_with_timeout(lambda payload: threading.Event().wait(), None, 0.1)
except ScoringTimeout as exc:
    print(exc)
"""


def test_hung_scorer_does_not_block_exit():
    proc = subprocess.run(
        [sys.executable, "-c", HUNG_SCORER_SCRIPT],
        cwd=Path(__file__).resolve().parents[1],
        capture_output=True,
        text=True,
        timeout=60,
    )
    assert proc.returncode == 0, proc.stderr
    assert "timed out" in proc.stdout


def test_failure_stranded_by_outage_is_retried_by_sweeper(repo, payload, settings, clock, monkeypatch):
    job = repo.enqueue(payload)
    calls = []

    def fails_once(p):
        calls.append(p)
        if len(calls) == 1:
            raise RuntimeError("model exploded")
        return simulated_score(p)

    def retry_during_outage(job_id):
        raise StoreUnavailable("connection reset")

    worker = Worker(repo, fails_once, settings)
    with monkeypatch.context() as patch:
        patch.setattr(repo, "retry", retry_during_outage)
        with pytest.raises(StoreUnavailable):
            worker.run_once()
    assert repo.status(job.id) == JobState.FAILED
    assert worker.run_once() is None

    clock.advance(31)
    summary = Sweeper(repo, settings, threading.Event()).sweep_once()
    assert summary["retried"] == [job.id]
    assert worker.run_once().state == JobState.COMPLETED


def test_result_from_superseded_claim_is_discarded(repo, payload, settings, clock):
    job = repo.enqueue(payload)

    def scorer_outlived_by_sweep(p):
        clock.advance(61)
        repo.expire_stale()
        return simulated_score(p)

    outcome = Worker(repo, scorer_outlived_by_sweep, settings).run_once()
    assert outcome.id == job.id
    assert outcome.state == JobState.WAITING
    assert outcome.result is None
    assert repo.store.pending_ids() == [job.id]


def test_claim_retries_store_outage_with_backoff(repo, payload, settings, monkeypatch):
    repo.enqueue(payload)
    real_claim_next = repo.claim_next
    calls = []

    def flaky(worker_id):
        calls.append(worker_id)
        if len(calls) < 3:
            raise StoreUnavailable("connection reset")
        return real_claim_next(worker_id)

    monkeypatch.setattr(repo, "claim_next", flaky)
    done = Worker(repo, simulated_score, settings).run_once()
    assert len(calls) == 3
    assert done.state == JobState.COMPLETED


def test_claim_gives_up_after_retry_budget(repo, settings, monkeypatch):
    calls = []

    def down(worker_id):
        calls.append(worker_id)
        raise StoreUnavailable("connection refused")

    monkeypatch.setattr(repo, "claim_next", down)
    with pytest.raises(StoreUnavailable):
        Worker(repo, simulated_score, settings).run_once()
    assert len(calls) == settings.store_retry_attempts


def test_claim_backoff_grows_exponentially(repo, settings, monkeypatch):
    def down(worker_id):
        raise StoreUnavailable("connection refused")

    monkeypatch.setattr(repo, "claim_next", down)
    worker = Worker(repo, simulated_score, settings.model_copy(update={"store_retry_attempts": 4}))
    sleeps = []
    monkeypatch.setattr(worker, "_backoff", sleeps.append)
    with pytest.raises(StoreUnavailable):
        worker.run_once()
    assert sleeps == pytest.approx([0.01, 0.02, 0.02])


def test_claim_backoff_ends_on_shutdown(repo, settings, monkeypatch):
    stop = threading.Event()
    calls = []

    def down(worker_id):
        calls.append(worker_id)
        stop.set()
        raise StoreUnavailable("connection refused")

    monkeypatch.setattr(repo, "claim_next", down)
    slow_backoff = settings.model_copy(update={"store_retry_base_seconds": 30, "store_retry_max_seconds": 30})
    started = time.monotonic()
    assert Worker(repo, simulated_score, slow_backoff, stop_event=stop).run_once() is None
    assert len(calls) == 1
    assert time.monotonic() - started < 5


def test_sweeper_expires_and_purges(repo, payload, settings, clock, make_score):
    done = repo.enqueue(payload)
    claimed = repo.claim_next("w1")
    repo.complete(done.id, claimed.claim_token, make_score())
    stale = repo.enqueue(payload)
    repo.claim_next("w2")

    clock.advance(61)
    sweeper = Sweeper(repo, settings.model_copy(update={"retention_seconds": 60}), threading.Event())
    summary = sweeper.sweep_once()
    assert summary["expired"] == [stale.id]
    assert summary["purged"] == 1
    assert repo.status(stale.id) == JobState.WAITING


def test_pool_drains_the_queue(repo, payload, settings):
    ids = [repo.enqueue(payload).id for _ in range(12)]
    pool = WorkerPool(repo, simulated_score, settings, size=3)
    pool.start()
    try:
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline and repo.counts()["completed"] < len(ids):
            time.sleep(0.02)
    finally:
        pool.stop(timeout=5)

    assert all(repo.status(job_id) == JobState.COMPLETED for job_id in ids)
    assert {repo.get(job_id).worker_id for job_id in ids} <= {"worker-1", "worker-2", "worker-3"}
