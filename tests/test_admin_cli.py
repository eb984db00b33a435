import json

import pytest
from click.testing import CliRunner

from common.job_schema import JobState
from common.repository import JobRepository
from common.storage import LocalStore, MemoryStore
from tools.jobs_admin import cli, migrate_store


@pytest.fixture
def run(repo, settings):
    runner = CliRunner()

    def _run(*args):
        return runner.invoke(cli, list(args), obj={"settings": settings, "repository": repo})

    return _run


def test_counts(run, repo, payload):
    repo.enqueue(payload)
    result = run("counts")
    assert result.exit_code == 0
    assert json.loads(result.output)["waiting"] == 1


def test_show_hides_image_data(run, repo, payload):
    job = repo.enqueue(payload)
    result = run("show", job.id)
    assert result.exit_code == 0
    shown = json.loads(result.output)
    assert shown["id"] == job.id
    assert shown["state"] == "waiting"
    assert "data" not in shown["payload"]


def test_show_unknown_job(run):
    assert run("show", "nope").exit_code == 1


def test_list_and_pending(run, repo, payload):
    first = repo.enqueue(payload)
    second = repo.enqueue(payload)
    listed = run("list", "--state", "waiting")
    assert first.id in listed.output and second.id in listed.output

    pending = run("pending")
    assert pending.output.index(first.id) < pending.output.index(second.id)


def test_retry_failed_job(store, payload, settings):
    repo = JobRepository(store, max_attempts=2)
    job = repo.enqueue(payload)
    claimed = repo.claim_next("w1")
    repo.fail(job.id, claimed.claim_token, "boom")

    result = CliRunner().invoke(cli, ["retry", job.id], obj={"settings": settings, "repository": repo})
    assert result.exit_code == 0
    assert "Re-queued" in result.output
    assert repo.status(job.id) == JobState.WAITING


def test_retry_of_waiting_job_fails(run, repo, payload):
    job = repo.enqueue(payload)
    assert run("retry", job.id).exit_code == 1


def test_sweep(run, repo, payload, clock):
    job = repo.enqueue(payload)
    repo.claim_next("w1")
    clock.advance(61)
    result = run("sweep")
    assert result.exit_code == 0
    assert "expired=1" in result.output
    assert job.id in result.output


def test_sweep_retries_stranded_failure(run, repo, payload, clock):
    job = repo.enqueue(payload)
    claimed = repo.claim_next("w1")
    repo.fail(job.id, claimed.claim_token, "boom")
    clock.advance(31)
    result = run("sweep")
    assert result.exit_code == 0
    assert "expired=0 requeued=0 retried=1" in result.output
    assert f"retried  {job.id}" in result.output
    assert repo.status(job.id) == JobState.WAITING


def test_purge(run, repo, payload, clock, make_score):
    job = repo.enqueue(payload)
    claimed = repo.claim_next("w1")
    repo.complete(job.id, claimed.claim_token, make_score())
    clock.advance(10)
    result = run("purge", "--older-than", "5")
    assert result.exit_code == 0
    assert "Purged 1" in result.output
    assert repo.counts()["completed"] == 0


def test_migrate_to_local(run, repo, payload, tmp_path):
    active = repo.enqueue(payload)
    waiting = repo.enqueue(payload)
    repo.claim_next("w1")

    target_dir = tmp_path / "migrated"
    result = run("migrate", "--to", "local", "--data-dir", str(target_dir))
    assert result.exit_code == 0, result.output

    target = LocalStore(target_dir)
    assert target.list_keys("jobs/") == sorted([f"jobs/{active.id}.json", f"jobs/{waiting.id}.json"])
    assert target.pending_ids() == [waiting.id]


def test_migrate_to_same_backend_is_refused(run):
    assert run("migrate", "--to", "memory").exit_code == 1


def test_migrate_store_skips_existing_records(payload):
    source, target = MemoryStore(), MemoryStore()
    job = JobRepository(source).enqueue(payload)
    target.write(f"jobs/{job.id}.json", b"already here", None)
    target.push_pending(job.id)

    assert migrate_store(source, target) == (0, 0)
    assert target.read(f"jobs/{job.id}.json")[0] == b"already here"
