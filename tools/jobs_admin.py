import json
from pathlib import Path
from typing import Tuple

import click
from loguru import logger

from common.config import STORAGE_BACKENDS, Settings, load_settings
from common.errors import InvalidStateTransition, JobError, NotFound, VersionConflict
from common.job_schema import JobState
from common.log_setup import configure_logging
from common.repository import JobRepository
from common.storage import JOBS_PREFIX, QueueStore, create_store


def migrate_store(source: QueueStore, target: QueueStore) -> Tuple[int, int]:
    """Copy every job record and the pending order from ``source`` to ``target``.

    Records that already exist on the target are left alone. Returns
    ``(records copied, pending entries appended)``.
    """
    copied = 0
    for key in source.list_keys(JOBS_PREFIX):
        current = source.read(key)
        if current is None:
            continue
        try:
            target.write(key, current[0], None)
        except VersionConflict:
            logger.warning("Skipped {key}: already present on the {backend} store", key=key, backend=target.backend)
            continue
        copied += 1
        logger.info("Copied {key}", key=key)

    already_queued = set(target.pending_ids())
    appended = 0
    for job_id in source.pending_ids():
        if job_id in already_queued:
            continue
        target.push_pending(job_id)
        appended += 1
    return copied, appended


def _fail(message: str) -> None:
    click.secho(f"Error: {message}", fg="red", err=True)
    raise SystemExit(1)


@click.group(help="Inspect and maintain the face score job queue.")
@click.pass_context
def cli(ctx):
    if ctx.obj is not None:
        return
    settings = load_settings()
    configure_logging(settings.log_level, settings.log_json)
    store = create_store(settings)
    ctx.call_on_close(store.close)
    ctx.obj = {"settings": settings, "repository": JobRepository.from_settings(store, settings)}


@cli.command("show", help="Print one job record.")
@click.argument("job_id")
@click.pass_obj
def show_cmd(obj, job_id):
    try:
        job = obj["repository"].get(job_id)
    except NotFound as e:
        _fail(str(e))
    data = job.model_dump(mode="json", exclude={"payload": {"data"}})
    click.echo(json.dumps(data, indent=2))


@cli.command("counts", help="Number of jobs per state.")
@click.pass_obj
def counts_cmd(obj):
    click.echo(json.dumps(obj["repository"].counts(), indent=2))


@cli.command("list", help="List jobs, oldest first.")
@click.option("--state", type=click.Choice([s.value for s in JobState]), default=None)
@click.pass_obj
def list_cmd(obj, state):
    jobs = obj["repository"].list_jobs(JobState(state) if state else None)
    if not jobs:
        click.echo("No jobs.")
        return
    for job in jobs:
        click.echo(
            f"{job.id} | {job.state.value:<9} | attempts={job.attempts}/{job.max_attempts} "
            f"| created={job.created_at.isoformat()} | error={job.error}"
        )


@cli.command("pending", help="Show the pending order, next job first.")
@click.pass_obj
def pending_cmd(obj):
    ids = obj["repository"].store.pending_ids()
    if not ids:
        click.echo("Queue is empty.")
        return
    for position, job_id in enumerate(ids, start=1):
        click.echo(f"{position:>4}  {job_id}")


@cli.command("sweep", help="Expire stale claims, requeue orphaned jobs and retry stranded failures.")
@click.pass_obj
def sweep_cmd(obj):
    summary = obj["repository"].sweep()
    click.echo(" ".join(f"{key}={len(ids)}" for key, ids in summary.items()))
    for key, ids in summary.items():
        for job_id in ids:
            click.echo(f"  {key:<8} {job_id}")


@cli.command("purge", help="Delete finished jobs older than the retention window.")
@click.option("--older-than", type=float, default=None,
              help="Age in seconds (default: JOB_RETENTION_SECONDS).")
@click.pass_obj
def purge_cmd(obj, older_than):
    settings: Settings = obj["settings"]
    seconds = settings.retention_seconds if older_than is None else older_than
    removed = obj["repository"].purge(seconds)
    click.secho(f"Purged {removed} job(s).", fg="green")


@cli.command("retry", help="Move a failed job back to the queue.")
@click.argument("job_id")
@click.pass_obj
def retry_cmd(obj, job_id):
    try:
        job = obj["repository"].retry(job_id)
    except (NotFound, InvalidStateTransition) as e:
        _fail(str(e))
    click.secho(f"Re-queued {job.id} (attempt {job.attempts + 1}/{job.max_attempts}).", fg="green")


@cli.command("migrate", help="Copy all jobs and the pending order to another store backend.")
@click.option("--to", "backend", required=True, type=click.Choice(STORAGE_BACKENDS))
@click.option("--data-dir", type=click.Path(path_type=Path), default=None,
              help="Target directory when migrating to the local backend.")
@click.pass_obj
def migrate_cmd(obj, backend, data_dir):
    settings: Settings = obj["settings"]
    source = obj["repository"].store
    values = settings.model_dump()
    values["storage_backend"] = backend
    if data_dir is not None:
        values["data_dir"] = data_dir
    try:
        target_settings = Settings(**values)
    except ValueError as e:
        _fail(str(e))
    if target_settings.storage_backend == settings.storage_backend and (
        backend != "local" or target_settings.data_dir == settings.data_dir
    ):
        _fail("Source and target store are the same")

    target = create_store(target_settings)
    try:
        copied, appended = migrate_store(source, target)
    except JobError as e:
        _fail(str(e))
    finally:
        target.close()
    click.secho(f"Copied {copied} job(s) and {appended} pending entries to {backend}.", fg="green")


if __name__ == "__main__":
    cli()
