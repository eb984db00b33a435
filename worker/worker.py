import queue
import signal
import threading
from typing import List, Optional

import click
from loguru import logger
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from common.config import Settings, load_settings
from common.errors import StaleClaim, StoreUnavailable
from common.job_schema import ImagePayload, Job, parse_score_result
from common.log_setup import configure_logging
from common.repository import JobRepository
from common.scoring import Scorer, load_scorer
from common.storage import create_store


class ScoringTimeout(Exception):
    pass


class _StopRequested(Exception):
    pass


def score_with_timeout(scorer: Scorer, payload: ImagePayload, timeout: float):
    """Run the scorer on a daemon thread and give up after ``timeout`` seconds.

    A scorer that overruns keeps running in the background and its return
    value is dropped. The thread never holds up interpreter exit.
    """
    outcome: "queue.Queue" = queue.Queue(maxsize=1)

    def _target():
        try:
            outcome.put((True, scorer(payload)))
        except Exception as exc:
            outcome.put((False, exc))

    threading.Thread(target=_target, name="scorer", daemon=True).start()
    try:
        ok, value = outcome.get(timeout=timeout)
    except queue.Empty:
        raise ScoringTimeout(f"Scoring timed out after {timeout:g}s") from None
    if ok:
        return value
    raise value


class Worker:
    """Claims one job at a time, scores it and records the outcome."""

    def __init__(
        self,
        repository: JobRepository,
        scorer: Scorer,
        settings: Settings,
        name: str = "worker-1",
        stop_event: Optional[threading.Event] = None,
    ):
        self.repository = repository
        self.scorer = scorer
        self.settings = settings
        self.name = name
        self._stop = stop_event or threading.Event()

    def _backoff(self, seconds: float) -> None:
        if self._stop.wait(seconds):
            raise _StopRequested()

    def _log_store_retry(self, retry_state: RetryCallState) -> None:
        logger.warning(
            "[{worker}] store unavailable ({err}); retry {attempt}/{total} in {delay:.2f}s",
            worker=self.name,
            err=retry_state.outcome.exception(),
            attempt=retry_state.attempt_number,
            total=self.settings.store_retry_attempts - 1,
            delay=retry_state.next_action.sleep,
        )

    def _claim(self) -> Optional[Job]:
        retrying = Retrying(
            retry=retry_if_exception_type(StoreUnavailable),
            stop=stop_after_attempt(self.settings.store_retry_attempts),
            wait=wait_exponential(
                multiplier=self.settings.store_retry_base_seconds,
                max=self.settings.store_retry_max_seconds,
            ),
            sleep=self._backoff,
            before_sleep=self._log_store_retry,
            reraise=True,
        )
        try:
            return retrying(self.repository.claim_next, self.name)
        except _StopRequested:
            return None

    def run_once(self) -> Optional[Job]:
        """Process at most one job; returns its record after processing, or None when idle."""
        job = self._claim()
        if job is None:
            return None
        return self.process_job(job)

    def process_job(self, job: Job) -> Job:
        try:
            raw = score_with_timeout(self.scorer, job.payload, self.settings.timeout_seconds)
            result = parse_score_result(raw)
        except ScoringTimeout as exc:
            logger.warning("[{worker}] job {job_id}: {err}", worker=self.name, job_id=job.id, err=exc)
            return self._record_failure(job, str(exc))
        except Exception as exc:
            logger.opt(exception=exc).warning("[{worker}] scoring failed for job {job_id}",
                                              worker=self.name, job_id=job.id)
            return self._record_failure(job, f"{type(exc).__name__}: {exc}")

        try:
            return self.repository.complete(job.id, job.claim_token, result)
        except StaleClaim:
            return self.repository.get(job.id)

    def _record_failure(self, job: Job, error: str) -> Job:
        try:
            failed = self.repository.fail(job.id, job.claim_token, error)
        except StaleClaim:
            return self.repository.get(job.id)
        if failed.can_retry:
            return self.repository.retry(job.id)
        logger.error("[{worker}] job {job_id} failed permanently after {attempts} attempts",
                     worker=self.name, job_id=job.id, attempts=failed.attempts)
        return failed

    def run(self) -> None:
        logger.info("[{worker}] started", worker=self.name)
        while not self._stop.is_set():
            try:
                job = self.run_once()
            except StoreUnavailable as exc:
                logger.error("[{worker}] giving up on this iteration, store unavailable: {err}",
                             worker=self.name, err=exc)
                job = None
            except Exception:
                logger.exception("[{worker}] unexpected error", worker=self.name)
                job = None
            if job is None:
                self._stop.wait(self.settings.poll_interval)
        logger.info("[{worker}] stopped", worker=self.name)


class Sweeper:
    """Periodically recovers stuck jobs and purges old ones."""

    def __init__(self, repository: JobRepository, settings: Settings, stop_event: threading.Event):
        self.repository = repository
        self.settings = settings
        self._stop = stop_event

    def sweep_once(self) -> dict:
        summary = self.repository.sweep()
        if any(summary.values()):
            logger.info("Sweep expired {expired}, requeued {requeued}, retried {retried}",
                        **{key: len(ids) for key, ids in summary.items()})
        if self.settings.retention_seconds > 0:
            summary["purged"] = self.repository.purge(self.settings.retention_seconds)
        return summary

    def run(self) -> None:
        while not self._stop.wait(self.settings.sweep_interval_seconds):
            try:
                self.sweep_once()
            except StoreUnavailable as exc:
                logger.error("Sweep skipped, store unavailable: {err}", err=exc)


class WorkerPool:
    def __init__(self, repository: JobRepository, scorer: Scorer, settings: Settings, size: Optional[int] = None):
        self.settings = settings
        self.stop_event = threading.Event()
        size = size or settings.worker_concurrency
        self.workers = [
            Worker(repository, scorer, settings, name=f"worker-{i + 1}", stop_event=self.stop_event)
            for i in range(size)
        ]
        self.sweeper = Sweeper(repository, settings, self.stop_event)
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        for worker in self.workers:
            t = threading.Thread(target=worker.run, name=worker.name, daemon=True)
            t.start()
            self._threads.append(t)
        t = threading.Thread(target=self.sweeper.run, name="sweeper", daemon=True)
        t.start()
        self._threads.append(t)
        logger.info("Worker pool started with {count} workers", count=len(self.workers))

    def stop(self, timeout: Optional[float] = None) -> None:
        self.stop_event.set()
        for t in self._threads:
            t.join(timeout)
        self._threads = []

    def install_signal_handlers(self) -> None:
        def _handler(signum, frame):
            logger.info("Received signal {signum}, stopping workers after their current job", signum=signum)
            self.stop_event.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)

    def run_forever(self) -> None:
        self.install_signal_handlers()
        self.start()
        try:
            while not self.stop_event.wait(0.5):
                pass
        finally:
            self.stop()
            logger.info("Worker pool stopped")


@click.command(help="Run face scoring workers against the configured queue store.")
@click.option("--concurrency", type=int, default=None, help="Number of worker threads (default: WORKER_CONCURRENCY).")
@click.option("--once", is_flag=True, help="Process at most one job, then exit.")
def main(concurrency, once):
    settings = load_settings(worker_concurrency=concurrency)
    configure_logging(settings.log_level, settings.log_json)
    store = create_store(settings)
    repository = JobRepository.from_settings(store, settings)
    scorer = load_scorer(settings.scorer)
    try:
        if once:
            job = Worker(repository, scorer, settings).run_once()
            if job is None:
                click.echo("No job waiting.")
            else:
                click.echo(f"{job.id}: {job.state.value}")
            return
        WorkerPool(repository, scorer, settings).run_forever()
    finally:
        store.close()


if __name__ == "__main__":
    main()
