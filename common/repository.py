import re
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger

from common.config import Settings
from common.errors import (
    InvalidStateTransition,
    JobFailed,
    NotFound,
    NotReady,
    StaleClaim,
    StoreUnavailable,
    ValidationError,
    VersionConflict,
)
from common.job_schema import ImagePayload, Job, JobState, ScoreResult, new_job_id, utcnow
from common.storage import CAS_ATTEMPTS, JOBS_PREFIX, QueueStore, job_id_from_key, job_key

_JOB_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


class JobRepository:
    """Job records and the state machine over a QueueStore.

    Every mutation is a read / transition / conditional-write loop on the
    job's record, so two writers can never both apply a transition from the
    same observed state.
    """

    def __init__(
        self,
        store: QueueStore,
        *,
        max_attempts: int = 3,
        stale_after_seconds: float = 60.0,
        orphan_grace_seconds: float = 30.0,
        max_image_bytes: Optional[int] = None,
        id_factory: Callable[[], str] = new_job_id,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.orphan_grace = timedelta(seconds=orphan_grace_seconds)
        self.max_image_bytes = max_image_bytes
        self._id_factory = id_factory
        self._clock = clock

    @classmethod
    def from_settings(cls, store: QueueStore, settings: Settings, **kwargs) -> "JobRepository":
        return cls(
            store,
            max_attempts=settings.max_attempts,
            stale_after_seconds=settings.stale_after_seconds,
            orphan_grace_seconds=settings.orphan_grace_seconds,
            max_image_bytes=settings.max_image_bytes,
            **kwargs,
        )

    # ---------- low level ----------

    def _load(self, job_id: str) -> Tuple[Job, str]:
        if not _JOB_ID_RE.match(job_id or ""):
            raise NotFound(job_id)
        current = self.store.read(job_key(job_id))
        if current is None:
            raise NotFound(job_id)
        data, version = current
        return Job.from_bytes(data), version

    def _mutate(self, job_id: str, change: Callable[[Job], Job]) -> Job:
        for _ in range(CAS_ATTEMPTS):
            job, version = self._load(job_id)
            updated = change(job)
            try:
                self.store.write(job_key(job_id), updated.to_bytes(), version)
                return updated
            except VersionConflict:
                logger.debug("Job {job_id} changed underneath us, re-reading", job_id=job_id)
        raise StoreUnavailable(f"Job {job_id} stayed contended")

    def _require_claim(self, job: Job, claim_token: str, target: JobState) -> None:
        if job.state != JobState.ACTIVE:
            raise StaleClaim(job.id, job.state.value, target.value, reason="job is no longer active")
        if job.claim_token != claim_token:
            raise StaleClaim(job.id, job.state.value, target.value, reason="claim token superseded")

    # ---------- enqueue ----------

    def enqueue(self, payload: ImagePayload) -> Job:
        if payload is None:
            raise ValidationError("Image is required")
        if self.max_image_bytes is not None and payload.size > self.max_image_bytes:
            raise ValidationError(f"Image exceeds {self.max_image_bytes} bytes")

        now = self._clock()
        job = Job(id=self._id_factory(), payload=payload, max_attempts=self.max_attempts, created_at=now, updated_at=now)
        try:
            self.store.write(job_key(job.id), job.to_bytes(), None)
        except VersionConflict as exc:
            raise InvalidStateTransition(job.id, None, JobState.WAITING.value, reason="id already exists") from exc

        try:
            self.store.push_pending(job.id)
        except StoreUnavailable:
            logger.error("Could not queue job {job_id}; removing its record", job_id=job.id)
            try:
                self.store.delete(job_key(job.id))
            except StoreUnavailable:
                logger.exception("Rollback of job {job_id} failed; the orphan sweep will requeue it", job_id=job.id)
            raise

        logger.info("Job {job_id} queued ({kind}, {size} bytes)", job_id=job.id, kind=payload.kind, size=payload.size)
        return job

    # ---------- reads ----------

    def get(self, job_id: str) -> Job:
        return self._load(job_id)[0]

    def status(self, job_id: str) -> JobState:
        return self.get(job_id).state

    def result(self, job_id: str) -> ScoreResult:
        job = self.get(job_id)
        if job.state == JobState.COMPLETED:
            return job.result
        if job.state == JobState.FAILED:
            raise JobFailed(job_id, job.error)
        raise NotReady(job_id, job.state.value)

    def list_jobs(self, state: Optional[JobState] = None) -> List[Job]:
        jobs = []
        for key in self.store.list_keys(JOBS_PREFIX):
            try:
                job = self.get(job_id_from_key(key))
            except NotFound:
                continue
            if state is None or job.state == state:
                jobs.append(job)
        return sorted(jobs, key=lambda j: j.created_at)

    def counts(self) -> Dict[str, int]:
        out = {state.value: 0 for state in JobState}
        for job in self.list_jobs():
            out[job.state.value] += 1
        out["pending"] = len(set(self.store.pending_ids()))
        return out

    def ping(self) -> None:
        self.store.ping()

    # ---------- transitions ----------

    def claim(self, job_id: str, worker_id: str) -> Job:
        def _claim(job: Job) -> Job:
            now = self._clock()
            return job.transition(
                JobState.ACTIVE,
                started_at=now,
                updated_at=now,
                attempts=job.attempts + 1,
                claim_token=uuid.uuid4().hex,
                worker_id=worker_id,
            )

        job = self._mutate(job_id, _claim)
        logger.info(
            "Job {job_id} claimed by {worker} (attempt {attempt}/{max})",
            job_id=job_id, worker=worker_id, attempt=job.attempts, max=job.max_attempts,
        )
        return job

    def claim_next(self, worker_id: str) -> Optional[Job]:
        """Pop pending entries until one is claimable; None when the queue is empty."""
        while True:
            job_id = self.store.pop_pending()
            if job_id is None:
                return None
            try:
                return self.claim(job_id, worker_id)
            except NotFound:
                logger.warning("Dropping pending entry {job_id}: no such job", job_id=job_id)
            except InvalidStateTransition as exc:
                logger.warning("Dropping pending entry {job_id}: {err}", job_id=job_id, err=exc)

    def complete(self, job_id: str, claim_token: str, result: ScoreResult) -> Job:
        def _complete(job: Job) -> Job:
            self._require_claim(job, claim_token, JobState.COMPLETED)
            now = self._clock()
            return job.transition(JobState.COMPLETED, result=result, finished_at=now, updated_at=now)

        try:
            job = self._mutate(job_id, _complete)
        except StaleClaim as exc:
            logger.warning("Discarding result for job {job_id}: {err}", job_id=job_id, err=exc)
            raise
        logger.info("Job {job_id} completed", job_id=job_id)
        return job

    def fail(self, job_id: str, claim_token: str, error: str) -> Job:
        def _fail(job: Job) -> Job:
            self._require_claim(job, claim_token, JobState.FAILED)
            now = self._clock()
            return job.transition(JobState.FAILED, error=error or "unknown error", finished_at=now, updated_at=now)

        try:
            job = self._mutate(job_id, _fail)
        except StaleClaim as exc:
            logger.warning("Discarding failure for job {job_id}: {err}", job_id=job_id, err=exc)
            raise
        logger.info("Job {job_id} failed (attempt {attempt}/{max}): {error}",
                    job_id=job_id, attempt=job.attempts, max=job.max_attempts, error=job.error)
        return job

    def retry(self, job_id: str) -> Job:
        """Move a failed job back to waiting and re-append it behind newer work."""

        def _retry(job: Job) -> Job:
            if job.state == JobState.FAILED and not job.can_retry:
                raise InvalidStateTransition(
                    job.id, job.state.value, JobState.WAITING.value,
                    reason=f"attempts exhausted ({job.attempts}/{job.max_attempts})",
                )
            return job.transition(
                JobState.WAITING,
                error=None,
                started_at=None,
                finished_at=None,
                claim_token=None,
                worker_id=None,
                updated_at=self._clock(),
            )

        try:
            job = self._mutate(job_id, _retry)
        except InvalidStateTransition as exc:
            logger.warning("Retry rejected: {err}", err=exc)
            raise
        self.store.push_pending(job_id)
        logger.info("Job {job_id} requeued for attempt {attempt}/{max}",
                    job_id=job_id, attempt=job.attempts + 1, max=job.max_attempts)
        return job

    # ---------- maintenance ----------

    def expire_stale(self, now: Optional[datetime] = None) -> List[str]:
        """Fail active jobs whose claim outlived the staleness threshold.

        Returns the ids that were expired. Jobs with attempts left are
        retried right away.
        """
        now = now or self._clock()
        expired = []
        for job in self.list_jobs(JobState.ACTIVE):
            if job.started_at is None or now - job.started_at < self.stale_after:
                continue
            observed_token = job.claim_token
            message = f"timed out: no completion within {int(self.stale_after.total_seconds())}s"

            def _expire(current: Job, token=observed_token, message=message) -> Job:
                if current.state != JobState.ACTIVE or current.claim_token != token:
                    raise StaleClaim(current.id, current.state.value, JobState.FAILED.value,
                                     reason="job moved on before the sweep")
                return current.transition(JobState.FAILED, error=message, finished_at=now, updated_at=now)

            try:
                failed = self._mutate(job.id, _expire)
            except (NotFound, StaleClaim):
                continue
            logger.warning("Job {job_id} expired after claim by {worker}", job_id=job.id, worker=job.worker_id)
            expired.append(job.id)
            if failed.can_retry:
                try:
                    self.retry(job.id)
                except (InvalidStateTransition, StoreUnavailable) as exc:
                    logger.warning("Expired job {job_id} left failed for a later sweep: {err}", job_id=job.id, err=exc)
        return expired

    def retry_failed(self, now: Optional[datetime] = None) -> List[str]:
        """Retry failed jobs that still have attempts left but were never requeued.

        A job lands here when its worker or an earlier sweep recorded the
        failure and then lost the store before the retry went through.
        """
        now = now or self._clock()
        retried = []
        for job in self.list_jobs(JobState.FAILED):
            if not job.can_retry or job.finished_at is None or now - job.finished_at < self.orphan_grace:
                continue
            try:
                self.retry(job.id)
            except (NotFound, InvalidStateTransition):
                continue
            except StoreUnavailable as exc:
                logger.warning("Could not retry failed job {job_id}: {err}", job_id=job.id, err=exc)
                continue
            retried.append(job.id)
        return retried

    def requeue_orphans(self, now: Optional[datetime] = None) -> List[str]:
        """Re-append waiting jobs that fell out of the pending order."""
        now = now or self._clock()
        pending = set(self.store.pending_ids())
        requeued = []
        for job in self.list_jobs(JobState.WAITING):
            if job.id in pending or now - job.updated_at < self.orphan_grace:
                continue
            self.store.push_pending(job.id)
            logger.warning("Job {job_id} was waiting outside the queue; requeued", job_id=job.id)
            requeued.append(job.id)
        return requeued

    def sweep(self, now: Optional[datetime] = None) -> Dict[str, List[str]]:
        return {
            "expired": self.expire_stale(now),
            "requeued": self.requeue_orphans(now),
            "retried": self.retry_failed(now),
        }

    def purge(self, older_than_seconds: float, now: Optional[datetime] = None) -> int:
        """Delete terminal jobs that finished before the retention cutoff."""
        cutoff = (now or self._clock()) - timedelta(seconds=older_than_seconds)
        removed = 0
        for job in self.list_jobs():
            if not job.is_terminal or job.finished_at is None or job.finished_at >= cutoff:
                continue
            try:
                current, version = self._load(job.id)
                if not current.is_terminal:
                    continue
                self.store.delete(job_key(job.id), version)
            except (NotFound, VersionConflict):
                continue
            removed += 1
        if removed:
            logger.info("Purged {count} finished jobs older than {cutoff}", count=removed, cutoff=cutoff.isoformat())
        return removed
