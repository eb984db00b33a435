import fcntl
import hashlib
import json
import os
import random
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

from loguru import logger

# Import configuration and the error taxonomy shared with the repository.
from common.config import Settings
from common.errors import StoreUnavailable, VersionConflict

# ------------------------------------------------------------------------------
# CONDITIONAL IMPORTS
# Cloud SDK and Redis imports are wrapped so a minimal install (local backend
# only) does not need every client library.
# ------------------------------------------------------------------------------

# 1. Google Cloud Storage SDK
try:
    from google.api_core import exceptions as gcs_exceptions
    from google.cloud import storage as gcs
except ImportError:
    gcs = None
    gcs_exceptions = None

# 2. Azure Blob Storage SDK
try:
    from azure.core import MatchConditions
    from azure.core.exceptions import (
        AzureError,
        ResourceExistsError,
        ResourceModifiedError,
        ResourceNotFoundError,
    )
    from azure.storage.blob import BlobServiceClient
except ImportError:
    BlobServiceClient = None

# 3. Redis
try:
    import redis
except ImportError:
    redis = None

# ------------------------------------------------------------------------------
# CONSTANTS
# Object layout inside every backend.
# ------------------------------------------------------------------------------
JOBS_PREFIX = "jobs/"                   # one JSON record per job: jobs/<id>.json
PENDING_OBJECT = "queue/pending.json"   # ordered list of job ids waiting to be claimed
CAS_ATTEMPTS = 50

T = TypeVar("T")


def job_key(job_id: str) -> str:
    return f"{JOBS_PREFIX}{job_id}.json"


def job_id_from_key(key: str) -> str:
    return key[len(JOBS_PREFIX):-len(".json")]


def _backoff_jitter() -> None:
    time.sleep(random.uniform(0, 0.005))


# ------------------------------------------------------------------------------
# STORE INTERFACE
# ------------------------------------------------------------------------------

class QueueStore:
    """Durable key/value store with compare-and-swap writes.

    ``read`` returns ``(data, version)`` or None. ``write`` only succeeds when
    the stored version still equals ``expected_version`` (None meaning the key
    must not exist yet) and raises VersionConflict otherwise. Transport
    failures surface as StoreUnavailable.

    The pending work-item order is a JSON list kept under PENDING_OBJECT and
    mutated through the same compare-and-swap, so a popped id is handed to
    exactly one caller. Backends with a native atomic list override the
    pending methods.
    """

    backend = "base"

    def read(self, key: str) -> Optional[Tuple[bytes, str]]:
        raise NotImplementedError

    def write(self, key: str, data: bytes, expected_version: Optional[str]) -> str:
        raise NotImplementedError

    def delete(self, key: str, expected_version: Optional[str] = None) -> None:
        raise NotImplementedError

    def list_keys(self, prefix: str) -> List[str]:
        raise NotImplementedError

    def ping(self) -> None:
        self.read(PENDING_OBJECT)

    def close(self) -> None:
        pass

    # ---------- pending order ----------

    def _update_pending(self, mutate: Callable[[List[str]], Tuple[List[str], T]]) -> T:
        for _ in range(CAS_ATTEMPTS):
            current = self.read(PENDING_OBJECT)
            if current is None:
                ids, version = [], None
            else:
                ids, version = json.loads(current[0]), current[1]
            new_ids, outcome = mutate(list(ids))
            if new_ids == ids:
                return outcome
            try:
                self.write(PENDING_OBJECT, json.dumps(new_ids).encode("utf-8"), version)
                return outcome
            except VersionConflict:
                logger.debug("Pending queue write lost a race on {backend}, retrying", backend=self.backend)
                _backoff_jitter()
        raise StoreUnavailable("Pending queue stayed contended")

    def push_pending(self, job_id: str) -> None:
        self._update_pending(lambda ids: (ids + [job_id], None))

    def pop_pending(self) -> Optional[str]:
        def _pop(ids: List[str]) -> Tuple[List[str], Optional[str]]:
            if not ids:
                return ids, None
            return ids[1:], ids[0]

        return self._update_pending(_pop)

    def remove_pending(self, job_id: str) -> bool:
        def _remove(ids: List[str]) -> Tuple[List[str], bool]:
            if job_id not in ids:
                return ids, False
            return [i for i in ids if i != job_id], True

        return self._update_pending(_remove)

    def pending_ids(self) -> List[str]:
        current = self.read(PENDING_OBJECT)
        return [] if current is None else list(json.loads(current[0]))


# ------------------------------------------------------------------------------
# IN-MEMORY BACKEND
# Used when STORAGE_BACKEND="memory" and by the tests. Not durable.
# ------------------------------------------------------------------------------

class MemoryStore(QueueStore):
    backend = "memory"

    def __init__(self):
        self._lock = threading.Lock()
        self._data: Dict[str, Tuple[bytes, int]] = {}
        self._counter = 0

    def read(self, key):
        with self._lock:
            item = self._data.get(key)
        if item is None:
            return None
        return item[0], str(item[1])

    def write(self, key, data, expected_version):
        with self._lock:
            current = self._data.get(key)
            current_version = None if current is None else str(current[1])
            if current_version != expected_version:
                raise VersionConflict(key)
            self._counter += 1
            self._data[key] = (bytes(data), self._counter)
            return str(self._counter)

    def delete(self, key, expected_version=None):
        with self._lock:
            current = self._data.get(key)
            if current is None:
                return
            if expected_version is not None and str(current[1]) != expected_version:
                raise VersionConflict(key)
            del self._data[key]

    def list_keys(self, prefix):
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def ping(self):
        return None


# ------------------------------------------------------------------------------
# LOCAL FILESYSTEM BACKEND
# Used when STORAGE_BACKEND="local". One file per key under LOCAL_DATA_DIR.
# Writes are serialized across processes with fcntl.flock and land through an
# atomic rename, so readers never see a half-written record.
# ------------------------------------------------------------------------------

class LocalStore(QueueStore):
    backend = "local"

    def __init__(self, root: Path):
        self.root = Path(root)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self._lock_path = self.root / ".lock"
            self._lock_path.touch(exist_ok=True)
        except OSError as exc:
            raise StoreUnavailable(f"Cannot prepare local store at {self.root}: {exc}") from exc
        self._thread_lock = threading.Lock()

    def _path(self, key: str) -> Path:
        return self.root / key

    @staticmethod
    def _digest(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    @contextmanager
    def _exclusive(self):
        """Hold the store-wide write lock (threads and processes)."""
        with self._thread_lock:
            with open(self._lock_path, "r") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def read(self, key):
        path = self._path(key)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StoreUnavailable(f"Cannot read {path}: {exc}") from exc
        return data, self._digest(data)

    def write(self, key, data, expected_version):
        path = self._path(key)
        try:
            with self._exclusive():
                current = self.read(key)
                current_version = None if current is None else current[1]
                if current_version != expected_version:
                    raise VersionConflict(key)
                path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
                try:
                    with os.fdopen(fd, "wb") as f:
                        f.write(data)
                    os.replace(tmp_name, path)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
        except OSError as exc:
            raise StoreUnavailable(f"Cannot write {path}: {exc}") from exc
        return self._digest(data)

    def delete(self, key, expected_version=None):
        path = self._path(key)
        try:
            with self._exclusive():
                current = self.read(key)
                if current is None:
                    return
                if expected_version is not None and current[1] != expected_version:
                    raise VersionConflict(key)
                path.unlink(missing_ok=True)
        except OSError as exc:
            raise StoreUnavailable(f"Cannot delete {path}: {exc}") from exc

    def list_keys(self, prefix):
        directory = self.root / prefix
        if not directory.is_dir():
            return []
        try:
            return sorted(
                f"{prefix}{p.name}" for p in directory.iterdir() if p.is_file() and not p.name.startswith(".")
            )
        except OSError as exc:
            raise StoreUnavailable(f"Cannot list {directory}: {exc}") from exc

    def ping(self):
        if not os.access(self.root, os.W_OK):
            raise StoreUnavailable(f"Local store at {self.root} is not writable")


# ------------------------------------------------------------------------------
# GOOGLE CLOUD STORAGE (GCS) BACKEND
# Used when STORAGE_BACKEND="gcp". Object generations are the versions;
# if_generation_match=0 means "only create".
# ------------------------------------------------------------------------------

def _get_gcs_client():
    """Returns an authenticated GCS client."""
    if not gcs:
        raise RuntimeError("google-cloud-storage library is not installed.")
    return gcs.Client()


def _gcs_transport_errors():
    return (gcs_exceptions.GoogleAPIError, OSError)


class GCSStore(QueueStore):
    backend = "gcp"

    def __init__(self, bucket_name: str, client=None, ensure_bucket: bool = True):
        if gcs_exceptions is None:
            raise RuntimeError("google-cloud-storage library is not installed.")
        self.client = client or _get_gcs_client()
        self.bucket_name = bucket_name
        if ensure_bucket:
            self.bucket = self._ensure_bucket_exists(bucket_name)
        else:
            self.bucket = self.client.bucket(bucket_name)

    def _ensure_bucket_exists(self, bucket_name: str):
        """Returns the bucket, creating it when it does not exist yet."""
        try:
            return self.client.get_bucket(bucket_name)
        except gcs_exceptions.NotFound:
            logger.info("Creating GCS bucket {bucket}", bucket=bucket_name)
            return self.client.create_bucket(bucket_name)
        except _gcs_transport_errors() as exc:
            raise StoreUnavailable(f"GCS bucket {bucket_name} unreachable: {exc}") from exc

    def read(self, key):
        for _ in range(CAS_ATTEMPTS):
            try:
                blob = self.bucket.get_blob(key)
                if blob is None:
                    return None
                # Pin the download to the generation we just saw.
                data = blob.download_as_bytes(if_generation_match=blob.generation)
                return data, str(blob.generation)
            except gcs_exceptions.NotFound:
                return None
            except gcs_exceptions.PreconditionFailed:
                continue
            except _gcs_transport_errors() as exc:
                raise StoreUnavailable(f"GCS read of {key} failed: {exc}") from exc
        raise StoreUnavailable(f"GCS object {key} kept changing during read")

    def write(self, key, data, expected_version):
        blob = self.bucket.blob(key)
        generation = int(expected_version) if expected_version is not None else 0
        try:
            blob.upload_from_string(data, content_type="application/json", if_generation_match=generation)
        except gcs_exceptions.PreconditionFailed as exc:
            raise VersionConflict(key) from exc
        except _gcs_transport_errors() as exc:
            raise StoreUnavailable(f"GCS write of {key} failed: {exc}") from exc
        return str(blob.generation)

    def delete(self, key, expected_version=None):
        blob = self.bucket.blob(key)
        kwargs = {}
        if expected_version is not None:
            kwargs["if_generation_match"] = int(expected_version)
        try:
            blob.delete(**kwargs)
        except gcs_exceptions.NotFound:
            return
        except gcs_exceptions.PreconditionFailed as exc:
            raise VersionConflict(key) from exc
        except _gcs_transport_errors() as exc:
            raise StoreUnavailable(f"GCS delete of {key} failed: {exc}") from exc

    def list_keys(self, prefix):
        try:
            return sorted(blob.name for blob in self.client.list_blobs(self.bucket_name, prefix=prefix))
        except _gcs_transport_errors() as exc:
            raise StoreUnavailable(f"GCS listing of {prefix} failed: {exc}") from exc


# ------------------------------------------------------------------------------
# AZURE BLOB STORAGE BACKEND
# Used when STORAGE_BACKEND="azure". Blob ETags are the versions.
# ------------------------------------------------------------------------------

def _get_azure_client(connection_string: Optional[str]):
    """Creates a BlobServiceClient using the connection string."""
    if not BlobServiceClient:
        raise RuntimeError("azure-storage-blob library is not installed.")
    if not connection_string:
        raise ValueError("AZURE_STORAGE_CONNECTION_STRING env var is missing.")
    return BlobServiceClient.from_connection_string(connection_string)


class AzureStore(QueueStore):
    backend = "azure"

    def __init__(
        self,
        container_name: str,
        connection_string: Optional[str] = None,
        service_client=None,
        ensure_container: bool = True,
    ):
        if not BlobServiceClient:
            raise RuntimeError("azure-storage-blob library is not installed.")
        client = service_client or _get_azure_client(connection_string)
        self.container = client.get_container_client(container_name)
        if ensure_container:
            try:
                if not self.container.exists():
                    logger.info("Creating Azure container {container}", container=container_name)
                    self.container.create_container()
            except ResourceExistsError:
                pass
            except AzureError as exc:
                raise StoreUnavailable(f"Azure container {container_name} unreachable: {exc}") from exc

    def read(self, key):
        blob_client = self.container.get_blob_client(key)
        try:
            downloader = blob_client.download_blob()
            data = downloader.readall()
        except ResourceNotFoundError:
            return None
        except AzureError as exc:
            raise StoreUnavailable(f"Azure read of {key} failed: {exc}") from exc
        return data, downloader.properties.etag

    def write(self, key, data, expected_version):
        blob_client = self.container.get_blob_client(key)
        try:
            if expected_version is None:
                result = blob_client.upload_blob(data, overwrite=False)
            else:
                result = blob_client.upload_blob(
                    data,
                    overwrite=True,
                    etag=expected_version,
                    match_condition=MatchConditions.IfNotModified,
                )
        except (ResourceExistsError, ResourceModifiedError, ResourceNotFoundError) as exc:
            raise VersionConflict(key) from exc
        except AzureError as exc:
            raise StoreUnavailable(f"Azure write of {key} failed: {exc}") from exc
        return result["etag"]

    def delete(self, key, expected_version=None):
        blob_client = self.container.get_blob_client(key)
        kwargs = {}
        if expected_version is not None:
            kwargs = {"etag": expected_version, "match_condition": MatchConditions.IfNotModified}
        try:
            blob_client.delete_blob(**kwargs)
        except ResourceNotFoundError:
            return
        except ResourceModifiedError as exc:
            raise VersionConflict(key) from exc
        except AzureError as exc:
            raise StoreUnavailable(f"Azure delete of {key} failed: {exc}") from exc

    def list_keys(self, prefix):
        try:
            return sorted(blob.name for blob in self.container.list_blobs(name_starts_with=prefix))
        except AzureError as exc:
            raise StoreUnavailable(f"Azure listing of {prefix} failed: {exc}") from exc


# ------------------------------------------------------------------------------
# REDIS BACKEND
# Used when STORAGE_BACKEND="redis". Records are hashes {data, version} written
# inside WATCH/MULTI transactions; the pending order is a native Redis list so
# LPOP is the exclusive pop.
# ------------------------------------------------------------------------------

def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class RedisStore(QueueStore):
    backend = "redis"

    def __init__(self, url: Optional[str] = None, prefix: str = "faceScoring", client=None):
        if redis is None:
            raise RuntimeError("redis library is not installed.")
        self.client = client if client is not None else redis.Redis.from_url(url)
        self.prefix = prefix
        self._pending = f"{prefix}:pending"

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def read(self, key):
        try:
            data, version = self.client.hmget(self._key(key), "data", "version")
        except redis.RedisError as exc:
            raise StoreUnavailable(f"Redis read of {key} failed: {exc}") from exc
        if data is None:
            return None
        return bytes(data), _text(version)

    def write(self, key, data, expected_version):
        name = self._key(key)
        try:
            with self.client.pipeline() as pipe:
                pipe.watch(name)
                current = pipe.hget(name, "version")
                current = None if current is None else _text(current)
                if current != expected_version:
                    raise VersionConflict(key)
                new_version = str(int(current or 0) + 1)
                pipe.multi()
                pipe.hset(name, mapping={"data": data, "version": new_version})
                pipe.execute()
        except redis.WatchError as exc:
            raise VersionConflict(key) from exc
        except redis.RedisError as exc:
            raise StoreUnavailable(f"Redis write of {key} failed: {exc}") from exc
        return new_version

    def delete(self, key, expected_version=None):
        name = self._key(key)
        try:
            with self.client.pipeline() as pipe:
                pipe.watch(name)
                current = pipe.hget(name, "version")
                if current is None:
                    return
                if expected_version is not None and _text(current) != expected_version:
                    raise VersionConflict(key)
                pipe.multi()
                pipe.delete(name)
                pipe.execute()
        except redis.WatchError as exc:
            raise VersionConflict(key) from exc
        except redis.RedisError as exc:
            raise StoreUnavailable(f"Redis delete of {key} failed: {exc}") from exc

    def list_keys(self, prefix):
        head = f"{self.prefix}:"
        try:
            names = [_text(n) for n in self.client.scan_iter(match=f"{head}{prefix}*")]
        except redis.RedisError as exc:
            raise StoreUnavailable(f"Redis scan of {prefix} failed: {exc}") from exc
        return sorted(n[len(head):] for n in names)

    def ping(self):
        try:
            self.client.ping()
        except redis.RedisError as exc:
            raise StoreUnavailable(f"Redis unreachable: {exc}") from exc

    def close(self):
        self.client.close()

    def push_pending(self, job_id):
        try:
            self.client.rpush(self._pending, job_id)
        except redis.RedisError as exc:
            raise StoreUnavailable(f"Redis push failed: {exc}") from exc

    def pop_pending(self):
        try:
            value = self.client.lpop(self._pending)
        except redis.RedisError as exc:
            raise StoreUnavailable(f"Redis pop failed: {exc}") from exc
        return None if value is None else _text(value)

    def remove_pending(self, job_id):
        try:
            return self.client.lrem(self._pending, 0, job_id) > 0
        except redis.RedisError as exc:
            raise StoreUnavailable(f"Redis remove failed: {exc}") from exc

    def pending_ids(self):
        try:
            return [_text(v) for v in self.client.lrange(self._pending, 0, -1)]
        except redis.RedisError as exc:
            raise StoreUnavailable(f"Redis range failed: {exc}") from exc


# ------------------------------------------------------------------------------
# FACTORY
# The API, the worker and the admin tool call THIS once at startup and pass the
# store along; it routes on STORAGE_BACKEND.
# ------------------------------------------------------------------------------

def create_store(settings: Settings) -> QueueStore:
    backend = settings.storage_backend
    logger.info("Opening {backend} queue store", backend=backend)

    if backend == "local":
        return LocalStore(settings.data_dir)
    elif backend == "memory":
        return MemoryStore()
    elif backend == "gcp":
        return GCSStore(settings.gcs_bucket)
    elif backend == "azure":
        return AzureStore(settings.azure_container, connection_string=settings.azure_connection_string)
    elif backend == "redis":
        return RedisStore(settings.redis_url, prefix=settings.queue_name)
    else:
        raise RuntimeError(f"Unsupported STORAGE_BACKEND: {backend}")
