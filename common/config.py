import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, field_validator, model_validator

BASE_DIR = Path(__file__).resolve().parents[1]

# Storage mode: local / memory / gcp / azure / redis
STORAGE_BACKENDS = ("local", "memory", "gcp", "azure", "redis")

DEFAULT_SCORER = "common.scoring:simulated_score"

_TRUTHY = {"1", "true", "yes", "on"}


class Settings(BaseModel):
    storage_backend: str = "local"
    data_dir: Path = BASE_DIR / "data"
    gcs_bucket: Optional[str] = None
    azure_connection_string: Optional[str] = None
    azure_container: Optional[str] = None
    redis_url: str = "redis://localhost:6379"
    queue_name: str = "faceScoring"

    max_attempts: int = 3
    timeout_seconds: float = 30.0
    stale_after_seconds: float = 60.0
    orphan_grace_seconds: float = 30.0
    retention_seconds: float = 7 * 24 * 3600.0

    worker_concurrency: int = 5
    poll_interval: float = 2.0
    sweep_interval_seconds: float = 15.0
    store_retry_attempts: int = 5
    store_retry_base_seconds: float = 0.5
    store_retry_max_seconds: float = 10.0

    max_image_bytes: int = 10 * 1024 * 1024
    rate_limit_max_requests: int = 100
    rate_limit_window_seconds: float = 900.0

    scorer: str = DEFAULT_SCORER
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("storage_backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in STORAGE_BACKENDS:
            raise ValueError(f"Unsupported STORAGE_BACKEND: {value}")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("max_attempts", "worker_concurrency", "store_retry_attempts", "max_image_bytes")
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("timeout_seconds", "stale_after_seconds", "poll_interval", "sweep_interval_seconds")
    @classmethod
    def _positive_duration(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be > 0 seconds")
        return value

    @model_validator(mode="after")
    def _check_backend_settings(self) -> "Settings":
        if self.stale_after_seconds < self.timeout_seconds:
            raise ValueError("JOB_STALE_AFTER_SECONDS must be >= JOB_TIMEOUT_SECONDS")
        if self.storage_backend == "gcp" and not self.gcs_bucket:
            raise ValueError("GCS_BUCKET is required for the gcp backend")
        if self.storage_backend == "azure" and not (self.azure_connection_string and self.azure_container):
            raise ValueError("AZURE_STORAGE_CONNECTION_STRING and AZURE_CONTAINER are required for the azure backend")
        return self

    @property
    def rate_limit_enabled(self) -> bool:
        return self.rate_limit_max_requests > 0 and self.rate_limit_window_seconds > 0


# env var -> Settings field
ENV_VARS = {
    "STORAGE_BACKEND": "storage_backend",
    "LOCAL_DATA_DIR": "data_dir",
    "GCS_BUCKET": "gcs_bucket",
    "AZURE_STORAGE_CONNECTION_STRING": "azure_connection_string",
    "AZURE_CONTAINER": "azure_container",
    "REDIS_URL": "redis_url",
    "QUEUE_NAME": "queue_name",
    "JOB_MAX_ATTEMPTS": "max_attempts",
    "JOB_TIMEOUT_SECONDS": "timeout_seconds",
    "JOB_STALE_AFTER_SECONDS": "stale_after_seconds",
    "JOB_ORPHAN_GRACE_SECONDS": "orphan_grace_seconds",
    "JOB_RETENTION_SECONDS": "retention_seconds",
    "WORKER_CONCURRENCY": "worker_concurrency",
    "POLL_INTERVAL": "poll_interval",
    "SWEEP_INTERVAL_SECONDS": "sweep_interval_seconds",
    "STORE_RETRY_ATTEMPTS": "store_retry_attempts",
    "STORE_RETRY_BASE_SECONDS": "store_retry_base_seconds",
    "STORE_RETRY_MAX_SECONDS": "store_retry_max_seconds",
    "MAX_IMAGE_BYTES": "max_image_bytes",
    "RATE_LIMIT_MAX_REQUESTS": "rate_limit_max_requests",
    "RATE_LIMIT_WINDOW_SECONDS": "rate_limit_window_seconds",
    "SCORER": "scorer",
    "HOST": "host",
    "PORT": "port",
    "LOG_LEVEL": "log_level",
}


def load_settings(env: Optional[Mapping[str, str]] = None, **overrides) -> Settings:
    """Build Settings from environment variables.

    Empty variables are treated as unset. Keyword overrides win over the
    environment (used by the CLIs and tests).
    """
    env = os.environ if env is None else env
    values = {}
    for var, field in ENV_VARS.items():
        raw = env.get(var)
        if raw is not None and raw.strip():
            values[field] = raw.strip()
    raw_json = env.get("LOG_JSON")
    if raw_json is not None and raw_json.strip():
        values["log_json"] = raw_json.strip().lower() in _TRUTHY
    values.update({k: v for k, v in overrides.items() if v is not None})
    return Settings(**values)
