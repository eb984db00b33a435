import base64
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError

from common.errors import InvalidStateTransition


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# The only edges of the job lifecycle. failed -> waiting is the explicit retry.
TRANSITIONS: Dict[JobState, Set[JobState]] = {
    JobState.WAITING: {JobState.ACTIVE},
    JobState.ACTIVE: {JobState.COMPLETED, JobState.FAILED},
    JobState.FAILED: {JobState.WAITING},
    JobState.COMPLETED: set(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return uuid.uuid4().hex


class ImagePayload(BaseModel):
    """Image to be scored, as accepted at the enqueue boundary.

    ``inline`` payloads keep the string the client sent (base64 or a data
    URL); ``upload`` payloads hold the uploaded file bytes base64 encoded so
    the record stays JSON.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["inline", "upload"]
    data: str = Field(min_length=1)
    filename: Optional[str] = None
    content_type: Optional[str] = None
    size: int = Field(ge=1)

    @classmethod
    def from_inline(cls, image: str) -> "ImagePayload":
        return cls(kind="inline", data=image, size=len(image.encode("utf-8")))

    @classmethod
    def from_upload(
        cls, content: bytes, filename: Optional[str] = None, content_type: Optional[str] = None
    ) -> "ImagePayload":
        return cls(
            kind="upload",
            data=base64.b64encode(content).decode("ascii"),
            filename=filename,
            content_type=content_type,
            size=len(content),
        )

    def raw_bytes(self) -> bytes:
        if self.kind == "upload":
            return base64.b64decode(self.data)
        return self.data.encode("utf-8")


class ScoreFeatures(BaseModel):
    symmetry: float
    clarity: float
    lighting: float
    vibe: Optional[float] = None


class SimulatedScore(BaseModel):
    kind: Literal["simulated"] = "simulated"
    score: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    rank: float
    vibe: str
    features: ScoreFeatures
    scored_at: datetime = Field(default_factory=utcnow)


class ModelScore(BaseModel):
    kind: Literal["model"] = "model"
    score: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    quality: float
    frontality: float
    symmetry: float
    resolution: str
    embedding: List[float] = Field(default_factory=list)
    scored_at: datetime = Field(default_factory=utcnow)


ScoreResult = Annotated[Union[SimulatedScore, ModelScore], Field(discriminator="kind")]

_score_result_adapter = TypeAdapter(ScoreResult)


def parse_score_result(value) -> Union[SimulatedScore, ModelScore]:
    """Validate whatever a scorer returned against the known result shapes."""
    return _score_result_adapter.validate_python(value)


class Job(BaseModel):
    id: str = Field(min_length=1)
    payload: ImagePayload
    state: JobState = JobState.WAITING
    result: Optional[ScoreResult] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    claim_token: Optional[str] = None
    worker_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_invariants(self) -> "Job":
        if self.state == JobState.COMPLETED:
            if self.result is None or self.error is not None:
                raise ValueError("completed jobs carry a result and no error")
        elif self.state == JobState.FAILED:
            if self.error is None or self.result is not None:
                raise ValueError("failed jobs carry an error and no result")
        elif self.result is not None or self.error is not None:
            raise ValueError(f"{self.state.value} jobs carry neither result nor error")
        if self.state == JobState.ACTIVE and (self.claim_token is None or self.started_at is None):
            raise ValueError("active jobs need a claim token and a start time")
        if self.attempts > self.max_attempts:
            raise ValueError("attempts exceed max_attempts")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.state == JobState.COMPLETED or (self.state == JobState.FAILED and not self.can_retry)

    @property
    def can_retry(self) -> bool:
        return self.state == JobState.FAILED and self.attempts < self.max_attempts

    def transition(self, target: JobState, **changes) -> "Job":
        """Return a copy of this job moved to ``target``.

        Raises InvalidStateTransition when the edge is not in TRANSITIONS or
        the resulting record would break the job invariants.
        """
        if target not in TRANSITIONS[self.state]:
            raise InvalidStateTransition(self.id, self.state.value, target.value)
        data = self.model_dump()
        for key, value in changes.items():
            data[key] = value.model_dump() if isinstance(value, BaseModel) else value
        data["state"] = target
        data["updated_at"] = changes.get("updated_at") or utcnow()
        try:
            return Job.model_validate(data)
        except PydanticValidationError as exc:
            raise InvalidStateTransition(self.id, self.state.value, target.value, reason=str(exc)) from exc

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "Job":
        return cls.model_validate_json(data)
