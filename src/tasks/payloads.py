"""Task payloads and the broker's view of a queued task.

The payload is the immutable work order handed from the producer to the
broker. It is serialized as a flat JSON object; the broker stores the bytes
without looking inside.
"""

from datetime import datetime
from typing import Final

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.database.models import TaskState

TYPE_BLOODHOUND_ANALYSIS: Final[str] = "bloodhound:analysis"


def is_path_segment(value: str) -> bool:
    """True if ``value`` can name a single directory under the download root."""
    return bool(value) and value not in (".", "..") and "/" not in value and "\\" not in value


class AnalysisTaskPayload(BaseModel):
    """Work order for one BloodHound/AD-miner analysis run.

    Attributes:
        result_id: Status record this task updates
        simulation_id: External correlation key of the simulation
        org_name: Organization; keys the working directory and the instance
        source_location: s3:// prefix holding the simulation's artifacts
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    result_id: int = Field(..., ge=1)
    simulation_id: str = Field(..., min_length=1)
    org_name: str = Field(..., min_length=1)
    source_location: str = Field(..., min_length=1)

    @field_validator("simulation_id", "org_name", "source_location")
    @classmethod
    def strip_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("org_name")
    @classmethod
    def single_path_segment(cls, v: str) -> str:
        """org_name names a directory, so it must not escape the download root."""
        if not is_path_segment(v):
            raise ValueError(f"org_name must be a single path segment, got '{v}'")
        return v

    @field_validator("source_location")
    @classmethod
    def s3_url(cls, v: str) -> str:
        if not v.startswith("s3://"):
            raise ValueError(f"source_location must be an s3:// URL, got '{v}'")
        return v.rstrip("/")

    def to_bytes(self) -> bytes:
        """Serialize to the wire format stored by the broker."""
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "AnalysisTaskPayload":
        """Parse the wire format.

        Raises:
            pydantic.ValidationError: If the bytes are not a valid payload
        """
        return cls.model_validate_json(data)


class TaskInfo(BaseModel):
    """Read-only snapshot of a queued task as the broker last saw it."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    task_type: str
    queue: str
    payload: bytes
    state: TaskState
    retried: int
    max_retry: int
    timeout_seconds: int
    process_at: datetime
    deadline: datetime | None = None
    lease_id: str | None = None
    last_error: str | None = None
    completed_at: datetime | None = None

    @property
    def is_final_attempt(self) -> bool:
        """True when a failure of this delivery will not be retried."""
        return self.retried >= self.max_retry
