"""Workflow run state definitions.

The state carries what one execution of the pipeline has produced so far.
It is rebuilt from the payload on every delivery; nothing here is persisted.
"""

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.tasks.payloads import AnalysisTaskPayload


class WorkflowOutcome(str, Enum):
    """How a pipeline run ended.

    Attributes:
        RUNNING: Steps are still executing
        SUCCEEDED: Every step completed
        FAILED: A step failed and the remaining steps were skipped
    """

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class BloodhoundInstance(BaseModel):
    """A provisioned BloodHound instance."""

    model_config = ConfigDict(frozen=True)

    org_name: str
    status: str = "running"


class AnalysisRunState(BaseModel):
    """State of one pipeline run.

    Attributes:
        payload: Work order being executed
        task_id: Broker task ID of the delivery, if known
        current_step: Step executing now (or the step that failed)
        completed_steps: Steps that finished, in order
        outcome: Current outcome
        artifact_path: Local copy of the input artifact (after fetch)
        instance: Provisioned instance (after provision)
        output_path: Promoted report directory (after publish)
        error_message: Failure description when outcome is FAILED
        started_at: When the run began (UTC)
    """

    payload: AnalysisTaskPayload
    task_id: Optional[str] = None

    # Progress tracking
    current_step: str = "initialize"
    completed_steps: list[str] = Field(default_factory=list)
    outcome: WorkflowOutcome = WorkflowOutcome.RUNNING

    # Step outputs
    artifact_path: Optional[Path] = None
    instance: Optional[BloodhoundInstance] = None
    output_path: Optional[Path] = None

    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def workflow_id(self) -> str:
        """Correlation ID used in errors and logs."""
        return self.payload.simulation_id

    def log_context(self, step: Optional[str] = None) -> dict[str, Any]:
        """``extra`` fields for log records emitted during this run."""
        context: dict[str, Any] = {
            "result_id": self.payload.result_id,
            "simulation_id": self.payload.simulation_id,
            "org_name": self.payload.org_name,
        }
        if self.task_id is not None:
            context["task_id"] = self.task_id
        if step is not None:
            context["step"] = step
        return context
