"""Error taxonomy for the analysis workflow.

Step failures abort the remainder of the pipeline and are re-raised to the
dispatcher so that the broker applies its retry policy. Cleanup and
status-persistence failures are only ever logged.

Key Components:
- WorkflowError: base class carrying the workflow ID and context
- StepExecutionError and one subclass per pipeline step
- CleanupFailed / StatusPersistFailed for best-effort operations
- ErrorContext for timing and logging an operation
"""

import logging
import time
from typing import Any, Optional

logger = logging.getLogger(__name__)


# Custom Exception Classes
class WorkflowError(Exception):
    """Base exception for workflow-related errors."""

    def __init__(self, message: str, workflow_id: Optional[str] = None, **context):
        """Initialize workflow error with context.

        Args:
            message: Error message
            workflow_id: ID of workflow where error occurred
            **context: Additional context information
        """
        super().__init__(message)
        self.workflow_id = workflow_id
        self.context = context
        self.timestamp = time.time()

    def __str__(self):
        """String representation with workflow ID if available."""
        base = super().__str__()
        if self.workflow_id:
            return f"[{self.workflow_id}] {base}"
        return base


class StepExecutionError(WorkflowError):
    """A pipeline step failed. The original exception is kept as ``__cause__``."""

    step_name: str = "unknown"

    def __init__(
        self,
        message: str,
        step_name: Optional[str] = None,
        workflow_id: Optional[str] = None,
        **context,
    ):
        """Initialize step execution error.

        Args:
            message: Error message
            step_name: Step where the error occurred (defaults to the class's step)
            workflow_id: ID of workflow
            **context: Additional context
        """
        super().__init__(message, workflow_id, **context)
        if step_name is not None:
            self.step_name = step_name


class FetchFailed(StepExecutionError):
    """The input artifact could not be downloaded."""

    step_name = "fetch"


class ProvisionFailed(StepExecutionError):
    """The analysis instance could not be started."""

    step_name = "provision"


class LoadFailed(StepExecutionError):
    """The artifact could not be loaded into the analysis instance."""

    step_name = "load"


class AnalyzeFailed(StepExecutionError):
    """The analysis tool exited with an error."""

    step_name = "analyze"


class PublishFailed(StepExecutionError):
    """The report could not be promoted or uploaded."""

    step_name = "publish"


class CleanupFailed(WorkflowError):
    """Releasing the instance or removing the working area failed.

    Only logged; never changes the recorded outcome.
    """

    def __init__(self, message: str, action: str, workflow_id: Optional[str] = None, **context):
        super().__init__(message, workflow_id, **context)
        self.action = action


class StatusPersistFailed(WorkflowError):
    """A status record update could not be written. Only logged."""

    def __init__(self, message: str, status: str, workflow_id: Optional[str] = None, **context):
        super().__init__(message, workflow_id, **context)
        self.status = status


STEP_ERRORS: dict[str, type[StepExecutionError]] = {
    cls.step_name: cls for cls in (FetchFailed, ProvisionFailed, LoadFailed, AnalyzeFailed, PublishFailed)
}


def error_for_step(step_name: str) -> type[StepExecutionError]:
    """Error class for a step name (StepExecutionError if the step is unknown)."""
    return STEP_ERRORS.get(step_name, StepExecutionError)


# Error Context Manager
class ErrorContext:
    """Context manager for tracking error information during execution.

    Usage:
        with ErrorContext("cleanup.release", workflow_id="SIM-1") as ctx:
            # Code that might fail
            ctx.add_info("org_name", "acme")
    """

    def __init__(self, operation: str, workflow_id: Optional[str] = None):
        """Initialize error context.

        Args:
            operation: Name of operation being performed
            workflow_id: ID of workflow
        """
        self.operation = operation
        self.workflow_id = workflow_id
        self.info: dict[str, Any] = {}
        self.start_time: Optional[float] = None

    def __enter__(self):
        """Enter context, recording start time."""
        self.start_time = time.time()
        logger.debug(f"Starting operation: {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context, logging duration and any errors."""
        if exc_type is None:
            logger.debug(
                f"Operation '{self.operation}' completed successfully in {self.duration:.2f}s"
            )
        else:
            logger.debug(
                f"Operation '{self.operation}' failed after {self.duration:.2f}s: {exc_val}",
                extra={"context": self.info},
            )

        # Don't suppress the exception
        return False

    @property
    def duration(self) -> float:
        """Seconds since the context was entered."""
        return time.time() - self.start_time if self.start_time else 0.0

    def add_info(self, key: str, value: Any):
        """Add contextual information.

        Args:
            key: Information key
            value: Information value
        """
        self.info[key] = value


__all__ = [
    # Exceptions
    "WorkflowError",
    "StepExecutionError",
    "FetchFailed",
    "ProvisionFailed",
    "LoadFailed",
    "AnalyzeFailed",
    "PublishFailed",
    "CleanupFailed",
    "StatusPersistFailed",
    # Lookup
    "STEP_ERRORS",
    "error_for_step",
    # Context
    "ErrorContext",
]
