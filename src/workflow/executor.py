"""Sequential executor for the AD-miner analysis pipeline.

One run executes the steps of PIPELINE_STEPS in order, stopping at the
first failure. Whatever happens, the run then releases the organization's
instance and removes its working area, in that order and exactly once.
Finally the status record is set to success or failed.

Design Principles:
- Explicit step sequence (no branching)
- First failure aborts the remaining steps and is re-raised
- Cleanup bound to the run's scope, so every exit path shares it
- Status reporting is best-effort and runs in a worker thread
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Final, Optional

from src.database.models import ResultStatus
from src.tasks.payloads import AnalysisTaskPayload
from src.workflow.collaborators import WorkflowCollaborators
from src.workflow.error_handling import CleanupFailed, ErrorContext, StepExecutionError
from src.workflow.nodes import BaseNode, NodeRegistry
from src.workflow.state import AnalysisRunState, WorkflowOutcome
from src.workflow.status import StatusTracker

logger = logging.getLogger(__name__)

# Hardcoded sequential steps
PIPELINE_STEPS: Final[list[str]] = [
    "fetch",
    "provision",
    "load",
    "analyze",
    "publish",
]


class WorkflowExecutor:
    """Runs the pipeline for one work order.

    Args:
        collaborators: External systems driven by the steps
        status_tracker: Status record writer (a default tracker if None)
    """

    def __init__(
        self,
        collaborators: WorkflowCollaborators,
        status_tracker: Optional[StatusTracker] = None,
    ) -> None:
        self.collaborators = collaborators
        self.status_tracker = status_tracker or StatusTracker()
        self.nodes: list[BaseNode] = [NodeRegistry.get(step)(collaborators) for step in PIPELINE_STEPS]

    async def run(
        self,
        payload: AnalysisTaskPayload,
        *,
        final_attempt: bool = True,
        task_id: Optional[str] = None,
    ) -> AnalysisRunState:
        """Execute the pipeline, clean up and record the outcome.

        Args:
            payload: Work order
            final_attempt: Whether a failure of this run is final. When False
                the record stays in processing for the redelivery.
            task_id: Broker task ID, for log correlation

        Returns:
            Final run state (outcome SUCCEEDED, or the record's existing
            terminal outcome for a duplicate delivery)

        Raises:
            StepExecutionError: Subclass for the first step that failed
        """
        state = AnalysisRunState(payload=payload, task_id=task_id)
        extra = state.log_context()

        current = await asyncio.to_thread(self.status_tracker.mark_processing, payload, task_id)
        if current is not None and current.is_terminal:
            logger.warning(
                "Result %d is already %s, skipping duplicate delivery",
                payload.result_id,
                current.value,
                extra=extra,
            )
            outcome = WorkflowOutcome.SUCCEEDED if current == ResultStatus.SUCCESS else WorkflowOutcome.FAILED
            return state.model_copy(update={"outcome": outcome})

        logger.info(
            "Starting analysis for simulation %s (org %s)",
            payload.simulation_id,
            payload.org_name,
            extra=extra,
        )

        try:
            async with self.cleanup_scope(state):
                for node in self.nodes:
                    state = state.model_copy(update={"current_step": node.name})
                    updates = await node.execute(state)
                    state = state.model_copy(
                        update={**updates, "completed_steps": [*state.completed_steps, node.name]}
                    )
        except StepExecutionError as e:
            state = state.model_copy(
                update={"outcome": WorkflowOutcome.FAILED, "error_message": str(e)}
            )
            logger.error(
                "Analysis failed at step '%s': %s",
                e.step_name,
                e.__cause__ or e,
                extra=state.log_context(step=e.step_name),
            )
            if final_attempt:
                await asyncio.to_thread(
                    self.status_tracker.mark_finished, payload, ResultStatus.FAILED, task_id
                )
            else:
                logger.info(
                    "Leaving result %d in processing for redelivery", payload.result_id, extra=extra
                )
            raise

        state = state.model_copy(update={"outcome": WorkflowOutcome.SUCCEEDED, "current_step": "finalize"})
        await asyncio.to_thread(self.status_tracker.mark_finished, payload, ResultStatus.SUCCESS, task_id)
        logger.info("Completed analysis for simulation %s", payload.simulation_id, extra=extra)
        return state

    @asynccontextmanager
    async def cleanup_scope(self, state: AnalysisRunState) -> AsyncIterator[None]:
        """Scope whose exit releases the instance and removes the working area.

        Runs on every exit path, including cancellation. Cleanup errors are
        logged as CleanupFailed and never replace the body's outcome.
        """
        try:
            yield
        finally:
            await self._cleanup(state)

    async def _cleanup(self, state: AnalysisRunState) -> None:
        org_name = state.payload.org_name
        actions = (
            ("release", self.collaborators.instances.release),
            ("remove", lambda org: asyncio.to_thread(self.collaborators.workspace.remove, org)),
        )
        for action, func in actions:
            try:
                with ErrorContext(f"cleanup.{action}", state.workflow_id) as ctx:
                    ctx.add_info("org_name", org_name)
                    await func(org_name)
            except Exception as e:
                error = CleanupFailed(
                    f"Cleanup '{action}' failed for org '{org_name}': {e}",
                    action=action,
                    workflow_id=state.workflow_id,
                )
                logger.error(str(error), extra=state.log_context(step="cleanup"))
        logger.info("Cleanup finished for org %s", org_name, extra=state.log_context(step="cleanup"))
