"""Dispatcher handlers for analysis tasks."""

import logging

from pydantic import ValidationError

from src.database.models import ResultStatus
from src.tasks.broker import SkipRetry
from src.tasks.dispatcher import Dispatcher
from src.tasks.payloads import TYPE_BLOODHOUND_ANALYSIS, AnalysisTaskPayload, TaskInfo
from src.workflow.executor import WorkflowExecutor

logger = logging.getLogger(__name__)


class AnalysisTaskHandler:
    """Bridges broker deliveries to the workflow executor.

    Args:
        executor: Executor that runs the pipeline for a payload
    """

    def __init__(self, executor: WorkflowExecutor) -> None:
        self.executor = executor

    async def __call__(self, delivery: TaskInfo) -> None:
        """Run the pipeline for one delivery.

        Raises:
            SkipRetry: If the payload cannot be decoded
            StepExecutionError: If a step failed (the broker may redeliver)
        """
        payload = self.decode(delivery)
        logger.info(
            "Processing analysis task (attempt %d of %d)",
            delivery.retried + 1,
            delivery.max_retry + 1,
            extra={"task_id": delivery.id, "result_id": payload.result_id},
        )
        await self.executor.run(
            payload, final_attempt=delivery.is_final_attempt, task_id=delivery.id
        )

    def on_dead(self, delivery: TaskInfo) -> None:
        """Mark the status record failed once the task will not be delivered again.

        Covers failures the executor could not record itself: timeouts,
        crashed workers and unexpected errors.
        """
        try:
            payload = AnalysisTaskPayload.from_bytes(delivery.payload)
        except ValidationError:
            logger.error("Dead task has an undecodable payload", extra={"task_id": delivery.id})
            return
        self.executor.status_tracker.mark_finished(payload, ResultStatus.FAILED, delivery.id)

    @staticmethod
    def decode(delivery: TaskInfo) -> AnalysisTaskPayload:
        try:
            return AnalysisTaskPayload.from_bytes(delivery.payload)
        except ValidationError as e:
            raise SkipRetry(f"invalid payload: {e}") from e


def register_handlers(dispatcher: Dispatcher, executor: WorkflowExecutor) -> AnalysisTaskHandler:
    """Register the analysis handler (and its dead-letter hook) on a dispatcher."""
    handler = AnalysisTaskHandler(executor)
    dispatcher.handle(TYPE_BLOODHOUND_ANALYSIS, handler, on_dead=handler.on_dead)
    return handler
