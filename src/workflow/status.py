"""Best-effort status record updates for a pipeline run.

Status reporting never aborts the external work: a write that fails after
the database layer's own retries is logged as StatusPersistFailed and the
run carries on.
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from src.database.db import (
    DatabaseError,
    get_result_by_id,
    get_session,
    retry_on_transient_error,
    update_result_status_with_times,
)
from src.database.models import ResultStatus, utcnow
from src.tasks.payloads import AnalysisTaskPayload
from src.workflow.error_handling import StatusPersistFailed

logger = logging.getLogger(__name__)

PERSIST_ERRORS = (SQLAlchemyError, DatabaseError, ValueError)


class StatusTracker:
    """Moves a status record through processing to a terminal status.

    ``start_time`` is written only when it is still empty and ``end_time``
    only together with the first terminal status, so redeliveries keep the
    timestamps of the first attempt.
    """

    def mark_processing(
        self, payload: AnalysisTaskPayload, task_id: Optional[str] = None
    ) -> Optional[ResultStatus]:
        """Set status=processing and the start time.

        Returns:
            The record's status afterwards. A terminal status means the
            record was finished by an earlier delivery and was left alone.
            None if the write failed.
        """
        try:
            return self._write_processing(payload.result_id)
        except PERSIST_ERRORS as e:
            self._report(payload, task_id, ResultStatus.PROCESSING, e)
            return None

    def mark_finished(
        self,
        payload: AnalysisTaskPayload,
        status: ResultStatus,
        task_id: Optional[str] = None,
    ) -> bool:
        """Set a terminal status and the end time.

        Returns:
            True if the record was updated, False if it was already terminal
            or the write failed.
        """
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        try:
            updated = self._write_finished(payload.result_id, status)
        except PERSIST_ERRORS as e:
            self._report(payload, task_id, status, e)
            return False

        if not updated:
            logger.debug(
                "Result %d already terminal, not marking %s",
                payload.result_id,
                status.value,
                extra=_extra(payload, task_id),
            )
        return updated

    @retry_on_transient_error()
    def _write_processing(self, result_id: int) -> ResultStatus:
        with get_session() as session:
            result = get_result_by_id(session, result_id)
            if result is None:
                raise ValueError(f"Result with id {result_id} not found")
            if result.status.is_terminal:
                return result.status
            update_result_status_with_times(
                session,
                result_id,
                ResultStatus.PROCESSING,
                start_time=utcnow() if result.start_time is None else None,
            )
            return ResultStatus.PROCESSING

    @retry_on_transient_error()
    def _write_finished(self, result_id: int, status: ResultStatus) -> bool:
        with get_session() as session:
            result = get_result_by_id(session, result_id)
            if result is None:
                raise ValueError(f"Result with id {result_id} not found")
            if result.status.is_terminal:
                return False
            update_result_status_with_times(
                session,
                result_id,
                status,
                end_time=utcnow() if result.end_time is None else None,
            )
            return True

    @staticmethod
    def _report(
        payload: AnalysisTaskPayload,
        task_id: Optional[str],
        status: ResultStatus,
        cause: Exception,
    ) -> None:
        error = StatusPersistFailed(
            f"Could not mark result {payload.result_id} as {status.value}: {cause}",
            status=status.value,
            workflow_id=payload.simulation_id,
        )
        logger.error(str(error), extra=_extra(payload, task_id))


def _extra(payload: AnalysisTaskPayload, task_id: Optional[str]) -> dict:
    extra = {
        "result_id": payload.result_id,
        "simulation_id": payload.simulation_id,
        "org_name": payload.org_name,
    }
    if task_id is not None:
        extra["task_id"] = task_id
    return extra
