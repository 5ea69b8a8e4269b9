"""Producer side: accept analysis requests and report their status.

A submission creates the status record first, then enqueues the task and
finally attaches the broker's task ID to the record. If the queue cannot
accept the task the record is deleted again, so the same simulation can
be resubmitted later.
"""

import logging
from typing import Any

from sqlalchemy.exc import IntegrityError

from src.database.db import (
    attach_task_id,
    create_result,
    delete_result,
    get_result_by_id,
    get_result_by_simulation_id,
    get_results_by_org_name,
    get_results_by_status,
    get_session,
)
from src.database.models import ResultStatus
from src.tasks.broker import Broker, BrokerUnavailable
from src.tasks.payloads import AnalysisTaskPayload, is_path_segment
from src.utils.config import get_settings

logger = logging.getLogger(__name__)


class SubmissionError(Exception):
    """Base exception for producer-side errors."""


class ValidationError(SubmissionError):
    """The request is invalid; retrying it unchanged will not help."""


class DuplicateSimulationError(ValidationError):
    """A status record for the simulation already exists."""

    def __init__(self, simulation_id: str):
        super().__init__("Simulation_id already exists")
        self.simulation_id = simulation_id


class ResultNotFoundError(SubmissionError):
    """No status record with the requested ID."""


def _clean(value: str | None, field: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{field} is required")
    return value


def submit_analysis(
    simulation_id: str | None,
    org_name: str | None,
    *,
    broker: Broker | None = None,
) -> dict[str, Any]:
    """Create a status record and enqueue the analysis for it.

    Args:
        simulation_id: Unique simulation identifier
        org_name: Organization to analyze
        broker: Queue to use (a default Broker if None)

    Returns:
        The status record as a dict (status pending, task_id set)

    Raises:
        ValidationError: If a field is missing or invalid
        DuplicateSimulationError: If the simulation was already submitted
        BrokerUnavailable: If the task could not be enqueued (no record is kept)
    """
    simulation_id = _clean(simulation_id, "Simulation_id")
    org_name = _clean(org_name, "Org_name")
    if not is_path_segment(org_name):
        raise ValidationError("Org_name must be a single path segment")

    source_location = f"{get_settings().S3_BUCKET_PREFIX}/{simulation_id}"

    with get_session() as session:
        if get_result_by_simulation_id(session, simulation_id) is not None:
            raise DuplicateSimulationError(simulation_id)
        try:
            result = create_result(session, simulation_id=simulation_id, org_name=org_name)
        except IntegrityError as e:
            # Lost a race with a concurrent submission of the same simulation
            raise DuplicateSimulationError(simulation_id) from e
        result_id = result.id

    payload = AnalysisTaskPayload(
        result_id=result_id,
        simulation_id=simulation_id,
        org_name=org_name,
        source_location=source_location,
    )

    broker = broker or Broker()
    try:
        info = broker.enqueue(payload)
    except BrokerUnavailable:
        logger.error(
            "Could not enqueue analysis; removing result %d",
            result_id,
            extra={"result_id": result_id, "simulation_id": simulation_id},
        )
        with get_session() as session:
            delete_result(session, result_id)
        raise

    with get_session() as session:
        result = attach_task_id(session, result_id, info.id)
        data = result.to_dict()

    logger.info(
        "Submitted analysis for simulation %s",
        simulation_id,
        extra={"task_id": info.id, "result_id": result_id, "simulation_id": simulation_id, "org_name": org_name},
    )
    return data


def get_result(result_id: int) -> dict[str, Any]:
    """Status record as a dict.

    Raises:
        ResultNotFoundError: If no record has this ID
    """
    with get_session() as session:
        result = get_result_by_id(session, result_id)
        if result is None:
            raise ResultNotFoundError(f"Result with id {result_id} not found")
        return result.to_dict()


def list_results(
    *, org_name: str | None = None, status: ResultStatus | None = None
) -> list[dict[str, Any]]:
    """Status records of an organization and/or in a status, newest first.

    Raises:
        ValidationError: If neither filter is given
    """
    if org_name is None and status is None:
        raise ValidationError("Either org_name or status is required")

    with get_session() as session:
        if org_name is not None:
            results = get_results_by_org_name(session, org_name)
            if status is not None:
                results = [r for r in results if r.status == status]
        else:
            results = get_results_by_status(session, status)
        return [r.to_dict() for r in results]
