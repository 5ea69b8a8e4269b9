"""Tests for best-effort status record updates."""

import pytest

from src.database.db import get_result_by_id, get_session
from src.database.models import ResultStatus
from src.workflow.status import StatusTracker


def _record(result_id: int):
    with get_session() as session:
        result = get_result_by_id(session, result_id)
        session.expunge(result)
        return result


@pytest.fixture
def tracker() -> StatusTracker:
    return StatusTracker()


class TestMarkProcessing:
    def test_sets_status_and_start_time(self, tracker, stored_payload):
        assert tracker.mark_processing(stored_payload) == ResultStatus.PROCESSING

        result = _record(stored_payload.result_id)
        assert result.status == ResultStatus.PROCESSING
        assert result.start_time is not None
        assert result.end_time is None

    def test_start_time_is_written_once(self, tracker, stored_payload):
        tracker.mark_processing(stored_payload)
        first = _record(stored_payload.result_id).start_time

        tracker.mark_processing(stored_payload)

        assert _record(stored_payload.result_id).start_time == first

    def test_terminal_record_is_left_alone(self, tracker, stored_payload):
        tracker.mark_processing(stored_payload)
        tracker.mark_finished(stored_payload, ResultStatus.SUCCESS)

        assert tracker.mark_processing(stored_payload) == ResultStatus.SUCCESS
        assert _record(stored_payload.result_id).status == ResultStatus.SUCCESS

    def test_missing_record_is_logged(self, tracker, db, payload, caplog):
        assert tracker.mark_processing(payload.model_copy(update={"result_id": 404})) is None
        assert "Could not mark result 404 as processing" in caplog.text


class TestMarkFinished:
    @pytest.mark.parametrize("status", [ResultStatus.SUCCESS, ResultStatus.FAILED])
    def test_sets_terminal_status_and_end_time(self, tracker, stored_payload, status):
        tracker.mark_processing(stored_payload)

        assert tracker.mark_finished(stored_payload, status, "task-1") is True

        result = _record(stored_payload.result_id)
        assert result.status == status
        assert result.end_time is not None

    def test_first_terminal_status_wins(self, tracker, stored_payload):
        tracker.mark_finished(stored_payload, ResultStatus.SUCCESS)
        end_time = _record(stored_payload.result_id).end_time

        assert tracker.mark_finished(stored_payload, ResultStatus.FAILED) is False

        result = _record(stored_payload.result_id)
        assert result.status == ResultStatus.SUCCESS
        assert result.end_time == end_time

    @pytest.mark.parametrize("status", [ResultStatus.PENDING, ResultStatus.PROCESSING])
    def test_non_terminal_status_is_rejected(self, tracker, stored_payload, status):
        with pytest.raises(ValueError, match="not a terminal status"):
            tracker.mark_finished(stored_payload, status)

    def test_database_outage_is_logged(self, tracker, payload, caplog):
        assert tracker.mark_finished(payload, ResultStatus.FAILED, "task-1") is False
        assert "Could not mark result 1 as failed" in caplog.text
