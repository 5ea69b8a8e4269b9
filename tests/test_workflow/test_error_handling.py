"""Tests for the workflow error taxonomy."""

import time

import pytest

from src.workflow.error_handling import (
    STEP_ERRORS,
    AnalyzeFailed,
    CleanupFailed,
    ErrorContext,
    FetchFailed,
    LoadFailed,
    ProvisionFailed,
    PublishFailed,
    StatusPersistFailed,
    StepExecutionError,
    WorkflowError,
    error_for_step,
)
from src.workflow.executor import PIPELINE_STEPS


class TestCustomExceptions:
    """Tests for custom exception classes."""

    def test_workflow_error_basic(self):
        error = WorkflowError("Test error")
        assert str(error) == "Test error"
        assert error.workflow_id is None

    def test_workflow_error_with_workflow_id(self):
        error = WorkflowError("Test error", workflow_id="SIM-1")
        assert str(error) == "[SIM-1] Test error"
        assert error.workflow_id == "SIM-1"

    def test_workflow_error_with_context(self):
        error = WorkflowError("Test error", workflow_id="SIM-1", org_name="acme", result_id=7)
        assert error.context == {"org_name": "acme", "result_id": 7}
        assert error.timestamp > 0

    @pytest.mark.parametrize(
        "error_cls, step",
        [
            (FetchFailed, "fetch"),
            (ProvisionFailed, "provision"),
            (LoadFailed, "load"),
            (AnalyzeFailed, "analyze"),
            (PublishFailed, "publish"),
        ],
    )
    def test_step_errors_know_their_step(self, error_cls, step):
        error = error_cls("failed", workflow_id="SIM-1")
        assert isinstance(error, StepExecutionError)
        assert error.step_name == step

    def test_step_name_can_be_overridden(self):
        assert StepExecutionError("failed", step_name="custom").step_name == "custom"
        assert StepExecutionError("failed").step_name == "unknown"

    def test_best_effort_errors_are_not_step_errors(self):
        cleanup = CleanupFailed("release failed", action="release", workflow_id="SIM-1")
        persist = StatusPersistFailed("write failed", status="failed")

        assert cleanup.action == "release"
        assert persist.status == "failed"
        assert not isinstance(cleanup, StepExecutionError)
        assert not isinstance(persist, StepExecutionError)


class TestStepLookup:
    def test_every_pipeline_step_has_an_error(self):
        assert set(STEP_ERRORS) == set(PIPELINE_STEPS)

    def test_error_for_step(self):
        assert error_for_step("load") is LoadFailed
        assert error_for_step("cleanup") is StepExecutionError


class TestErrorContext:
    """Tests for ErrorContext manager."""

    def test_error_context_success(self):
        with ErrorContext("cleanup.release", "SIM-1") as ctx:
            ctx.add_info("org_name", "acme")

        assert ctx.info == {"org_name": "acme"}

    def test_error_context_does_not_suppress(self):
        with pytest.raises(ValueError):
            with ErrorContext("cleanup.remove"):
                raise ValueError("Test error")

    def test_error_context_timing(self):
        with ErrorContext("slow") as ctx:
            time.sleep(0.05)

        assert ctx.duration >= 0.05

    def test_duration_before_enter(self):
        assert ErrorContext("never").duration == 0.0
