"""Pytest configuration for workflow tests.

Provides in-memory fakes for the external systems the pipeline drives.
Every fake records its calls in one shared CallLog, so tests can assert
on the order of steps and cleanup actions across collaborators.
"""

import asyncio
from pathlib import Path

import pytest

from src.database.db import create_result, get_session
from src.tasks.payloads import AnalysisTaskPayload
from src.workflow.collaborators import WorkflowCollaborators
from src.workflow.state import BloodhoundInstance

SOURCE = "s3://active-hacks/simulations/active_directory/results/SIM-1"


class CallLog:
    """Ordered record of collaborator calls.

    ``failures`` maps a call name to the exception it raises; a name in
    ``hangs`` blocks until the caller is cancelled.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.args: dict[str, tuple] = {}
        self.failures: dict[str, Exception] = {}
        self.hangs: set[str] = set()

    def record(self, name: str, *args) -> None:
        self.calls.append(name)
        self.args[name] = args
        if name in self.failures:
            raise self.failures[name]

    async def arecord(self, name: str, *args) -> None:
        self.record(name, *args)
        if name in self.hangs:
            await asyncio.sleep(3600)


class FakeTransfer:
    def __init__(self, log: CallLog, root: Path) -> None:
        self.log = log
        self.root = root

    def fetch(self, org_name: str, source_location: str, dest_file_name: str) -> Path:
        self.log.record("fetch", org_name, source_location, dest_file_name)
        return self.root / org_name / dest_file_name

    def publish(self, working_subpath: Path, dest_location: str) -> None:
        self.log.record("publish", working_subpath, dest_location)


class FakeInstances:
    def __init__(self, log: CallLog) -> None:
        self.log = log

    async def provision(self, org_name: str) -> BloodhoundInstance:
        await self.log.arecord("provision", org_name)
        return BloodhoundInstance(org_name=org_name)

    async def release(self, org_name: str) -> None:
        await self.log.arecord("release", org_name)


class FakeRunner:
    def __init__(self, log: CallLog) -> None:
        self.log = log

    async def load(self, org_name: str, artifact_file_name: str) -> None:
        await self.log.arecord("load", org_name, artifact_file_name)

    async def analyze(self, org_name: str) -> None:
        await self.log.arecord("analyze", org_name)


class FakeWorkspace:
    def __init__(self, log: CallLog, root: Path) -> None:
        self.log = log
        self.root = root

    def org_dir(self, org_name: str) -> Path:
        return self.root / org_name

    def promote_output(self, org_name: str) -> Path:
        self.log.record("promote", org_name)
        return self.root / org_name / "extracted"

    def remove(self, org_name: str) -> None:
        self.log.record("remove", org_name)


@pytest.fixture
def call_log() -> CallLog:
    return CallLog()


@pytest.fixture
def collaborators(call_log: CallLog, tmp_path: Path) -> WorkflowCollaborators:
    root = tmp_path / "work"
    return WorkflowCollaborators(
        transfer=FakeTransfer(call_log, root),
        instances=FakeInstances(call_log),
        runner=FakeRunner(call_log),
        workspace=FakeWorkspace(call_log, root),
    )


@pytest.fixture
def stored_payload(db) -> AnalysisTaskPayload:
    """Payload whose status record exists in the test database."""
    with get_session() as session:
        result = create_result(session, simulation_id="SIM-1", org_name="acme")
        result_id = result.id
    return AnalysisTaskPayload(
        result_id=result_id,
        simulation_id="SIM-1",
        org_name="acme",
        source_location=SOURCE,
    )
