"""Interfaces of the external systems the pipeline drives.

The executor depends only on these protocols; ``src.integrations`` provides
the production implementations and tests substitute fakes.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from src.workflow.state import BloodhoundInstance


class ArtifactTransfer(Protocol):
    """Object-storage transfers. Blocking; nodes call it from a worker thread."""

    def fetch(self, org_name: str, source_location: str, dest_file_name: str) -> Path:
        """Download ``<source_location>/<dest_file_name>`` into the org working area."""
        ...

    def publish(self, working_subpath: Path, dest_location: str) -> None:
        """Make ``dest_location`` mirror the contents of ``working_subpath``."""
        ...


class InstanceManager(Protocol):
    """Lifecycle of the per-organization BloodHound instance."""

    async def provision(self, org_name: str) -> BloodhoundInstance:
        ...

    async def release(self, org_name: str) -> None:
        ...


class AnalysisRunner(Protocol):
    """Loads collected data into the instance and runs the analysis."""

    async def load(self, org_name: str, artifact_file_name: str) -> None:
        ...

    async def analyze(self, org_name: str) -> None:
        ...


class Workspace(Protocol):
    """Per-organization local working area."""

    def org_dir(self, org_name: str) -> Path:
        ...

    def promote_output(self, org_name: str) -> Path:
        """Move the raw report into its publishable location and return it."""
        ...

    def remove(self, org_name: str) -> None:
        """Delete the working area. Removing a missing area succeeds."""
        ...


@dataclass(frozen=True)
class WorkflowCollaborators:
    """Everything the executor needs to talk to the outside world."""

    transfer: ArtifactTransfer
    instances: InstanceManager
    runner: AnalysisRunner
    workspace: Workspace
