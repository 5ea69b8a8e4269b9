"""Analysis workflow: step nodes, run state and the sequential executor.

This module provides:
- State definitions for a pipeline run
- The executor that runs the steps and the always-run cleanup
- Collaborator interfaces for the external systems
"""

from src.workflow.collaborators import (
    AnalysisRunner,
    ArtifactTransfer,
    InstanceManager,
    WorkflowCollaborators,
    Workspace,
)
from src.workflow.executor import PIPELINE_STEPS, WorkflowExecutor
from src.workflow.state import AnalysisRunState, BloodhoundInstance, WorkflowOutcome
from src.workflow.status import StatusTracker

__all__ = [
    "AnalysisRunState",
    "AnalysisRunner",
    "ArtifactTransfer",
    "BloodhoundInstance",
    "InstanceManager",
    "PIPELINE_STEPS",
    "StatusTracker",
    "WorkflowCollaborators",
    "WorkflowExecutor",
    "WorkflowOutcome",
    "Workspace",
]
