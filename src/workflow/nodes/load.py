"""LoadNode - Imports the downloaded dataset into the BloodHound instance."""

from src.workflow.nodes import BaseNode, NodeRegistry, handle_node_errors, log_node_execution
from src.workflow.state import AnalysisRunState


@NodeRegistry.register("load")
class LoadNode(BaseNode):
    """Workflow node that feeds the fetched artifact to the running instance."""

    @property
    def name(self) -> str:
        """Return node identifier."""
        return "load"

    @handle_node_errors
    @log_node_execution
    async def execute(self, state: AnalysisRunState) -> dict:
        """Load the artifact fetched earlier in this run.

        Raises:
            ValueError: If the fetch step has not produced an artifact
        """
        if state.artifact_path is None:
            raise ValueError("artifact_path is required; fetch has not completed")
        if state.instance is None:
            raise ValueError("instance is required; provision has not completed")

        await self.collaborators.runner.load(state.payload.org_name, state.artifact_path.name)
        return {}
