"""ProvisionNode - Starts the organization's BloodHound instance."""

from src.workflow.nodes import BaseNode, NodeRegistry, handle_node_errors, log_node_execution
from src.workflow.state import AnalysisRunState


@NodeRegistry.register("provision")
class ProvisionNode(BaseNode):
    @property
    def name(self) -> str:
        """Return node identifier."""
        return "provision"

    @handle_node_errors
    @log_node_execution
    async def execute(self, state: AnalysisRunState) -> dict:
        instance = await self.collaborators.instances.provision(state.payload.org_name)
        return {"instance": instance}
