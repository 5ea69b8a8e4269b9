"""AnalyzeNode - Runs AD-miner against the loaded instance."""

from src.workflow.nodes import BaseNode, NodeRegistry, handle_node_errors, log_node_execution
from src.workflow.state import AnalysisRunState


@NodeRegistry.register("analyze")
class AnalyzeNode(BaseNode):
    @property
    def name(self) -> str:
        """Return node identifier."""
        return "analyze"

    @handle_node_errors
    @log_node_execution
    async def execute(self, state: AnalysisRunState) -> dict:
        await self.collaborators.runner.analyze(state.payload.org_name)
        return {}
