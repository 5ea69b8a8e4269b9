"""PublishNode - Uploads the AD-miner report next to the source artifact.

The report directory is promoted to ``extracted/`` and mirrored to
``<source_location>/extracted/``, so republishing the same output is a no-op.
"""

import asyncio

from src.workflow.nodes import BaseNode, NodeRegistry, handle_node_errors, log_node_execution
from src.workflow.state import AnalysisRunState

PUBLISH_SUBPATH = "extracted"


@NodeRegistry.register("publish")
class PublishNode(BaseNode):
    """Workflow node that publishes the report to object storage."""

    @property
    def name(self) -> str:
        """Return node identifier."""
        return "publish"

    @handle_node_errors
    @log_node_execution
    async def execute(self, state: AnalysisRunState) -> dict:
        """Promote the report and mirror it to the destination prefix.

        Returns:
            State updates with:
                - output_path: Local directory that was published
        """
        payload = state.payload
        output_path = await asyncio.to_thread(
            self.collaborators.workspace.promote_output, payload.org_name
        )
        destination = f"{payload.source_location}/{PUBLISH_SUBPATH}"
        await asyncio.to_thread(self.collaborators.transfer.publish, output_path, destination)
        return {"output_path": output_path}
