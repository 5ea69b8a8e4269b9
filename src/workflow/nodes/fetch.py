"""FetchNode - Downloads the collected dataset into the working area."""

import asyncio

from src.utils.config import get_settings
from src.workflow.nodes import BaseNode, NodeRegistry, handle_node_errors, log_node_execution
from src.workflow.state import AnalysisRunState


@NodeRegistry.register("fetch")
class FetchNode(BaseNode):
    """Copies ``<source_location>/sharphound.zip`` to ``<download root>/<org>/``."""

    @property
    def name(self) -> str:
        """Return node identifier."""
        return "fetch"

    @handle_node_errors
    @log_node_execution
    async def execute(self, state: AnalysisRunState) -> dict:
        """Download the artifact, replacing any copy left by an earlier attempt.

        Returns:
            State updates with:
                - artifact_path: Local path of the downloaded artifact
        """
        payload = state.payload
        artifact_path = await asyncio.to_thread(
            self.collaborators.transfer.fetch,
            payload.org_name,
            payload.source_location,
            get_settings().S3_ARTIFACT_NAME,
        )
        return {"artifact_path": artifact_path}
