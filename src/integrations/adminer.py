"""AD-miner analysis runner.

AD-miner reads the organization's BloodHound graph and renders its report
into ``render_<org>/`` under the current directory, so it runs inside the
organization's working area.
"""

import logging

from src.integrations.bloodhound import BloodhoundInstanceManager
from src.integrations.commands import run_command
from src.integrations.workspace import LocalWorkspace
from src.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)


class AdminerAnalysisRunner:
    """Loads the fetched dataset and runs AD-miner for an organization.

    Args:
        instances: Instance manager used to import the dataset
        workspace: Working areas holding the dataset and the report
        settings: Configuration (global settings if None)
    """

    def __init__(
        self,
        instances: BloodhoundInstanceManager,
        workspace: LocalWorkspace,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.instances = instances
        self.workspace = workspace
        self.binary = settings.ADMINER_BINARY
        self.username = settings.NEO4J_USERNAME
        self.password = settings.get_neo4j_password()

    def command(self, org_name: str) -> list[str]:
        return [self.binary, "-cf", org_name, "--rdp", "-u", self.username, "-p", self.password]

    async def load(self, org_name: str, artifact_file_name: str) -> None:
        """Import ``<working area>/<artifact_file_name>`` into the instance."""
        zip_path = self.workspace.artifact_path(org_name, artifact_file_name)
        if not zip_path.is_file():
            raise FileNotFoundError(f"Artifact not found: {zip_path}")
        await self.instances.load_data(org_name, zip_path)

    async def analyze(self, org_name: str) -> None:
        """Run AD-miner in the organization's working area.

        Raises:
            CommandError: If AD-miner fails (the password is redacted)
        """
        cwd = self.workspace.ensure(org_name)
        await run_command(self.command(org_name), cwd=cwd, secrets=[self.password])
        logger.info("Completed AD-miner analysis for org: %s", org_name, extra={"org_name": org_name})
