"""BloodHound instance automation.

Drives the ``bloodhound-automation.py`` script, which manages one BloodHound
(Neo4j) instance per organization::

    python3 <script> start <org>
    python3 <script> data -z <zip> <org>
    python3 <script> delete <org>

The script is run from its own directory.
"""

import logging
from pathlib import Path

from src.integrations.commands import run_command
from src.utils.config import Settings, get_settings
from src.workflow.state import BloodhoundInstance

logger = logging.getLogger(__name__)


class BloodhoundInstanceManager:
    """Starts, feeds and deletes per-organization BloodHound instances."""

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self.script_dir = settings.BLOODHOUND_SCRIPT_PATH
        self.script = settings.BLOODHOUND_SCRIPT_PATH / settings.BLOODHOUND_SCRIPT_NAME
        self.python = settings.BLOODHOUND_PYTHON

    def command(self, *args: str) -> list[str]:
        """Full argv for a script subcommand."""
        return [self.python, str(self.script), *args]

    async def provision(self, org_name: str) -> BloodhoundInstance:
        """Start the organization's instance.

        Raises:
            CommandError: If the script fails
        """
        await run_command(self.command("start", org_name), cwd=self.script_dir)
        logger.info("Started BloodHound instance for org: %s", org_name, extra={"org_name": org_name})
        return BloodhoundInstance(org_name=org_name)

    async def load_data(self, org_name: str, zip_path: Path) -> None:
        """Import a SharpHound archive into the organization's instance."""
        await run_command(self.command("data", "-z", str(zip_path), org_name), cwd=self.script_dir)
        logger.info("Loaded data for org: %s", org_name, extra={"org_name": org_name})

    async def release(self, org_name: str) -> None:
        """Stop and delete the organization's instance."""
        await run_command(self.command("delete", org_name), cwd=self.script_dir)
        logger.info(
            "Stopped and deleted BloodHound instance for org: %s", org_name, extra={"org_name": org_name}
        )
