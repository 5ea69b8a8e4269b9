"""Per-organization working areas on the local filesystem.

Layout under the download root (``S3_DOWNLOAD_LOCATION``)::

    <root>/<org>/sharphound.zip     fetched artifact
    <root>/<org>/render_<org>/      report written by AD-miner
    <root>/<org>/extracted/         report promoted for publishing
"""

import logging
import shutil
from pathlib import Path

from src.tasks.payloads import is_path_segment
from src.utils.config import get_settings

logger = logging.getLogger(__name__)

OUTPUT_DIR_NAME = "extracted"


class LocalWorkspace:
    """Working areas rooted at one directory.

    Args:
        root: Download root (defaults to S3_DOWNLOAD_LOCATION)
    """

    def __init__(self, root: Path | None = None) -> None:
        self.root = Path(root) if root is not None else get_settings().S3_DOWNLOAD_LOCATION

    def org_dir(self, org_name: str) -> Path:
        """Working area of an organization.

        Raises:
            ValueError: If org_name is not a single path segment
        """
        if not is_path_segment(org_name):
            raise ValueError(f"Invalid organization name for a working area: '{org_name}'")
        return self.root / org_name

    def ensure(self, org_name: str) -> Path:
        """Create the working area if needed and return it."""
        path = self.org_dir(org_name)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def artifact_path(self, org_name: str, file_name: str) -> Path:
        return self.org_dir(org_name) / file_name

    def report_dir(self, org_name: str) -> Path:
        """Directory AD-miner renders its report into."""
        return self.org_dir(org_name) / f"render_{org_name}"

    def output_dir(self, org_name: str) -> Path:
        return self.org_dir(org_name) / OUTPUT_DIR_NAME

    def promote_output(self, org_name: str) -> Path:
        """Rename the rendered report to ``extracted``, replacing a stale copy.

        Returns:
            Path of the promoted directory

        Raises:
            FileNotFoundError: If AD-miner produced no report directory
        """
        source = self.report_dir(org_name)
        if not source.is_dir():
            raise FileNotFoundError(f"Report directory not found: {source}")

        target = self.output_dir(org_name)
        if target.exists():
            logger.debug("Replacing previous output directory %s", target)
            shutil.rmtree(target)
        source.rename(target)
        logger.info("Promoted report %s -> %s", source, target, extra={"org_name": org_name})
        return target

    def remove(self, org_name: str) -> None:
        """Delete the working area; a missing area is not an error."""
        path = self.org_dir(org_name)
        if not path.exists():
            logger.debug("Working area %s already removed", path)
            return
        shutil.rmtree(path)
        logger.info("Removed working area %s", path, extra={"org_name": org_name})
