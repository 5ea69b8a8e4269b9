"""Assembly of the worker process: collaborators, executor and dispatcher."""

import asyncio
import logging
import signal
from typing import Any

from src.integrations.adminer import AdminerAnalysisRunner
from src.integrations.bloodhound import BloodhoundInstanceManager
from src.integrations.s3 import S3ArtifactTransfer
from src.integrations.workspace import LocalWorkspace
from src.tasks.broker import Broker
from src.tasks.dispatcher import Dispatcher
from src.tasks.handlers import register_handlers
from src.utils.config import Settings, get_settings
from src.workflow.collaborators import WorkflowCollaborators
from src.workflow.executor import WorkflowExecutor

logger = logging.getLogger(__name__)


def build_collaborators(
    settings: Settings | None = None, *, s3_client: Any = None
) -> WorkflowCollaborators:
    """Production collaborators wired from settings."""
    settings = settings or get_settings()
    workspace = LocalWorkspace(settings.S3_DOWNLOAD_LOCATION)
    instances = BloodhoundInstanceManager(settings)
    return WorkflowCollaborators(
        transfer=S3ArtifactTransfer(workspace, client=s3_client),
        instances=instances,
        runner=AdminerAnalysisRunner(instances, workspace, settings),
        workspace=workspace,
    )


def build_dispatcher(
    collaborators: WorkflowCollaborators | None = None,
    *,
    broker: Broker | None = None,
) -> Dispatcher:
    """Dispatcher with the analysis handler registered."""
    dispatcher = Dispatcher(broker or Broker())
    register_handlers(dispatcher, WorkflowExecutor(collaborators or build_collaborators()))
    return dispatcher


async def run_worker(dispatcher: Dispatcher) -> None:
    """Run the dispatcher until SIGINT or SIGTERM, then drain in-flight work."""
    loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        loop.add_signal_handler(sig, dispatcher.stop)

    logger.info("Worker started, press Ctrl+C to stop")
    try:
        await dispatcher.run()
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)
    logger.info("Worker exited")
