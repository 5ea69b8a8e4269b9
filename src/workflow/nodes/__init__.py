"""Pipeline step infrastructure.

This module provides the base infrastructure for all pipeline steps:
- BaseNode abstract class: Contract for all steps
- Error handling decorator: Wraps failures in the step's error class
- Logging decorator: Automatic execution logging
- NodeRegistry: Step registration and discovery

Example Usage:
    >>> from src.workflow.nodes import (
    ...     BaseNode,
    ...     handle_node_errors,
    ...     log_node_execution,
    ...     NodeRegistry
    ... )
    >>>
    >>> @NodeRegistry.register("my_step")
    ... class MyNode(BaseNode):
    ...     @property
    ...     def name(self) -> str:
    ...         return "my_step"
    ...
    ...     @handle_node_errors
    ...     @log_node_execution
    ...     async def execute(self, state):
    ...         return {}
"""

import functools
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, TypeVar

from src.workflow.collaborators import WorkflowCollaborators
from src.workflow.error_handling import StepExecutionError, error_for_step
from src.workflow.state import AnalysisRunState

logger = logging.getLogger(__name__)

# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., Any])


class BaseNode(ABC):
    """Abstract base class for pipeline steps.

    All steps must:
    1. Accept AnalysisRunState as input
    2. Return dict of state updates (not full state)
    3. Raise on failure (use @handle_node_errors to get the step's error class)
    4. Log execution (use @log_node_execution)

    Args:
        collaborators: External systems the step drives
    """

    def __init__(self, collaborators: WorkflowCollaborators) -> None:
        self.collaborators = collaborators

    @abstractmethod
    async def execute(self, state: AnalysisRunState) -> dict[str, Any]:
        """Execute step logic and return state updates.

        Args:
            state: Current run state

        Returns:
            Dictionary of state updates to apply. Should NOT return
            the full state, only the fields that need updating.

        Raises:
            StepExecutionError: Subclass matching the step, when
                decorated with @handle_node_errors
        """
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Return step name for logging and identification."""
        pass


def handle_node_errors(func: F) -> F:
    """Decorator that re-raises step failures as the step's error class.

    The original exception is chained as ``__cause__``. Errors that already
    are StepExecutionError pass through unchanged, as does cancellation.

    Example:
        >>> @handle_node_errors
        ... async def execute(self, state):
        ...     raise OSError("disk full")
        >>>
        >>> await node.execute(state)   # raises FetchFailed for the fetch step
    """

    @functools.wraps(func)
    async def wrapper(self: BaseNode, state: AnalysisRunState, *args, **kwargs) -> dict[str, Any]:
        try:
            return await func(self, state, *args, **kwargs)
        except StepExecutionError:
            raise
        except Exception as e:
            error_cls = error_for_step(self.name)
            raise error_cls(
                f"Step '{self.name}' failed: {type(e).__name__}: {e}",
                step_name=self.name,
                workflow_id=state.workflow_id,
                org_name=state.payload.org_name,
                result_id=state.payload.result_id,
            ) from e

    return wrapper  # type: ignore


def log_node_execution(func: F) -> F:
    """Decorator to log step start, end, and duration.

    Example:
        >>> # Logs:
        >>> # INFO: [SIM-1] Starting step: fetch
        >>> # INFO: [SIM-1] Completed step: fetch (0.05s)
    """

    @functools.wraps(func)
    async def wrapper(self: BaseNode, state: AnalysisRunState, *args, **kwargs) -> dict[str, Any]:
        node_name = self.name
        workflow_id = state.workflow_id
        extra = state.log_context(step=node_name)

        logger.info(f"[{workflow_id}] Starting step: {node_name}", extra=extra)
        start_time = time.time()

        try:
            result = await func(self, state, *args, **kwargs)
        except Exception:
            duration = time.time() - start_time
            logger.error(f"[{workflow_id}] Failed step: {node_name} ({duration:.2f}s)", extra=extra)
            raise

        duration = time.time() - start_time
        logger.info(f"[{workflow_id}] Completed step: {node_name} ({duration:.2f}s)", extra=extra)
        return result

    return wrapper  # type: ignore


class NodeRegistry:
    """Registry for pipeline steps.

    The executor looks up each name of PIPELINE_STEPS here, so a step is
    part of the pipeline once its module registers it.

    Example:
        >>> @NodeRegistry.register("fetch")
        ... class FetchNode(BaseNode):
        ...     ...
        >>>
        >>> NodeRegistry.get("fetch")
        <class 'FetchNode'>
    """

    _nodes: dict[str, type[BaseNode]] = {}

    @classmethod
    def register(cls, name: str) -> Callable[[type[BaseNode]], type[BaseNode]]:
        """Decorator to register a step class by name.

        Raises:
            ValueError: If a step with the same name is already registered
        """

        def decorator(node_class: type[BaseNode]) -> type[BaseNode]:
            if name in cls._nodes:
                raise ValueError(f"Node '{name}' is already registered")

            cls._nodes[name] = node_class
            logger.debug(f"Registered node: {name} -> {node_class.__name__}")
            return node_class

        return decorator

    @classmethod
    def get(cls, name: str) -> type[BaseNode]:
        """Get a registered step class by name.

        Raises:
            KeyError: If no step with the given name is registered
        """
        if name not in cls._nodes:
            available = ", ".join(cls._nodes.keys()) or "none"
            raise KeyError(f"Node '{name}' not registered. Available nodes: {available}")
        return cls._nodes[name]

    @classmethod
    def list_nodes(cls) -> list[str]:
        """List all registered step names, sorted."""
        return sorted(cls._nodes.keys())

    @classmethod
    def is_registered(cls, name: str) -> bool:
        return name in cls._nodes


# Import all node modules to trigger registration
# These imports must be at the bottom after class definitions to avoid circular imports
from src.workflow.nodes import (  # noqa: E402, F401
    analyze,
    fetch,
    load,
    provision,
    publish,
)

# Export all public APIs
__all__ = [
    "BaseNode",
    "handle_node_errors",
    "log_node_execution",
    "NodeRegistry",
]
