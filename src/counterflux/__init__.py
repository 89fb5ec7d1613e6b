"""Adversarial QA/Dev agent workflows over a shared, immutable workflow context."""

from .context import WorkflowContextManager
from .parallel import ParallelCoordinator
from .sequential import SequentialWorkflowMachine
from .session import AgentSession

__version__ = "0.1.0"

__all__ = [
	"AgentSession",
	"ParallelCoordinator",
	"SequentialWorkflowMachine",
	"WorkflowContextManager",
]
