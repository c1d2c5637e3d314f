"""rentflow: Workflow automation for property management."""

from .collaborators import Collaborators
from .contracts import DispatchRequest, DomainEvent, Execution, Workflow, WorkflowSpec
from .dispatch import EventDispatcher
from .engine import WorkflowEngine
from .execute import ActionExecutor
from .persistence import get_repository
from .recorder import ExecutionRecorder
from .service import AutomationService
from .store import WorkflowStore
from .transports import get_transport
from .triggers import TriggerEvaluator

__version__ = "0.1.0"
__all__ = [
    "ActionExecutor",
    "AutomationService",
    "Collaborators",
    "DispatchRequest",
    "DomainEvent",
    "EventDispatcher",
    "Execution",
    "ExecutionRecorder",
    "TriggerEvaluator",
    "Workflow",
    "WorkflowEngine",
    "WorkflowSpec",
    "WorkflowStore",
    "get_repository",
    "get_transport",
]
