"""mailflow: workflow automation for marketing email."""

from .config import MailflowConfig, load_config
from .contracts import (
    ExecutionStatus,
    Trigger,
    TriggerCondition,
    TriggerEvent,
    WorkflowDefinition,
    WorkflowDraft,
    WorkflowExecution,
)
from .engine import Collaborators, WorkflowEngine, create_engine
from .errors import (
    EngineError,
    MailflowError,
    NotFoundError,
    PermanentSendError,
    StepExecutionError,
    TransientSendError,
    ValidationError,
)
from .events import get_transport
from .persistence import get_store

__version__ = "0.1.0"
__all__ = [
    "Collaborators",
    "EngineError",
    "ExecutionStatus",
    "MailflowConfig",
    "MailflowError",
    "NotFoundError",
    "PermanentSendError",
    "StepExecutionError",
    "TransientSendError",
    "Trigger",
    "TriggerCondition",
    "TriggerEvent",
    "ValidationError",
    "WorkflowDefinition",
    "WorkflowDraft",
    "WorkflowEngine",
    "WorkflowExecution",
    "create_engine",
    "get_store",
    "get_transport",
    "load_config",
]
