"""Custodian: long-running compliance workflow orchestration."""

from .clock import ManualClock, SystemClock
from .config import CustodianConfig, load_config
from .contracts import Priority, RequestReason, Urgency, WorkflowDefinition
from .engine import AdvanceResult, WorkflowEngine, create_engine
from .events import get_event_sink
from .models import RequestFilter, RequestStatus, StatusReport, WorkflowRequest
from .persistence import get_repository
from .registry import DefinitionRegistry, builtin_definitions, load_definitions
from .scheduler import Scheduler

__version__ = "0.1.0"
__all__ = [
    "AdvanceResult",
    "CustodianConfig",
    "DefinitionRegistry",
    "ManualClock",
    "Priority",
    "RequestFilter",
    "RequestReason",
    "RequestStatus",
    "Scheduler",
    "StatusReport",
    "SystemClock",
    "Urgency",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowRequest",
    "builtin_definitions",
    "create_engine",
    "get_event_sink",
    "get_repository",
    "load_config",
    "load_definitions",
]
