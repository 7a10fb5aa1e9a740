"""relflow: durable, resumable DAG workflows for release automation."""

from .listeners import CompositeListener, EventLogListener, Listener, LoggingListener, NodeEvent
from .run_logging import configure_logging
from .settings import EngineSettings, FailureMode, RuntimeSettings, Settings, get_settings
from .workflow import (
    ApprovalGate,
    Definition,
    DefinitionBuilder,
    DefinitionRegistry,
    ParamDef,
    RunHandle,
    TaskContext,
    WorkflowEngine,
)

__all__ = [
    "ApprovalGate",
    "CompositeListener",
    "Definition",
    "DefinitionBuilder",
    "DefinitionRegistry",
    "EngineSettings",
    "EventLogListener",
    "FailureMode",
    "Listener",
    "LoggingListener",
    "NodeEvent",
    "ParamDef",
    "RunHandle",
    "RuntimeSettings",
    "Settings",
    "TaskContext",
    "WorkflowEngine",
    "configure_logging",
    "get_settings",
]
