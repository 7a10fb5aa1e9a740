"""Durable DAG workflow engine package."""

from .approval import (
    ApprovalGate,
    ApprovalTransport,
    InMemoryApprovalTransport,
    approval_action,
)
from .context import TaskContext
from .definition import (
    Definition,
    DefinitionBuilder,
    Dependency,
    InputSource,
    Node,
    NodeKind,
    Value,
)
from .engine import RunHandle, WorkflowEngine, new_run_id
from .exceptions import (
    ApprovalDenied,
    DefinitionError,
    InputValidationError,
    LeaseUnavailableError,
    NodeFailure,
    RunCancelledError,
    RunNotFoundError,
    TerminalTaskError,
    WorkflowEngineError,
    WorkflowFailedError,
)
from .models import ApprovalDecision, NodeRecord, NodeStatus, RunRecord, RunSnapshot, RunStatus
from .params import BOOL, INT, LONG_STRING, STRING, STRING_LIST, ParamDef, ParamType, select
from .registry import DefinitionRegistry
from .retries import NO_RETRY, RetryPolicy
from .store import FileWorkflowStore, MemoryWorkflowStore, WorkflowStore

__all__ = [
    "ApprovalDecision",
    "ApprovalDenied",
    "ApprovalGate",
    "ApprovalTransport",
    "BOOL",
    "Definition",
    "DefinitionBuilder",
    "DefinitionError",
    "DefinitionRegistry",
    "Dependency",
    "FileWorkflowStore",
    "INT",
    "InMemoryApprovalTransport",
    "InputSource",
    "InputValidationError",
    "LONG_STRING",
    "LeaseUnavailableError",
    "MemoryWorkflowStore",
    "NO_RETRY",
    "Node",
    "NodeFailure",
    "NodeKind",
    "NodeRecord",
    "NodeStatus",
    "ParamDef",
    "ParamType",
    "RetryPolicy",
    "RunCancelledError",
    "RunHandle",
    "RunNotFoundError",
    "RunRecord",
    "RunSnapshot",
    "RunStatus",
    "STRING",
    "STRING_LIST",
    "TaskContext",
    "TerminalTaskError",
    "Value",
    "WorkflowEngine",
    "WorkflowEngineError",
    "WorkflowFailedError",
    "WorkflowStore",
    "approval_action",
    "new_run_id",
    "select",
]
