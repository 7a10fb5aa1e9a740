"""Workflow-specific exception types shared across modules."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence


class WorkflowEngineError(Exception):
    """Base class for workflow-related failures."""


class DefinitionError(WorkflowEngineError):
    """Raised while building a definition: duplicate names, dangling inputs, cycles."""


class InputValidationError(WorkflowEngineError):
    """Raised when run inputs do not satisfy the parameter declarations."""

    def __init__(self, problems: Sequence[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "invalid inputs")


class RunNotFoundError(WorkflowEngineError):
    """Raised when a run identifier has no persisted record."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"run {run_id} not found")


class LeaseUnavailableError(WorkflowEngineError):
    """Raised when another driver already owns the run."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"run {run_id} is being driven elsewhere")


class TerminalTaskError(WorkflowEngineError):
    """Raised by a task body to fail its node without automatic retry."""


class ApprovalDenied(TerminalTaskError):
    """Raised inside an approval gate when the recorded decision is a denial."""

    def __init__(self, node: str, actor: str | None = None, note: str | None = None):
        self.node = node
        self.actor = actor
        self.note = note
        reason = f"approval for {node!r} denied"
        if actor:
            reason += f" by {actor}"
        if note:
            reason += f": {note}"
        super().__init__(reason)


@dataclass(frozen=True)
class NodeFailure:
    """Terminal failure of one node, surfaced with the run's final error."""

    node: str
    error: str
    message: str
    attempts: int

    def __str__(self) -> str:
        return f"{self.node}: {self.error}: {self.message} (attempts={self.attempts})"


class WorkflowFailedError(WorkflowEngineError):
    """Raised by WorkflowEngine.run when at least one node failed terminally."""

    def __init__(self, run_id: str, failures: Sequence[NodeFailure]):
        self.run_id = run_id
        self.failures = list(failures)
        detail = "; ".join(str(failure) for failure in self.failures)
        super().__init__(f"run {run_id} failed: {detail}")


class RunCancelledError(WorkflowEngineError):
    """Raised by WorkflowEngine.run when the run was cancelled through the engine."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"run {run_id} cancelled")
