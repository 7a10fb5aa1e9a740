"""Durable run and node records."""

from __future__ import annotations

from enum import Enum
from typing import Any, Sequence

from pydantic import BaseModel, ConfigDict, Field

from ..schemas import iso_timestamp
from .exceptions import NodeFailure


class RunStatus(str, Enum):
    """Top-level status values persisted with every run transition."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class NodeStatus(str, Enum):
    """Per-node lifecycle persisted before dependents are scheduled."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"


class NodeRecord(BaseModel):
    """Execution record for one node within one run."""

    model_config = ConfigDict(extra="forbid")

    run_id: str
    node: str
    status: NodeStatus = Field(default=NodeStatus.NOT_STARTED)
    attempts: int = 0
    retries_disabled: bool = False
    last_error: dict[str, Any] | None = None
    output: Any = None
    started_at: str | None = None
    finished_at: str | None = None
    updated_at: str = Field(default_factory=iso_timestamp)

    def touch(self) -> None:
        self.updated_at = iso_timestamp()

    @property
    def succeeded(self) -> bool:
        return self.status is NodeStatus.SUCCEEDED

    def mark_running(self, attempt: int) -> None:
        self.status = NodeStatus.RUNNING
        self.attempts = attempt
        self.retries_disabled = False
        self.started_at = iso_timestamp()
        self.finished_at = None
        self.touch()

    def mark_succeeded(self, output: Any) -> None:
        self.status = NodeStatus.SUCCEEDED
        self.output = output
        self.last_error = None
        self.finished_at = iso_timestamp()
        self.touch()

    def mark_retrying(self, error: dict[str, Any]) -> None:
        self.status = NodeStatus.FAILED_RETRYABLE
        self.last_error = dict(error)
        self.touch()

    def mark_failed(self, error: dict[str, Any], *, retries_disabled: bool = False) -> None:
        self.status = NodeStatus.FAILED_TERMINAL
        self.last_error = dict(error)
        self.retries_disabled = retries_disabled
        self.finished_at = iso_timestamp()
        self.touch()

    def reset(self) -> None:
        """Return the node to not-started so its next attempt is attempt 1."""
        self.status = NodeStatus.NOT_STARTED
        self.attempts = 0
        self.retries_disabled = False
        self.output = None
        self.started_at = None
        self.finished_at = None
        self.touch()

    def failure(self) -> NodeFailure:
        error = self.last_error or {}
        return NodeFailure(
            node=self.node,
            error=str(error.get("error", "unknown")),
            message=str(error.get("message", "")),
            attempts=self.attempts,
        )


class RunRecord(BaseModel):
    """Durable run header: inputs, overall status and timestamps."""

    model_config = ConfigDict(extra="forbid")

    run_id: str
    definition: str
    inputs: dict[str, Any] = Field(default_factory=dict)
    status: RunStatus = Field(default=RunStatus.RUNNING)
    error: dict[str, Any] | None = None
    created_at: str = Field(default_factory=iso_timestamp)
    updated_at: str = Field(default_factory=iso_timestamp)
    finished_at: str | None = None

    def touch(self) -> None:
        self.updated_at = iso_timestamp()

    def mark_running(self) -> None:
        self.status = RunStatus.RUNNING
        self.error = None
        self.finished_at = None
        self.touch()

    def mark_succeeded(self) -> None:
        self.status = RunStatus.SUCCEEDED
        self.error = None
        self.finished_at = iso_timestamp()
        self.touch()

    def mark_failed(self, failures: Sequence[NodeFailure]) -> None:
        self.status = RunStatus.FAILED
        self.error = {
            "error": "node_failed",
            "failures": [
                {
                    "node": failure.node,
                    "error": failure.error,
                    "message": failure.message,
                    "attempts": failure.attempts,
                }
                for failure in failures
            ],
        }
        self.finished_at = iso_timestamp()
        self.touch()

    def mark_cancelled(self) -> None:
        self.status = RunStatus.CANCELLED
        self.error = {"error": "cancelled"}
        self.finished_at = iso_timestamp()
        self.touch()


class ApprovalDecision(BaseModel):
    """A recorded human decision for an approval gate."""

    model_config = ConfigDict(extra="forbid")

    run_id: str
    node: str
    approved: bool
    actor: str | None = None
    note: str | None = None
    decided_at: str = Field(default_factory=iso_timestamp)


class RunSnapshot(BaseModel):
    """Point-in-time view of a run for polling and resumption."""

    model_config = ConfigDict(extra="forbid")

    run: RunRecord
    nodes: dict[str, NodeRecord]

    def status_of(self, node: str) -> NodeStatus:
        return self.nodes[node].status

    def counts(self) -> dict[str, int]:
        totals: dict[str, int] = {}
        for record in self.nodes.values():
            totals[record.status.value] = totals.get(record.status.value, 0) + 1
        return totals
