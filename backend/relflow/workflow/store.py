"""Durable persistence for runs, node records and approval decisions."""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Protocol, Sequence
from urllib.parse import quote, unquote

from pydantic import BaseModel, ValidationError

from .exceptions import RunNotFoundError, WorkflowEngineError
from .models import ApprovalDecision, NodeRecord, RunRecord

logger = logging.getLogger(__name__)


class WorkflowStore(Protocol):
    """Single source of truth for run and node state.

    Implementations must make each node-record write atomic and visible
    after a process restart.
    """

    def create_run(self, run: RunRecord, nodes: Sequence[NodeRecord]) -> RunRecord:
        """Persist a new run and its initial node records."""

    def save_run(self, run: RunRecord) -> RunRecord:
        """Persist the run header."""

    def load_run(self, run_id: str) -> RunRecord | None:
        """Return the run header or None."""

    def save_node(self, record: NodeRecord) -> NodeRecord:
        """Persist one node record."""

    def load_nodes(self, run_id: str) -> dict[str, NodeRecord]:
        """Return every node record of a run keyed by node name."""

    def save_approval(self, decision: ApprovalDecision) -> ApprovalDecision:
        """Persist an approval decision."""

    def load_approval(self, run_id: str, node: str) -> ApprovalDecision | None:
        """Return the decision recorded for a gate, if any."""

    def list_runs(self) -> list[str]:
        """Return the identifiers of every stored run."""


def _path_part(name: str) -> str:
    # "." and ".." must never resolve to a parent directory.
    part = quote(name, safe="")
    return "%2E" + part[1:] if part.startswith(".") else part


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json")


class FileWorkflowStore:
    """Persist workflow state as JSON files, one directory per run.

    Layout::

        <base>/<run_id>/run.json
        <base>/<run_id>/nodes/<node>.json
        <base>/<run_id>/approvals/<node>.json
    """

    def __init__(self, base_dir: str | Path, *, ensure_dirs: bool = True):
        self.base_dir = Path(base_dir)
        if ensure_dirs:
            self.ensure_base_dir()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_lock = threading.Lock()

    def ensure_base_dir(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _run_dir(self, run_id: str) -> Path:
        return self.base_dir / _path_part(run_id)

    def _run_file(self, run_id: str) -> Path:
        return self._run_dir(run_id) / "run.json"

    def _node_file(self, run_id: str, node: str) -> Path:
        return self._run_dir(run_id) / "nodes" / f"{quote(node, safe='')}.json"

    def _approval_file(self, run_id: str, node: str) -> Path:
        return self._run_dir(run_id) / "approvals" / f"{quote(node, safe='')}.json"

    def _get_lock(self, run_id: str) -> threading.Lock:
        with self._locks_lock:
            lock = self._locks.get(run_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[run_id] = lock
            return lock

    def _atomic_write(self, path: Path, payload: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        tmp_path.replace(path)

    def _read(self, path: Path, model: type[BaseModel]) -> Any:
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
            return model.model_validate(payload)
        except (UnicodeDecodeError, json.JSONDecodeError, ValidationError):
            logger.warning("skipping corrupt workflow record path=%s", path)
            return None

    def create_run(self, run: RunRecord, nodes: Sequence[NodeRecord]) -> RunRecord:
        with self._get_lock(run.run_id):
            if self._run_file(run.run_id).exists():
                raise WorkflowEngineError(f"run {run.run_id} already exists")
            # Node records first: a run header is only visible once complete.
            for record in nodes:
                self._atomic_write(self._node_file(run.run_id, record.node), _dump(record))
            self._atomic_write(self._run_file(run.run_id), _dump(run))
        return run

    def save_run(self, run: RunRecord) -> RunRecord:
        with self._get_lock(run.run_id):
            self._atomic_write(self._run_file(run.run_id), _dump(run))
        return run

    def load_run(self, run_id: str) -> RunRecord | None:
        return self._read(self._run_file(run_id), RunRecord)

    def save_node(self, record: NodeRecord) -> NodeRecord:
        with self._get_lock(record.run_id):
            if not self._run_file(record.run_id).exists():
                raise RunNotFoundError(record.run_id)
            self._atomic_write(self._node_file(record.run_id, record.node), _dump(record))
        return record

    def load_nodes(self, run_id: str) -> dict[str, NodeRecord]:
        nodes_dir = self._run_dir(run_id) / "nodes"
        if not nodes_dir.is_dir():
            return {}
        records: dict[str, NodeRecord] = {}
        for path in sorted(nodes_dir.glob("*.json")):
            record = self._read(path, NodeRecord)
            if record is None:
                continue
            if record.node != unquote(path.stem):
                logger.warning("node record name mismatch path=%s", path)
                continue
            records[record.node] = record
        return records

    def save_approval(self, decision: ApprovalDecision) -> ApprovalDecision:
        with self._get_lock(decision.run_id):
            self._atomic_write(self._approval_file(decision.run_id, decision.node), _dump(decision))
        return decision

    def load_approval(self, run_id: str, node: str) -> ApprovalDecision | None:
        return self._read(self._approval_file(run_id, node), ApprovalDecision)

    def list_runs(self) -> list[str]:
        if not self.base_dir.is_dir():
            return []
        return sorted(
            unquote(path.name)
            for path in self.base_dir.iterdir()
            if (path / "run.json").exists()
        )


class MemoryWorkflowStore:
    """In-process store keeping defensive copies, for tests and ephemeral runs."""

    def __init__(self) -> None:
        self._runs: dict[str, RunRecord] = {}
        self._nodes: dict[str, dict[str, NodeRecord]] = {}
        self._approvals: dict[tuple[str, str], ApprovalDecision] = {}
        self._lock = threading.Lock()

    def create_run(self, run: RunRecord, nodes: Sequence[NodeRecord]) -> RunRecord:
        with self._lock:
            if run.run_id in self._runs:
                raise WorkflowEngineError(f"run {run.run_id} already exists")
            self._runs[run.run_id] = run.model_copy(deep=True)
            self._nodes[run.run_id] = {
                record.node: record.model_copy(deep=True) for record in nodes
            }
        return run

    def save_run(self, run: RunRecord) -> RunRecord:
        with self._lock:
            self._runs[run.run_id] = run.model_copy(deep=True)
        return run

    def load_run(self, run_id: str) -> RunRecord | None:
        with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    def save_node(self, record: NodeRecord) -> NodeRecord:
        with self._lock:
            nodes = self._nodes.get(record.run_id)
            if nodes is None:
                raise RunNotFoundError(record.run_id)
            nodes[record.node] = record.model_copy(deep=True)
        return record

    def load_nodes(self, run_id: str) -> dict[str, NodeRecord]:
        with self._lock:
            nodes = self._nodes.get(run_id, {})
            return {name: record.model_copy(deep=True) for name, record in nodes.items()}

    def save_approval(self, decision: ApprovalDecision) -> ApprovalDecision:
        with self._lock:
            self._approvals[(decision.run_id, decision.node)] = decision.model_copy(deep=True)
        return decision

    def load_approval(self, run_id: str, node: str) -> ApprovalDecision | None:
        with self._lock:
            decision = self._approvals.get((run_id, node))
            return decision.model_copy(deep=True) if decision else None

    def list_runs(self) -> list[str]:
        with self._lock:
            return sorted(self._runs)
