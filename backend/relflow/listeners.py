"""Progress listeners receiving node state transitions."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Iterable, Literal, Mapping, Protocol, runtime_checkable
from urllib.parse import quote
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .schemas import iso_timestamp

logger = logging.getLogger(__name__)

EventStatus = Literal["started", "succeeded", "failed", "retrying"]


class NodeEvent(BaseModel):
    """A single node state transition."""

    model_config = ConfigDict(extra="forbid")

    id: str
    run_id: str
    seq: int = Field(default=0)
    ts: str
    node: str
    status: EventStatus
    attempt: int = Field(ge=0)
    error: dict[str, Any] | None = None
    output: str | None = None
    delay_seconds: float | None = None


def new_node_event(
    run_id: str,
    node: str,
    status: EventStatus,
    *,
    attempt: int,
    error: Mapping[str, Any] | None = None,
    output: str | None = None,
    delay_seconds: float | None = None,
) -> NodeEvent:
    """Create a fresh event with metadata initialized."""
    return NodeEvent(
        id=str(uuid4()),
        run_id=run_id,
        seq=0,
        ts=iso_timestamp(),
        node=node,
        status=status,
        attempt=attempt,
        error=dict(error) if error else None,
        output=output,
        delay_seconds=delay_seconds,
    )


@runtime_checkable
class Listener(Protocol):
    """Synchronous sink for node transitions.

    Implementations may also define ``task_log(run_id, node, message)`` to
    receive lines written through ``TaskContext.printf``.
    """

    def task_state_changed(self, event: NodeEvent) -> None:
        ...


class LoggingListener:
    """Writes every transition to the standard logger."""

    def __init__(self, log: logging.Logger | None = None):
        self._logger = log or logger

    def task_state_changed(self, event: NodeEvent) -> None:
        extra = {"run_id": event.run_id, "node": event.node}
        if event.status == "failed":
            self._logger.error(
                "node %s failed attempt=%s error=%s",
                event.node,
                event.attempt,
                (event.error or {}).get("message"),
                extra=extra,
            )
        elif event.status == "retrying":
            self._logger.warning(
                "node %s retrying attempt=%s delay=%s",
                event.node,
                event.attempt,
                event.delay_seconds,
                extra=extra,
            )
        else:
            self._logger.info(
                "node %s %s attempt=%s", event.node, event.status, event.attempt, extra=extra
            )

    def task_log(self, run_id: str, node: str, message: str) -> None:
        self._logger.info("%s: %s", node, message, extra={"run_id": run_id, "node": node})


class EventLogListener:
    """Append-only per-run transition log backed by JSONL files."""

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._seq_cache: dict[str, int] = {}
        self._lock = threading.Lock()

    def _event_file(self, run_id: str) -> Path:
        return self.base_dir / f"{quote(run_id, safe='')}.jsonl"

    def _load_seq_from_disk(self, run_id: str) -> int:
        last_seq = 0
        for event in self.replay(run_id):
            last_seq = max(last_seq, event.seq)
        return last_seq

    def _next_seq_locked(self, run_id: str) -> int:
        seq = self._seq_cache.get(run_id)
        if seq is None:
            seq = self._load_seq_from_disk(run_id)
        seq += 1
        self._seq_cache[run_id] = seq
        return seq

    def task_state_changed(self, event: NodeEvent) -> None:
        self.append(event)

    def append(self, event: NodeEvent) -> NodeEvent:
        """Assign a sequence number, persist, and return the stored event."""
        with self._lock:
            stored = event.model_copy(update={"seq": self._next_seq_locked(event.run_id)})
            with self._event_file(event.run_id).open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(stored.model_dump(), separators=(",", ":")))
                handle.write("\n")
        return stored

    def replay(self, run_id: str) -> list[NodeEvent]:
        """Return all stored events for a run in sequence order."""
        path = self._event_file(run_id)
        if not path.exists():
            return []
        events: list[NodeEvent] = []
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(NodeEvent.model_validate(json.loads(line)))
                except (json.JSONDecodeError, ValidationError):
                    logger.warning(
                        "skipping malformed event line",
                        extra={"run_id": run_id},
                    )
        return sorted(events, key=lambda event: event.seq)


class CompositeListener:
    """Fans transitions out to several listeners, isolating their failures."""

    def __init__(self, listeners: Iterable[Listener] = ()):
        self._listeners: list[Listener] = list(listeners)

    def add(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def task_state_changed(self, event: NodeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener.task_state_changed(event)
            except Exception:
                logger.exception(
                    "listener failed node=%s status=%s",
                    event.node,
                    event.status,
                    extra={"run_id": event.run_id},
                )

    def task_log(self, run_id: str, node: str, message: str) -> None:
        for listener in list(self._listeners):
            hook = getattr(listener, "task_log", None)
            if hook is None:
                continue
            try:
                hook(run_id, node, message)
            except Exception:
                logger.exception("listener log hook failed node=%s", node, extra={"run_id": run_id})
