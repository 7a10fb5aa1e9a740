"""Test fixtures for the workflow engine."""

from __future__ import annotations

import threading
from typing import Any

import pytest

from relflow.listeners import NodeEvent
from relflow.settings import EngineSettings, reset_settings
from relflow.workflow import MemoryWorkflowStore, WorkflowEngine


class RecordingListener:
    """Listener that keeps every event and log line it receives."""

    def __init__(self) -> None:
        self.events: list[NodeEvent] = []
        self.logs: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def task_state_changed(self, event: NodeEvent) -> None:
        with self._lock:
            self.events.append(event)

    def task_log(self, run_id: str, node: str, message: str) -> None:
        with self._lock:
            self.logs.append((node, message))

    def statuses(self, node: str) -> list[str]:
        return [event.status for event in self.events if event.node == node]

    def attempts(self, node: str, status: str = "started") -> list[int]:
        return [
            event.attempt for event in self.events if event.node == node and event.status == status
        ]


class FailingListener:
    """Listener that raises on every notification."""

    def __init__(self) -> None:
        self.calls = 0

    def task_state_changed(self, event: NodeEvent) -> None:
        self.calls += 1
        raise RuntimeError("listener exploded")


class CallCounter:
    """Counts invocations per node across attempts."""

    def __init__(self) -> None:
        self.counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def hit(self, node: str) -> int:
        with self._lock:
            self.counts[node] = self.counts.get(node, 0) + 1
            return self.counts[node]

    def __getitem__(self, node: str) -> int:
        return self.counts.get(node, 0)


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch: pytest.MonkeyPatch) -> Any:
    """Keep RELFLOW_* variables from the host out of the cached settings."""
    for name in (
        "RELFLOW_MODE",
        "RELFLOW_DATA_DIR",
        "REDIS_URL",
        "RELFLOW_REDIS_PREFIX",
        "RELFLOW_LEASE_TTL_SECONDS",
        "RELFLOW_MAX_ATTEMPTS",
        "RELFLOW_BACKOFF_SECONDS",
        "RELFLOW_MAX_BACKOFF_SECONDS",
        "RELFLOW_ATTEMPT_TIMEOUT_SECONDS",
        "RELFLOW_FAILURE_MODE",
        "RELFLOW_LISTENER_WARN_SECONDS",
        "RELFLOW_LEASE_REFRESH_SECONDS",
        "RELFLOW_LOG_OUTPUTS",
        "RELFLOW_APPROVAL_POLL_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def engine_settings() -> EngineSettings:
    return EngineSettings(max_attempts=3, backoff_seconds=0, lease_refresh_seconds=60)


@pytest.fixture
def store() -> MemoryWorkflowStore:
    return MemoryWorkflowStore()


@pytest.fixture
def engine(store: MemoryWorkflowStore, engine_settings: EngineSettings) -> WorkflowEngine:
    return WorkflowEngine(store, settings=engine_settings)


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def counter() -> CallCounter:
    return CallCounter()


@pytest.fixture
def failing_listener() -> FailingListener:
    return FailingListener()
