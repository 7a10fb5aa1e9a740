"""Durable DAG workflow engine implementation."""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Mapping
from uuid import uuid4

from ..lease import NoopRunLease, RunLease, lease_key
from ..listeners import EventStatus, Listener, new_node_event
from ..schemas import summarize
from ..settings import EngineSettings, FailureMode
from .approval import ApprovalGate
from .context import TaskContext
from .definition import Definition, InputSource, Node, NodeKind, Value
from .exceptions import (
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
from .models import NodeRecord, NodeStatus, RunRecord, RunSnapshot, RunStatus
from .params import validate_inputs
from .retries import RetryPolicy
from .serialization import dump_value, load_value
from .store import WorkflowStore

logger = logging.getLogger(__name__)

# Run ids become directory and file names in the file-backed stores.
_RUN_ID_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]{0,127}")


@dataclass(frozen=True)
class RunHandle:
    """Identifies a persisted run together with the definition that drives it."""

    run_id: str
    definition: Definition
    inputs: Mapping[str, Any]


@dataclass
class RunRuntime:
    """In-memory bookkeeping for a run being driven by this process."""

    handle: RunHandle
    run: RunRecord
    records: dict[str, NodeRecord]
    listener: Listener | None
    cancel_event: asyncio.Event
    loop: asyncio.AbstractEventLoop
    outputs: dict[str, Any] = field(default_factory=dict)
    pending_deps: dict[str, int] = field(default_factory=dict)
    in_flight: dict[asyncio.Task[bool], str] = field(default_factory=dict)
    failures: list[NodeFailure] = field(default_factory=list)
    cancelled: bool = False

    @property
    def run_id(self) -> str:
        return self.handle.run_id

    @property
    def definition(self) -> Definition:
        return self.handle.definition


def new_run_id() -> str:
    return str(uuid4())


def valid_run_id(run_id: str) -> bool:
    return isinstance(run_id, str) and bool(_RUN_ID_RE.fullmatch(run_id))


def _error_payload(exc: BaseException, attempt: int) -> dict[str, Any]:
    return {
        "error": exc.__class__.__name__,
        "message": str(exc) or exc.__class__.__name__,
        "attempt": attempt,
    }


class WorkflowEngine:
    """Drives workflow definitions to completion with durable node state.

    Every node transition is written to the store before dependents are
    scheduled, so a run can be resumed in a fresh process without re-running
    succeeded nodes.
    """

    def __init__(
        self,
        store: WorkflowStore,
        *,
        settings: EngineSettings | None = None,
        run_lease: RunLease | None = None,
        approvals: ApprovalGate | None = None,
    ):
        self.store = store
        self.settings = settings or EngineSettings()
        self.run_lease = run_lease or NoopRunLease()
        self.approvals = approvals or ApprovalGate(
            store, poll_seconds=self.settings.approval_poll_seconds
        )
        self.default_retry = RetryPolicy(
            max_attempts=self.settings.max_attempts,
            backoff_seconds=self.settings.backoff_seconds,
            max_backoff_seconds=self.settings.max_backoff_seconds,
        )
        self._runtimes: dict[str, RunRuntime] = {}

    # -- run control -----------------------------------------------------

    def start(
        self,
        definition: Definition,
        inputs: Mapping[str, Any],
        *,
        run_id: str | None = None,
    ) -> RunHandle:
        """Validate inputs and persist a new run with every node not started."""
        if run_id is not None and not valid_run_id(run_id):
            raise InputValidationError(
                [f"invalid run id {run_id!r}: use letters, digits, '.', '_' or '-'"]
            )
        values = validate_inputs(definition.params, inputs)
        run_id = run_id or new_run_id()
        serialized = {
            name: definition.params[name].dump(value) for name, value in values.items()
        }
        run = RunRecord(run_id=run_id, definition=definition.name, inputs=serialized)
        records = [NodeRecord(run_id=run_id, node=name) for name in definition.node_names]
        self.store.create_run(run, records)
        logger.info(
            "workflow run created definition=%s nodes=%s",
            definition.name,
            len(records),
            extra={"run_id": run_id},
        )
        return RunHandle(run_id=run_id, definition=definition, inputs=values)

    def resume(self, definition: Definition, run_id: str) -> RunHandle:
        """Rehydrate a handle for a persisted run, e.g. after a restart."""
        run = self._load_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if run.definition != definition.name:
            msg = f"run {run_id} belongs to {run.definition!r}, not {definition.name!r}"
            raise DefinitionError(msg)
        records = self.store.load_nodes(run_id)
        if set(records) != set(definition.node_names):
            missing = sorted(set(definition.node_names) - set(records))
            extra = sorted(set(records) - set(definition.node_names))
            msg = f"run {run_id} does not match {definition.name!r}: missing={missing} extra={extra}"
            raise DefinitionError(msg)
        inputs: dict[str, Any] = {}
        for name, param in definition.params.items():
            if name not in run.inputs:
                raise DefinitionError(f"run {run_id} has no stored value for {name!r}")
            inputs[name] = param.load(run.inputs[name])
        logger.info(
            "workflow resume requested status=%s",
            run.status.value,
            extra={"run_id": run_id},
        )
        return RunHandle(run_id=run_id, definition=definition, inputs=inputs)

    def query(self, run_id: str) -> RunSnapshot:
        """Return the persisted status of a run and each of its nodes."""
        run = self._load_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return RunSnapshot(run=run, nodes=self.store.load_nodes(run_id))

    def _load_run(self, run_id: str) -> RunRecord | None:
        if not valid_run_id(run_id):
            return None
        return self.store.load_run(run_id)

    def retry_node(self, definition: Definition, run_id: str, node: str) -> RunHandle:
        """Reset a terminally failed node so the next run() attempts it again."""
        if run_id in self._runtimes:
            raise WorkflowEngineError(f"run {run_id} is currently running")
        handle = self.resume(definition, run_id)
        records = self.store.load_nodes(run_id)
        record = records.get(node)
        if record is None:
            raise DefinitionError(f"unknown node {node!r}")
        if record.status is not NodeStatus.FAILED_TERMINAL:
            msg = f"node {node!r} is {record.status.value}, only failed nodes can be retried"
            raise WorkflowEngineError(msg)
        record.reset()
        self.store.save_node(record)
        run = self.store.load_run(run_id)
        if run is not None and run.status is not RunStatus.RUNNING:
            run.mark_running()
            self.store.save_run(run)
        logger.info("node reset for manual retry node=%s", node, extra={"run_id": run_id})
        return handle

    def cancel(self, run_id: str) -> bool:
        """Signal cancellation to every in-flight body of a run.

        Returns False when the run is not being driven by this engine.
        """
        runtime = self._runtimes.get(run_id)
        if runtime is None:
            return False
        runtime.cancelled = True
        runtime.cancel_event.set()
        for task in list(runtime.in_flight):
            task.cancel()
        logger.info("workflow cancellation requested", extra={"run_id": run_id})
        return True

    def is_active(self, run_id: str) -> bool:
        return run_id in self._runtimes

    async def run(self, handle: RunHandle, listener: Listener | None = None) -> dict[str, Any]:
        """Drive a run to completion and return its outputs.

        Raises WorkflowFailedError when any node fails terminally and
        RunCancelledError when the run is cancelled through cancel().
        """
        run_id = handle.run_id
        key = lease_key(run_id)
        if run_id in self._runtimes:
            raise WorkflowEngineError(f"run {run_id} is already running")
        if not await self.run_lease.acquire(key):
            raise LeaseUnavailableError(run_id)
        keeper = asyncio.create_task(self._keep_lease(run_id, key), name=f"lease-{run_id}")
        try:
            runtime = self._build_runtime(handle, listener)
            self._runtimes[run_id] = runtime
            return await self._drive(runtime)
        finally:
            keeper.cancel()
            await asyncio.gather(keeper, return_exceptions=True)
            self._runtimes.pop(run_id, None)
            await self.run_lease.release(key)

    async def _keep_lease(self, run_id: str, key: str) -> None:
        while True:
            await asyncio.sleep(self.settings.lease_refresh_seconds)
            try:
                held = await self.run_lease.refresh(key)
            except Exception:
                logger.exception("workflow lease refresh failed", extra={"run_id": run_id})
                held = False
            if not held:
                logger.error("workflow lease lost; cancelling run", extra={"run_id": run_id})
                self.cancel(run_id)
                return

    # -- scheduling --------------------------------------------------------

    def _build_runtime(self, handle: RunHandle, listener: Listener | None) -> RunRuntime:
        definition = handle.definition
        run = self.store.load_run(handle.run_id)
        if run is None:
            raise RunNotFoundError(handle.run_id)
        records = self.store.load_nodes(handle.run_id)
        missing = [name for name in definition.node_names if name not in records]
        if missing:
            raise DefinitionError(f"run {handle.run_id} has no records for {missing}")
        runtime = RunRuntime(
            handle=handle,
            run=run,
            records=records,
            listener=listener,
            cancel_event=asyncio.Event(),
            loop=asyncio.get_running_loop(),
        )
        for name in definition.node_names:
            record = records[name]
            node = definition.node(name)
            if record.status is NodeStatus.SUCCEEDED:
                runtime.outputs[name] = self._load_output(node, record)
            elif record.status in (NodeStatus.RUNNING, NodeStatus.FAILED_RETRYABLE):
                # Interrupted attempt from an earlier driver: redo from attempt 1.
                logger.info(
                    "node interrupted previously; restarting node=%s status=%s",
                    name,
                    record.status.value,
                    extra={"run_id": handle.run_id},
                )
                record.reset()
                self.store.save_node(record)
            elif record.status is NodeStatus.FAILED_TERMINAL:
                runtime.failures.append(record.failure())
        for name in definition.node_names:
            runtime.pending_deps[name] = sum(
                1 for dep in definition.dependencies(name) if not records[dep].succeeded
            )
        return runtime

    async def _drive(self, runtime: RunRuntime) -> dict[str, Any]:
        definition = runtime.definition
        if runtime.run.status is not RunStatus.RUNNING:
            runtime.run.mark_running()
            self.store.save_run(runtime.run)
        ready: deque[str] = deque(
            name
            for name in definition.node_names
            if runtime.records[name].status is NodeStatus.NOT_STARTED
            and runtime.pending_deps[name] == 0
        )
        logger.info(
            "workflow driving definition=%s ready=%s",
            definition.name,
            len(ready),
            extra={"run_id": runtime.run_id},
        )
        try:
            while True:
                if self._may_schedule(runtime):
                    while ready:
                        self._launch(runtime, ready.popleft())
                if not runtime.in_flight:
                    break
                done, _ = await asyncio.wait(
                    list(runtime.in_flight), return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    name = runtime.in_flight.pop(task)
                    if task.cancelled() or not task.result():
                        continue
                    for dependent in definition.dependents(name):
                        runtime.pending_deps[dependent] -= 1
                        if (
                            runtime.pending_deps[dependent] == 0
                            and runtime.records[dependent].status is NodeStatus.NOT_STARTED
                        ):
                            ready.append(dependent)
        except asyncio.CancelledError:
            runtime.cancelled = True
            runtime.cancel_event.set()
            await self._abort_in_flight(runtime)
            self._finish_cancelled(runtime)
            raise
        except Exception:
            logger.exception("workflow driver crashed", extra={"run_id": runtime.run_id})
            runtime.cancel_event.set()
            await self._abort_in_flight(runtime)
            raise
        if runtime.cancelled:
            self._finish_cancelled(runtime)
            raise RunCancelledError(runtime.run_id)
        return self._finish(runtime)

    def _may_schedule(self, runtime: RunRuntime) -> bool:
        if runtime.cancelled:
            return False
        if runtime.failures and self.settings.failure_mode is FailureMode.DRAIN:
            return False
        return True

    def _launch(self, runtime: RunRuntime, name: str) -> None:
        task = asyncio.create_task(
            self._execute_node(runtime, name),
            name=f"workflow-{runtime.run_id}-{name}",
        )
        runtime.in_flight[task] = name

    async def _abort_in_flight(self, runtime: RunRuntime) -> None:
        tasks = list(runtime.in_flight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        runtime.in_flight.clear()

    async def _execute_node(self, runtime: RunRuntime, name: str) -> bool:
        """Run every attempt of one node; return True once it has succeeded."""
        node = runtime.definition.node(name)
        record = runtime.records[name]
        policy = node.retry or self.default_retry
        args = [self._resolve(runtime, value) for value in node.inputs]
        while True:
            attempt = record.attempts + 1
            ctx = TaskContext(
                runtime.run_id,
                name,
                attempt,
                cancel_event=runtime.cancel_event,
                log_sink=lambda message: self._forward_log(runtime, name, message),
                loop=runtime.loop,
                on_disable_retries=lambda: self._persist_retries_disabled(record),
            )
            record.mark_running(attempt)
            self.store.save_node(record)
            logger.info(
                "node started node=%s attempt=%s",
                name,
                attempt,
                extra={"run_id": runtime.run_id},
            )
            self._notify(runtime, name, "started", attempt)
            try:
                result = await self._invoke(node, ctx, args)
                payload = self._dump_output(node, result)
            except asyncio.CancelledError:
                logger.info(
                    "node interrupted node=%s attempt=%s",
                    name,
                    attempt,
                    extra={"run_id": runtime.run_id},
                )
                raise
            except Exception as exc:
                error = _error_payload(exc, attempt)
                no_retry = ctx.retries_disabled or isinstance(exc, TerminalTaskError)
                if not no_retry and policy.allows(attempt) and not runtime.cancelled:
                    delay = policy.delay_for(attempt)
                    record.mark_retrying(error)
                    self.store.save_node(record)
                    logger.warning(
                        "node retrying node=%s attempt=%s backoff=%s error=%s",
                        name,
                        attempt,
                        delay,
                        error["message"],
                        extra={"run_id": runtime.run_id},
                    )
                    self._notify(runtime, name, "retrying", attempt, error=error, delay=delay)
                    if delay:
                        await asyncio.sleep(delay)
                    continue
                record.mark_failed(error, retries_disabled=no_retry)
                self.store.save_node(record)
                runtime.failures.append(record.failure())
                logger.error(
                    "node failed node=%s attempts=%s retries_disabled=%s error=%s",
                    name,
                    attempt,
                    no_retry,
                    error["message"],
                    extra={"run_id": runtime.run_id},
                )
                self._notify(runtime, name, "failed", attempt, error=error)
                return False
            record.mark_succeeded(payload)
            self.store.save_node(record)
            runtime.outputs[name] = result
            logger.info(
                "node succeeded node=%s attempt=%s",
                name,
                attempt,
                extra={"run_id": runtime.run_id},
            )
            self._notify(
                runtime,
                name,
                "succeeded",
                attempt,
                output=summarize(result) if node.kind is NodeKind.TASK else None,
            )
            return True

    def _persist_retries_disabled(self, record: NodeRecord) -> None:
        # May run on a worker thread; the loop is parked on this attempt.
        record.retries_disabled = True
        self.store.save_node(record)

    async def _invoke(self, node: Node, ctx: TaskContext, args: list[Any]) -> Any:
        timeout = node.timeout_seconds
        if timeout is None:
            timeout = self.settings.attempt_timeout_seconds
        if inspect.iscoroutinefunction(node.body):
            call = node.body(ctx, *args)
            if timeout:
                return await asyncio.wait_for(call, timeout)
            return await call
        worker = asyncio.ensure_future(asyncio.to_thread(node.body, ctx, *args))
        if not timeout:
            return await worker
        try:
            return await asyncio.wait_for(asyncio.shield(worker), timeout)
        except asyncio.TimeoutError:
            # A thread cannot be interrupted: the attempt only ends when the
            # body returns, so the next attempt never overlaps this one.
            ctx.logger.warning(
                "attempt %s timed out after %ss; waiting for worker thread",
                ctx.attempt,
                timeout,
            )
            await asyncio.gather(worker, return_exceptions=True)
            raise

    def _resolve(self, runtime: RunRuntime, value: Value) -> Any:
        if value.source is InputSource.PARAM:
            return runtime.handle.inputs[value.name]
        if value.source is InputSource.CONST:
            return value.literal
        return runtime.outputs[value.name]

    def _dump_output(self, node: Node, result: Any) -> Any:
        if node.kind is NodeKind.ACTION:
            return None
        try:
            return dump_value(node.result_type, result)
        except Exception as exc:
            msg = f"output of {node.name!r} is not serializable: {exc}"
            raise TerminalTaskError(msg) from exc

    def _load_output(self, node: Node, record: NodeRecord) -> Any:
        if node.kind is NodeKind.ACTION:
            return None
        return load_value(node.result_type, record.output)

    # -- completion ----------------------------------------------------------

    def _finish(self, runtime: RunRuntime) -> dict[str, Any]:
        incomplete = [
            name for name, record in runtime.records.items() if not record.succeeded
        ]
        if runtime.failures or incomplete:
            failures = runtime.failures or [
                runtime.records[name].failure() for name in incomplete
            ]
            runtime.run.mark_failed(failures)
            self.store.save_run(runtime.run)
            logger.error(
                "workflow failed failures=%s incomplete=%s",
                len(failures),
                len(incomplete),
                extra={"run_id": runtime.run_id},
            )
            raise WorkflowFailedError(runtime.run_id, failures)
        outputs = self._collect_outputs(runtime)
        runtime.run.mark_succeeded()
        self.store.save_run(runtime.run)
        logger.info("workflow completed outputs=%s", sorted(outputs), extra={"run_id": runtime.run_id})
        return outputs

    def _collect_outputs(self, runtime: RunRuntime) -> dict[str, Any]:
        definition = runtime.definition
        if definition.outputs:
            return {
                name: self._resolve(runtime, value) for name, value in definition.outputs.items()
            }
        return {
            name: runtime.outputs[name]
            for name, node in definition.nodes.items()
            if node.kind is NodeKind.TASK
        }

    def _finish_cancelled(self, runtime: RunRuntime) -> None:
        for record in runtime.records.values():
            if record.status in (NodeStatus.RUNNING, NodeStatus.FAILED_RETRYABLE):
                record.reset()
                self.store.save_node(record)
        runtime.run.mark_cancelled()
        self.store.save_run(runtime.run)
        logger.warning("workflow cancelled", extra={"run_id": runtime.run_id})

    # -- listener plumbing ---------------------------------------------------

    def _notify(
        self,
        runtime: RunRuntime,
        name: str,
        status: EventStatus,
        attempt: int,
        *,
        error: Mapping[str, Any] | None = None,
        output: str | None = None,
        delay: float | None = None,
    ) -> None:
        listener = runtime.listener
        if listener is None:
            return
        event = new_node_event(
            runtime.run_id,
            name,
            status,
            attempt=attempt,
            error=error,
            output=output if self.settings.log_outputs else None,
            delay_seconds=delay,
        )
        started = time.monotonic()
        try:
            listener.task_state_changed(event)
        except Exception:
            logger.exception(
                "listener failed node=%s status=%s",
                name,
                status,
                extra={"run_id": runtime.run_id},
            )
        elapsed = time.monotonic() - started
        if elapsed > self.settings.listener_warn_seconds:
            logger.warning(
                "slow listener node=%s status=%s elapsed=%.3f",
                name,
                status,
                elapsed,
                extra={"run_id": runtime.run_id},
            )

    def _forward_log(self, runtime: RunRuntime, name: str, message: str) -> None:
        hook = getattr(runtime.listener, "task_log", None)
        if hook is None:
            return
        try:
            hook(runtime.run_id, name, message)
        except Exception:
            logger.exception("listener log hook failed node=%s", name, extra={"run_id": runtime.run_id})
