"""Tests for approval gates."""

import asyncio

import pytest

from relflow.workflow import (
    ApprovalDenied,
    ApprovalGate,
    DefinitionBuilder,
    InMemoryApprovalTransport,
    MemoryWorkflowStore,
    NodeStatus,
    ParamDef,
    RunNotFoundError,
    TaskContext,
    WorkflowEngine,
    WorkflowEngineError,
    WorkflowFailedError,
    approval_action,
)


def _gated(gate: ApprovalGate, counter):
    builder = DefinitionBuilder("gated")
    version = builder.param(ParamDef("version"))
    approve = builder.action(
        "approve_tag",
        approval_action(gate, lambda v: f"tag {v}?"),
        version,
        timeout_seconds=0,
    )

    def tag(ctx, value):
        counter.hit(ctx.node)
        return f"tagged {value}"

    builder.task("tag", tag, version, after=[approve], result_type=str)
    return builder.build()


class BrokenTransport:
    """Transport whose broker is unreachable."""

    def __init__(self) -> None:
        self.publish_calls = 0

    def publish(self, run_id: str, node: str) -> None:
        self.publish_calls += 1
        raise ConnectionError("broker unreachable")

    async def start(self, callback) -> None:
        raise ConnectionError("broker unreachable")

    async def close(self) -> None:
        return None


async def _wait_for_pending(gate: ApprovalGate, count: int = 1) -> None:
    for _ in range(500):
        if len(gate.pending()) >= count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("approval gate never parked")


class TestApprovalGate:
    """Tests for ApprovalGate inside a running workflow."""

    @pytest.mark.asyncio
    async def test_approval_releases_dependents(self, engine, listener, counter) -> None:
        definition = _gated(engine.approvals, counter)
        handle = engine.start(definition, {"version": "v1.4.0"})
        task = asyncio.create_task(engine.run(handle, listener))
        await _wait_for_pending(engine.approvals)

        assert engine.approvals.pending() == [(handle.run_id, "approve_tag")]
        assert engine.query(handle.run_id).status_of("tag") is NodeStatus.NOT_STARTED
        assert counter["tag"] == 0

        engine.approvals.record(handle.run_id, "approve_tag", actor="release-manager")
        outputs = await asyncio.wait_for(task, timeout=5)

        assert outputs == {"tag": "tagged v1.4.0"}
        assert engine.approvals.pending() == []
        assert ("approve_tag", "awaiting approval: tag v1.4.0?") in listener.logs

    @pytest.mark.asyncio
    async def test_denial_fails_without_retry(self, engine, counter) -> None:
        definition = _gated(engine.approvals, counter)
        handle = engine.start(definition, {"version": "v1.4.0"})
        task = asyncio.create_task(engine.run(handle))
        await _wait_for_pending(engine.approvals)

        engine.approvals.record(
            handle.run_id, "approve_tag", approved=False, actor="lead", note="freeze"
        )
        with pytest.raises(WorkflowFailedError, match="denied by lead: freeze"):
            await asyncio.wait_for(task, timeout=5)

        record = engine.query(handle.run_id).nodes["approve_tag"]
        assert record.status is NodeStatus.FAILED_TERMINAL
        assert record.attempts == 1
        assert record.retries_disabled is True
        assert counter["tag"] == 0

    @pytest.mark.asyncio
    async def test_decision_recorded_before_wait(self, engine, counter) -> None:
        """A decision that already exists is honoured without parking."""
        definition = _gated(engine.approvals, counter)
        handle = engine.start(definition, {"version": "v2"})
        engine.approvals.record(handle.run_id, "approve_tag")
        outputs = await asyncio.wait_for(engine.run(handle), timeout=5)
        assert outputs == {"tag": "tagged v2"}

    @pytest.mark.asyncio
    async def test_denied_gate_raises_for_direct_waiters(self) -> None:
        store = MemoryWorkflowStore()
        engine = WorkflowEngine(store)
        builder = DefinitionBuilder("direct")
        builder.action("gate", lambda ctx: None)
        handle = engine.start(builder.build(), {})
        gate = ApprovalGate(store)
        gate.record(handle.run_id, "gate", approved=False)

        ctx = TaskContext(handle.run_id, "gate", 1)
        with pytest.raises(ApprovalDenied):
            await gate.wait(ctx)
        assert ctx.retries_disabled is True

    def test_record_for_unknown_run(self, store) -> None:
        with pytest.raises(RunNotFoundError):
            ApprovalGate(store).record("missing", "gate")

    def test_record_for_unknown_node(self, engine, counter) -> None:
        handle = engine.start(_gated(engine.approvals, counter), {"version": "v1"})
        with pytest.raises(WorkflowEngineError, match="no node"):
            engine.approvals.record(handle.run_id, "nope")


class TestDecisionsFromOtherGates:
    """Decisions recorded outside the engine's own gate still release the waiter."""

    @pytest.mark.asyncio
    async def test_decision_from_another_gate_is_polled(
        self, store, engine_settings, counter
    ) -> None:
        gate = ApprovalGate(store, poll_seconds=0.05)
        engine = WorkflowEngine(store, settings=engine_settings, approvals=gate)
        handle = engine.start(_gated(gate, counter), {"version": "v1.5.0"})
        task = asyncio.create_task(engine.run(handle))
        await _wait_for_pending(gate)

        operator = ApprovalGate(store)
        operator.record(handle.run_id, "approve_tag", actor="release-manager")

        assert await asyncio.wait_for(task, timeout=5) == {"tag": "tagged v1.5.0"}
        assert gate.pending() == []

    @pytest.mark.asyncio
    async def test_transport_wakes_gate_before_next_poll(
        self, store, engine_settings, counter
    ) -> None:
        transport = InMemoryApprovalTransport()
        gate = ApprovalGate(store, transport=transport, poll_seconds=60)
        engine = WorkflowEngine(store, settings=engine_settings, approvals=gate)
        handle = engine.start(_gated(gate, counter), {"version": "v1.5.0"})
        task = asyncio.create_task(engine.run(handle))
        await _wait_for_pending(gate)

        operator = ApprovalGate(store, transport=transport)
        operator.record(handle.run_id, "approve_tag", approved=False, actor="lead")

        with pytest.raises(WorkflowFailedError, match="denied by lead"):
            await asyncio.wait_for(task, timeout=5)
        await gate.close()

    @pytest.mark.asyncio
    async def test_unreachable_transport_falls_back_to_polling(
        self, store, engine_settings, counter
    ) -> None:
        transport = BrokenTransport()
        gate = ApprovalGate(store, transport=transport, poll_seconds=0.05)
        engine = WorkflowEngine(store, settings=engine_settings, approvals=gate)
        handle = engine.start(_gated(gate, counter), {"version": "v1.5.0"})
        task = asyncio.create_task(engine.run(handle))
        await _wait_for_pending(gate)

        decision = ApprovalGate(store, transport=transport).record(
            handle.run_id, "approve_tag", actor="release-manager"
        )

        assert decision.approved is True
        assert transport.publish_calls == 1
        assert await asyncio.wait_for(task, timeout=5) == {"tag": "tagged v1.5.0"}
