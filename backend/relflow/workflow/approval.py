"""Approval gates: node bodies parked until a human decision is recorded.

The store holds the decision. A waiting body re-reads it when it is woken
and at least every `poll_seconds`, so a decision recorded by another gate
(another engine process, an operator tool) is always picked up. A transport
shortens that delay by broadcasting "a decision landed" to every gate.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Callable, Protocol, Union

from .context import TaskContext
from .exceptions import ApprovalDenied, RunNotFoundError, WorkflowEngineError
from .models import ApprovalDecision
from .store import WorkflowStore

logger = logging.getLogger(__name__)

Prompt = Union[str, Callable[..., str], None]
WakeCallback = Callable[[str, str], None]


class ApprovalTransport(Protocol):
    """Best-effort fan-out of recorded decisions between gates."""

    def publish(self, run_id: str, node: str) -> None:
        """Announce that a decision for (run_id, node) was persisted."""

    async def start(self, callback: WakeCallback) -> None:
        """Deliver announcements to `callback` until closed."""

    async def close(self) -> None:
        """Stop delivering and release connections."""


class InMemoryApprovalTransport:
    """Process-local fan-out shared by several gates."""

    def __init__(self) -> None:
        self._callbacks: list[WakeCallback] = []
        self._lock = threading.Lock()

    def publish(self, run_id: str, node: str) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(run_id, node)
            except Exception:
                logger.exception("approval subscriber failed node=%s", node, extra={"run_id": run_id})

    async def start(self, callback: WakeCallback) -> None:
        with self._lock:
            if callback not in self._callbacks:
                self._callbacks.append(callback)

    async def close(self) -> None:
        with self._lock:
            self._callbacks.clear()


class ApprovalGate:
    """Parks approval bodies on an asyncio.Event keyed by (run_id, node).

    Decisions are persisted before waiters are woken, so a body re-invoked
    after a restart finds the decision and returns without waiting.
    """

    def __init__(
        self,
        store: WorkflowStore,
        *,
        transport: ApprovalTransport | None = None,
        poll_seconds: float = 2.0,
    ):
        self.store = store
        self.transport = transport
        self.poll_seconds = max(0.01, poll_seconds)
        self._waiters: dict[tuple[str, str], tuple[asyncio.AbstractEventLoop, asyncio.Event]] = {}
        self._lock = threading.Lock()
        self._listening = False

    async def wait(self, ctx: TaskContext, prompt: str | None = None) -> ApprovalDecision:
        """Block the calling body until a decision is recorded for its node.

        Returns the decision when approved. Raises ApprovalDenied (with
        retries disabled) when denied.
        """
        key = (ctx.run_id, ctx.node)
        decision = self.store.load_approval(*key)
        if decision is None:
            await self._listen()
            event = asyncio.Event()
            with self._lock:
                self._waiters[key] = (asyncio.get_running_loop(), event)
            try:
                # A decision may have landed between the first read and registration.
                decision = self.store.load_approval(*key)
                if decision is None:
                    ctx.printf("awaiting approval: %s", prompt or ctx.node)
                    logger.info(
                        "approval gate waiting node=%s",
                        ctx.node,
                        extra={"run_id": ctx.run_id},
                    )
                while decision is None:
                    try:
                        await asyncio.wait_for(event.wait(), self.poll_seconds)
                    except asyncio.TimeoutError:
                        pass
                    event.clear()
                    decision = self.store.load_approval(*key)
            finally:
                with self._lock:
                    current = self._waiters.get(key)
                    if current is not None and current[1] is event:
                        self._waiters.pop(key, None)
        if not decision.approved:
            ctx.disable_retries()
            raise ApprovalDenied(ctx.node, decision.actor, decision.note)
        ctx.printf("approved by %s", decision.actor or "unknown")
        return decision

    def record(
        self,
        run_id: str,
        node: str,
        *,
        approved: bool = True,
        actor: str | None = None,
        note: str | None = None,
    ) -> ApprovalDecision:
        """Persist a decision for a gate and wake its waiting body, wherever it runs."""
        if self.store.load_run(run_id) is None:
            raise RunNotFoundError(run_id)
        if node not in self.store.load_nodes(run_id):
            raise WorkflowEngineError(f"run {run_id} has no node {node!r}")
        decision = self.store.save_approval(
            ApprovalDecision(run_id=run_id, node=node, approved=approved, actor=actor, note=note)
        )
        self._wake(run_id, node)
        if self.transport is not None:
            try:
                self.transport.publish(run_id, node)
            except Exception:
                # Remote waiters still see the decision on their next poll.
                logger.exception("approval publish failed node=%s", node, extra={"run_id": run_id})
        logger.info(
            "approval recorded node=%s approved=%s actor=%s",
            node,
            approved,
            actor,
            extra={"run_id": run_id},
        )
        return decision

    def pending(self) -> list[tuple[str, str]]:
        """Return the (run_id, node) pairs currently parked on this gate."""
        with self._lock:
            return sorted(self._waiters)

    async def close(self) -> None:
        if self.transport is not None:
            await self.transport.close()
        self._listening = False

    def _wake(self, run_id: str, node: str) -> None:
        with self._lock:
            waiter = self._waiters.get((run_id, node))
        if waiter is not None:
            loop, event = waiter
            loop.call_soon_threadsafe(event.set)

    async def _listen(self) -> None:
        if self.transport is None or self._listening:
            return
        self._listening = True
        try:
            await self.transport.start(self._wake)
        except Exception:
            self._listening = False
            logger.exception("approval transport failed to start; waiters will poll")


def approval_action(gate: ApprovalGate, prompt: Prompt = None) -> Callable[..., Any]:
    """Build an Action body that waits on `gate`.

    `prompt` may be a string or a callable receiving the node's inputs, so the
    operator sees what they are approving.
    """

    async def await_approval(ctx: TaskContext, *inputs: Any) -> None:
        text = prompt(*inputs) if callable(prompt) else prompt
        await gate.wait(ctx, text)

    return await_approval
