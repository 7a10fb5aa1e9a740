"""Explicit dependency container for engine wiring.

This module is side-effect free on import. `build_container` constructs the
store, lease, approval gate, listener, registry and engine for the configured
runtime mode; `shutdown` releases what they hold.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING
from uuid import uuid4

if TYPE_CHECKING:
    from .lease import RunLease
    from .listeners import CompositeListener
    from .settings import Settings
    from .workflow import (
        ApprovalGate,
        ApprovalTransport,
        DefinitionRegistry,
        WorkflowEngine,
        WorkflowStore,
    )


@dataclass
class WorkflowContainer:
    """Holds the constructed runtime dependencies."""

    settings: Settings
    instance_id: str

    data_dir: Path
    runs_dir: Path
    events_dir: Path

    store: WorkflowStore
    run_lease: RunLease
    approvals: ApprovalGate
    listener: CompositeListener
    registry: DefinitionRegistry
    engine: WorkflowEngine


def build_container(
    *,
    settings: "Settings" | None = None,
    data_dir: Path | None = None,
    registry: "DefinitionRegistry" | None = None,
) -> WorkflowContainer:
    """Construct the engine dependency graph without starting any run."""

    # Local imports keep this module side-effect-free on import.
    from .lease import NoopRunLease
    from .listeners import CompositeListener, EventLogListener, LoggingListener
    from .settings import get_settings
    from .workflow import (
        ApprovalGate,
        DefinitionRegistry,
        FileWorkflowStore,
        WorkflowEngine,
    )

    settings = settings or get_settings()
    instance_id = str(uuid4())

    resolved_data_dir = data_dir or settings.runtime.data_dir
    runs_dir = resolved_data_dir / "runs"
    events_dir = resolved_data_dir / "events"

    store: WorkflowStore = FileWorkflowStore(runs_dir)
    run_lease: RunLease = NoopRunLease()
    transport: ApprovalTransport | None = None
    if settings.runtime.mode == "distributed":
        if not settings.runtime.redis_url:
            msg = "RELFLOW_MODE=distributed requires REDIS_URL"
            raise ValueError(msg)
        from .distributed.redis_approvals import (
            RedisApprovalTransport,
            RedisApprovalTransportConfig,
        )
        from .distributed.redis_lease import RedisLeaseConfig, RedisRunLease
        from .distributed.redis_stores import RedisStoreConfig, RedisWorkflowStore

        store = RedisWorkflowStore(
            RedisStoreConfig(
                url=settings.runtime.redis_url,
                key_prefix=settings.runtime.redis_key_prefix,
            )
        )
        run_lease = RedisRunLease(
            RedisLeaseConfig(
                url=settings.runtime.redis_url,
                owner_id=instance_id,
                ttl_seconds=settings.runtime.run_lease_ttl_seconds,
                key_prefix=f"{settings.runtime.redis_key_prefix}lease:",
            )
        )
        transport = RedisApprovalTransport(
            RedisApprovalTransportConfig(
                url=settings.runtime.redis_url,
                channel=f"{settings.runtime.redis_key_prefix}approvals",
            )
        )

    approvals = ApprovalGate(
        store,
        transport=transport,
        poll_seconds=settings.engine.approval_poll_seconds,
    )
    listener = CompositeListener([LoggingListener(), EventLogListener(events_dir)])
    engine = WorkflowEngine(
        store,
        settings=settings.engine,
        run_lease=run_lease,
        approvals=approvals,
    )
    return WorkflowContainer(
        settings=settings,
        instance_id=instance_id,
        data_dir=resolved_data_dir,
        runs_dir=runs_dir,
        events_dir=events_dir,
        store=store,
        run_lease=run_lease,
        approvals=approvals,
        listener=listener,
        registry=registry if registry is not None else DefinitionRegistry(),
        engine=engine,
    )


async def shutdown(container: WorkflowContainer) -> None:
    """Cancel active runs and close the approval transport and lease provider."""
    for run_id in container.store.list_runs():
        if container.engine.is_active(run_id):
            container.engine.cancel(run_id)
    container.registry.clear()
    await container.approvals.close()
    await container.run_lease.close()
