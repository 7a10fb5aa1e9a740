"""Redis-backed durable workflow store for distributed mode.

The store keeps the same *synchronous* interface as the filesystem store.
Each node record lives in its own hash field, so a node write is a single
atomic HSET.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Sequence

from pydantic import BaseModel, ValidationError
from redis import Redis

from ..workflow.exceptions import RunNotFoundError, WorkflowEngineError
from ..workflow.models import ApprovalDecision, NodeRecord, RunRecord

logger = logging.getLogger(__name__)


def _redis_from_url(url: str) -> Redis:
    return Redis.from_url(url, decode_responses=True)


def _encode(model: BaseModel) -> str:
    return json.dumps(model.model_dump(mode="json"), ensure_ascii=False)


@dataclass(frozen=True)
class RedisStoreConfig:
    url: str
    key_prefix: str = "relflow:"

    def key(self, *parts: str) -> str:
        return self.key_prefix + ":".join(parts)


class RedisWorkflowStore:
    """Persist runs, node records and approvals in Redis.

    Keys::

        <prefix>runs                   set of run ids
        <prefix>run:<id>               run header (JSON string)
        <prefix>run:<id>:nodes         hash node -> NodeRecord JSON
        <prefix>run:<id>:approvals     hash node -> ApprovalDecision JSON
    """

    def __init__(self, config: RedisStoreConfig, client: Redis | None = None):
        self._config = config
        self._redis = client if client is not None else _redis_from_url(config.url)

    def _runs_key(self) -> str:
        return self._config.key("runs")

    def _run_key(self, run_id: str) -> str:
        return self._config.key("run", run_id)

    def _nodes_key(self, run_id: str) -> str:
        return self._config.key("run", run_id, "nodes")

    def _approvals_key(self, run_id: str) -> str:
        return self._config.key("run", run_id, "approvals")

    def _decode(self, payload: Any, model: type[BaseModel], run_id: str) -> Any:
        if not isinstance(payload, str) or not payload:
            return None
        try:
            return model.model_validate(json.loads(payload))
        except (json.JSONDecodeError, ValidationError):
            logger.warning("skipping corrupt %s record", model.__name__, extra={"run_id": run_id})
            return None

    def create_run(self, run: RunRecord, nodes: Sequence[NodeRecord]) -> RunRecord:
        if self._redis.exists(self._run_key(run.run_id)):
            raise WorkflowEngineError(f"run {run.run_id} already exists")
        if nodes:
            self._redis.hset(
                self._nodes_key(run.run_id),
                mapping={record.node: _encode(record) for record in nodes},
            )
        # SET NX publishes the header last and guards against a concurrent create.
        if not self._redis.set(self._run_key(run.run_id), _encode(run), nx=True):
            raise WorkflowEngineError(f"run {run.run_id} already exists")
        self._redis.sadd(self._runs_key(), run.run_id)
        return run

    def save_run(self, run: RunRecord) -> RunRecord:
        self._redis.set(self._run_key(run.run_id), _encode(run))
        return run

    def load_run(self, run_id: str) -> RunRecord | None:
        return self._decode(self._redis.get(self._run_key(run_id)), RunRecord, run_id)

    def save_node(self, record: NodeRecord) -> NodeRecord:
        if not self._redis.exists(self._run_key(record.run_id)):
            raise RunNotFoundError(record.run_id)
        self._redis.hset(self._nodes_key(record.run_id), record.node, _encode(record))
        return record

    def load_nodes(self, run_id: str) -> dict[str, NodeRecord]:
        raw = self._redis.hgetall(self._nodes_key(run_id)) or {}
        records: dict[str, NodeRecord] = {}
        for name, payload in raw.items():
            record = self._decode(payload, NodeRecord, run_id)
            if record is not None:
                records[name] = record
        return records

    def save_approval(self, decision: ApprovalDecision) -> ApprovalDecision:
        self._redis.hset(self._approvals_key(decision.run_id), decision.node, _encode(decision))
        return decision

    def load_approval(self, run_id: str, node: str) -> ApprovalDecision | None:
        payload = self._redis.hget(self._approvals_key(run_id), node)
        return self._decode(payload, ApprovalDecision, run_id)

    def list_runs(self) -> list[str]:
        return sorted(self._redis.smembers(self._runs_key()) or ())
