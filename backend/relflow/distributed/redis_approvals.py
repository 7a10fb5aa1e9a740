"""Redis Pub/Sub wake-ups for approval gates.

Decisions live in the workflow store. The transport only tells gates in
other processes to re-read it, so a lost message costs at most one poll
interval.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

import redis.asyncio as aioredis
from redis import Redis

from ..workflow.approval import WakeCallback

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedisApprovalTransportConfig:
    url: str
    channel: str = "relflow:approvals"


class RedisApprovalTransport:
    """Publishes (run_id, node) on one channel and delivers it to local gates."""

    def __init__(
        self,
        config: RedisApprovalTransportConfig,
        client: Any | None = None,
        async_client: Any | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._async_client = async_client
        self._pubsub: Any | None = None
        self._listener_task: asyncio.Task[None] | None = None
        self._callbacks: list[WakeCallback] = []

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = Redis.from_url(self._config.url, decode_responses=True)
        return self._client

    def _get_async_client(self) -> Any:
        if self._async_client is None:
            self._async_client = aioredis.from_url(self._config.url, decode_responses=True)
        return self._async_client

    def publish(self, run_id: str, node: str) -> None:
        payload = json.dumps({"run_id": run_id, "node": node}, separators=(",", ":"))
        self._get_client().publish(self._config.channel, payload)

    async def start(self, callback: WakeCallback) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)
        if self._listener_task is not None and not self._listener_task.done():
            return
        self._pubsub = self._get_async_client().pubsub()
        await self._pubsub.subscribe(self._config.channel)
        self._listener_task = asyncio.create_task(
            self._listen_loop(), name="redis-approval-transport"
        )

    async def _listen_loop(self) -> None:
        assert self._pubsub is not None
        try:
            async for message in self._pubsub.listen():
                if not isinstance(message, dict) or message.get("type") != "message":
                    continue
                data = message.get("data")
                if not isinstance(data, str) or not data:
                    continue
                try:
                    payload = json.loads(data)
                    run_id, node = payload["run_id"], payload["node"]
                except (ValueError, KeyError, TypeError):
                    logger.warning("skipping malformed approval message")
                    continue
                if not isinstance(run_id, str) or not isinstance(node, str):
                    logger.warning("skipping malformed approval message")
                    continue
                for callback in list(self._callbacks):
                    try:
                        callback(run_id, node)
                    except Exception:
                        logger.exception(
                            "approval subscriber failed node=%s", node, extra={"run_id": run_id}
                        )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("redis approval listener crashed; waiters will poll")

    async def close(self) -> None:
        if self._listener_task is not None:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None

        if self._pubsub is not None:
            pubsub = self._pubsub
            self._pubsub = None
            await pubsub.aclose()

        if self._async_client is not None:
            client = self._async_client
            self._async_client = None
            await client.aclose()

        if self._client is not None:
            client = self._client
            self._client = None
            client.close()

        self._callbacks.clear()
