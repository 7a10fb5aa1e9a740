"""Redis-backed run lease for distributed mode.

A value-based lease with TTL:
- acquire: SET key owner NX PX ttl (re-entrant for the current owner)
- refresh: if GET == owner then PEXPIRE
- release: if GET == owner then DEL
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import redis.asyncio as aioredis

_REFRESH_LUA = (
    "if redis.call('GET', KEYS[1]) == ARGV[1] then "
    "  return redis.call('PEXPIRE', KEYS[1], ARGV[2]) "
    "else return 0 end"
)
_RELEASE_LUA = (
    "if redis.call('GET', KEYS[1]) == ARGV[1] then "
    "  return redis.call('DEL', KEYS[1]) "
    "else return 0 end"
)


@dataclass(frozen=True)
class RedisLeaseConfig:
    url: str
    owner_id: str
    ttl_seconds: int
    key_prefix: str = "relflow:lease:"


class RedisRunLease:
    """Ensures one engine process drives a given run at a time."""

    def __init__(self, config: RedisLeaseConfig, client: Any | None = None):
        self._config = config
        self._client = client
        self._refresh_script: Any | None = None
        self._release_script: Any | None = None

    def _ttl_ms(self) -> int:
        return max(1, int(self._config.ttl_seconds * 1000))

    def _full_key(self, key: str) -> str:
        return f"{self._config.key_prefix}{key}"

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = aioredis.from_url(self._config.url, decode_responses=True)
        return self._client

    def _scripts(self) -> tuple[Any, Any]:
        if self._refresh_script is None or self._release_script is None:
            client = self._get_client()
            self._refresh_script = client.register_script(_REFRESH_LUA)
            self._release_script = client.register_script(_RELEASE_LUA)
        return self._refresh_script, self._release_script

    async def acquire(self, key: str) -> bool:
        client = self._get_client()
        full_key = self._full_key(key)
        if await client.set(full_key, self._config.owner_id, nx=True, px=self._ttl_ms()):
            return True
        current = await client.get(full_key)
        if current != self._config.owner_id:
            return False
        await client.pexpire(full_key, self._ttl_ms())
        return True

    async def refresh(self, key: str) -> bool:
        refresh_script, _ = self._scripts()
        result = await refresh_script(
            keys=[self._full_key(key)], args=[self._config.owner_id, self._ttl_ms()]
        )
        return int(result or 0) > 0

    async def release(self, key: str) -> None:
        _, release_script = self._scripts()
        await release_script(keys=[self._full_key(key)], args=[self._config.owner_id])

    async def close(self) -> None:
        if self._client is None:
            return
        client = self._client
        self._client = None
        self._refresh_script = None
        self._release_script = None
        await client.aclose()
