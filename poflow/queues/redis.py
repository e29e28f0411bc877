"""Redis queue backend for cross-process stage queues."""

from __future__ import annotations

import time
from typing import Any, Optional

import redis.asyncio as redis

from ..contracts import FailedJob, Job, QueueCounts
from .base import BaseQueueBackend

# Moves the oldest waiting job into the active hash atomically.
_CLAIM_SCRIPT = """
if redis.call("EXISTS", KEYS[3]) == 1 then
    return false
end
local payload = redis.call("RPOP", KEYS[1])
if not payload then
    return false
end
redis.call("HSET", KEYS[2], cjson.decode(payload)["job_id"], payload)
return payload
"""


class RedisQueueBackend(BaseQueueBackend):
    """Redis-based stage queues.

    Per queue: a list of waiting jobs, a sorted set of delayed jobs scored by
    availability time, a hash of active jobs, a completed counter, a list of
    failed jobs and a pause flag.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = "poflow:queue",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.key_prefix = key_prefix
        self._redis: Optional[Any] = None
        self._claim: Optional[Any] = None

    def _key(self, queue_name: str, part: str) -> str:
        return f"{self.key_prefix}:{queue_name}:{part}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        self._claim = self._redis.register_script(_CLAIM_SCRIPT)
        # Test connection
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._claim = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def enqueue(self, queue_name: str, job: Job, delay: float = 0) -> str:
        client = await self._client()
        if delay > 0:
            await client.zadd(
                self._key(queue_name, "delayed"), {job.to_json(): time.time() + delay}
            )
        else:
            await client.lpush(self._key(queue_name, "waiting"), job.to_json())
        return job.job_id

    async def _promote_due(self, client: Any, queue_name: str) -> None:
        delayed_key = self._key(queue_name, "delayed")
        due = await client.zrangebyscore(delayed_key, "-inf", time.time())
        for payload in due:
            # zrem guards against another worker promoting the same job
            if await client.zrem(delayed_key, payload):
                await client.lpush(self._key(queue_name, "waiting"), payload)

    async def fetch(self, queue_name: str) -> Optional[Job]:
        client = await self._client()
        if await client.exists(self._key(queue_name, "paused")):
            return None
        await self._promote_due(client, queue_name)
        payload = await self._claim(
            keys=[
                self._key(queue_name, "waiting"),
                self._key(queue_name, "active"),
                self._key(queue_name, "paused"),
            ],
            client=client,
        )
        if payload is None:
            return None
        return Job.from_json(payload)

    async def complete(self, queue_name: str, job: Job) -> None:
        client = await self._client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.hdel(self._key(queue_name, "active"), job.job_id)
            pipe.incr(self._key(queue_name, "completed"))
            await pipe.execute()

    async def fail(self, queue_name: str, job: Job, error: str) -> None:
        client = await self._client()
        failed = FailedJob(job=job, error=error)
        async with client.pipeline(transaction=True) as pipe:
            pipe.hdel(self._key(queue_name, "active"), job.job_id)
            pipe.lpush(self._key(queue_name, "failed"), failed.model_dump_json())
            await pipe.execute()

    async def pause(self, queue_name: str) -> None:
        client = await self._client()
        await client.set(self._key(queue_name, "paused"), "1")

    async def resume(self, queue_name: str) -> None:
        client = await self._client()
        await client.delete(self._key(queue_name, "paused"))

    async def counts(self, queue_name: str) -> QueueCounts:
        client = await self._client()
        async with client.pipeline(transaction=False) as pipe:
            pipe.llen(self._key(queue_name, "waiting"))
            pipe.hlen(self._key(queue_name, "active"))
            pipe.get(self._key(queue_name, "completed"))
            pipe.llen(self._key(queue_name, "failed"))
            pipe.zcard(self._key(queue_name, "delayed"))
            pipe.exists(self._key(queue_name, "paused"))
            waiting, active, completed, failed, delayed, paused = await pipe.execute()
        return QueueCounts(
            waiting=waiting,
            active=active,
            completed=int(completed or 0),
            failed=failed,
            delayed=delayed,
            paused=bool(paused),
        )

    async def drain_failed(self, queue_name: str) -> list[FailedJob]:
        client = await self._client()
        failed_key = self._key(queue_name, "failed")
        async with client.pipeline(transaction=True) as pipe:
            pipe.lrange(failed_key, 0, -1)
            pipe.delete(failed_key)
            payloads, _ = await pipe.execute()
        return [FailedJob.model_validate_json(p) for p in reversed(payloads)]
