"""Redis Streams runtime: durable work queues and at-least-once triggers.

WorkQueue is the producer side (XADD, one ``body`` field per entry).

StreamTrigger is the hosting loop for a pipeline stage:
- consumer group per stage, created on start (BUSYGROUP tolerated)
- new entries via XREADGROUP; an entry is acked only after its handler returns
- a handler exception leaves entries pending; once idle longer than the
  visibility timeout they are reclaimed with XAUTOCLAIM and redelivered
- entries delivered more than ``max_deliveries`` times go to ``<stream>:poison``
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal

from redis.asyncio import Redis
from redis.exceptions import ResponseError

logger = logging.getLogger("telemetry.streams")

BODY_FIELD = b"body"
POISON_SUFFIX = ":poison"


def _text(v: Any) -> str:
    return v.decode("utf-8") if isinstance(v, bytes) else str(v)


class WorkQueue:

    def __init__(self, redis: Redis, name: str, *, maxlen: int | None = None):
        self.redis = redis
        self.name = name
        self.maxlen = maxlen

    async def send(self, body: str) -> str:
        entry_id = await self.redis.xadd(
            self.name, {BODY_FIELD: body}, maxlen=self.maxlen, approximate=True
        )
        return _text(entry_id)

    def __repr__(self) -> str:
        return f"<WorkQueue {self.name}>"


@dataclass
class StreamEntry:
    id: str
    body: Any
    deliveries: int = 1


class StreamTrigger:

    def __init__(
        self,
        redis: Redis,
        stream: str,
        handler: Callable[[Any], Awaitable[Any]],
        *,
        group: str,
        consumer: str,
        cardinality: Literal["one", "many"] = "one",
        batch_size: int = 16,
        block_ms: int = 5000,
        visibility_timeout_ms: int = 30000,
        max_deliveries: int = 5,
    ):
        self.redis = redis
        self.stream = stream
        self.handler = handler
        self.group = group
        self.consumer = consumer
        self.cardinality = cardinality
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.visibility_timeout_ms = visibility_timeout_ms
        self.max_deliveries = max_deliveries
        self.poison_stream = stream + POISON_SUFFIX
        self._running = False

    async def start(self) -> None:
        self._running = True
        logger.info(
            "StreamTrigger %s started (group=%s, cardinality=%s, batch=%d)",
            self.stream, self.group, self.cardinality, self.batch_size,
        )
        group_ready = False
        while self._running:
            try:
                if not group_ready:
                    await self.ensure_group()
                    group_ready = True
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("StreamTrigger %s error: %s, retry in 2s", self.stream, exc)
                await asyncio.sleep(2)

    async def stop(self) -> None:
        self._running = False
        logger.info("StreamTrigger %s stopped", self.stream)

    async def ensure_group(self) -> None:
        try:
            await self.redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
            logger.info("Created consumer group %s on %s", self.group, self.stream)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    # ------------------------------------------------------------------
    async def run_once(self) -> int:
        """One invocation: redeliver stale entries first, else read new ones."""
        entries = await self._reclaim()
        if not entries:
            entries = await self._read_new()
        if not entries:
            return 0

        if self.cardinality == "many":
            await self._invoke([e.body for e in entries], [e.id for e in entries])
        else:
            for entry in entries:
                await self._invoke(entry.body, [entry.id])
        return len(entries)

    async def _invoke(self, payload: Any, ids: list[str]) -> bool:
        try:
            await self.handler(payload)
        except Exception as exc:
            # Left pending: redelivered after the visibility timeout
            logger.error(
                "StreamTrigger %s: handler failed for %d entr%s, will redeliver: %s",
                self.stream, len(ids), "y" if len(ids) == 1 else "ies", exc,
            )
            return False
        await self.redis.xack(self.stream, self.group, *ids)
        return True

    async def _read_new(self) -> list[StreamEntry]:
        response = await self.redis.xreadgroup(
            self.group,
            self.consumer,
            {self.stream: ">"},
            count=self.batch_size,
            block=self.block_ms,
        )
        entries: list[StreamEntry] = []
        for _stream_name, messages in response or []:
            for entry_id, fields in messages:
                entries.append(StreamEntry(id=_text(entry_id), body=self._body(fields)))
        return entries

    async def _reclaim(self) -> list[StreamEntry]:
        response = await self.redis.xautoclaim(
            self.stream,
            self.group,
            self.consumer,
            min_idle_time=self.visibility_timeout_ms,
            start_id="0-0",
            count=self.batch_size,
        )
        claimed = response[1] if response and len(response) > 1 else []
        entries = [
            StreamEntry(id=_text(entry_id), body=self._body(fields))
            for entry_id, fields in claimed
        ]
        if not entries:
            return []

        deliveries = await self._delivery_counts([e.id for e in entries])
        live: list[StreamEntry] = []
        for entry in entries:
            entry.deliveries = deliveries.get(entry.id, 1)
            if entry.body is None:
                # Trimmed from the stream while pending
                await self.redis.xack(self.stream, self.group, entry.id)
            elif entry.deliveries > self.max_deliveries:
                await self._to_poison(entry)
            else:
                live.append(entry)
        if live:
            logger.info("StreamTrigger %s: redelivering %d entries", self.stream, len(live))
        return live

    async def _delivery_counts(self, ids: list[str]) -> dict[str, int]:
        pending = await self.redis.xpending_range(
            self.stream,
            self.group,
            min=ids[0],
            max=ids[-1],
            count=max(len(ids) * 2, 100),
            consumername=self.consumer,
        )
        return {_text(p["message_id"]): int(p["times_delivered"]) for p in pending}

    async def _to_poison(self, entry: StreamEntry) -> None:
        body = entry.body if isinstance(entry.body, (bytes, str)) else repr(entry.body)
        await self.redis.xadd(
            self.poison_stream,
            {BODY_FIELD: body, b"source_id": entry.id, b"deliveries": entry.deliveries},
        )
        await self.redis.xack(self.stream, self.group, entry.id)
        logger.warning(
            "StreamTrigger %s: entry %s moved to %s after %d deliveries",
            self.stream, entry.id, self.poison_stream, entry.deliveries,
        )

    @staticmethod
    def _body(fields: Any) -> Any:
        if not fields:
            return None
        for key in (BODY_FIELD, "body"):
            if key in fields:
                return fields[key]
        return fields
