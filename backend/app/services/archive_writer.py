"""ArchiveWriter: cold-storage archive of telemetry as NDJSON blobs.

Consumes the blob-batch work queue. Messages are grouped by partition
(UTC hour of the measurement + device + sensor) and each partition is
appended to its own ever-growing blob:

    {prefix}/{yyyy}/{mm}/{dd}/{hh}/{device}/{sensor}.jsonl[.gz]

With gzip enabled every append is a separate gzip member; concatenated
members still read back as one gzip stream.

Appends are not keyed: a redelivered queue message is appended a second
time unless the opt-in dedup set is enabled. Archives are expected to be
deduplicated at read time by (deviceId, sensorId, ts, seq).
"""
from __future__ import annotations

import asyncio
import gzip
import json
import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from redis.asyncio import Redis

from core.blob_store import BlobStore
from core.errors import ArchiveWriteError
from core.telemetry import TelemetryMessage, validate_items

logger = logging.getLogger("telemetry.archive_writer")


def sanitize_path_part(v: str) -> str:
    """Keep it blob-path safe."""
    v = re.sub(r"\s+", "_", v.strip())
    v = re.sub(r"[^a-zA-Z0-9._\-]", "-", v)
    # "." / ".." would walk the archive tree
    v = v.strip(".") or "_"
    return v[:128]


def record_key(msg: TelemetryMessage) -> str:
    return f"{msg.device_id}|{msg.sensor_id}|{msg.measured_at.isoformat()}|{msg.seq}"


class RedisSeenSet:
    """Per-blob Redis set of archived record keys (opt-in dedup)."""

    def __init__(self, redis: Redis, *, ttl: int, prefix: str = "archive:seen:"):
        self.redis = redis
        self.ttl = ttl
        self.prefix = prefix

    async def claim(self, blob: str, keys: list[str]) -> list[bool]:
        """True for each key that was not seen before (now marked as seen)."""
        name = self.prefix + blob
        fresh: list[bool] = []
        try:
            for k in keys:
                fresh.append(bool(await self.redis.sadd(name, k)))
            await self.redis.expire(name, self.ttl)
        except Exception:
            await self.release(blob, [k for k, new in zip(keys, fresh) if new])
            raise
        return fresh

    async def release(self, blob: str, keys: list[str]) -> None:
        if keys:
            await self.redis.srem(self.prefix + blob, *keys)


@dataclass
class ArchiveWriteResult:
    partitions: int = 0
    appended: int = 0
    skipped: int = 0
    duplicates: int = 0
    failed: int = 0
    failed_partitions: list[str] = field(default_factory=list)


class ArchiveWriter:

    def __init__(
        self,
        blob_store: BlobStore,
        *,
        prefix: str = "telemetry",
        gzip_enabled: bool = False,
        concurrency: int = 8,
        seen: RedisSeenSet | None = None,
    ):
        self.blob_store = blob_store
        self.prefix = prefix.strip("/")
        self.gzip_enabled = gzip_enabled
        self.concurrency = concurrency
        self.seen = seen

    def blob_name(self, msg: TelemetryMessage) -> str:
        ts = msg.measured_at
        ext = "jsonl.gz" if self.gzip_enabled else "jsonl"
        return (
            f"{self.prefix}/{ts:%Y}/{ts:%m}/{ts:%d}/{ts:%H}/"
            f"{sanitize_path_part(msg.device_id)}/{sanitize_path_part(msg.sensor_id)}.{ext}"
        )

    def partition(self, messages: list[TelemetryMessage]) -> dict[str, list[TelemetryMessage]]:
        by_partition: dict[str, list[TelemetryMessage]] = defaultdict(list)
        for m in messages:
            by_partition[self.blob_name(m)].append(m)
        return dict(by_partition)

    def encode(self, messages: list[TelemetryMessage]) -> bytes:
        jsonl = "".join(json.dumps(m.to_wire(), separators=(",", ":")) + "\n" for m in messages)
        raw = jsonl.encode("utf-8")
        return gzip.compress(raw) if self.gzip_enabled else raw

    async def handle(self, queue_items: Any) -> ArchiveWriteResult:
        validated = validate_items(queue_items)
        result = ArchiveWriteResult(skipped=len(validated.bad))
        if validated.bad:
            logger.warning("Skipped %d invalid telemetry message(s)", len(validated.bad))
        if not validated.ok:
            logger.info("Nothing to archive (skipped=%d)", result.skipped)
            return result

        partitions = self.partition(validated.ok)
        result.partitions = len(partitions)
        sem = asyncio.Semaphore(self.concurrency)

        async def _bounded(blob: str, batch: list[TelemetryMessage]) -> None:
            async with sem:
                await self._write_partition(blob, batch, result)

        await asyncio.gather(*(_bounded(b, batch) for b, batch in partitions.items()))

        logger.info(
            "Done partitions=%d appended=%d duplicates=%d skipped=%d failed=%d",
            result.partitions, result.appended, result.duplicates,
            result.skipped, result.failed,
        )
        if result.failed_partitions:
            raise ArchiveWriteError(
                f"{len(result.failed_partitions)} archive partition(s) failed",
                failed_partitions=result.failed_partitions,
            )
        return result

    async def _write_partition(
        self, blob: str, batch: list[TelemetryMessage], result: ArchiveWriteResult
    ) -> None:
        claimed: list[str] = []
        try:
            if self.seen is not None:
                keys = [record_key(m) for m in batch]
                fresh = await self.seen.claim(blob, keys)
                claimed = [k for k, new in zip(keys, fresh) if new]
                result.duplicates += len(batch) - len(claimed)
                batch = [m for m, new in zip(batch, fresh) if new]
                if not batch:
                    return
            await self.blob_store.append(blob, self.encode(batch))
            result.appended += len(batch)
        except Exception as exc:
            result.failed += len(batch)
            result.failed_partitions.append(blob)
            logger.error("Append failed blob=%s records=%d: %s", blob, len(batch), exc)
            if claimed:
                try:
                    await self.seen.release(blob, claimed)
                except Exception as rel_exc:
                    logger.error("Dedup release failed blob=%s: %s", blob, rel_exc)
