"""Tests for ArchiveWriter and the local blob store."""

import asyncio
import gzip
import json

import pytest

from conftest import at, make_event
from core.blob_store import LocalBlobStore
from core.errors import ArchiveWriteError
from core.telemetry import validate_one
from services.archive_writer import ArchiveWriter, RedisSeenSet, sanitize_path_part


class FakeSetRedis:
    """Just enough of redis.asyncio.Redis for RedisSeenSet."""

    def __init__(self):
        self.sets = {}
        self.ttl = {}

    async def sadd(self, name, *values):
        s = self.sets.setdefault(name, set())
        added = [v for v in values if v not in s]
        s.update(added)
        return len(added)

    async def srem(self, name, *values):
        s = self.sets.get(name, set())
        removed = [v for v in values if v in s]
        s.difference_update(removed)
        return len(removed)

    async def expire(self, name, seconds):
        self.ttl[name] = seconds
        return True


class FailingStore:

    def __init__(self, inner, fail_names):
        self.inner = inner
        self.fail_names = fail_names

    async def append(self, name, data):
        if any(part in name for part in self.fail_names):
            raise OSError("disk full")
        await self.inner.append(name, data)


def _lines(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestSanitizePathPart:

    def test_cases(self):
        assert sanitize_path_part("pi-01") == "pi-01"
        assert sanitize_path_part(" living room ") == "living_room"
        assert sanitize_path_part("a/b\\c") == "a-b-c"
        assert sanitize_path_part("..") == "_"
        assert len(sanitize_path_part("x" * 500)) == 128


class TestBlobName:

    def test_hour_partition(self):
        writer = ArchiveWriter(None, prefix="telemetry/")
        msg = validate_one(make_event(ts="2026-01-15T10:59:59.999Z"))
        assert writer.blob_name(msg) == "telemetry/2026/01/15/10/pi-01/cpu-temp.jsonl"

    def test_gzip_extension(self):
        writer = ArchiveWriter(None, prefix="cold", gzip_enabled=True)
        msg = validate_one(make_event(ts="2026-01-15T12:30:00+02:00"))
        assert writer.blob_name(msg) == "cold/2026/01/15/10/pi-01/cpu-temp.jsonl.gz"


class TestLocalBlobStore:

    def test_rejects_escape(self, tmp_path):
        store = LocalBlobStore(tmp_path / "archive")
        with pytest.raises(ValueError):
            store.path_for("../outside.jsonl")

    def test_append_grows(self, tmp_path):
        store = LocalBlobStore(tmp_path)
        asyncio.run(store.append("a/b.jsonl", b"1\n"))
        asyncio.run(store.append("a/b.jsonl", b"2\n"))
        assert (tmp_path / "a" / "b.jsonl").read_bytes() == b"1\n2\n"


class TestHandle:

    def test_partitions_by_hour_device_sensor(self, tmp_path):
        writer = ArchiveWriter(LocalBlobStore(tmp_path))
        batch = [
            json.dumps(make_event(ts=at(0), seq=1)),
            json.dumps(make_event(ts=at(30), seq=2)),
            json.dumps(make_event(ts=at(70), seq=3)),
            json.dumps(make_event(sensorId="fan", ts=at(0), seq=4)),
            "not json",
        ]

        result = asyncio.run(writer.handle(batch))

        assert result.partitions == 3
        assert result.appended == 4
        hour10 = tmp_path / "telemetry/2026/01/15/10/pi-01/cpu-temp.jsonl"
        hour11 = tmp_path / "telemetry/2026/01/15/11/pi-01/cpu-temp.jsonl"
        assert [r["seq"] for r in _lines(hour10)] == [1, 2]
        assert [r["seq"] for r in _lines(hour11)] == [3]
        assert _lines(hour10)[0]["deviceId"] == "pi-01"

    def test_redelivery_appends_again(self, tmp_path):
        writer = ArchiveWriter(LocalBlobStore(tmp_path))
        batch = [make_event(seq=1)]
        asyncio.run(writer.handle(batch))
        asyncio.run(writer.handle(batch))
        blob = tmp_path / "telemetry/2026/01/15/10/pi-01/cpu-temp.jsonl"
        assert len(_lines(blob)) == 2

    def test_gzip_members_concatenate(self, tmp_path):
        writer = ArchiveWriter(LocalBlobStore(tmp_path), gzip_enabled=True)
        asyncio.run(writer.handle([make_event(seq=1)]))
        asyncio.run(writer.handle([make_event(seq=2)]))
        blob = tmp_path / "telemetry/2026/01/15/10/pi-01/cpu-temp.jsonl.gz"
        lines = gzip.decompress(blob.read_bytes()).decode().splitlines()
        assert [json.loads(line)["seq"] for line in lines] == [1, 2]

    def test_failed_partition_isolated(self, tmp_path):
        store = FailingStore(LocalBlobStore(tmp_path), ["/fan."])
        writer = ArchiveWriter(store)
        batch = [make_event(seq=1), make_event(sensorId="fan", seq=2)]

        with pytest.raises(ArchiveWriteError) as exc:
            asyncio.run(writer.handle(batch))

        assert exc.value.failed_partitions == ["telemetry/2026/01/15/10/pi-01/fan.jsonl"]
        assert len(_lines(tmp_path / "telemetry/2026/01/15/10/pi-01/cpu-temp.jsonl")) == 1

    def test_nothing_valid(self, tmp_path):
        result = asyncio.run(ArchiveWriter(LocalBlobStore(tmp_path)).handle(["{", {"x": 1}]))
        assert result.partitions == 0
        assert result.skipped == 1


class TestDedup:

    def test_seen_records_skipped(self, tmp_path):
        redis = FakeSetRedis()
        writer = ArchiveWriter(LocalBlobStore(tmp_path), seen=RedisSeenSet(redis, ttl=60))

        asyncio.run(writer.handle([make_event(seq=1)]))
        result = asyncio.run(writer.handle([make_event(seq=1), make_event(seq=2)]))

        assert result.duplicates == 1
        assert result.appended == 1
        blob = tmp_path / "telemetry/2026/01/15/10/pi-01/cpu-temp.jsonl"
        assert [r["seq"] for r in _lines(blob)] == [1, 2]
        assert set(redis.ttl.values()) == {60}

    def test_claims_released_on_failure(self, tmp_path):
        redis = FakeSetRedis()
        seen = RedisSeenSet(redis, ttl=60)
        failing = ArchiveWriter(FailingStore(LocalBlobStore(tmp_path), ["cpu-temp"]), seen=seen)

        with pytest.raises(ArchiveWriteError):
            asyncio.run(failing.handle([make_event(seq=1)]))

        result = asyncio.run(ArchiveWriter(LocalBlobStore(tmp_path), seen=seen).handle([make_event(seq=1)]))
        assert result.appended == 1
        assert result.duplicates == 0
