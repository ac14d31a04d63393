"""Tests for worker wiring and the health endpoint."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient

from config import Settings
from core.streams import StreamTrigger
from main import app, build_workers
from services.aggregates_maintenance import AggregatesMaintenance


def _session_factory(fail=False):
    session = AsyncMock()
    if fail:
        session.execute.side_effect = ConnectionError("db down")
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=session)
    ctx.__aexit__ = AsyncMock(return_value=False)
    return MagicMock(return_value=ctx)


def _resources(db_fail=False):
    return SimpleNamespace(
        redis=AsyncMock(),
        session_factory=_session_factory(db_fail),
        blob_store=MagicMock(),
    )


class TestBuildWorkers:

    def test_stages(self):
        workers = build_workers(_resources(), Settings(_env_file=None))
        triggers = [w for w in workers if isinstance(w, StreamTrigger)]

        assert [(t.stream, t.cardinality) for t in triggers] == [
            ("telemetry:events", "many"),
            ("telemetry-db-write", "one"),
            ("telemetry-blob-batch", "many"),
            ("telemetry-alerts", "one"),
        ]
        assert len({t.group for t in triggers}) == 4
        assert isinstance(workers[-1], AggregatesMaintenance)

    def test_dispatcher_feeds_all_queues(self):
        workers = build_workers(_resources(), Settings(_env_file=None))
        dispatcher = workers[0].handler.__self__
        assert sorted(q.name for q in dispatcher.queues) == [
            "telemetry-alerts", "telemetry-blob-batch", "telemetry-db-write",
        ]

    def test_aggregates_optional(self):
        workers = build_workers(_resources(), Settings(_env_file=None, AGGREGATES_ENABLED=False))
        assert all(isinstance(w, StreamTrigger) for w in workers)

    def test_archive_dedup_opt_in(self):
        workers = build_workers(_resources(), Settings(_env_file=None, ARCHIVE_DEDUP=True))
        archive = workers[2].handler.__self__
        assert archive.seen is not None


class TestHealth:

    def test_ok(self):
        app.state.resources = _resources()
        resp = TestClient(app).get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_degraded(self):
        app.state.resources = _resources(db_fail=True)
        body = TestClient(app).get("/health").json()
        assert body["status"] == "degraded"
        assert body["checks"] == {"database": "error", "redis": "ok"}
