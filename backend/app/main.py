import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI
from sqlalchemy import text

from config import Settings, settings
from core.resources import Resources, get_resources
from core.streams import StreamTrigger, WorkQueue
from services.aggregates_maintenance import AggregatesMaintenance
from services.alert_evaluator import AlertEvaluator
from services.archive_writer import ArchiveWriter, RedisSeenSet
from services.dispatcher import FanOutDispatcher
from services.timeseries_writer import TimeseriesWriter

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("telemetry.main")

VERSION = "0.1.0"


def build_workers(res: Resources, cfg: Settings) -> list:
    """Wire every pipeline stage to its trigger. Order: leaves last."""
    redis = res.redis
    queues = {
        name: WorkQueue(redis, name)
        for name in (cfg.QUEUE_DB_WRITE, cfg.QUEUE_BLOB_BATCH, cfg.QUEUE_ALERTS)
    }

    def trigger(stream, handler, group, **kw) -> StreamTrigger:
        return StreamTrigger(
            redis, stream, handler,
            group=group,
            consumer=cfg.CONSUMER_NAME,
            block_ms=cfg.STREAM_BLOCK_MS,
            visibility_timeout_ms=cfg.QUEUE_VISIBILITY_TIMEOUT_MS,
            max_deliveries=cfg.QUEUE_MAX_DEQUEUE_COUNT,
            **kw,
        )

    dispatcher = FanOutDispatcher(list(queues.values()), concurrency=cfg.QUEUE_ENQUEUE_CONCURRENCY)
    ts_writer = TimeseriesWriter(res.session_factory)
    archive = ArchiveWriter(
        res.blob_store,
        prefix=cfg.COLD_PREFIX,
        gzip_enabled=cfg.COLD_GZIP,
        concurrency=cfg.ARCHIVE_UPLOAD_CONCURRENCY,
        seen=RedisSeenSet(redis, ttl=cfg.ARCHIVE_DEDUP_TTL) if cfg.ARCHIVE_DEDUP else None,
    )
    evaluator = AlertEvaluator(
        res.session_factory,
        hysteresis=timedelta(minutes=cfg.ALERT_HYSTERESIS_MINUTES),
    )

    workers: list = [
        trigger(cfg.EVENT_STREAM, dispatcher.dispatch, cfg.INGEST_CONSUMER_GROUP,
                cardinality="many", batch_size=cfg.INGEST_BATCH_SIZE),
        trigger(cfg.QUEUE_DB_WRITE, ts_writer.handle, "timescale-writer", cardinality="one"),
        trigger(cfg.QUEUE_BLOB_BATCH, archive.handle, "blob-writer",
                cardinality="many", batch_size=cfg.ARCHIVE_BATCH_SIZE),
        trigger(cfg.QUEUE_ALERTS, evaluator.handle, "alert-evaluator", cardinality="one"),
    ]
    if cfg.AGGREGATES_ENABLED:
        workers.append(
            AggregatesMaintenance(
                res.session_factory,
                interval=cfg.AGGREGATES_REFRESH_INTERVAL,
                retention_days=cfg.TIMESCALE_RETENTION_DAYS,
            )
        )
    return workers


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Telemetry pipeline starting... DEBUG=%s", settings.DEBUG)

    res = get_resources()
    app.state.resources = res

    workers = build_workers(res, settings)
    app.state.workers = workers
    tasks = [asyncio.create_task(w.start()) for w in workers]
    logger.info("Started %d workers", len(tasks))

    yield

    # Shutdown
    logger.info("Telemetry pipeline shutting down...")
    for w in workers:
        await w.stop()
    for t in tasks:
        t.cancel()
    for t in tasks:
        try:
            await t
        except asyncio.CancelledError:
            pass

    await res.close()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Telemetry Pipeline",
    version=VERSION,
    lifespan=lifespan,
)


@app.get("/health")
async def health():
    res: Resources = app.state.resources
    checks = {}
    try:
        async with res.session_factory() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as exc:
        logger.warning("Health: database check failed: %s", exc)
        checks["database"] = "error"
    try:
        await res.redis.ping()
        checks["redis"] = "ok"
    except Exception as exc:
        logger.warning("Health: redis check failed: %s", exc)
        checks["redis"] = "error"
    status = "ok" if all(v == "ok" for v in checks.values()) else "degraded"
    return {"status": status, "version": VERSION, "checks": checks}
