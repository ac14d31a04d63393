"""AggregatesMaintenance: hourly aggregate refresh + raw telemetry retention.

Every ``interval`` seconds:
1. REFRESH MATERIALIZED VIEW telemetry_hourly_avg
2. DELETE raw telemetry older than ``retention_days`` (measurement time)
alerts / alert_triggers are never cleaned here.
"""
import asyncio
import logging
import time

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger("telemetry.aggregates")

REFRESH_HOURLY_AVG = text("REFRESH MATERIALIZED VIEW telemetry_hourly_avg")
DELETE_OLD_TELEMETRY = text(
    "DELETE FROM telemetry WHERE ts < now() - make_interval(days => :days)"
)


class AggregatesMaintenance:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        interval: int = 300,
        retention_days: int = 30,
    ):
        self.session_factory = session_factory
        self.interval = interval
        self.retention_days = retention_days
        self._running = False

    async def start(self) -> None:
        self._running = True
        logger.info(
            "AggregatesMaintenance started (every %ds, retention=%dd)",
            self.interval, self.retention_days,
        )
        while self._running:
            try:
                await self.run_once()
            except Exception as exc:
                logger.error("AggregatesMaintenance error: %s", exc, exc_info=True)
            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        self._running = False
        logger.info("AggregatesMaintenance stopped")

    # ------------------------------------------------------------------
    async def run_once(self) -> int:
        started = time.monotonic()

        t0 = time.monotonic()
        async with self.session_factory() as session:
            await session.execute(REFRESH_HOURLY_AVG)
            await session.commit()
        logger.info("Refreshed telemetry_hourly_avg in %.0fms", (time.monotonic() - t0) * 1000)

        t1 = time.monotonic()
        async with self.session_factory() as session:
            r = await session.execute(DELETE_OLD_TELEMETRY, {"days": self.retention_days})
            await session.commit()
        deleted = max(r.rowcount or 0, 0)
        logger.info(
            "Retention cleanup deleted %d rows in %.0fms", deleted, (time.monotonic() - t1) * 1000
        )

        logger.debug("Aggregates maintenance done in %.0fms", (time.monotonic() - started) * 1000)
        return deleted
