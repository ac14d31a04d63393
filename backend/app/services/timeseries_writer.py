"""TimeseriesWriter: idempotent persistence of telemetry into TimescaleDB.

Consumes the db-write work queue. Each queue message carries one or more
telemetry messages; every message becomes one row inserted with
ON CONFLICT (device_id, sensor_id, ts, seq) DO NOTHING, so redelivered
messages are no-ops.

Rows are written sequentially (the DB pool is the real constraint). A failed
row is counted and the rest of the message is still processed; if any row
failed the invocation raises and the queue redelivers the whole message.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import TimeseriesWriteError
from core.telemetry import TelemetryMessage, validate_items
from models.telemetry import TelemetryRow

logger = logging.getLogger("telemetry.timeseries_writer")

CONFLICT_KEY = ("device_id", "sensor_id", "ts", "seq")


@dataclass
class TimeseriesWriteResult:
    inserted: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed: int = 0


class TimeseriesWriter:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def handle(self, queue_item: Any) -> TimeseriesWriteResult:
        validated = validate_items(queue_item)
        result = TimeseriesWriteResult(skipped=len(validated.bad))
        if validated.bad:
            logger.warning("Skipped %d invalid telemetry message(s)", len(validated.bad))

        for msg in validated.ok:
            try:
                row = self.to_row(msg)
                written = await self._insert(row)
            except Exception as exc:
                result.failed += 1
                logger.error(
                    "Failed to insert deviceId=%s sensorId=%s ts=%s seq=%s: %s",
                    msg.device_id, msg.sensor_id, msg.ts, msg.seq, exc,
                )
                continue
            if written:
                result.inserted += 1
                logger.debug(
                    "Inserted deviceId=%s sensorId=%s ts=%s valueType=%s",
                    row["device_id"], row["sensor_id"], msg.ts, row["value_type"],
                )
            else:
                result.duplicates += 1
                logger.debug(
                    "Duplicate ignored deviceId=%s sensorId=%s ts=%s seq=%s",
                    row["device_id"], row["sensor_id"], msg.ts, row["seq"],
                )

        logger.info(
            "Done inserted=%d duplicates=%d skipped=%d failed=%d",
            result.inserted, result.duplicates, result.skipped, result.failed,
        )
        if result.failed:
            raise TimeseriesWriteError(
                f"{result.failed} telemetry row(s) failed to insert",
                inserted=result.inserted,
                failed=result.failed,
            )
        return result

    # ------------------------------------------------------------------
    async def _insert(self, row: dict) -> bool:
        """Insert one row; False when the key already existed."""
        async with self.session_factory() as session:
            dialect = session.bind.dialect.name
            insert = sqlite_insert if dialect == "sqlite" else pg_insert
            stmt = (
                insert(TelemetryRow)
                .values(**row)
                .on_conflict_do_nothing(index_elements=list(CONFLICT_KEY))
            )
            res = await session.execute(stmt)
            await session.commit()
        return res.rowcount != 0

    @staticmethod
    def to_row(msg: TelemetryMessage) -> dict:
        """Map a message onto exactly one of the value_* columns."""
        value_number: float | None = None
        value_boolean: bool | None = None
        value_text: str | None = None
        v = msg.value

        if msg.value_type == "number":
            try:
                value_number = float(v)
            except (TypeError, ValueError, OverflowError):
                value_number = None
            if value_number is None or not math.isfinite(value_number):
                # Keep the row: store the raw value as text
                value_number = None
                value_text = str(v)
        elif msg.value_type == "boolean":
            value_boolean = v if isinstance(v, bool) else str(v).strip().lower() == "true"
        else:
            value_text = str(v)

        return {
            "device_id": msg.device_id,
            "sensor_id": msg.sensor_id,
            "ts": msg.measured_at,
            "seq": msg.seq,
            "type": msg.sensor_type,
            "value_type": msg.value_type,
            "value_number": value_number,
            "value_boolean": value_boolean,
            "value_text": value_text,
            "unit": msg.unit,
            "location": msg.location,
        }
