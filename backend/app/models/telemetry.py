"""Telemetry hot storage (TimescaleDB hypertable on ts).

One row = one measurement from one sensor at one timestamp.
Primary key (device_id, sensor_id, ts, seq) makes re-sent measurements no-ops.
Exactly one value_* column is populated per row.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, CheckConstraint, Float, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, UtcDateTime

VALUE_TYPES = ("number", "boolean", "enum", "string")


class TelemetryRow(Base):
    __tablename__ = "telemetry"

    __table_args__ = (
        CheckConstraint(
            "value_type IN (" + ", ".join(f"'{t}'" for t in VALUE_TYPES) + ")",
            name="value_type",
        ),
        CheckConstraint(
            "(CASE WHEN value_number IS NOT NULL THEN 1 ELSE 0 END)"
            " + (CASE WHEN value_boolean IS NOT NULL THEN 1 ELSE 0 END)"
            " + (CASE WHEN value_text IS NOT NULL THEN 1 ELSE 0 END) = 1",
            name="one_value_column",
        ),
        Index("ix_telemetry_device_sensor_ts", "device_id", "sensor_id", "ts"),
        Index("ix_telemetry_device_ts", "device_id", "ts"),
        Index("ix_telemetry_ingest_time", "ingest_time"),
    )

    device_id: Mapped[str] = mapped_column(Text, primary_key=True)
    sensor_id: Mapped[str] = mapped_column(Text, primary_key=True)
    ts: Mapped[datetime] = mapped_column(UtcDateTime, primary_key=True)
    seq: Mapped[int] = mapped_column(BigInteger, primary_key=True)

    type: Mapped[str] = mapped_column(Text)          # temperature, humidity, cpu_temp...
    value_type: Mapped[str] = mapped_column(String(10))
    value_number: Mapped[float | None] = mapped_column(Float, default=None)
    value_boolean: Mapped[bool | None] = mapped_column(Boolean, default=None)
    value_text: Mapped[str | None] = mapped_column(Text, default=None)

    unit: Mapped[str | None] = mapped_column(Text, default=None)
    location: Mapped[str | None] = mapped_column(Text, default=None)

    ingest_time: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())
