"""Alert triggers ("legal parameters") and alert instances.

alert_triggers is owned by the external configuration API; the evaluator
only reads enabled rows.
alerts: one row per opened/closed period. Open = end_ts IS NULL, and at
most one open alert may exist per device+sensor (partial unique index).
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, JsonDocument, TimestampMixin, UtcDateTime

OPEN_ALERT_CLAUSE = text("end_ts IS NULL")


class AlertTrigger(TimestampMixin, Base):
    __tablename__ = "alert_triggers"

    __table_args__ = (
        CheckConstraint(
            "value_type IN ('number', 'boolean', 'string', 'enum')",
            name="value_type",
        ),
        # At least one bound must be set for numeric triggers
        CheckConstraint(
            "value_type <> 'number' OR min_value IS NOT NULL OR max_value IS NOT NULL",
            name="numeric_bounds",
        ),
        Index("uq_alert_triggers_device_sensor", "device_id", "sensor_id", unique=True),
        Index("ix_alert_triggers_enabled_lookup", "enabled", "device_id", "sensor_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    device_id: Mapped[str] = mapped_column(Text)
    sensor_id: Mapped[str] = mapped_column(Text)
    name: Mapped[str | None] = mapped_column(Text, default=None)
    value_type: Mapped[str] = mapped_column(String(10), default="number")
    # NULL means "no bound"
    min_value: Mapped[float | None] = mapped_column(default=None)
    max_value: Mapped[float | None] = mapped_column(default=None)
    enabled: Mapped[bool] = mapped_column(default=True)


class Alert(TimestampMixin, Base):
    __tablename__ = "alerts"

    __table_args__ = (
        CheckConstraint("end_ts IS NULL OR end_ts >= start_ts", name="end_after_start"),
        Index("ix_alerts_start_ts", "start_ts"),
        Index("ix_alerts_device_sensor_start", "device_id", "sensor_id", "start_ts"),
        Index(
            "uq_alerts_one_open_per_device_sensor",
            "device_id",
            "sensor_id",
            unique=True,
            postgresql_where=OPEN_ALERT_CLAUSE,
            sqlite_where=OPEN_ALERT_CLAUSE,
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    trigger_id: Mapped[int] = mapped_column(
        ForeignKey("alert_triggers.id", ondelete="RESTRICT")
    )
    device_id: Mapped[str] = mapped_column(Text)
    sensor_id: Mapped[str] = mapped_column(Text)
    # Measurement time of the first violating sample
    start_ts: Mapped[datetime] = mapped_column(UtcDateTime)
    # NULL = still open
    end_ts: Mapped[datetime | None] = mapped_column(UtcDateTime, default=None)
    reason: Mapped[str | None] = mapped_column(Text, default=None)
    # {value, min, max, lastOutOfBoundsTs}
    context: Mapped[dict | None] = mapped_column(JsonDocument, default=None)
