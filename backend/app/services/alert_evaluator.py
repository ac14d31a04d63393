"""AlertEvaluator: threshold alerts with hysteresis, per device+sensor.

Consumes the alerts work queue. For each numeric measurement with an enabled
trigger:
- NoAlert + out of bounds -> INSERT alert (start_ts = ts, lastOutOfBoundsTs = ts)
- Open + out of bounds    -> refresh context.lastOutOfBoundsTs
- Open + in bounds        -> close (end_ts = ts) once ts >= lastOutOfBoundsTs + hysteresis
- NoAlert + in bounds     -> nothing

The hysteresis window is measured in measurement time (telemetry ``ts``),
never wall-clock time, so delayed or backfilled data closes alerts correctly.
The partial unique index on open alerts is the backstop against racing or
redelivered invocations.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.telemetry import TelemetryMessage, parse_ts, validate_items
from models.alert import Alert, AlertTrigger
from models.base import as_utc

logger = logging.getLogger("telemetry.alert_evaluator")

DEFAULT_HYSTERESIS = timedelta(minutes=10)

IGNORED = "ignored"
OPENED = "opened"
TOUCHED = "touched"
CLOSED = "closed"
UNCHANGED = "unchanged"


@dataclass(frozen=True)
class Measurement:
    device_id: str
    sensor_id: str
    ts: datetime
    ts_raw: str
    seq: int
    value: float


@dataclass(frozen=True)
class Bounds:
    trigger_id: int
    min_value: float | None
    max_value: float | None


@dataclass
class EvaluationResult:
    evaluated: int = 0
    ignored: int = 0
    opened: int = 0
    touched: int = 0
    closed: int = 0


def to_number(v: Any) -> float | None:
    """Finite float from a number or numeric text ("21,5" accepted)."""
    if isinstance(v, bool):
        return None
    if isinstance(v, str):
        v = v.strip().replace(",", ".")
    elif not isinstance(v, (int, float)):
        return None
    try:
        n = float(v)
    except (ValueError, OverflowError):
        # Unparsable text, or an int beyond float range
        return None
    return n if math.isfinite(n) else None


def to_measurement(msg: TelemetryMessage) -> Measurement | None:
    """Numeric measurement carried by ``msg``, or None when not evaluable."""
    if msg.value_type != "number":
        return None
    value = to_number(msg.value)
    if value is None:
        return None
    return Measurement(
        device_id=msg.device_id,
        sensor_id=msg.sensor_id,
        ts=msg.measured_at,
        ts_raw=msg.ts,
        seq=msg.seq,
        value=value,
    )


def is_out_of_bounds(value: float, min_value: float | None, max_value: float | None) -> bool:
    return (min_value is not None and value < min_value) or (
        max_value is not None and value > max_value
    )


def build_reason(sensor_id: str, value: float, min_value: float | None, max_value: float | None) -> str:
    if min_value is not None and value < min_value:
        return f"{sensor_id}: value {value:g} is below min {min_value:g}"
    if max_value is not None and value > max_value:
        return f"{sensor_id}: value {value:g} is above max {max_value:g}"
    return f"{sensor_id}: value {value:g} is out of bounds"


def last_out_of_bounds(alert: Alert) -> datetime:
    raw = (alert.context or {}).get("lastOutOfBoundsTs")
    if raw:
        try:
            return parse_ts(str(raw))
        except ValueError:
            pass
    return as_utc(alert.start_ts)


class AlertEvaluator:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        hysteresis: timedelta = DEFAULT_HYSTERESIS,
    ):
        self.session_factory = session_factory
        self.hysteresis = hysteresis

    async def handle(self, queue_item: Any) -> EvaluationResult:
        validated = validate_items(queue_item)
        result = EvaluationResult(ignored=len(validated.bad))

        measurements: list[Measurement] = []
        for msg in validated.ok:
            m = to_measurement(msg)
            if m is None:
                result.ignored += 1
                logger.debug(
                    "Skipped non-numeric message deviceId=%s sensorId=%s valueType=%s",
                    msg.device_id, msg.sensor_id, msg.value_type,
                )
            else:
                measurements.append(m)

        # Within one queue message, evaluate in measurement order
        measurements.sort(key=lambda m: (m.ts, m.seq))
        for m in measurements:
            outcome = await self.evaluate(m)
            result.evaluated += 1
            if outcome == IGNORED:
                result.ignored += 1
            elif outcome == OPENED:
                result.opened += 1
            elif outcome == TOUCHED:
                result.touched += 1
            elif outcome == CLOSED:
                result.closed += 1
        return result

    async def evaluate(self, m: Measurement) -> str:
        async with self.session_factory() as session:
            trigger = await self._load_trigger(session, m)
            if trigger is None:
                return IGNORED

            # Plain values: a rollback below expires the ORM instance
            bounds = Bounds(trigger.id, trigger.min_value, trigger.max_value)
            oob = is_out_of_bounds(m.value, bounds.min_value, bounds.max_value)
            logger.debug(
                "Measurement deviceId=%s sensorId=%s ts=%s seq=%d value=%g triggerId=%d min=%s max=%s oob=%s",
                m.device_id, m.sensor_id, m.ts_raw, m.seq, m.value,
                bounds.trigger_id, bounds.min_value, bounds.max_value, oob,
            )

            open_alert = await self._load_open_alert(session, m)

            if oob:
                if open_alert is None:
                    if await self._covered_by_closed_alert(session, m):
                        # Redelivered sample of an alert that already closed
                        return IGNORED
                    try:
                        alert = self._new_alert(bounds, m)
                        session.add(alert)
                        await session.flush()
                        await session.commit()
                    except IntegrityError:
                        # Another invocation opened it first
                        await session.rollback()
                        open_alert = await self._load_open_alert(session, m)
                        if open_alert is None:
                            raise
                    else:
                        logger.info(
                            "ALERT ON: alertId=%d device=%s sensor=%s ts=%s reason=%s",
                            alert.id, m.device_id, m.sensor_id, m.ts_raw, alert.reason,
                        )
                        return OPENED

                self._touch(open_alert, bounds, m)
                await session.commit()
                logger.debug("Alert %d still out of bounds ts=%s", open_alert.id, m.ts_raw)
                return TOUCHED

            if open_alert is None:
                return UNCHANGED

            close_after = last_out_of_bounds(open_alert) + self.hysteresis
            if m.ts < close_after:
                # Legal, but still within the hysteresis window
                return UNCHANGED

            open_alert.end_ts = m.ts
            await session.commit()
            logger.info(
                "ALERT OFF: alertId=%d device=%s sensor=%s ts=%s",
                open_alert.id, m.device_id, m.sensor_id, m.ts_raw,
            )
            return CLOSED

    # ------------------------------------------------------------------
    @staticmethod
    async def _load_trigger(session: AsyncSession, m: Measurement) -> AlertTrigger | None:
        stmt = select(AlertTrigger).where(
            and_(
                AlertTrigger.device_id == m.device_id,
                AlertTrigger.sensor_id == m.sensor_id,
                AlertTrigger.enabled == True,  # noqa: E712
            )
        )
        trigger = (await session.execute(stmt)).scalar_one_or_none()
        if trigger is None or trigger.value_type != "number":
            return None
        return trigger

    @staticmethod
    async def _load_open_alert(session: AsyncSession, m: Measurement) -> Alert | None:
        stmt = (
            select(Alert)
            .where(
                and_(
                    Alert.device_id == m.device_id,
                    Alert.sensor_id == m.sensor_id,
                    Alert.end_ts.is_(None),
                )
            )
            .with_for_update()
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    @staticmethod
    async def _covered_by_closed_alert(session: AsyncSession, m: Measurement) -> bool:
        stmt = (
            select(Alert.id)
            .where(
                and_(
                    Alert.device_id == m.device_id,
                    Alert.sensor_id == m.sensor_id,
                    Alert.end_ts.is_not(None),
                    Alert.start_ts <= m.ts,
                    Alert.end_ts > m.ts,
                )
            )
            .limit(1)
        )
        return (await session.execute(stmt)).first() is not None

    @staticmethod
    def _context(bounds: Bounds, m: Measurement, last_oob_raw: str) -> dict:
        return {
            "value": m.value,
            "min": bounds.min_value,
            "max": bounds.max_value,
            "lastOutOfBoundsTs": last_oob_raw,
        }

    def _new_alert(self, bounds: Bounds, m: Measurement) -> Alert:
        return Alert(
            trigger_id=bounds.trigger_id,
            device_id=m.device_id,
            sensor_id=m.sensor_id,
            start_ts=m.ts,
            end_ts=None,
            reason=build_reason(m.sensor_id, m.value, bounds.min_value, bounds.max_value),
            context=self._context(bounds, m, m.ts_raw),
        )

    def _touch(self, alert: Alert, bounds: Bounds, m: Measurement) -> None:
        # Out-of-order samples never move the clear timer backwards
        if m.ts >= last_out_of_bounds(alert):
            alert.context = self._context(bounds, m, m.ts_raw)
