from models.base import Base, TimestampMixin, as_utc
from models.telemetry import TelemetryRow
from models.alert import Alert, AlertTrigger

__all__ = [
    "Base",
    "TimestampMixin",
    "as_utc",
    "TelemetryRow",
    "Alert",
    "AlertTrigger",
]
