"""Telemetry message schema and tolerant batch validation.

Producers are independently versioned edge devices, so validation is
per item: a bad payload lands in ``bad`` with its issues and never stops the
rest of the batch.
"""
from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    ValidationInfo,
    field_validator,
)
from pydantic_core import PydanticCustomError

from core.normalizer import normalize

logger = logging.getLogger("telemetry.validator")

SCHEMA_VERSION = 1
PREVIEW_MAX_LEN = 256
# telemetry.seq is a BIGINT
SEQ_MAX = 2**63 - 1

ValueType = Literal["number", "boolean", "string", "enum"]


def parse_ts(raw: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive timestamps are taken as UTC.
    """
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class TelemetryMessage(BaseModel):
    schema_version: Literal[1] = Field(alias="schemaVersion")
    device_id: StrictStr = Field(alias="deviceId", min_length=1)
    sensor_id: StrictStr = Field(alias="sensorId", min_length=1)
    ts: StrictStr
    seq: StrictInt = Field(ge=0, le=SEQ_MAX)
    sensor_type: StrictStr = Field(alias="type")
    value_type: ValueType = Field(alias="valueType")
    value: Union[StrictBool, StrictInt, StrictFloat, StrictStr]
    unit: Optional[StrictStr] = None
    location: Optional[StrictStr] = None

    model_config = {"populate_by_name": True, "frozen": True}

    @field_validator("schema_version", mode="before")
    @classmethod
    def _check_schema_version(cls, v: Any) -> Any:
        # 1.0 and True compare equal to 1; only the integer is accepted
        if type(v) is not int:
            raise PydanticCustomError(
                "schema_version", "schemaVersion must be the integer {expected}",
                {"expected": SCHEMA_VERSION},
            )
        return v

    @field_validator("ts")
    @classmethod
    def _check_ts(cls, v: str) -> str:
        try:
            parse_ts(v)
        except ValueError:
            raise PydanticCustomError(
                "timestamp", "ts must be an ISO-8601 timestamp"
            ) from None
        return v

    @field_validator("value")
    @classmethod
    def _check_value(cls, v: Any, info: ValidationInfo) -> Any:
        value_type = info.data.get("value_type")
        if value_type is None:
            # valueType itself is invalid; reported on its own path
            return v
        if isinstance(v, float) and not math.isfinite(v):
            raise PydanticCustomError("value_finite", "value must be a finite number")
        if value_type == "number":
            ok = isinstance(v, (int, float, str)) and not isinstance(v, bool)
        elif value_type == "boolean":
            ok = isinstance(v, bool) or (
                isinstance(v, str) and v.strip().lower() in ("true", "false")
            )
        else:
            ok = isinstance(v, str)
        if not ok:
            raise PydanticCustomError(
                "value_type_mismatch",
                "value of type {actual} is not compatible with valueType {value_type}",
                {"actual": type(v).__name__, "value_type": value_type},
            )
        return v

    @property
    def measured_at(self) -> datetime:
        return parse_ts(self.ts)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


@dataclass(frozen=True)
class ValidationIssue:
    path: tuple
    message: str


@dataclass
class BadItem:
    payload: Any
    issues: list[ValidationIssue]
    preview: str | None = None


@dataclass
class ValidationResult:
    ok: list[TelemetryMessage] = field(default_factory=list)
    bad: list[BadItem] = field(default_factory=list)


def preview(payload: Any, max_len: int = PREVIEW_MAX_LEN) -> str | None:
    if payload is None:
        return None
    if isinstance(payload, str):
        text = payload
    else:
        try:
            text = json.dumps(payload, default=str)
        except (TypeError, ValueError):
            return None
    text = text.strip()
    return text if len(text) <= max_len else text[:max_len] + "…"


def _issues(exc: ValidationError) -> list[ValidationIssue]:
    return [
        ValidationIssue(
            path=tuple(p for p in err["loc"] if isinstance(p, (str, int))),
            message=err["msg"],
        )
        for err in exc.errors()
    ]


def validate_batch(values: list[Any]) -> ValidationResult:
    """Validate normalized payload values; never raises."""
    result = ValidationResult()
    for payload in values:
        try:
            result.ok.append(TelemetryMessage.model_validate(payload))
        except ValidationError as exc:
            result.bad.append(
                BadItem(payload=payload, issues=_issues(exc), preview=preview(payload))
            )
    return result


def validate_items(item: Any) -> ValidationResult:
    """Normalize a raw queue/stream item and validate what it carries."""
    return validate_batch(normalize(item))


def validate_one(payload: Any) -> TelemetryMessage | list[ValidationIssue]:
    result = validate_batch([payload])
    if result.ok:
        return result.ok[0]
    return result.bad[0].issues
