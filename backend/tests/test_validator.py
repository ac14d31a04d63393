"""Tests for telemetry message validation."""

import math
from datetime import datetime, timezone

from conftest import make_event
from core.telemetry import (
    PREVIEW_MAX_LEN,
    TelemetryMessage,
    parse_ts,
    preview,
    validate_batch,
    validate_items,
    validate_one,
)


class TestParseTs:

    def test_zulu(self):
        assert parse_ts("2026-01-15T10:00:00Z") == datetime(2026, 1, 15, 10, tzinfo=timezone.utc)

    def test_offset_converted_to_utc(self):
        assert parse_ts("2026-01-15T12:00:00+02:00") == datetime(2026, 1, 15, 10, tzinfo=timezone.utc)

    def test_naive_taken_as_utc(self):
        assert parse_ts("2026-01-15T10:00:00").tzinfo == timezone.utc


class TestValidateOne:

    def test_valid_message(self):
        msg = validate_one(make_event())
        assert isinstance(msg, TelemetryMessage)
        assert msg.device_id == "pi-01"
        assert msg.sensor_type == "cpu_temp"
        assert msg.location is None

    def test_numeric_string_accepted_for_number(self):
        assert isinstance(validate_one(make_event(value="21.5")), TelemetryMessage)

    def test_boolean_forms(self):
        assert isinstance(validate_one(make_event(valueType="boolean", value=True)), TelemetryMessage)
        assert isinstance(validate_one(make_event(valueType="boolean", value="false")), TelemetryMessage)
        assert isinstance(validate_one(make_event(valueType="boolean", value="maybe")), list)

    def test_bool_is_not_a_number(self):
        issues = validate_one(make_event(value=True))
        assert isinstance(issues, list)
        assert issues[0].path == ("value",)

    def test_wrong_schema_version(self):
        issues = validate_one(make_event(schemaVersion=2))
        assert isinstance(issues, list)
        assert issues[0].path == ("schemaVersion",)

    def test_missing_fields_reported(self):
        event = make_event()
        del event["deviceId"]
        del event["seq"]
        issues = validate_one(event)
        paths = {i.path for i in issues}
        assert ("deviceId",) in paths
        assert ("seq",) in paths

    def test_bad_timestamp(self):
        issues = validate_one(make_event(ts="yesterday"))
        assert issues[0].path == ("ts",)

    def test_negative_seq(self):
        assert isinstance(validate_one(make_event(seq=-1)), list)

    def test_seq_fits_bigint(self):
        assert isinstance(validate_one(make_event(seq=2**63 - 1)), TelemetryMessage)
        issues = validate_one(make_event(seq=2**70))
        assert isinstance(issues, list)
        assert issues[0].path == ("seq",)

    def test_schema_version_must_be_integer(self):
        for version in (True, 1.0, "1"):
            issues = validate_one(make_event(schemaVersion=version))
            assert isinstance(issues, list), version
            assert issues[0].path == ("schemaVersion",)

    def test_non_finite_value(self):
        assert isinstance(validate_one(make_event(value=math.inf)), list)

    def test_string_value_must_be_text(self):
        assert isinstance(validate_one(make_event(valueType="string", value=3)), list)
        assert isinstance(validate_one(make_event(valueType="enum", value="OPEN")), TelemetryMessage)


class TestValidateBatch:

    def test_partial_batch(self):
        result = validate_batch([make_event(seq=1), {"deviceId": "x"}, make_event(seq=2), "junk"])
        assert [m.seq for m in result.ok] == [1, 2]
        assert len(result.bad) == 2
        assert result.bad[1].preview == "junk"

    def test_validate_items_normalizes_first(self):
        body = '[{"schemaVersion": 1, "deviceId": "d", "sensorId": "s", "ts": "2026-01-15T10:00:00Z",' \
               ' "seq": 0, "type": "t", "valueType": "number", "value": 1}, {"bogus": true}]'
        result = validate_items({"body": body})
        assert len(result.ok) == 1
        assert len(result.bad) == 1

    def test_wire_form_round_trip(self):
        msg = validate_one(make_event())
        wire = msg.to_wire()
        assert wire["deviceId"] == "pi-01"
        assert wire["type"] == "cpu_temp"
        assert "location" not in wire
        assert validate_one(wire) == msg


class TestPreview:

    def test_truncates(self):
        text = preview("x" * 1000)
        assert len(text) == PREVIEW_MAX_LEN + 1
        assert text.endswith("…")

    def test_none(self):
        assert preview(None) is None
