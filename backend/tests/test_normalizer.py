"""Tests for queue item normalization."""

import json

from core.normalizer import (
    Decoded,
    ItemList,
    JsonText,
    RawBytes,
    Wrapped,
    classify,
    normalize,
)


class TestClassify:

    def test_shapes(self):
        assert isinstance(classify('{"a": 1}'), JsonText)
        assert isinstance(classify(b'{"a": 1}'), RawBytes)
        assert isinstance(classify(bytearray(b"[]")), RawBytes)
        assert isinstance(classify([1, 2]), ItemList)
        assert isinstance(classify({"body": "{}"}), Wrapped)
        assert isinstance(classify({"messageText": "{}"}), Wrapped)
        assert isinstance(classify({"deviceId": "x"}), Decoded)
        assert isinstance(classify(5), Decoded)


class TestNormalize:

    def test_none_is_empty(self):
        assert normalize(None) == []

    def test_json_object(self):
        assert normalize('{"a": 1}') == [{"a": 1}]

    def test_json_array_is_flattened(self):
        assert normalize('[{"a": 1}, {"a": 2}]') == [{"a": 1}, {"a": 2}]

    def test_bytes(self):
        assert normalize(json.dumps({"a": 1}).encode()) == [{"a": 1}]

    def test_unparsable_json_dropped(self):
        assert normalize("{not json") == []

    def test_invalid_utf8_dropped(self):
        assert normalize(b"\xff\xfe\xfa") == []

    def test_wrapper_body(self):
        assert normalize({"body": '{"a": 1}'}) == [{"a": 1}]
        assert normalize({"messageText": b'[1, 2]'}) == [1, 2]

    def test_nested_lists(self):
        items = ['{"a": 1}', [b'{"a": 2}', {"a": 3}], "garbage"]
        assert normalize(items) == [{"a": 1}, {"a": 2}, {"a": 3}]

    def test_decoded_passthrough(self):
        assert normalize({"deviceId": "pi-01"}) == [{"deviceId": "pi-01"}]

