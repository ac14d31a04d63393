"""Normalization of inbound queue/stream items into plain payload values.

Upstream triggers and work queues hand us items in several shapes:
- JSON text (the normal queue/stream body)
- raw bytes (stream entries read without decode_responses)
- wrapper objects carrying the payload under ``body`` or ``messageText``
- lists of any of the above
- already-decoded values (tests, local helpers)

classify() maps an item onto exactly one of the variants below and
normalize() resolves it. Consumers never type-check payload shapes themselves.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Union

logger = logging.getLogger("telemetry.normalizer")

WRAPPER_FIELDS = ("body", "messageText")


@dataclass(frozen=True)
class JsonText:
    text: str


@dataclass(frozen=True)
class RawBytes:
    data: bytes


@dataclass(frozen=True)
class Wrapped:
    inner: Any


@dataclass(frozen=True)
class ItemList:
    items: list


@dataclass(frozen=True)
class Decoded:
    value: Any


QueueItem = Union[JsonText, RawBytes, Wrapped, ItemList, Decoded]


def classify(item: Any) -> QueueItem:
    if isinstance(item, str):
        return JsonText(item)
    if isinstance(item, (bytes, bytearray, memoryview)):
        return RawBytes(bytes(item))
    if isinstance(item, (list, tuple)):
        return ItemList(list(item))
    if isinstance(item, dict):
        for field in WRAPPER_FIELDS:
            if field in item:
                return Wrapped(item[field])
    return Decoded(item)


def _parse_json(text: str) -> list[Any]:
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        logger.debug("Dropped unparsable JSON payload (%d chars)", len(text))
        return []
    if isinstance(parsed, list):
        return parsed
    return [parsed]


def normalize(item: Any) -> list[Any]:
    """Return the payload values carried by ``item``; never raises."""
    if item is None:
        return []

    variant = classify(item)
    if isinstance(variant, JsonText):
        return _parse_json(variant.text)
    if isinstance(variant, RawBytes):
        try:
            text = variant.data.decode("utf-8")
        except UnicodeDecodeError:
            logger.debug("Dropped undecodable payload (%d bytes)", len(variant.data))
            return []
        return _parse_json(text)
    if isinstance(variant, Wrapped):
        return normalize(variant.inner)
    if isinstance(variant, ItemList):
        out: list[Any] = []
        for sub in variant.items:
            out.extend(normalize(sub))
        return out
    return [variant.value]

