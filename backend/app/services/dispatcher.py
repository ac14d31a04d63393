"""FanOutDispatcher: ingestion entry point.

Validates a batch from the upstream event stream and enqueues every valid
telemetry message onto three independent work queues (time-series write,
archive write, alert evaluation).

Delivery is at-least-once: if any send fails the whole invocation fails and
the upstream stream redelivers the entire batch, re-sending messages that
were already queued. Downstream consumers therefore treat every message as
possibly duplicated.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from core.errors import DispatchError
from core.telemetry import TelemetryMessage, validate_items

logger = logging.getLogger("telemetry.dispatcher")

BAD_SAMPLE_SIZE = 3


class QueueSender(Protocol):
    name: str

    async def send(self, body: str) -> Any: ...


@dataclass
class DispatchResult:
    received_ok: int
    rejected: int
    dispatched: int


class FanOutDispatcher:

    def __init__(self, queues: Sequence[QueueSender], *, concurrency: int = 32):
        if not queues:
            raise ValueError("FanOutDispatcher needs at least one queue")
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self.queues = list(queues)
        self.concurrency = concurrency

    async def dispatch(self, events: Any) -> DispatchResult:
        result = validate_items(events)
        ok, bad = result.ok, result.bad

        if bad:
            logger.warning(
                "Dropped %d invalid telemetry event(s) (ok=%d) sample=%s",
                len(bad), len(ok),
                [
                    {"issues": [f"{'.'.join(map(str, i.path)) or '<root>'}: {i.message}" for i in b.issues],
                     "preview": b.preview}
                    for b in bad[:BAD_SAMPLE_SIZE]
                ],
            )

        if not ok:
            return DispatchResult(received_ok=0, rejected=len(bad), dispatched=0)

        sem = asyncio.Semaphore(self.concurrency)

        async def _bounded(msg: TelemetryMessage) -> None:
            async with sem:
                await self._fan_out(msg)

        outcomes = await asyncio.gather(
            *(_bounded(m) for m in ok), return_exceptions=True
        )
        errors = [o for o in outcomes if isinstance(o, BaseException)]

        if errors:
            logger.error(
                "Failed to enqueue %d of %d telemetry message(s) queues=%s first_error=%r",
                len(errors), len(ok), [q.name for q in self.queues], errors[0],
            )
            raise DispatchError(
                f"enqueue failed for {len(errors)} of {len(ok)} message(s)",
                total=len(ok),
                failed=len(errors),
            ) from errors[0]

        logger.info(
            "Enqueued telemetry batch count=%d queues=%s",
            len(ok), [q.name for q in self.queues],
        )
        return DispatchResult(received_ok=len(ok), rejected=len(bad), dispatched=len(ok))

    async def _fan_out(self, msg: TelemetryMessage) -> None:
        body = msg.to_json()
        await asyncio.gather(*(q.send(body) for q in self.queues))
