"""
Telemetry
=========
Fire-and-forget event recording for repair outcomes.

Contract (TelemetrySink):
    record(event) → None. Must not block the pipeline and must not raise.
    ``safe_record`` enforces the second half for any sink.

Sinks:
    LoggingTelemetrySink   — one structured log line per event (default)
    HttpTelemetrySink      — POSTs the event JSON to TELEMETRY_URL in a
                             background task; failures are logged only
    InMemoryTelemetrySink  — keeps events in a list (tests, operator API)
    CompositeTelemetrySink — fans out to several sinks; flush reaches each one
"""
import asyncio
import logging
from typing import List, Optional, Protocol, Set, runtime_checkable

import httpx

from selfheal.models.telemetry_event import TelemetryEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class TelemetrySink(Protocol):
    def record(self, event: TelemetryEvent) -> None:
        ...


def safe_record(sink: Optional[TelemetrySink], event: TelemetryEvent) -> None:
    if sink is None:
        return
    try:
        sink.record(event)
    except Exception as e:
        logger.error("Telemetry sink %s failed for %s: %s", type(sink).__name__, event.type, e)


class LoggingTelemetrySink:
    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    def record(self, event: TelemetryEvent) -> None:
        logger.log(
            self.level,
            "telemetry %s success=%s session=%s duration_ms=%s metadata=%s",
            event.type, event.success, event.session_id, event.duration_ms, event.metadata,
        )


class InMemoryTelemetrySink:
    def __init__(self, max_events: int = 1000) -> None:
        self.max_events = max_events
        self.events: List[TelemetryEvent] = []

    def record(self, event: TelemetryEvent) -> None:
        self.events.append(event)
        if len(self.events) > self.max_events:
            del self.events[: len(self.events) - self.max_events]

    def of_type(self, event_type: str) -> List[TelemetryEvent]:
        return [e for e in self.events if e.type == event_type]


class HttpTelemetrySink:
    """
    POST events to an HTTP collector.

    ``record`` schedules the request on the running event loop and returns
    immediately; ``flush`` awaits whatever is still in flight.
    """

    def __init__(self, url: str, timeout_seconds: float = 5.0) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._pending: Set[asyncio.Task] = set()

    def record(self, event: TelemetryEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; dropping telemetry event %s", event.type)
            return
        task = loop.create_task(self._post(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _post(self, event: TelemetryEvent) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                resp = await client.post(self.url, json=event.model_dump(mode="json"))
                resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Telemetry POST to %s failed for %s: %s", self.url, event.type, e)

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class CompositeTelemetrySink:
    def __init__(self, *sinks: TelemetrySink) -> None:
        self.sinks = list(sinks)

    def record(self, event: TelemetryEvent) -> None:
        for sink in self.sinks:
            safe_record(sink, event)

    async def flush(self) -> None:
        """Await ``flush`` on every sink that has one; failures are logged only."""
        for sink in self.sinks:
            flush = getattr(sink, "flush", None)
            if flush is None:
                continue
            try:
                await flush()
            except Exception as e:
                logger.error("Telemetry sink %s failed to flush: %s", type(sink).__name__, e)
