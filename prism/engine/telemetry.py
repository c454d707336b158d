"""
Fire-and-forget telemetry.

A collaborator only needs ``record(event)``. It may be sync or async; async
results are scheduled and never awaited by the request path. Collaborator
failures are logged and never reach the caller.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Set

import structlog

logger = structlog.get_logger(__name__)

ANALYSIS_COMPLETED = "analysis_completed"
ANALYSIS_REJECTED = "analysis_rejected"
PROVIDER_CALL_FAILED = "provider_call_failed"


@dataclass(frozen=True)
class TelemetryEvent:
    name: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class TelemetrySink(Protocol):
    def record(self, event: TelemetryEvent) -> Any: ...


class StructlogTelemetry:
    """Writes every event to the structured log."""

    def __init__(self):
        self._logger = structlog.get_logger("prism.telemetry")

    def record(self, event: TelemetryEvent):
        self._logger.info(event.name, **event.attributes)


class Telemetry:
    """Wraps a sink so recording can never fail or block a request."""

    def __init__(self, sink: Optional[TelemetrySink] = None):
        self.sink = sink or StructlogTelemetry()
        self._pending: Set[asyncio.Task] = set()

    def emit(self, name: str, **attributes):
        event = TelemetryEvent(name=name, attributes=attributes)
        try:
            outcome = self.sink.record(event)
        except Exception as e:
            logger.warning("Telemetry sink failed", event_name=name, error=str(e))
            return

        if inspect.isawaitable(outcome):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning("Telemetry event dropped, no event loop", event_name=name)
                if inspect.iscoroutine(outcome):
                    outcome.close()
                return
            task = loop.create_task(self._guard(name, outcome))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _guard(self, name: str, awaitable):
        try:
            await awaitable
        except Exception as e:
            logger.warning("Telemetry sink failed", event_name=name, error=str(e))

    async def drain(self):
        """Wait for scheduled async events. Used at shutdown."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
