"""
Lifecycle events emitted by the scheduler and health gate.

Sinks only observe; nothing in the orchestration waits on them.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


@dataclass
class LifecycleEvent:
    """A single state change or observation for one service."""

    service: str
    kind: str
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )


class EventSink:
    """
    Receives lifecycle events. Subclasses decide where they go.
    """

    def emit(self, event: LifecycleEvent) -> None:
        raise NotImplementedError

    def publish(self, service: str, kind: str, message: str = "", **details: Any) -> None:
        """
        Builds and emits an event. Sink failures are logged, never raised.
        """
        try:
            self.emit(LifecycleEvent(service=service, kind=kind, message=message, details=details))
        except Exception:
            logging.getLogger(__name__).exception("Event sink failed for %s/%s", service, kind)


class LoggingEventSink(EventSink):
    """Writes events to the ``conductor.events`` logger."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("conductor.events")

    def emit(self, event: LifecycleEvent) -> None:
        level = logging.WARNING if event.kind in ("errored", "unhealthy", "skipped", "killed") else logging.INFO
        self.logger.log(level, "[%s] %s %s", event.service, event.kind, event.message)


class RecordingEventSink(EventSink):
    """Keeps events in memory."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[LifecycleEvent] = []

    def emit(self, event: LifecycleEvent) -> None:
        with self._lock:
            self.events.append(event)

    def kinds(self, service: str) -> List[str]:
        with self._lock:
            return [e.kind for e in self.events if e.service == service]
