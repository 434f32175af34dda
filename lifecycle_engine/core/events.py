"""Audit sinks for lifecycle operations."""

import logging
from abc import ABC, abstractmethod
from typing import Iterable

from lifecycle_engine.core.events_model import AuditEvent

logger = logging.getLogger(__name__)


ALLOWED_ACTIONS = {
    "customer.create",
    "customer.start",
    "customer.stop",
    "customer.restart",
    "customer.soft_delete",
    "customer.hard_delete",
    "customer.config_change",
    "customer.restart_service",
    "customer.retry",
    "customer.cancel",
    "customer.migrate",
    "customer.seed",
    "customer.import_demo",
}


class AuditSink(ABC):
    """Abstract audit sink."""

    @abstractmethod
    def emit(self, event: AuditEvent) -> None:
        """Record one audit event."""
        pass


class LoggingAuditSink(AuditSink):
    """Writes audit events to the `lifecycle_engine.audit` logger."""

    def __init__(self):
        self._logger = logging.getLogger("lifecycle_engine.audit")

    def emit(self, event: AuditEvent) -> None:
        self._logger.info(
            f"[AUDIT] {event.action} | target={event.target_id} "
            f"| actor={event.actor_id} | metadata={event.metadata}"
        )


class InMemoryAuditSink(AuditSink):
    """Keeps events in a list (tests, local runs)."""

    def __init__(self):
        self.events = []

    def emit(self, event: AuditEvent) -> None:
        if event.action not in ALLOWED_ACTIONS:
            raise ValueError(f"Invalid audit action: {event.action}")
        if not event.target_id:
            raise ValueError("Audit event must have target_id")
        self.events.append(event)

    def actions(self) -> list:
        return [e.action for e in self.events]


class MultiAuditSink:
    """
    Fire-and-forget fan-out.

    A failing sink is logged and skipped; it never fails the operation
    that produced the event.
    """

    def __init__(self, sinks: Iterable[AuditSink]):
        self._sinks = list(sinks)

    def emit(self, event: AuditEvent) -> None:
        for sink in self._sinks:
            try:
                sink.emit(event)
            except Exception as e:
                logger.warning(
                    f"Audit sink {type(sink).__name__} failed for {event.action}: {e}"
                )
