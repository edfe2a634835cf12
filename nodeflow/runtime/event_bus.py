"""
Event Bus - Pub/sub channel for execution progress.

Allows consumers (UIs, loggers, the engine's own bookkeeping) to:
- Subscribe to one event type, several, or all of them
- Follow a single execution through a filtered view
- Inspect recent history and currently active executions

Dispatch is synchronous: ``publish`` calls every matching handler in
subscription order before returning. Handlers run over a snapshot of the
subscriber list, so subscribing or unsubscribing from inside a handler (or
from another thread) while a publish is in progress is safe. A handler that
raises is logged and skipped; the others still run.
"""

import asyncio
import logging
import threading
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events published during a run."""

    # Execution lifecycle
    EXECUTION_START = "execution:start"
    EXECUTION_COMPLETE = "execution:complete"
    EXECUTION_ERROR = "execution:error"

    # Node lifecycle
    NODE_START = "node:start"
    NODE_PROGRESS = "node:progress"
    NODE_COMPLETE = "node:complete"
    NODE_RETRY = "node:retry"


@dataclass
class ExecutionEvent:
    """An event in the life of one execution."""

    type: EventType
    execution_id: str
    node_id: str | None = None
    node_label: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "execution_id": self.execution_id,
            "node_id": self.node_id,
            "node_label": self.node_label,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# Type for event handlers
EventHandler = Callable[[ExecutionEvent], Any]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: frozenset[EventType]
    handler: EventHandler
    filter_execution: str | None = None  # Only receive events from this execution

    def matches(self, event: ExecutionEvent) -> bool:
        if event.type not in self.event_types:
            return False
        if self.filter_execution is not None and self.filter_execution != event.execution_id:
            return False
        return True


class EventBus:
    """
    Synchronous pub/sub bus for execution events.

    Constructed explicitly and injected into the engine; tests use their
    own instances.

    Example:
        bus = EventBus()

        def on_complete(event: ExecutionEvent):
            print(f"Execution {event.execution_id} finished: {event.data['status']}")

        unsubscribe = bus.subscribe(EventType.EXECUTION_COMPLETE, on_complete)

        bus.publish(ExecutionEvent(
            type=EventType.EXECUTION_COMPLETE,
            execution_id="exec_123",
            data={"status": "completed"},
        ))

        unsubscribe()
    """

    def __init__(self, max_history: int = 1000):
        """
        Initialize event bus.

        Args:
            max_history: Maximum events to keep in history
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._history: deque[ExecutionEvent] = deque(maxlen=max_history)
        self._active_executions: dict[str, None] = {}
        self._subscription_counter = 0
        self._lock = threading.Lock()

    # === SUBSCRIPTIONS ===

    def subscribe(
        self,
        event_type: EventType | Iterable[EventType] | None,
        handler: EventHandler,
        filter_execution: str | None = None,
    ) -> Callable[[], bool]:
        """
        Subscribe to events.

        Args:
            event_type: One type, several types, or None for every type
            handler: Called synchronously with each matching event
            filter_execution: Only receive events from this execution

        Returns:
            A callable that removes the subscription (True if it was still active)
        """
        if event_type is None:
            types = frozenset(EventType)
        elif isinstance(event_type, str):
            types = frozenset({EventType(event_type)})
        else:
            types = frozenset(EventType(t) for t in event_type)

        with self._lock:
            self._subscription_counter += 1
            sub_id = f"sub_{self._subscription_counter}"
            self._subscriptions[sub_id] = Subscription(
                id=sub_id,
                event_types=types,
                handler=handler,
                filter_execution=filter_execution,
            )
        logger.debug(f"Subscription {sub_id} registered for {sorted(types)}")

        return lambda: self.unsubscribe(sub_id)

    def subscribe_to_execution(
        self, execution_id: str, handler: EventHandler
    ) -> Callable[[], bool]:
        """Receive every event type, but only for ``execution_id``."""
        return self.subscribe(None, handler, filter_execution=execution_id)

    def unsubscribe(self, subscription_id: str) -> bool:
        """
        Unsubscribe from events.

        Returns:
            True if subscription was found and removed
        """
        with self._lock:
            removed = self._subscriptions.pop(subscription_id, None)
        if removed is not None:
            logger.debug(f"Subscription {subscription_id} removed")
        return removed is not None

    # === PUBLISHING ===

    def publish(self, event: ExecutionEvent) -> None:
        """Record ``event`` and hand it to every matching subscriber, in order."""
        with self._lock:
            if event.type == EventType.EXECUTION_START:
                self._active_executions[event.execution_id] = None
            elif event.type == EventType.EXECUTION_COMPLETE:
                self._active_executions.pop(event.execution_id, None)
            self._history.append(event)
            snapshot = list(self._subscriptions.values())

        for subscription in snapshot:
            if not subscription.matches(event):
                continue
            try:
                subscription.handler(event)
            except Exception as e:
                logger.error(
                    f"Handler error for {event.type} ({subscription.id}): {e}",
                    exc_info=True,
                )

        if event.type == EventType.EXECUTION_ERROR or (
            event.type == EventType.NODE_COMPLETE and event.data.get("status") != "success"
        ):
            logger.debug(f"[EventBus] {event.type} {event.to_dict()}")

    # === CONVENIENCE PUBLISHERS ===

    def emit_execution_start(
        self, execution_id: str, workflow_id: str, total_nodes: int, mode: str
    ) -> None:
        self.publish(
            ExecutionEvent(
                type=EventType.EXECUTION_START,
                execution_id=execution_id,
                data={"workflow_id": workflow_id, "total_nodes": total_nodes, "mode": mode},
            )
        )

    def emit_node_start(self, execution_id: str, node_id: str, node_label: str) -> None:
        self.publish(
            ExecutionEvent(
                type=EventType.NODE_START,
                execution_id=execution_id,
                node_id=node_id,
                node_label=node_label,
                data={"status": "running"},
            )
        )

    def emit_node_progress(
        self,
        execution_id: str,
        node_id: str,
        node_label: str,
        progress: int,
        message: str | None = None,
    ) -> None:
        data: dict[str, Any] = {"progress": progress}
        if message:
            data["message"] = message
        self.publish(
            ExecutionEvent(
                type=EventType.NODE_PROGRESS,
                execution_id=execution_id,
                node_id=node_id,
                node_label=node_label,
                data=data,
            )
        )

    def emit_node_complete(
        self,
        execution_id: str,
        node_id: str,
        node_label: str,
        status: str,
        duration_ms: float | None = None,
        output: Any = None,
        error: str | None = None,
    ) -> None:
        data: dict[str, Any] = {"status": status, "duration_ms": duration_ms}
        if output is not None:
            data["output"] = output
        if error is not None:
            data["error"] = error
        self.publish(
            ExecutionEvent(
                type=EventType.NODE_COMPLETE,
                execution_id=execution_id,
                node_id=node_id,
                node_label=node_label,
                data=data,
            )
        )

    def emit_node_retry(
        self,
        execution_id: str,
        node_id: str,
        node_label: str,
        attempt: int,
        max_attempts: int,
        delay_ms: float,
        error: str,
    ) -> None:
        self.publish(
            ExecutionEvent(
                type=EventType.NODE_RETRY,
                execution_id=execution_id,
                node_id=node_id,
                node_label=node_label,
                data={
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "delay_ms": delay_ms,
                    "error": error,
                },
            )
        )

    def emit_execution_complete(
        self,
        execution_id: str,
        status: str,
        completed_nodes: int,
        failed_nodes: int,
        skipped_nodes: int,
        total_duration_ms: float | None,
    ) -> None:
        self.publish(
            ExecutionEvent(
                type=EventType.EXECUTION_COMPLETE,
                execution_id=execution_id,
                data={
                    "status": status,
                    "completed_nodes": completed_nodes,
                    "failed_nodes": failed_nodes,
                    "skipped_nodes": skipped_nodes,
                    "total_duration_ms": total_duration_ms,
                },
            )
        )

    def emit_execution_error(
        self, execution_id: str, error: str, stage: str, node_id: str | None = None
    ) -> None:
        self.publish(
            ExecutionEvent(
                type=EventType.EXECUTION_ERROR,
                execution_id=execution_id,
                node_id=node_id,
                data={"error": error, "stage": stage},
            )
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        execution_id: str | None = None,
        event_type: EventType | None = None,
        limit: int | None = None,
    ) -> list[ExecutionEvent]:
        """
        Get event history with optional filtering.

        Returns:
            Matching events, oldest first (the last ``limit`` if given)
        """
        with self._lock:
            events = list(self._history)

        if execution_id:
            events = [e for e in events if e.execution_id == execution_id]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if limit:
            events = events[-limit:]
        return events

    def get_active_executions(self) -> list[str]:
        with self._lock:
            return list(self._active_executions)

    def is_execution_active(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._active_executions

    def get_stats(self) -> dict:
        """Get event bus statistics."""
        with self._lock:
            history = list(self._history)
            subscriptions = len(self._subscriptions)
            active = len(self._active_executions)

        type_counts: dict[str, int] = {}
        for event in history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1

        return {
            "total_events": len(history),
            "subscriptions": subscriptions,
            "active_executions": active,
            "events_by_type": type_counts,
        }

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()

    def clear(self) -> None:
        """Drop all subscriptions, history and active-execution tracking."""
        with self._lock:
            self._subscriptions.clear()
            self._history.clear()
            self._active_executions.clear()

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        execution_id: str | None = None,
        timeout: float | None = None,
    ) -> ExecutionEvent | None:
        """
        Wait for a specific event to occur.

        Args:
            event_type: Type of event to wait for
            execution_id: Filter by execution
            timeout: Maximum time to wait (seconds)

        Returns:
            The event if received, None if timeout
        """
        result: ExecutionEvent | None = None
        event_received = asyncio.Event()

        def handler(event: ExecutionEvent) -> None:
            nonlocal result
            if result is None:
                result = event
                event_received.set()

        unsubscribe = self.subscribe(event_type, handler, filter_execution=execution_id)

        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()

            return result
        finally:
            unsubscribe()
