"""A bounded FIFO queue of events with optional on-disk persistence."""

from __future__ import annotations

import json
import os
import threading
import uuid
from collections import deque
from dataclasses import replace
from pathlib import Path

from lexd.logger import get_logger
from lexd.models import Event

DEFAULT_QUEUE_CAPACITY = 1000
_POLL_INTERVAL = 0.05


class QueueStoppedError(Exception):
    """Raised when the queue has been stopped."""


class EventQueue:
    """Thread-safe FIFO queue of events waiting to be processed.

    When a persistence path is set, events still queued at stop time are
    written to it and loaded back by the next start.
    """

    def __init__(self, capacity: int = DEFAULT_QUEUE_CAPACITY, persist_path: str | os.PathLike = "") -> None:
        if capacity <= 0:
            capacity = DEFAULT_QUEUE_CAPACITY
        self.capacity = capacity
        self.persist_path = os.fspath(persist_path) if persist_path else ""
        self._items: deque[Event] = deque()
        self._ready = threading.Condition()
        self._stop_lock = threading.Lock()
        self._stopped = False

    def __len__(self) -> int:
        with self._ready:
            return len(self._items)

    def enqueue(self, event: Event) -> str:
        """Add an event, giving it a fresh ID if it has none; return its ID.

        Blocks while the queue is full. Raises QueueStoppedError once the
        queue has been stopped.
        """
        if not event.id:
            event = replace(event, id=str(uuid.uuid4()))
        with self._ready:
            while True:
                if self._stopped:
                    raise QueueStoppedError(
                        f"event queue is stopped, cannot enqueue event {event.id}"
                    )
                if len(self._items) < self.capacity:
                    break
                self._ready.wait()
            self._items.append(event)
            self._ready.notify_all()
        get_logger().debug(
            "Event enqueued",
            extra={"event_id": event.id, "action_id": event.action_id, "source_id": event.source_id},
        )
        return event.id

    def dequeue(self) -> Event:
        """Remove and return the oldest event, blocking until one is available.

        Events still queued after a stop are handed out; once none are left
        QueueStoppedError is raised.
        """
        event = self._take(None)
        assert event is not None
        return event

    def _take(self, cancel_event: threading.Event | None) -> Event | None:
        """Like dequeue, but return None as soon as ``cancel_event`` is set."""
        with self._ready:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    return None
                if self._items:
                    event = self._items.popleft()
                    self._ready.notify_all()
                    break
                if self._stopped:
                    raise QueueStoppedError("event queue stopped")
                self._ready.wait(None if cancel_event is None else _POLL_INTERVAL)
        get_logger().debug("Event dequeued", extra={"event_id": event.id})
        return event

    def start(self) -> None:
        """Load persisted events; a failure to load is logged and the queue starts as it is."""
        log = get_logger()
        try:
            self._load_state()
        except (OSError, ValueError) as error:
            log.error("Failed to load queue state, starting empty.", extra={"error": str(error)})
        else:
            log.info(
                "Event queue started",
                extra={"capacity": self.capacity, "persistence_path": self.persist_path},
            )

    def stop(self) -> None:
        """Stop accepting events and persist those still queued.

        Calling it again does nothing. Errors while saving are logged and raised.
        """
        log = get_logger()
        with self._stop_lock, self._ready:
            if self._stopped:
                return
            log.info("Stopping event queue...")
            self._stopped = True
            self._ready.notify_all()
            try:
                self._save_state()
            except (OSError, ValueError, TypeError) as error:
                log.error("Failed to save queue state during stop.", extra={"error": str(error)})
                raise
        log.info("Event queue stopped successfully.")

    def _load_state(self) -> None:
        log = get_logger()
        if not self.persist_path:
            log.debug("Queue persistence path not set, skipping load.")
            return
        path = Path(self.persist_path)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            log.info("Queue persistence file not found, starting fresh.", extra={"path": self.persist_path})
            return
        if not data:
            log.info("Queue persistence file is empty, starting fresh.", extra={"path": self.persist_path})
            return

        try:
            records = json.loads(data)
            if records is None:
                records = []
            if not isinstance(records, list):
                raise ValueError("expected a JSON array of events")
            events = [Event.from_dict(record) for record in records]
        except ValueError as error:
            raise ValueError(
                f"failed to unmarshal queue state from '{self.persist_path}': {error}"
            ) from error

        count = 0
        with self._ready:
            try:
                for event in events:
                    if len(self._items) >= self.capacity:
                        log.error(
                            "Failed to enqueue persisted event during load (queue full?)",
                            extra={"event_id": event.id},
                        )
                        raise ValueError(f"failed to load event {event.id}, queue likely full")
                    self._items.append(event)
                    count += 1
            finally:
                self._ready.notify_all()
        log.info("Loaded events from persistence.", extra={"count": count, "path": self.persist_path})

    def _save_state(self) -> None:
        """Drain the queue into the persistence file; the caller holds the lock."""
        log = get_logger()
        if not self.persist_path:
            log.debug("Queue persistence path not set, skipping save.")
            return

        events = list(self._items)
        self._items.clear()
        if not events:
            log.info("No events in queue to persist.")
        log.info("Persisting events to disk.", extra={"count": len(events), "path": self.persist_path})

        data = json.dumps([event.to_dict() for event in events], indent=2)
        path = Path(self.persist_path)
        temp = path.with_name(path.name + ".tmp")
        temp.write_text(data, encoding="utf-8")
        try:
            os.replace(temp, path)
        except OSError:
            temp.unlink(missing_ok=True)
            raise
        log.info("Successfully persisted queue state.", extra={"count": len(events)})