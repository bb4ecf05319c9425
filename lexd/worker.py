"""A pool of worker threads that take events from the queue and process them."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod

from lexd.eventqueue import EventQueue, QueueStoppedError
from lexd.logger import get_logger
from lexd.models import ApplicationSettings, Event


class Processor(ABC):
    """Something that handles a dequeued event."""

    @abstractmethod
    def process(self, event: Event) -> None:
        """Handle one event; raise an exception to report failure."""


class WorkerPool:
    """Runs ``max_concurrency`` threads that feed queued events to a processor."""

    def __init__(self, settings: ApplicationSettings, event_queue: EventQueue, processor: Processor) -> None:
        self.settings = settings
        self.event_queue = event_queue
        self.processor = processor
        self._lock = threading.Lock()
        self._cancel: threading.Event | None = None
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        """Launch the worker threads; at least one is started."""
        log = get_logger()
        concurrency = self.settings.max_concurrency
        if concurrency <= 0:
            log.warning(
                "MaxConcurrency not set or invalid, defaulting to 1",
                extra={"configured_value": concurrency},
            )
            concurrency = 1

        cancel = threading.Event()
        threads = [
            threading.Thread(
                target=self._run,
                args=(worker_id, cancel),
                name=f"lexd-worker-{worker_id}",
                daemon=True,
            )
            for worker_id in range(concurrency)
        ]
        with self._lock:
            self._cancel = cancel
            self._threads = threads

        log.info("Starting worker pool", extra={"concurrency": concurrency})
        for thread in threads:
            thread.start()
        log.info("Worker pool started")

    def stop(self) -> None:
        """Signal the workers to stop and wait until they have finished."""
        log = get_logger()
        log.info("Stopping worker pool...")
        with self._lock:
            cancel, threads = self._cancel, list(self._threads)
        if cancel is not None:
            cancel.set()
        current = threading.current_thread()
        for thread in threads:
            if thread is not current:
                thread.join()
        log.info("Worker pool stopped")

    def _run(self, worker_id: int, cancel: threading.Event) -> None:
        log = get_logger()
        log.info("Worker started", extra={"worker_id": worker_id})
        while not cancel.is_set():
            try:
                event = self.event_queue._take(cancel)
            except QueueStoppedError:
                log.info("Worker stopping: event queue stopped", extra={"worker_id": worker_id})
                return
            if event is None:
                log.info("Worker stopping: cancelled", extra={"worker_id": worker_id})
                return

            fields = {"worker_id": worker_id, "event_id": event.id, "action_id": event.action_id}
            log.info("Worker processing event", extra=fields)
            try:
                self.processor.process(event)
            except Exception as error:  # a failing event must not kill the worker
                log.error("Worker failed to process event", extra={**fields, "error": str(error)})
            else:
                log.info("Worker finished processing event", extra=fields)
        log.info(
            "Worker stopping after processing event due to cancellation",
            extra={"worker_id": worker_id},
        )