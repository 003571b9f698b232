"""Diagnostic output for the reward core.

Every reward call produces one DiagnosticEvent. Events are handed to a
DiagnosticHub, which routes them to configured backends (stdlib logging,
JSONL files, in-memory collectors) on background threads. Emission is
fire-and-forget: a slow or failing backend never delays or fails a tick.

Usage:
    from tickreward.telemetry import DiagnosticHub, LoggingOutput, FileOutput

    hub = DiagnosticHub()
    hub.add_backend(LoggingOutput())
    hub.add_backend(FileOutput("diagnostics.jsonl"))

    hub.emit(event)
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from pathlib import Path
from typing import Any
from uuid import uuid4

from tickreward.contracts import DiagnosticRecord

_logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


class DiagnosticEventType(Enum):
    """Types of diagnostic events."""

    REWARD_COMPUTED = auto()
    REWARD_FAILED = auto()
    SESSION_RESET = auto()


@dataclass
class DiagnosticEvent:
    """A diagnostic event for the logging collaborator."""

    event_id: str = field(default_factory=lambda: str(uuid4()))
    event_type: DiagnosticEventType = DiagnosticEventType.REWARD_COMPUTED
    timestamp: datetime = field(default_factory=_utc_now)

    # Context
    session_id: str = "default"
    tick: int | None = None

    message: str = ""
    severity: str = "info"  # debug, info, warning, error
    data: DiagnosticRecord | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert event to a JSON-safe dictionary."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.name,
            "timestamp": self.timestamp.isoformat(),
            "session_id": self.session_id,
            "tick": self.tick,
            "message": self.message,
            "severity": self.severity,
            "data": self.data.to_dict() if self.data is not None else None,
        }


# =============================================================================
# Backends
# =============================================================================

class OutputBackend(ABC):
    """Base class for diagnostic output backends."""

    def start(self) -> None:
        """Start the backend (e.g., open files)."""
        pass

    @abstractmethod
    def emit(self, event: DiagnosticEvent) -> None:
        """Emit a diagnostic event to this backend."""
        pass

    def close(self) -> None:
        """Close the backend and release resources."""
        pass


class LoggingOutput(OutputBackend):
    """Route diagnostic events to stdlib logging.

    Events carrying warnings are logged at WARNING, failures at ERROR,
    everything else at DEBUG so per-tick chatter stays out of INFO logs.

    Args:
        logger_name: Logger to write to.
        min_severity: Minimum severity level to forward.
    """

    _SEVERITY_ORDER = {"debug": 0, "info": 1, "warning": 2, "error": 3}
    _LEVELS = {
        "debug": logging.DEBUG,
        "info": logging.DEBUG,
        "warning": logging.WARNING,
        "error": logging.ERROR,
    }

    def __init__(self, logger_name: str = "tickreward.diagnostics", min_severity: str = "debug"):
        self._logger = logging.getLogger(logger_name)
        self.min_severity = min_severity

    def emit(self, event: DiagnosticEvent) -> None:
        if self._SEVERITY_ORDER.get(event.severity, 1) < self._SEVERITY_ORDER.get(self.min_severity, 0):
            return

        level = self._LEVELS.get(event.severity, logging.DEBUG)
        record = event.data
        if record is None:
            self._logger.log(level, "[%s] %s", event.session_id, event.message or event.event_type.name)
            return

        warnings = ",".join(w.value for w in record.warnings) or "-"
        self._logger.log(
            level,
            "[%s] tick=%s phase=%s value=%.6f raw=%.6f mean=%.6f var=%.6f warnings=%s%s",
            event.session_id,
            record.tick,
            record.phase.value,
            record.normalized_value,
            record.raw,
            record.running_mean,
            record.running_variance,
            warnings,
            f" error={record.error}" if record.error else "",
        )


class FileOutput(OutputBackend):
    """Output diagnostic events to a file in JSONL format.

    Args:
        path: Path to output file. Events are appended.
        buffer_size: Number of events to buffer before flushing to disk.
    """

    def __init__(self, path: str | Path, buffer_size: int = 10):
        self.path = Path(path)
        self.buffer_size = buffer_size
        self._buffer: list[dict[str, Any]] = []
        self._file = None

    def start(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "a", encoding="utf-8")

    def emit(self, event: DiagnosticEvent) -> None:
        if self._file is None:
            self.start()
        self._buffer.append(event.to_dict())
        if len(self._buffer) >= self.buffer_size:
            self.flush()

    def flush(self) -> None:
        """Flush buffered events to disk."""
        if self._file is None:
            return
        for event_dict in self._buffer:
            self._file.write(json.dumps(event_dict) + "\n")
        self._file.flush()
        self._buffer.clear()

    def close(self) -> None:
        if self._file is not None and not self._file.closed:
            self.flush()
            self._file.close()


class MemoryOutput(OutputBackend):
    """Collect events in memory (evaluators and tests)."""

    def __init__(self) -> None:
        self._events: list[DiagnosticEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: DiagnosticEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[DiagnosticEvent]:
        with self._lock:
            return list(self._events)

    def records(self) -> list[DiagnosticRecord]:
        """Diagnostic records of all collected events, in arrival order."""
        return [e.data for e in self.events if e.data is not None]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


# =============================================================================
# Hub
# =============================================================================

class BackendWorker:
    """Worker thread that processes events for a single backend.

    Each backend gets its own bounded queue so a slow backend (disk I/O)
    cannot stall a fast one (in-memory collection). Events are dropped when
    the queue is full.
    """

    def __init__(
        self,
        backend: OutputBackend,
        max_queue_size: int = 100,
        name: str | None = None,
    ):
        self._backend = backend
        self._queue: queue.Queue[DiagnosticEvent | None] = queue.Queue(maxsize=max_queue_size)
        self._name = name or backend.__class__.__name__
        self._thread = threading.Thread(
            target=self._worker_loop,
            name=f"BackendWorker-{self._name}",
            daemon=True,
        )
        self._stopped = False
        self._dropped_events = 0
        self._processed_events = 0
        self._failed_events = 0
        self._total_processing_time = 0.0
        self._thread.start()

    @property
    def name(self) -> str:
        return self._name

    def enqueue(self, event: DiagnosticEvent) -> None:
        """Enqueue event for processing (non-blocking)."""
        if self._stopped:
            return

        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self._dropped_events += 1
            if self._dropped_events % 100 == 1:
                _logger.warning(
                    "Backend %s queue full, dropped %d events", self._name, self._dropped_events
                )

    def join(self) -> None:
        """Block until every queued event has been processed."""
        self._queue.join()

    def get_stats(self) -> dict[str, int | float]:
        """Processed/dropped/failed counts and average processing time."""
        avg_time = (
            self._total_processing_time / self._processed_events
            if self._processed_events > 0
            else 0.0
        )
        return {
            "processed_events": self._processed_events,
            "dropped_events": self._dropped_events,
            "failed_events": self._failed_events,
            "avg_processing_time_ms": avg_time * 1000,
        }

    def stop(self, timeout: float = 5.0) -> None:
        """Drain pending events, then stop the worker thread.

        `_stopped` is set only after the sentinel is queued so events
        enqueued during the drain are not lost.
        """
        if self._stopped:
            return

        if self._thread.is_alive():
            self._queue.join()

        try:
            self._queue.put(None, timeout=1.0)
        except queue.Full:
            _logger.warning("Backend worker %s queue full at shutdown", self._name)

        self._stopped = True

        if self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                _logger.warning("Backend worker %s did not stop within %ss", self._name, timeout)

    def _worker_loop(self) -> None:
        while True:
            try:
                event = self._queue.get(timeout=1.0)
            except queue.Empty:
                continue

            if event is None:  # Shutdown signal
                self._queue.task_done()
                break

            start_time = time.perf_counter()
            try:
                self._backend.emit(event)
                self._processed_events += 1
            except Exception as e:
                self._failed_events += 1
                _logger.error("Error in backend %s: %s", self._name, e)
            finally:
                self._total_processing_time += time.perf_counter() - start_time
                self._queue.task_done()


class DiagnosticHub:
    """Routes diagnostic events to multiple backends asynchronously.

    Architecture:
        1. emit(): non-blocking put on the central queue (drops when full)
        2. Main worker: fans events out to per-backend workers
        3. Backend workers: process independently, bounded queues

    Lifecycle Contract:
        - add_backend(): starts backend immediately; raises RuntimeError if closed
        - emit(): never raises; drops (with one warning) after close()
        - flush(): blocks until every queued event reached its backends
        - close(): idempotent; drains queues, stops workers, closes backends
        - reset(): close() then reopen for reuse (not thread-safe)
    """

    def __init__(self, max_queue_size: int = 1000, backend_queue_size: int = 100):
        self._backends: list[OutputBackend] = []
        self._backend_workers: list[BackendWorker] = []
        self._backend_queue_size = backend_queue_size
        self._closed = False
        self._emit_after_close_warned = False
        self._queue: queue.Queue[DiagnosticEvent | None] = queue.Queue(maxsize=max_queue_size)
        self._worker_thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._dropped_events = 0

    @property
    def dropped_events(self) -> int:
        """Events rejected by the central queue."""
        return self._dropped_events

    def _start_worker(self) -> None:
        with self._lock:
            if self._worker_thread is None or not self._worker_thread.is_alive():
                self._worker_thread = threading.Thread(
                    target=self._worker_loop, name="DiagnosticHubWorker", daemon=True
                )
                self._worker_thread.start()

    def _worker_loop(self) -> None:
        while True:
            try:
                event = self._queue.get(timeout=1.0)
            except queue.Empty:
                continue

            if event is None:  # Shutdown signal
                self._queue.task_done()
                break

            try:
                for worker in list(self._backend_workers):
                    worker.enqueue(event)
            finally:
                self._queue.task_done()

    def add_backend(self, backend: OutputBackend) -> None:
        """Start `backend` and attach it behind its own worker thread.

        Raises:
            RuntimeError: If the hub has been closed. Use reset() to reopen.
            Exception: If backend.start() fails; the error is logged and re-raised.
        """
        if self._closed:
            raise RuntimeError(
                "Cannot add backend to closed DiagnosticHub. "
                "Call reset() to reopen the hub before adding backends."
            )
        try:
            backend.start()
        except Exception:
            _logger.exception("Failed to start backend %s, not adding", backend.__class__.__name__)
            raise

        self._backends.append(backend)
        self._backend_workers.append(
            BackendWorker(backend=backend, max_queue_size=self._backend_queue_size)
        )
        self._start_worker()

    def emit(self, event: DiagnosticEvent) -> None:
        """Queue `event` for all backends. Never blocks, never raises."""
        if self._closed:
            if not self._emit_after_close_warned:
                _logger.warning("emit() called on closed DiagnosticHub (event dropped)")
                self._emit_after_close_warned = True
            return
        if not self._backend_workers:
            return

        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self._dropped_events += 1
            _logger.warning("DiagnosticHub queue full, dropping diagnostic event")

    def flush(self) -> None:
        """Block until all queued events have been delivered to backends."""
        if self._closed:
            return
        if self._worker_thread is None or not self._worker_thread.is_alive():
            return

        self._queue.join()
        for worker in self._backend_workers:
            worker.join()

    def get_backend_stats(self) -> dict[str, dict[str, int | float]]:
        """Per-backend worker statistics keyed by backend name."""
        return {worker.name: worker.get_stats() for worker in self._backend_workers}

    def reset(self) -> None:
        """Close all backends and reopen the hub for reuse.

        Warning:
            NOT THREAD-SAFE. Call only when no other thread is emitting.
        """
        self.close()
        self._backends.clear()
        self._backend_workers.clear()
        self._closed = False
        self._emit_after_close_warned = False
        self._queue = queue.Queue(maxsize=self._queue.maxsize)
        self._worker_thread = None

    def close(self) -> None:
        """Drain queues, stop workers and close backends (idempotent)."""
        if self._closed:
            return

        # Set first so no event can land behind the shutdown sentinel
        self._closed = True

        if self._worker_thread is not None and self._worker_thread.is_alive():
            self._queue.join()
            try:
                self._queue.put(None, timeout=2.0)
            except queue.Full:
                _logger.warning("DiagnosticHub queue full at shutdown")
            self._worker_thread.join(timeout=5.0)

        for worker in self._backend_workers:
            worker.stop(timeout=5.0)

        for backend in self._backends:
            self._close_backend(backend)

    @staticmethod
    def _close_backend(backend: OutputBackend) -> None:
        try:
            backend.close()
        except Exception as e:
            _logger.error("Error closing backend %s: %s", backend.__class__.__name__, e)


# Global hub instance
_global_hub: DiagnosticHub | None = None


def get_hub() -> DiagnosticHub:
    """Get or create the process-default DiagnosticHub."""
    global _global_hub
    if _global_hub is None:
        _global_hub = DiagnosticHub()
    return _global_hub


def reset_hub() -> None:
    """Reset the process-default hub (closes and detaches its backends)."""
    if _global_hub is not None:
        _global_hub.reset()


def configure_logging(level: str | int = "INFO") -> None:
    """Configure root logging for scripts."""
    logging.basicConfig(
        level=level if isinstance(level, int) else level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


__all__ = [
    "BackendWorker",
    "DiagnosticEvent",
    "DiagnosticEventType",
    "DiagnosticHub",
    "FileOutput",
    "LoggingOutput",
    "MemoryOutput",
    "OutputBackend",
    "configure_logging",
    "get_hub",
    "reset_hub",
]
