from __future__ import annotations

import logging
import queue
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock, Thread
from typing import Any, Iterator, Protocol

logger = logging.getLogger(__name__)


class SpanSink(Protocol):
    def record_span(self, operation: str, duration_ms: float, metadata: dict[str, Any]) -> None: ...


@dataclass(frozen=True)
class Span:
    operation: str
    duration_ms: float
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class Tracer:
    """Times orchestration decisions and forwards them to a span sink.

    Export is best-effort: spans go through a bounded queue drained by a
    daemon thread, a full queue drops the span, and sink errors are logged.
    Nothing here ever fails the traced operation.
    """

    _STOP = object()

    def __init__(self, sink: SpanSink | None = None, queue_size: int = 1000, keep: int = 100):
        self.sink = sink
        self._queue: queue.Queue = queue.Queue(maxsize=max(1, queue_size))
        self._recent: deque[Span] = deque(maxlen=keep)
        self._thr: Thread | None = None
        self._dropped_lock = Lock()
        self._dropped = 0

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._thr = Thread(target=self._drain, name="fleet-tracer", daemon=True)
        self._thr.start()

    def stop(self, timeout_s: float = 2.0) -> None:
        if not self._thr:
            return
        try:
            self._queue.put(self._STOP, timeout=timeout_s)
        except queue.Full:
            logger.warning("Trace queue full on shutdown; dropping pending spans")
        self._thr.join(timeout=timeout_s)
        self._thr = None

    @contextmanager
    def span(self, operation: str, **metadata: Any) -> Iterator[dict[str, Any]]:
        """Time the enclosed block. The yielded dict can be enriched in place."""
        start = time.perf_counter()
        try:
            yield metadata
        except Exception as e:
            metadata["error"] = f"{type(e).__name__}: {e}"
            raise
        finally:
            self.record(operation, (time.perf_counter() - start) * 1000.0, metadata)

    def record(self, operation: str, duration_ms: float, metadata: dict[str, Any] | None = None) -> None:
        span = Span(operation=operation, duration_ms=round(duration_ms, 3), metadata=dict(metadata or {}))
        self._recent.append(span)
        if self.sink is None:
            return
        try:
            self._queue.put_nowait(span)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1

    def recent(self, limit: int = 100) -> list[Span]:
        spans = list(self._recent)
        spans.reverse()
        return spans[:limit]

    def flush(self) -> None:
        """Export every queued span on the calling thread."""
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            if item is self._STOP:
                # leave the drain thread its stop signal
                self._queue.put_nowait(item)
                return
            self._emit(item)

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            if item is self._STOP:
                return
            self._emit(item)

    def _emit(self, span: Span) -> None:
        try:
            self.sink.record_span(span.operation, span.duration_ms, span.metadata)
        except Exception as e:
            logger.warning("Dropping span %s: %s: %s", span.operation, type(e).__name__, e)
