from __future__ import annotations

from threading import Event, Thread
from typing import Callable

from .db import Store


class ControlLoop:
    """Periodic background loop on its own daemon thread.

    Subclasses implement ``tick()``. A failing tick is logged to the event
    store and the loop carries on with the next one.
    """

    name = "loop"

    def __init__(self, events: Store, interval_s: Callable[[], float]):
        self.events = events
        self._interval_s = interval_s
        self._stop = Event()
        self._thr: Thread | None = None

    def tick(self) -> None:
        raise NotImplementedError

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name=f"fleet-{self.name}", daemon=True)
        self._thr.start()

    def stop(self, timeout_s: float = 5.0) -> None:
        self._stop.set()
        if self._thr:
            self._thr.join(timeout=timeout_s)
            self._thr = None

    @property
    def running(self) -> bool:
        return bool(self._thr and self._thr.is_alive())

    def _loop(self) -> None:
        self.events.log_event("INFO", f"{self.name} loop started")
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                self.events.log_event("ERROR", f"{self.name} tick failed: {type(e).__name__}: {e}")
            self._stop.wait(max(0.05, self._interval_s()))
        self.events.log_event("INFO", f"{self.name} loop stopped")
