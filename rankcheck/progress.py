"""Progress channel between a run and whatever transport displays it."""
from __future__ import annotations

import queue
from typing import Callable, Iterator, Optional

from .models import RunProgress

ProgressSink = Callable[[RunProgress], None]

_CLOSED = object()


class ProgressQueue:
    """Queue-backed sink: the run writes events, a transport adapter drains them.

    Put never blocks, so a slow consumer cannot stall the run's pacing. A
    bounded queue keeps one extra slot for the end marker, so close() always
    gets through even when events are being dropped.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self.maxsize = max(0, int(maxsize))
        self._queue: "queue.Queue[object]" = queue.Queue(
            maxsize=self.maxsize + 1 if self.maxsize else 0
        )
        self.dropped = 0
        self.closed = False

    def __call__(self, progress: RunProgress) -> None:
        if self.closed or (self.maxsize and self._queue.qsize() >= self.maxsize):
            self.dropped += 1
            return
        try:
            self._queue.put_nowait(progress)
        except queue.Full:
            self.dropped += 1

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_CLOSED)

    def drain(self) -> Iterator[RunProgress]:
        """Yield events already queued, without waiting for more."""
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]

    def iter_events(self, timeout: Optional[float] = None) -> Iterator[RunProgress]:
        """Yield events until close() is called; raises queue.Empty on timeout."""
        while True:
            item = self._queue.get(timeout=timeout)
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]


def fan_out(*sinks: Optional[ProgressSink]) -> ProgressSink:
    active = [s for s in sinks if s is not None]

    def emit(progress: RunProgress) -> None:
        for sink in active:
            sink(progress)

    return emit
