from __future__ import annotations

import queue
import threading
from collections import deque
from typing import Deque, Dict, List, Tuple

from .types import LogEntry


class LogHub:
    """
    Fan-out of job log entries to live subscribers (e.g. an SSE stream).

    A short per-job backlog lets a late subscriber replay the most recent
    entries before following new ones. The job store stays the source of
    truth; the hub only carries what was appended while someone listens, and
    a backlog is dropped once its job is finished.
    """

    def __init__(self, *, buffer_size: int = 200, queue_size: int = 1000) -> None:
        self._lock = threading.Lock()
        self._buffers: Dict[str, Deque[LogEntry]] = {}
        self._subscribers: Dict[str, List[queue.Queue[LogEntry]]] = {}
        self._buffer_size = buffer_size
        self._queue_size = queue_size

    def publish(self, job_id: str, entry: LogEntry) -> None:
        with self._lock:
            buf = self._buffers.setdefault(job_id, deque(maxlen=self._buffer_size))
            buf.append(entry)
            subscribers = list(self._subscribers.get(job_id, []))

        for q in subscribers:
            try:
                q.put_nowait(entry)
            except queue.Full:
                # Slow consumer; it can re-read the job log.
                continue

    def subscribe(self, job_id: str) -> Tuple[queue.Queue[LogEntry], List[LogEntry]]:
        q: queue.Queue[LogEntry] = queue.Queue(maxsize=self._queue_size)
        with self._lock:
            self._subscribers.setdefault(job_id, []).append(q)
            backlog = list(self._buffers.get(job_id, deque()))
        return q, backlog

    def unsubscribe(self, job_id: str, q: queue.Queue[LogEntry]) -> None:
        with self._lock:
            subs = self._subscribers.get(job_id)
            if not subs:
                return
            self._subscribers[job_id] = [s for s in subs if s is not q]
            if not self._subscribers[job_id]:
                self._subscribers.pop(job_id, None)

    def drop(self, job_id: str) -> None:
        """Forget a finished job's backlog; open subscriber queues keep draining."""
        with self._lock:
            self._buffers.pop(job_id, None)
