"""Progress event channel for one orchestration run.

Two read paths over the same run:
- push: iterate the channel to receive events in seq order as they are
  emitted (best-effort; an observer that goes away never blocks the run)
- pull: the session's persisted log (session_manager.get_session_log) and
  status (session_manager.get_session_status), for observers that
  reconnect mid-run or after it finished

Events are kept in memory for the life of the run, so ``replay(after_seq)``
lets a push observer catch up from the last seq it saw. Log lines emitted
before the session exists are buffered and persisted, in order, when
``bind_session`` is called.
"""

import logging
import threading
import uuid
from typing import Any, Iterator, Optional

from tailor.executor import session_manager
from tailor.executor.schemas import EventKind, LogLevel, ProgressEvent

logger = logging.getLogger(__name__)

# How long an idle iterator waits before re-checking for events
POLL_INTERVAL = 1.0  # seconds


class ProgressChannel:
    """Ordered, replayable event stream for one run.

    Usage:
        channel = ProgressChannel()
        channel.log("Fetching job posting...")
        channel.bind_session(session_id)
        ...
        channel.complete(result.model_dump(mode="json"))

        for event in channel:  # from another thread
            send(event)
    """

    def __init__(self, run_id: Optional[str] = None, persist: bool = True):
        self.run_id = run_id or f"run-{uuid.uuid4().hex[:12]}"
        self.persist = persist
        self.session_id: Optional[str] = None
        self._events: list[ProgressEvent] = []
        self._log_lines: list[dict[str, Any]] = []
        self._pending: list[dict[str, Any]] = []
        self._closed = False
        self._cond = threading.Condition()

    # -- Producer side --

    def emit(self, kind: EventKind, payload: Optional[dict[str, Any]] = None) -> ProgressEvent:
        with self._cond:
            if self._closed:
                raise RuntimeError(f"Progress channel {self.run_id} is closed")
            event = ProgressEvent(seq=len(self._events) + 1, kind=kind, payload=payload or {})
            self._events.append(event)
            self._cond.notify_all()
        return event

    def log(self, message: str, level: str = "info") -> ProgressEvent:
        """Record one human-readable progress line."""
        level = LogLevel(level)
        entry = {"message": message, "level": level.value, "index": None}
        if self.session_id is not None:
            entry["index"] = self._persist_line(message, level)
        else:
            self._pending.append(entry)
        self._log_lines.append(entry)
        logger.info(f"[{self.run_id}] {message}")
        return self.emit(EventKind.LOG, dict(entry))

    def bind_session(self, session_id: str) -> ProgressEvent:
        """Announce the session id and flush buffered log lines to it."""
        if self.session_id is not None:
            raise RuntimeError(f"Run {self.run_id} is already bound to {self.session_id}")
        self.session_id = session_id
        for entry in self._pending:
            entry["index"] = self._persist_line(entry["message"], LogLevel(entry["level"]))
        self._pending.clear()
        return self.emit(EventKind.SESSION, {"session_id": session_id, "run_id": self.run_id})

    def complete(self, result: dict[str, Any]) -> ProgressEvent:
        event = self.emit(EventKind.COMPLETE, {"result": result})
        self.close()
        return event

    def error(self, message: str, code: Optional[str] = None, terminal: bool = True) -> ProgressEvent:
        """Report a failure. Non-terminal errors are advisory and leave the stream open."""
        payload: dict[str, Any] = {"message": message, "terminal": terminal}
        if code:
            payload["code"] = code
        if self.session_id:
            payload["session_id"] = self.session_id
        event = self.emit(EventKind.ERROR, payload)
        if terminal:
            self.close()
        return event

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def _persist_line(self, message: str, level: LogLevel) -> Optional[int]:
        if not self.persist:
            return None
        line = session_manager.append_log(self.session_id, message, level, run_id=self.run_id)
        return line.index

    # -- Observer side --

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_seq(self) -> int:
        with self._cond:
            return len(self._events)

    def log_snapshot(self) -> list[dict[str, Any]]:
        """Every log line of this run, in order (bundled into the assistant message)."""
        return [dict(entry) for entry in self._log_lines]

    def replay(self, after_seq: int = 0) -> list[ProgressEvent]:
        """Events with seq > after_seq, in order."""
        with self._cond:
            return list(self._events[max(after_seq, 0):])

    def events(self, after_seq: int = 0, timeout: Optional[float] = None) -> Iterator[ProgressEvent]:
        """Yield events with seq > after_seq until the channel closes.

        ``timeout`` bounds how long to wait for the next event; None waits
        until the run ends.
        """
        position = max(after_seq, 0)
        while True:
            with self._cond:
                while position >= len(self._events) and not self._closed:
                    if not self._cond.wait(timeout=timeout if timeout is not None else POLL_INTERVAL):
                        if timeout is not None:
                            return
                pending = self._events[position:]
                finished = self._closed
            for event in pending:
                yield event
            position += len(pending)
            if finished and position >= self.last_seq:
                return

    def __iter__(self) -> Iterator[ProgressEvent]:
        return self.events()
