import threading

import pytest

from tailor.executor import session_manager
from tailor.executor.progress import ProgressChannel
from tailor.executor.schemas import EventKind, JobContext


def _session():
    return session_manager.create_session("owner-1", JobContext()).session_id


def test_seq_is_contiguous_and_replayable():
    channel = ProgressChannel(persist=False)
    channel.log("one")
    channel.log("two")
    channel.log("three")

    assert [e.seq for e in channel.replay()] == [1, 2, 3]
    assert [e.payload["message"] for e in channel.replay(after_seq=1)] == ["two", "three"]
    assert channel.last_seq == 3


def test_lines_before_session_are_flushed_in_order():
    sid = _session()
    channel = ProgressChannel()
    channel.log("Analyzing job input...")
    channel.log("Loaded source files")

    event = channel.bind_session(sid)
    channel.log("Generating CV (attempt 1/3)...")

    assert event.kind == EventKind.SESSION
    assert event.payload == {"session_id": sid, "run_id": channel.run_id}
    lines = session_manager.get_session_log(sid)
    assert [line.message for line in lines] == [
        "Analyzing job input...",
        "Loaded source files",
        "Generating CV (attempt 1/3)...",
    ]
    assert all(line.run_id == channel.run_id for line in lines)
    assert [entry["index"] for entry in channel.log_snapshot()] == [0, 1, 2]


def test_bind_session_twice_is_an_error():
    channel = ProgressChannel(persist=False)
    channel.bind_session("a")

    with pytest.raises(RuntimeError):
        channel.bind_session("b")


def test_iteration_from_another_thread_sees_every_event():
    channel = ProgressChannel(persist=False)
    received = []

    def observe():
        for event in channel:
            received.append(event)

    observer = threading.Thread(target=observe)
    observer.start()
    for n in range(20):
        channel.log(f"line {n}")
    channel.complete({"ok": True})
    observer.join(timeout=5)

    assert not observer.is_alive()
    assert [e.seq for e in received] == list(range(1, 22))
    assert received[-1].kind == EventKind.COMPLETE
    assert received[-1].payload == {"result": {"ok": True}}


def test_late_observer_resumes_after_seq():
    channel = ProgressChannel(persist=False)
    for n in range(3):
        channel.log(f"line {n}")
    channel.complete({})

    assert [e.seq for e in channel.events(after_seq=2)] == [3, 4]


def test_non_terminal_error_keeps_stream_open():
    channel = ProgressChannel(persist=False)

    channel.error("Failed to generate cover letter", "generation_backend_permanent", terminal=False)
    assert channel.closed is False
    channel.log("Generating cold email...")

    channel.error("Generation failed")
    assert channel.closed is True
    with pytest.raises(RuntimeError):
        channel.log("too late")


def test_events_timeout_returns_when_idle():
    channel = ProgressChannel(persist=False)
    channel.log("only line")

    events = list(channel.events(timeout=0.05))

    assert [e.seq for e in events] == [1]
    assert channel.closed is False
