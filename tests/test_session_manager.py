import re
import threading
from datetime import datetime, timedelta

import pytest

from tailor.executor import session_manager
from tailor.executor.errors import ConcurrentModification, SessionLocked, SessionNotFound
from tailor.executor.schemas import (
    ArtifactRef,
    ChatMessage,
    DerivedStatus,
    DocumentType,
    JobContext,
    LogLevel,
    SessionState,
)

OWNER = "owner-1"


def _job():
    return JobContext(company_name="Acme Analytics", job_title="Data Engineer", job_description="Build pipelines")


def _finished_session(state=SessionState.COMPLETED):
    session = session_manager.create_session(OWNER, _job())
    session_manager.finish_session(session.session_id, state)
    return session.session_id


def _cv_ref(path="users/owner-1/sessions/s/generated_files/cv.tex"):
    return ArtifactRef(document_type=DocumentType.CV, source_path=path, page_count=2)


def test_session_id_is_readable_and_unique():
    job = _job()
    now = datetime(2026, 3, 14, 9, 26, 53)

    first = session_manager.make_session_id(job, now)
    second = session_manager.make_session_id(job, now)

    assert re.fullmatch(r"2026-03-14_092653_Acme_Analytics_Data_Engineer_[0-9a-f]{6}", first)
    assert first != second


def test_create_and_load_session():
    created = session_manager.create_session(OWNER, _job())

    loaded = session_manager.get_session(created.session_id)

    assert loaded.state == SessionState.PROCESSING
    assert loaded.locked is False
    assert loaded.job.company_name == "Acme Analytics"
    assert loaded.artifacts == {}


def test_timestamps_are_utc_aware():
    created = session_manager.create_session(OWNER, _job())

    stamp = datetime.fromisoformat(session_manager.get_session(created.session_id).created_at)

    assert stamp.utcoffset() == timedelta(0)


def test_foreign_owner_sees_not_found():
    sid = _finished_session()

    with pytest.raises(SessionNotFound):
        session_manager.load_owned_session(sid, "someone-else")
    with pytest.raises(SessionNotFound):
        session_manager.load_owned_session("missing", OWNER)


def test_list_sessions_only_returns_owner_sessions():
    sid = _finished_session()
    session_manager.create_session("owner-2", _job())

    summaries = session_manager.list_sessions(OWNER)

    assert [s["session_id"] for s in summaries] == [sid]
    assert summaries[0]["company_name"] == "Acme Analytics"


def test_begin_processing_rejects_second_run():
    sid = _finished_session()

    session_manager.begin_processing(sid)
    with pytest.raises(ConcurrentModification):
        session_manager.begin_processing(sid)


def test_begin_processing_on_locked_and_missing_sessions():
    sid = _finished_session()
    session_manager.approve_session(sid, OWNER)

    with pytest.raises(SessionLocked):
        session_manager.begin_processing(sid)
    with pytest.raises(SessionNotFound):
        session_manager.begin_processing("missing")


def test_racing_runs_exactly_one_wins():
    sid = _finished_session()
    barrier = threading.Barrier(4)
    outcomes = []
    lock = threading.Lock()

    def contend():
        barrier.wait()
        try:
            session_manager.begin_processing(sid)
            result = "won"
        except ConcurrentModification:
            result = "conflict"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=contend) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["conflict", "conflict", "conflict", "won"]


def test_approve_locks_and_is_idempotent():
    sid = _finished_session()

    first = session_manager.approve_session(sid, OWNER)
    second = session_manager.approve_session(sid, OWNER)

    assert first.locked is True
    assert first.approved_at is not None
    assert second.locked is True
    assert second.approved_at == first.approved_at
    messages = [line.message for line in session_manager.get_session_log(sid)]
    assert messages.count("Session approved and locked") == 1


def test_failed_session_can_be_approved():
    sid = _finished_session(SessionState.FAILED)

    assert session_manager.approve_session(sid).locked is True


def test_approve_refused_while_processing():
    session = session_manager.create_session(OWNER, _job())

    with pytest.raises(ConcurrentModification):
        session_manager.approve_session(session.session_id, OWNER)
    assert session_manager.get_session(session.session_id).locked is False


def test_write_artifacts_refused_after_approval():
    sid = _finished_session()
    session_manager.write_artifacts(sid, {"cv": _cv_ref()})
    session_manager.approve_session(sid)

    with pytest.raises(SessionLocked):
        session_manager.write_artifacts(sid, {"cv": _cv_ref("other.tex")})

    assert session_manager.get_session(sid).artifacts["cv"].source_path.endswith("cv.tex")


def test_ensure_mutable():
    sid = _finished_session()
    session_manager.ensure_mutable(session_manager.get_session(sid))

    session_manager.begin_processing(sid)
    with pytest.raises(ConcurrentModification):
        session_manager.ensure_mutable(session_manager.get_session(sid))

    session_manager.finish_session(sid, SessionState.COMPLETED)
    session_manager.approve_session(sid)
    with pytest.raises(SessionLocked):
        session_manager.ensure_mutable(session_manager.get_session(sid))


def test_finish_session_requires_terminal_state():
    session = session_manager.create_session(OWNER, _job())

    with pytest.raises(ValueError):
        session_manager.finish_session(session.session_id, SessionState.PROCESSING)


def test_log_indices_are_dense_and_after_filters():
    sid = _finished_session()
    for n in range(5):
        line = session_manager.append_log(sid, f"step {n}", LogLevel.INFO, run_id="run-1")
        assert line.index == n

    tail = session_manager.get_session_log(sid, after=2)

    assert [line.index for line in tail] == [3, 4]
    assert [line.message for line in tail] == ["step 3", "step 4"]
    assert tail[0].run_id == "run-1"


def test_concurrent_log_appends_keep_indices_unique():
    sid = _finished_session()

    def writer(tag):
        for n in range(5):
            session_manager.append_log(sid, f"{tag}-{n}")

    threads = [threading.Thread(target=writer, args=(tag,)) for tag in "abc"]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    indices = [line.index for line in session_manager.get_session_log(sid)]
    assert indices == list(range(15))


def test_session_log_of_unknown_session():
    with pytest.raises(SessionNotFound):
        session_manager.get_session_log("missing")


def test_chat_history_is_ordered():
    sid = _finished_session()
    session_manager.append_chat_message(sid, ChatMessage(role="user", content="first"))
    session_manager.append_chat_message(sid, ChatMessage(role="assistant", content="second", result={"ok": True}))

    history = session_manager.get_session(sid).chat_history

    assert [m.content for m in history] == ["first", "second"]
    assert history[1].result == {"ok": True}


@pytest.mark.parametrize(
    "state, partial_failure, approve, expected",
    [
        (SessionState.COMPLETED, False, False, DerivedStatus.COMPLETED),
        (SessionState.COMPLETED, True, False, DerivedStatus.COMPLETED_WITH_WARNINGS),
        (SessionState.FAILED, True, False, DerivedStatus.FAILED),
        (SessionState.COMPLETED, True, True, DerivedStatus.APPROVED),
    ],
)
def test_derived_status(state, partial_failure, approve, expected):
    sid = _finished_session(state)
    session_manager.append_chat_message(
        sid, ChatMessage(role="assistant", content="done", result={"partial_failure": partial_failure})
    )
    if approve:
        session_manager.approve_session(sid)

    status = session_manager.get_session_status(sid, OWNER)

    assert status.status == expected
    assert status.log_count == (1 if approve else 0)


def test_processing_status():
    session = session_manager.create_session(OWNER, _job())

    assert session_manager.get_session_status(session.session_id).status == DerivedStatus.PROCESSING


def test_recover_orphaned_sessions():
    orphan = session_manager.create_session(OWNER, _job()).session_id
    done = _finished_session()

    assert session_manager.recover_orphaned_sessions() == 1

    recovered = session_manager.get_session(orphan)
    assert recovered.state == SessionState.FAILED
    assert recovered.error == session_manager.ORPHANED_SESSION_ERROR
    assert session_manager.get_session_log(orphan)[-1].level == LogLevel.ERROR
    assert session_manager.get_session(done).state == SessionState.COMPLETED
    assert session_manager.recover_orphaned_sessions() == 0
