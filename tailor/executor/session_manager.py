"""Session lifecycle and persistence.

States: processing -> completed | failed. ``locked`` is a one-way flag set
only by approval, from either terminal state.

Handles:
- Session creation and the compare-and-swap re-entry into processing
- Terminal transitions (never leaves a session stuck in processing)
- Artifact reference writes, guarded by ``locked = 0`` in SQL
- Append-only chat history and the persisted progress log
- Approval (idempotent) and derived status for pollers

Uses the database for all state. Nothing here is cached in memory, so a
poller in another thread always sees what the running orchestration wrote.
"""

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Optional

from tailor.executor.db import _json_dumps, _json_loads, adapt_sql, execute, get_connection, init_db
from tailor.executor.errors import ConcurrentModification, SessionLocked, SessionNotFound
from tailor.executor.schemas import (
    ArtifactRef,
    ChatMessage,
    DerivedStatus,
    JobContext,
    LogLevel,
    LogLine,
    Session,
    SessionState,
    SessionStatus,
)

logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"[^A-Za-z0-9]+")


def _slug(text: str, limit: int = 30) -> str:
    return _SLUG_RE.sub("_", text or "").strip("_")[:limit].strip("_") or "unknown"


def make_session_id(job: JobContext, now: Optional[datetime] = None) -> str:
    """``{YYYY-MM-DD_HHMMSS}_{company}_{title}_{suffix}``, readable and unique."""
    now = now or datetime.now(timezone.utc)
    return (
        f"{now.strftime('%Y-%m-%d_%H%M%S')}_{_slug(job.company_name)}_"
        f"{_slug(job.job_title)}_{uuid.uuid4().hex[:6]}"
    )


def _normalize_timestamps(row: dict) -> dict:
    """Convert datetime objects to ISO strings (Postgres returns datetimes)."""
    for key in ("created_at", "updated_at", "approved_at"):
        val = row.get(key)
        if val is not None and isinstance(val, datetime):
            row[key] = val.isoformat()
    return row


def _row_to_session(row: dict, chat_history: list[ChatMessage]) -> Session:
    _normalize_timestamps(row)
    artifacts = {
        key: ArtifactRef(**value) for key, value in _json_loads(row.get("artifacts")).items()
    }
    return Session(
        session_id=row["session_id"],
        owner_id=row["owner_id"],
        state=SessionState(row["state"]),
        locked=bool(row.get("locked")),
        approved_at=row.get("approved_at"),
        job=JobContext(**_json_loads(row.get("job"))),
        artifacts=artifacts,
        chat_history=chat_history,
        error=row.get("error"),
        created_at=row.get("created_at") or "",
        updated_at=row.get("updated_at") or "",
    )


# -- Reads --


def get_session(session_id: str) -> Optional[Session]:
    """Load a session with its full chat history, or None."""
    init_db()
    row = execute("SELECT * FROM sessions WHERE session_id = %s", (session_id,), fetch="one")
    if row is None:
        return None
    return _row_to_session(row, get_chat_history(session_id))


def load_owned_session(session_id: str, owner_id: Optional[str]) -> Session:
    """Load a session, treating another owner's session as nonexistent.

    Raises:
        SessionNotFound
    """
    session = get_session(session_id)
    if session is None or (owner_id is not None and session.owner_id != owner_id):
        raise SessionNotFound(session_id)
    return session


def list_sessions(owner_id: str, limit: int = 50) -> list[dict]:
    """Summaries of the owner's sessions, newest first."""
    init_db()
    rows = execute(
        """SELECT session_id, state, locked, job, error, created_at, updated_at
           FROM sessions WHERE owner_id = %s
           ORDER BY created_at DESC LIMIT %s""",
        (owner_id, limit),
        fetch="all",
    )
    summaries = []
    for row in rows:
        _normalize_timestamps(row)
        job = _json_loads(row.get("job"))
        summaries.append({
            "session_id": row["session_id"],
            "state": row["state"],
            "locked": bool(row["locked"]),
            "company_name": job.get("company_name"),
            "job_title": job.get("job_title"),
            "error": row.get("error"),
            "created_at": row.get("created_at"),
            "updated_at": row.get("updated_at"),
        })
    return summaries


# -- Lifecycle --


def create_session(owner_id: str, job: JobContext, session_id: Optional[str] = None) -> Session:
    """Insert a new session in ``processing``."""
    init_db()
    session_id = session_id or make_session_id(job)
    now = datetime.now(timezone.utc).isoformat()
    execute(
        """INSERT INTO sessions
           (session_id, owner_id, state, locked, job, artifacts, error, created_at, updated_at)
           VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)""",
        (session_id, owner_id, SessionState.PROCESSING.value, 0,
         _json_dumps(job.model_dump()), "{}", None, now, now),
    )
    logger.info(f"Created session {session_id} for owner {owner_id}")
    return Session(
        session_id=session_id,
        owner_id=owner_id,
        job=job,
        created_at=now,
        updated_at=now,
    )


def begin_processing(session_id: str, job: Optional[JobContext] = None) -> None:
    """Move an existing terminal, unlocked session back into ``processing``.

    A single conditional UPDATE is the compare-and-swap: exactly one of two
    racing runs sees a changed row.

    Raises:
        SessionNotFound, SessionLocked, ConcurrentModification
    """
    init_db()
    now = datetime.now(timezone.utc).isoformat()
    if job is not None:
        changed = execute(
            """UPDATE sessions SET state = %s, error = NULL, job = %s, updated_at = %s
               WHERE session_id = %s AND state != %s AND locked = 0""",
            (SessionState.PROCESSING.value, _json_dumps(job.model_dump()), now,
             session_id, SessionState.PROCESSING.value),
            fetch="rowcount",
        )
    else:
        changed = execute(
            """UPDATE sessions SET state = %s, error = NULL, updated_at = %s
               WHERE session_id = %s AND state != %s AND locked = 0""",
            (SessionState.PROCESSING.value, now, session_id, SessionState.PROCESSING.value),
            fetch="rowcount",
        )
    if changed == 1:
        logger.info(f"Session {session_id} → processing")
        return

    row = execute(
        "SELECT state, locked FROM sessions WHERE session_id = %s", (session_id,), fetch="one"
    )
    if row is None:
        raise SessionNotFound(session_id)
    if row["locked"]:
        raise SessionLocked(session_id)
    raise ConcurrentModification(f"Session {session_id} is already being processed")


def finish_session(session_id: str, state: SessionState, error: Optional[str] = None) -> None:
    """Terminal transition out of ``processing``."""
    if state == SessionState.PROCESSING:
        raise ValueError("finish_session requires a terminal state")
    execute(
        "UPDATE sessions SET state = %s, error = %s, updated_at = %s WHERE session_id = %s",
        (state.value, error, datetime.now(timezone.utc).isoformat(), session_id),
    )
    logger.info(f"Session {session_id} → {state.value}" + (f" (error: {error})" if error else ""))


ORPHANED_SESSION_ERROR = "Process terminated unexpectedly while generating. Please retry."


def recover_orphaned_sessions() -> int:
    """Mark sessions left in ``processing`` by a dead process as failed.

    Generation threads are daemons, so a restart kills them silently while
    the database still says ``processing``. Call once at startup, before any
    new run is started. Returns the number of sessions recovered.
    """
    init_db()
    rows = execute(
        "SELECT session_id FROM sessions WHERE state = %s",
        (SessionState.PROCESSING.value,),
        fetch="all",
    )
    if not rows:
        return 0

    now = datetime.now(timezone.utc).isoformat()
    recovered = 0
    for row in rows:
        session_id = row["session_id"]
        changed = execute(
            """UPDATE sessions SET state = %s, error = %s, updated_at = %s
               WHERE session_id = %s AND state = %s""",
            (SessionState.FAILED.value, ORPHANED_SESSION_ERROR, now,
             session_id, SessionState.PROCESSING.value),
            fetch="rowcount",
        )
        if changed == 1:
            append_log(session_id, ORPHANED_SESSION_ERROR, LogLevel.ERROR)
            recovered += 1
            logger.warning(f"Recovered orphaned session {session_id} → failed")

    logger.info(f"Startup recovery: {recovered} session(s) marked failed")
    return recovered


# -- Lock guard --


def ensure_mutable(session: Session) -> None:
    """The single guard every mutation entry point goes through.

    Raises:
        SessionLocked: If the session has been approved
        ConcurrentModification: If a generation run currently owns it
    """
    if session.locked:
        raise SessionLocked(session.session_id)
    if session.state == SessionState.PROCESSING:
        raise ConcurrentModification(
            f"Session {session.session_id} is being processed; try again when it finishes"
        )


def write_artifacts(session_id: str, artifacts: dict[str, ArtifactRef]) -> None:
    """Replace the session's artifact map, only if it is still unlocked.

    Raises:
        SessionLocked: If approval won the race
    """
    payload = {key: ref.model_dump(mode="json") for key, ref in artifacts.items()}
    changed = execute(
        """UPDATE sessions SET artifacts = %s, updated_at = %s
           WHERE session_id = %s AND locked = 0""",
        (_json_dumps(payload), datetime.now(timezone.utc).isoformat(), session_id),
        fetch="rowcount",
    )
    if changed != 1:
        raise SessionLocked(session_id)


# -- Approval --


def approve_session(session_id: str, owner_id: Optional[str] = None) -> Session:
    """Lock the session. Approving an already-locked session returns it unchanged.

    Raises:
        SessionNotFound
        ConcurrentModification: If a run is still processing the session
    """
    session = load_owned_session(session_id, owner_id)
    if session.locked:
        logger.info(f"Session {session_id} already approved; nothing to do")
        return session

    now = datetime.now(timezone.utc).isoformat()
    changed = execute(
        """UPDATE sessions SET locked = 1, approved_at = %s, updated_at = %s
           WHERE session_id = %s AND locked = 0 AND state != %s""",
        (now, now, session_id, SessionState.PROCESSING.value),
        fetch="rowcount",
    )
    if changed != 1:
        current = load_owned_session(session_id, owner_id)
        if current.locked:
            return current
        raise ConcurrentModification(
            f"Session {session_id} is being processed and cannot be approved yet"
        )

    append_log(session_id, "Session approved and locked", LogLevel.SUCCESS)
    logger.info(f"✓ Session {session_id} approved and locked")
    return load_owned_session(session_id, owner_id)


# -- Deletion --


def delete_session(session_id: str) -> None:
    """Delete an unlocked, idle session with its chat and log rows.

    Child rows go first (foreign keys); the session row is removed with the
    same ``locked = 0`` predicate as every other write, and the whole
    delete rolls back if approval or a new run got there first.

    Raises:
        SessionNotFound, SessionLocked, ConcurrentModification
    """
    init_db()
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(adapt_sql("DELETE FROM session_logs WHERE session_id = %s"), (session_id,))
        cursor.execute(adapt_sql("DELETE FROM chat_messages WHERE session_id = %s"), (session_id,))
        cursor.execute(
            adapt_sql(
                """DELETE FROM sessions
                   WHERE session_id = %s AND locked = 0 AND state != %s"""
            ),
            (session_id, SessionState.PROCESSING.value),
        )
        if cursor.rowcount == 1:
            conn.commit()
            logger.info(f"Deleted session {session_id}")
            return
        conn.rollback()

    row = execute(
        "SELECT state, locked FROM sessions WHERE session_id = %s", (session_id,), fetch="one"
    )
    if row is None:
        raise SessionNotFound(session_id)
    if row["locked"]:
        raise SessionLocked(session_id)
    raise ConcurrentModification(f"Session {session_id} is being processed and cannot be deleted")


# -- Chat history --


def append_chat_message(session_id: str, message: ChatMessage) -> None:
    """Append one message. Chat history is append-only."""
    execute(
        """INSERT INTO chat_messages (session_id, role, content, result, logs, created_at)
           VALUES (%s, %s, %s, %s, %s, %s)""",
        (
            session_id,
            message.role,
            message.content,
            _json_dumps(message.result) if message.result is not None else None,
            _json_dumps(message.logs) if message.logs is not None else None,
            message.timestamp,
        ),
    )


def get_chat_history(session_id: str) -> list[ChatMessage]:
    rows = execute(
        "SELECT * FROM chat_messages WHERE session_id = %s ORDER BY id",
        (session_id,),
        fetch="all",
    )
    messages = []
    for row in rows:
        created = row.get("created_at")
        if isinstance(created, datetime):
            created = created.isoformat()
        messages.append(ChatMessage(
            role=row["role"],
            content=row["content"],
            result=_json_loads(row["result"]) if row.get("result") is not None else None,
            logs=_json_loads(row["logs"]) if row.get("logs") is not None else None,
            timestamp=created or "",
        ))
    return messages


# -- Progress log --


def append_log(
    session_id: str,
    message: str,
    level: LogLevel = LogLevel.INFO,
    run_id: Optional[str] = None,
) -> LogLine:
    """Append a line to the session's persisted log and return it with its index.

    The index is assigned inside the INSERT, so it is dense and ordered
    per session.
    """
    now = datetime.now(timezone.utc).isoformat()
    level = LogLevel(level)
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(
            adapt_sql(
                """INSERT INTO session_logs (session_id, idx, level, message, run_id, created_at)
                   SELECT %s, COALESCE(MAX(idx), -1) + 1, %s, %s, %s, %s
                   FROM session_logs WHERE session_id = %s"""
            ),
            (session_id, level.value, message, run_id, now, session_id),
        )
        # Same transaction, so MAX is the row just written
        cursor.execute(
            adapt_sql("SELECT MAX(idx) FROM session_logs WHERE session_id = %s"),
            (session_id,),
        )
        index = cursor.fetchone()[0]
        conn.commit()
    return LogLine(index=index, level=level, message=message, run_id=run_id, timestamp=now)


def get_session_log(session_id: str, after: Optional[int] = None) -> list[LogLine]:
    """Ordered log snapshot. ``after`` skips lines up to and including that index.

    Raises:
        SessionNotFound
    """
    init_db()
    exists = execute("SELECT 1 AS found FROM sessions WHERE session_id = %s", (session_id,), fetch="one")
    if exists is None:
        raise SessionNotFound(session_id)

    rows = execute(
        """SELECT idx, level, message, run_id, created_at FROM session_logs
           WHERE session_id = %s AND idx > %s ORDER BY idx""",
        (session_id, -1 if after is None else after),
        fetch="all",
    )
    lines = []
    for row in rows:
        created = row.get("created_at")
        if isinstance(created, datetime):
            created = created.isoformat()
        lines.append(LogLine(
            index=row["idx"],
            level=LogLevel(row["level"]),
            message=row["message"],
            run_id=row.get("run_id"),
            timestamp=created or "",
        ))
    return lines


# -- Derived status --


def derive_status(session: Session) -> DerivedStatus:
    """Top-level status from the state field plus the last assistant message."""
    if session.locked:
        return DerivedStatus.APPROVED
    if session.state == SessionState.PROCESSING:
        return DerivedStatus.PROCESSING
    if session.state == SessionState.FAILED:
        return DerivedStatus.FAILED

    for message in reversed(session.chat_history):
        if message.role != "assistant":
            continue
        if message.result and message.result.get("partial_failure"):
            return DerivedStatus.COMPLETED_WITH_WARNINGS
        break
    return DerivedStatus.COMPLETED


def get_session_status(session_id: str, owner_id: Optional[str] = None) -> SessionStatus:
    session = load_owned_session(session_id, owner_id)
    count = execute(
        "SELECT COUNT(*) AS n FROM session_logs WHERE session_id = %s",
        (session_id,),
        fetch="one",
    )
    return SessionStatus(
        session_id=session.session_id,
        state=session.state,
        locked=session.locked,
        status=derive_status(session),
        log_count=count["n"] if count else 0,
        updated_at=session.updated_at,
    )
