"""Edits to a finished session's documents, session deletion, and export.

Every mutating entry point here is wrapped by ``guarded_mutation``, which loads the
session and runs session_manager.ensure_mutable() before the body executes.
That one guard is the only lock check: a locked session is rejected before
anything is read, generated, or written.

Edited content is written to a new revision path and only then swapped
into the session's artifact map with a ``locked = 0`` predicate, so an
approval that lands mid-edit leaves the approved references untouched.
"""

import functools
import json
import logging
import posixpath
import re
from datetime import datetime, timezone
from typing import Optional

from tailor.executor import session_manager
from tailor.executor.content_store import (
    TEXT_SOURCE_EXTENSIONS,
    read_text,
    session_prefix,
    source_files_prefix,
)
from tailor.executor.errors import CompileError, InputInvalid, SessionLocked
from tailor.executor.orchestrator import (
    DOCUMENT_LABELS,
    GenerationServices,
    get_services,
    scratch_area,
)
from tailor.executor.retry_loop import TARGET_PAGE_COUNT
from tailor.executor.schemas import (
    SECONDARY_DOCUMENT_TYPES,
    ArtifactRef,
    ChatMessage,
    DocumentType,
    LogLevel,
    Session,
)
from tailor.llm.client import strip_code_fences

logger = logging.getLogger(__name__)

# How many recent chat messages a refinement prompt sees
REFINE_HISTORY_MESSAGES = 5

_REVISION_RE = re.compile(r"_rev\d+$")


def guarded_mutation(func):
    """Load the owned session and reject it if locked or busy, then run ``func(session, ...)``."""

    @functools.wraps(func)
    def wrapper(session_id: str, *args, owner_id: Optional[str] = None, **kwargs):
        session = session_manager.load_owned_session(session_id, owner_id)
        session_manager.ensure_mutable(session)
        return func(session, *args, **kwargs)

    return wrapper


def _require_artifact(session: Session, document_type: DocumentType) -> ArtifactRef:
    ref = session.artifacts.get(document_type.value)
    if ref is None:
        raise InputInvalid(
            f"Session {session.session_id} has no {DOCUMENT_LABELS[document_type]}"
        )
    return ref


def _revision_path(path: str, revision: int) -> str:
    stem, ext = posixpath.splitext(path)
    return f"{_REVISION_RE.sub('', stem)}_rev{revision}{ext}"


def _commit_artifacts(
    session: Session,
    artifacts: dict[str, ArtifactRef],
    services: GenerationServices,
    new_files: list[str],
) -> None:
    try:
        session_manager.write_artifacts(session.session_id, artifacts)
    except SessionLocked:
        for path in new_files:
            services.store.delete(path)
        raise


@guarded_mutation
def save_content(
    session: Session,
    document_type: DocumentType,
    content: str,
    *,
    services: Optional[GenerationServices] = None,
) -> ArtifactRef:
    """Replace a secondary document's text with user-edited content.

    Raises:
        InputInvalid: For the CV, or if the document does not exist
    """
    document_type = DocumentType(document_type)
    if document_type not in SECONDARY_DOCUMENT_TYPES:
        raise InputInvalid("Only the cover letter and cold email can be edited directly")
    services = services or get_services()
    ref = _require_artifact(session, document_type)

    revision = ref.revision + 1
    path = _revision_path(ref.source_path, revision)
    services.store.write(path, content)

    new_ref = ref.model_copy(update={
        "source_path": path,
        "revision": revision,
        "updated_at": datetime.now(timezone.utc).isoformat(),
    })
    artifacts = dict(session.artifacts)
    artifacts[document_type.value] = new_ref
    _commit_artifacts(session, artifacts, services, [path])

    session_manager.append_log(
        session.session_id, f"Saved edited {DOCUMENT_LABELS[document_type]}", LogLevel.SUCCESS
    )
    logger.info(f"Session {session.session_id}: saved {document_type.value} revision {revision}")
    return new_ref


@guarded_mutation
def refine_document(
    session: Session,
    document_type: DocumentType,
    feedback: str,
    *,
    services: Optional[GenerationServices] = None,
) -> dict:
    """Apply one round of user feedback to a document through the AI backend.

    A refined CV is recompiled; if it no longer compiles the new source is
    kept without a PDF.
    """
    document_type = DocumentType(document_type)
    if not feedback or not feedback.strip():
        raise InputInvalid("Feedback is required")
    services = services or get_services()
    ref = _require_artifact(session, document_type)
    label = DOCUMENT_LABELS[document_type]
    sid = session.session_id

    current = read_text(services.store, ref.source_path)
    recent = [
        {"role": m.role, "content": m.content}
        for m in session.chat_history[-REFINE_HISTORY_MESSAGES:]
    ]
    session_manager.append_chat_message(
        sid, ChatMessage(role="user", content=f"Refine {label}: {feedback}")
    )

    composed = services.composer.compose(
        "refine_content",
        label=f"refine {label}",
        content_type=document_type.value,
        content=current,
        feedback=feedback,
        chat_history=json.dumps(recent, indent=2) if recent else "",
        target_pages=TARGET_PAGE_COUNT,
    )
    refined = strip_code_fences(services.generator.generate(
        composed.prompt,
        system_prompt=composed.system_prompt,
        json_mode=composed.json_mode,
        label=composed.label,
    ))

    revision = ref.revision + 1
    source_path = _revision_path(ref.source_path, revision)
    services.store.write(source_path, refined)
    new_files = [source_path]
    update = {
        "source_path": source_path,
        "revision": revision,
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }

    compile_error = None
    if document_type == DocumentType.CV:
        with scratch_area(prefix="tailor-refine-") as scratch:
            try:
                compiled = services.compiler.compile(refined, scratch, name="cv")
            except CompileError as e:
                compile_error = e.message
                logger.warning(f"Refined CV for {sid} does not compile: {e.message}")
                update.update({"artifact_path": None, "page_count": None, "success": False})
            else:
                base_pdf = ref.artifact_path or f"{posixpath.splitext(ref.source_path)[0]}.pdf"
                pdf_path = _revision_path(base_pdf, revision)
                services.store.write(pdf_path, compiled.artifact_bytes)
                new_files.append(pdf_path)
                update.update({
                    "artifact_path": pdf_path,
                    "page_count": compiled.page_count,
                    "success": compiled.page_count == TARGET_PAGE_COUNT,
                })

    new_ref = ref.model_copy(update=update)
    artifacts = dict(session.artifacts)
    artifacts[document_type.value] = new_ref
    _commit_artifacts(session, artifacts, services, new_files)

    result = {
        "document_type": document_type.value,
        "content": refined,
        "revision": revision,
        "page_count": new_ref.page_count,
        "compile_error": compile_error,
    }
    if compile_error:
        message = f"Refined {label}, but it no longer compiles: {compile_error}"
    elif new_ref.page_count is not None:
        message = f"Refined {label} ({new_ref.page_count} pages)"
    else:
        message = f"Refined {label}"
    session_manager.append_log(
        sid, message, LogLevel.WARNING if compile_error else LogLevel.SUCCESS
    )
    session_manager.append_chat_message(sid, ChatMessage(role="assistant", content=message, result=result))
    return result


@guarded_mutation
def delete_artifact(session: Session, document_type: DocumentType) -> Session:
    """Drop a document reference from the session. Stored files are left in place."""
    document_type = DocumentType(document_type)
    _require_artifact(session, document_type)

    artifacts = {k: v for k, v in session.artifacts.items() if k != document_type.value}
    session_manager.write_artifacts(session.session_id, artifacts)
    session_manager.append_log(
        session.session_id, f"Removed {DOCUMENT_LABELS[document_type]} from session", LogLevel.WARNING
    )
    return session_manager.get_session(session.session_id)


def read_document(
    session_id: str,
    document_type: DocumentType,
    *,
    owner_id: Optional[str] = None,
    compiled: bool = False,
    services: Optional[GenerationServices] = None,
) -> tuple[bytes, str]:
    """Return (content, filename) for a session document; ``compiled`` selects the PDF."""
    document_type = DocumentType(document_type)
    services = services or get_services()
    session = session_manager.load_owned_session(session_id, owner_id)
    ref = _require_artifact(session, document_type)
    path = ref.artifact_path if compiled else ref.source_path
    if not path:
        raise InputInvalid(f"No compiled version of the {DOCUMENT_LABELS[document_type]} exists")
    return services.store.read(path), posixpath.basename(path)


@guarded_mutation
def delete_session(session: Session, *, services: Optional[GenerationServices] = None) -> int:
    """Delete the session record and every stored file under its folder.

    Returns:
        Number of files removed from the content store
    """
    services = services or get_services()
    session_manager.delete_session(session.session_id)

    prefix = session_prefix(session.owner_id, session.session_id)
    files = services.store.list(prefix)
    for path in files:
        services.store.delete(path)
    logger.info(f"Deleted session {session.session_id} and {len(files)} stored file(s)")
    return len(files)


def _export_file(store, path: str) -> dict:
    if not path.lower().endswith(TEXT_SOURCE_EXTENSIONS):
        return {"path": path, "content": None}
    return {"path": path, "content": read_text(store, path)}


def export_owner_data(owner_id: str, *, services: Optional[GenerationServices] = None) -> dict:
    """Everything stored for one owner: source files, sessions, chat, and document text.

    Binary files (compiled PDFs) are listed by path only.
    """
    services = services or get_services()
    store = services.store

    prefix = source_files_prefix(owner_id)
    source_files = {
        path[len(prefix):]: _export_file(store, path) for path in store.list(prefix)
    }

    sessions = []
    for summary in session_manager.list_sessions(owner_id, limit=10000):
        session = session_manager.get_session(summary["session_id"])
        if session is None:
            continue
        documents = {}
        for key, ref in session.artifacts.items():
            entry = ref.model_dump(mode="json")
            entry["content"] = (
                _export_file(store, ref.source_path)["content"] if store.exists(ref.source_path) else None
            )
            documents[key] = entry
        sessions.append({
            **session.model_dump(mode="json", exclude={"artifacts"}),
            "documents": documents,
        })

    logger.info(f"Exported {len(source_files)} source file(s) and {len(sessions)} session(s) for {owner_id}")
    return {
        "owner_id": owner_id,
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "source_files": source_files,
        "sessions": sessions,
    }
