"""Session API routes: the pull path, approval, and document edits.

Endpoints:
    GET    /v1/sessions                                List the owner's sessions
    GET    /v1/sessions/{session_id}                   Full session with chat history
    GET    /v1/sessions/{session_id}/logs?after=N      Persisted log lines after index N
    GET    /v1/sessions/{session_id}/status            Derived status for polling
    POST   /v1/sessions/{session_id}/approve           Lock the session (idempotent)
    POST   /v1/sessions/{session_id}/refine            Refine one document from feedback
    GET    /v1/sessions/{session_id}/documents/{type}  Download source or PDF
    PUT    /v1/sessions/{session_id}/documents/{type}  Save edited cover letter / cold email
    DELETE /v1/sessions/{session_id}                   Delete the session and its stored files
    DELETE /v1/sessions/{session_id}/documents/{type}  Drop a document reference
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from tailor.api.routes.generation import get_owner_id
from tailor.executor import mutations, session_manager
from tailor.executor.schemas import (
    DocumentType,
    LogLine,
    RefineRequest,
    SaveContentRequest,
    Session,
    SessionStatus,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])

_MEDIA_TYPES = {
    "pdf": "application/pdf",
    "tex": "application/x-tex",
    "md": "text/markdown; charset=utf-8",
    "txt": "text/plain; charset=utf-8",
}


@router.get("")
def list_sessions(limit: int = Query(default=50, ge=1, le=500), owner_id: str = Depends(get_owner_id)):
    sessions = session_manager.list_sessions(owner_id, limit=limit)
    return {"sessions": sessions, "count": len(sessions)}


@router.get("/{session_id}", response_model=Session)
def get_session(session_id: str, owner_id: str = Depends(get_owner_id)):
    return session_manager.load_owned_session(session_id, owner_id)


@router.get("/{session_id}/logs", response_model=list[LogLine])
def get_session_logs(
    session_id: str,
    after: Optional[int] = Query(default=None, ge=-1),
    owner_id: str = Depends(get_owner_id),
):
    """Ordered log snapshot; pass the last index seen as ``after`` to get only new lines."""
    session_manager.load_owned_session(session_id, owner_id)
    return session_manager.get_session_log(session_id, after=after)


@router.get("/{session_id}/status", response_model=SessionStatus)
def get_session_status(session_id: str, owner_id: str = Depends(get_owner_id)):
    return session_manager.get_session_status(session_id, owner_id)


@router.post("/{session_id}/approve", response_model=Session)
def approve_session(session_id: str, owner_id: str = Depends(get_owner_id)):
    """Lock the session. Approving twice returns the same locked session."""
    return session_manager.approve_session(session_id, owner_id)


@router.post("/{session_id}/refine")
def refine_document(session_id: str, request: RefineRequest, owner_id: str = Depends(get_owner_id)):
    return mutations.refine_document(
        session_id, request.document_type, request.feedback, owner_id=owner_id
    )


@router.get("/{session_id}/documents/{document_type}")
def download_document(
    session_id: str,
    document_type: DocumentType,
    format: str = Query(default="source", pattern="^(source|pdf)$"),
    owner_id: str = Depends(get_owner_id),
):
    content, filename = mutations.read_document(
        session_id, document_type, owner_id=owner_id, compiled=format == "pdf"
    )
    extension = filename.rsplit(".", 1)[-1].lower()
    return Response(
        content=content,
        media_type=_MEDIA_TYPES.get(extension, "application/octet-stream"),
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.put("/{session_id}/documents/{document_type}")
def save_document(
    session_id: str,
    document_type: DocumentType,
    request: SaveContentRequest,
    owner_id: str = Depends(get_owner_id),
):
    ref = mutations.save_content(session_id, document_type, request.content, owner_id=owner_id)
    return {"session_id": session_id, "artifact": ref.model_dump(mode="json")}


@router.delete("/{session_id}/documents/{document_type}", response_model=Session)
def delete_document(session_id: str, document_type: DocumentType, owner_id: str = Depends(get_owner_id)):
    return mutations.delete_artifact(session_id, document_type, owner_id=owner_id)


@router.delete("/{session_id}")
def delete_session(session_id: str, owner_id: str = Depends(get_owner_id)):
    """Delete an unapproved session with all its files. Approved sessions are kept."""
    removed = mutations.delete_session(session_id, owner_id=owner_id)
    return {"success": True, "session_id": session_id, "files_deleted": removed}
