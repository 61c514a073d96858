"""Generation API routes.

Endpoints:
    POST /v1/generate                     Start a run, stream its events (SSE)
    GET  /v1/runs/{run_id}/events         Re-attach to a live run's stream
    PUT  /v1/source-files/{kind}          Upload one of the owner's source files
    GET  /v1/export                       Export everything stored for the owner

The event stream is best-effort. A client that loses it re-attaches with
``?after=<last seq>`` while the run is still in memory, or falls back to
GET /v1/sessions/{id}/logs and /status, which never depend on the stream.
"""

import json
import logging
import threading
from typing import Iterator

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import StreamingResponse

from tailor.executor import mutations
from tailor.executor.content_store import check_path_segment, save_source_file
from tailor.executor.orchestrator import get_services, start_generation
from tailor.executor.progress import ProgressChannel
from tailor.executor.schemas import ProgressEvent, SourceFileRequest, StartGenerationRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["generation"])

# Live and recently finished runs, for stream re-attachment
MAX_TRACKED_RUNS = 100
_channels: dict[str, tuple[str, ProgressChannel]] = {}
_channels_lock = threading.Lock()


def get_owner_id(x_owner_id: str = Header(..., min_length=1)) -> str:
    """Owner identity, established upstream and passed as X-Owner-Id.

    Owner ids name a storage folder, so path separators are refused.
    """
    return check_path_segment(x_owner_id.strip())


def _track(owner_id: str, channel: ProgressChannel) -> None:
    with _channels_lock:
        if len(_channels) >= MAX_TRACKED_RUNS:
            for run_id in [r for r, (_, c) in _channels.items() if c.closed]:
                del _channels[run_id]
        _channels[channel.run_id] = (owner_id, channel)


def format_sse(event: ProgressEvent) -> str:
    data = json.dumps(event.model_dump(mode="json"), ensure_ascii=False)
    return f"id: {event.seq}\nevent: {event.kind.value}\ndata: {data}\n\n"


def _stream(channel: ProgressChannel, after: int = 0) -> Iterator[str]:
    for event in channel.events(after_seq=after):
        yield format_sse(event)


_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


@router.post("/generate")
def generate(request: StartGenerationRequest, owner_id: str = Depends(get_owner_id)):
    """Start a generation run and stream its progress as server-sent events.

    Precondition failures (bad input, unknown or locked session) are
    returned as ordinary JSON errors before the stream opens.
    """
    channel = start_generation(
        owner_id,
        request.input,
        session_id=request.session_id,
        preferences=request.preferences,
    )
    _track(owner_id, channel)
    headers = {**_SSE_HEADERS, "X-Run-Id": channel.run_id}
    return StreamingResponse(_stream(channel), media_type="text/event-stream", headers=headers)


@router.get("/runs/{run_id}/events")
def run_events(
    run_id: str,
    after: int = Query(default=0, ge=0),
    owner_id: str = Depends(get_owner_id),
):
    """Resume a run's event stream after the given seq."""
    with _channels_lock:
        tracked = _channels.get(run_id)
    channel = tracked[1] if tracked and tracked[0] == owner_id else None
    if channel is None:
        raise HTTPException(
            status_code=404,
            detail=f"Run {run_id} is not tracked; use the session log and status instead",
        )
    return StreamingResponse(_stream(channel, after), media_type="text/event-stream", headers=_SSE_HEADERS)


@router.put("/source-files/{kind}")
def upload_source_file(
    kind: str,
    request: SourceFileRequest,
    owner_id: str = Depends(get_owner_id),
):
    """Store a source file. The base CV takes the compiler's source format."""
    services = get_services()
    extension = services.compiler.file_extension if kind == "original_cv" else "txt"
    path = save_source_file(services.store, owner_id, kind, request.content, extension)
    return {"kind": kind, "path": path, "chars": len(request.content)}


@router.get("/export")
def export_data(owner_id: str = Depends(get_owner_id)):
    """Source files, sessions, chat history, and document text as one JSON document."""
    return mutations.export_owner_data(owner_id)
