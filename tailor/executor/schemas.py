"""Schemas for sessions, generation results, and progress.

Sessions are the persisted unit of one generation lineage. Results describe
what a single orchestration run produced. Progress events and log lines are
what observers see while (and after) a run executes.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionState(str, Enum):
    """Session lifecycle states. ``locked`` is an orthogonal flag, not a state."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DerivedStatus(str, Enum):
    """Top-level status shown to observers polling a session."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    FAILED = "failed"
    APPROVED = "approved"


class DocumentType(str, Enum):
    CV = "cv"
    COVER_LETTER = "cover_letter"
    COLD_EMAIL = "cold_email"


SECONDARY_DOCUMENT_TYPES = (DocumentType.COVER_LETTER, DocumentType.COLD_EMAIL)


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    COMPILE_ERROR = "compile_error"
    MISMATCH = "mismatch"


class PrimaryStatus(str, Enum):
    GENERATED = "generated"
    DEGRADED = "degraded"
    FAILED = "failed"


class SecondaryStatus(str, Enum):
    GENERATED = "generated"
    SKIPPED = "skipped"
    FAILED = "failed"


class LogLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class EventKind(str, Enum):
    LOG = "log"
    SESSION = "session"
    COMPLETE = "complete"
    ERROR = "error"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# -- Session --


class JobContext(BaseModel):
    """What the run learned about the job being applied for."""

    company_name: str = "Unknown Company"
    job_title: str = "Position"
    job_description: str = ""
    source_url: Optional[str] = None
    emails: list[str] = Field(default_factory=list)


class ArtifactRef(BaseModel):
    """Named reference to a generated document in the content store."""

    document_type: DocumentType
    source_path: str = Field(description="Store path of the generated source (markup or text)")
    artifact_path: Optional[str] = Field(
        default=None,
        description="Store path of the compiled form (primary document only)",
    )
    page_count: Optional[int] = None
    attempts: int = 1
    success: bool = True
    revision: int = Field(default=0, description="Bumped by every edit or refinement")
    updated_at: str = Field(default_factory=_now)


class ChatMessage(BaseModel):
    """One entry in a session's append-only conversation."""

    role: str = Field(description="'user' or 'assistant'")
    content: str
    result: Optional[dict[str, Any]] = None
    logs: Optional[list[dict[str, Any]]] = None
    timestamp: str = Field(default_factory=_now)


class Session(BaseModel):
    session_id: str
    owner_id: str
    state: SessionState = SessionState.PROCESSING
    locked: bool = False
    approved_at: Optional[str] = None
    job: JobContext = Field(default_factory=JobContext)
    artifacts: dict[str, ArtifactRef] = Field(default_factory=dict)
    chat_history: list[ChatMessage] = Field(default_factory=list)
    error: Optional[str] = None
    created_at: str = Field(default_factory=_now)
    updated_at: str = Field(default_factory=_now)


class LogLine(BaseModel):
    """One line of a session's persisted progress log."""

    index: int
    level: LogLevel = LogLevel.INFO
    message: str
    run_id: Optional[str] = None
    timestamp: str = Field(default_factory=_now)


class SessionStatus(BaseModel):
    session_id: str
    state: SessionState
    locked: bool
    status: DerivedStatus
    log_count: int = 0
    updated_at: Optional[str] = None


# -- Generation --


class Preferences(BaseModel):
    """Which secondary documents to generate. Both default to on."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    cover_letter: bool = Field(default=True, alias="coverLetter")
    cold_email: bool = Field(default=True, alias="coldEmail")

    def wants(self, document_type: DocumentType) -> bool:
        if document_type == DocumentType.COVER_LETTER:
            return self.cover_letter
        if document_type == DocumentType.COLD_EMAIL:
            return self.cold_email
        return True


class GenerationAttempt(BaseModel):
    """Outcome of one generate -> compile -> measure cycle."""

    document_type: DocumentType = DocumentType.CV
    attempt: int
    outcome: AttemptOutcome
    page_count: Optional[int] = None
    error: Optional[str] = None


class PrimaryOutcome(BaseModel):
    success: bool = False
    status: PrimaryStatus = PrimaryStatus.FAILED
    content: Optional[str] = None
    page_count: Optional[int] = None
    attempts: int = 0
    error: Optional[str] = None
    change_summary: Optional[str] = None
    source_path: Optional[str] = None
    artifact_path: Optional[str] = None


class SecondaryOutcome(BaseModel):
    document_type: DocumentType
    status: SecondaryStatus
    content: Optional[str] = None
    path: Optional[str] = None
    error: Optional[str] = None


class GenerationResult(BaseModel):
    """Aggregated result of one orchestration run."""

    session_id: str
    run_id: str = Field(default_factory=lambda: f"run-{uuid.uuid4().hex[:12]}")
    state: SessionState
    primary: PrimaryOutcome
    secondary: dict[str, SecondaryOutcome] = Field(default_factory=dict)
    partial_failure: bool = False
    job: JobContext = Field(default_factory=JobContext)


class ProgressEvent(BaseModel):
    seq: int
    kind: EventKind
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=_now)


# -- API requests --


class StartGenerationRequest(BaseModel):
    """Request to run a generation. ``input`` is a job posting URL or its text."""

    input: str = Field(min_length=1)
    session_id: Optional[str] = None
    preferences: Optional[dict[str, bool]] = None


class RefineRequest(BaseModel):
    document_type: DocumentType
    feedback: str = Field(min_length=1)


class SaveContentRequest(BaseModel):
    content: str


class SourceFileRequest(BaseModel):
    content: str
