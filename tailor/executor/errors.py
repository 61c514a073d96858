"""Error taxonomy for the generation engine.

Every error carries a stable ``code`` so the API layer and the progress
stream can report it without inspecting exception types.

Precondition failures (InputInvalid, SessionLocked, SessionNotFound,
ConcurrentModification) are raised before any work is done.
CompileError and PageCountMismatch never escape the validation loop.
"""

from typing import Optional


class TailorError(Exception):
    """Base class for all engine errors."""

    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class InputInvalid(TailorError):
    code = "input_invalid"


class SessionNotFound(TailorError):
    code = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionLocked(TailorError):
    code = "session_locked"

    def __init__(self, session_id: str):
        super().__init__(
            f"Session {session_id} is locked (approved). Approved sessions cannot be modified."
        )
        self.session_id = session_id


class ConcurrentModification(TailorError):
    code = "concurrent_modification"


class UpstreamFetchFailed(TailorError):
    code = "upstream_fetch_failed"


class ContentStoreError(TailorError):
    code = "content_store_error"


class GenerationBackendError(TailorError):
    code = "generation_backend_error"

    def __init__(self, message: str, *, retries: int = 0, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.retries = retries
        self.cause = cause


class GenerationBackendTransient(GenerationBackendError):
    """Rate limiting, overload, timeouts. Retried inside the engine runner."""

    code = "generation_backend_transient"


class GenerationBackendPermanent(GenerationBackendError):
    """Non-recoverable backend failure. Aborts only the document being generated."""

    code = "generation_backend_permanent"


class CompileError(TailorError):
    code = "compile_error"

    def __init__(self, message: str, log_excerpt: str = ""):
        super().__init__(message)
        self.log_excerpt = log_excerpt


class PageCountMismatch(TailorError):
    code = "page_count_mismatch"

    def __init__(self, page_count: int, target: int):
        super().__init__(f"Document has {page_count} pages, expected exactly {target}")
        self.page_count = page_count
        self.target = target
