"""Validation-retry loop for the page-constrained primary document.

Each attempt is one generate -> compile -> measure cycle. Attempts after
the first use a corrective prompt seeded with the previous attempt's
outcome (page count or compiler error), carried forward in an explicit
LoopState accumulator. Nothing relies on conversational memory in the
backend: every prompt is self-contained.

Outcomes:
- page count matches the target: success
- attempts exhausted: degraded success, returning the compiled attempt
  closest to the target (or the last generated source if none compiled)

Backend transient errors are retried inside TextGenerator and never
consume an attempt here.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from tailor.executor.compiler import CompiledDocument, Compiler
from tailor.executor.errors import CompileError, GenerationBackendPermanent, PageCountMismatch
from tailor.executor.schemas import AttemptOutcome, DocumentType, GenerationAttempt
from tailor.llm.client import strip_code_fences
from tailor.prompts.composer import PromptComposer
from tailor.prompts.schemas import ComposedPrompt

logger = logging.getLogger(__name__)

TARGET_PAGE_COUNT = int(os.environ.get("TARGET_PAGE_COUNT", "2"))
MAX_PAGE_ATTEMPTS = int(os.environ.get("MAX_PAGE_ATTEMPTS", "3"))

EMPTY_SOURCE_ERROR = "Model returned empty document source"

LogCallback = Callable[..., None]


def _no_log(message: str, level: str = "info") -> None:
    pass


@dataclass
class GenerationContext:
    """Facts and source material for the primary document."""

    job_description: str
    original_cv: str
    company_name: str = "Unknown Company"
    job_title: str = "Position"
    extensive_cv: str = ""
    cv_strategy: str = ""

    def as_prompt_context(self) -> dict:
        return {
            "job_description": self.job_description,
            "original_cv": self.original_cv,
            "company_name": self.company_name,
            "job_title": self.job_title,
            "extensive_cv": self.extensive_cv,
            "cv_strategy": self.cv_strategy,
        }


@dataclass
class _Candidate:
    attempt: int
    content: str
    compiled: CompiledDocument


@dataclass
class LoopState:
    """Accumulator threaded through the attempts."""

    attempt: int = 0
    previous_content: Optional[str] = None
    previous_outcome: Optional[AttemptOutcome] = None
    previous_page_count: Optional[int] = None
    previous_error: Optional[str] = None
    history: list[GenerationAttempt] = field(default_factory=list)
    candidates: list[_Candidate] = field(default_factory=list)

    def record(
        self,
        content: str,
        outcome: AttemptOutcome,
        page_count: Optional[int] = None,
        error: Optional[str] = None,
    ) -> GenerationAttempt:
        entry = GenerationAttempt(
            document_type=DocumentType.CV,
            attempt=self.attempt,
            outcome=outcome,
            page_count=page_count,
            error=error,
        )
        self.history.append(entry)
        self.previous_content = content
        self.previous_outcome = outcome
        self.previous_page_count = page_count
        self.previous_error = error
        return entry

    def closest(self, target_pages: int) -> Optional[_Candidate]:
        """Compiled attempt nearest the target; the later attempt wins ties."""
        if not self.candidates:
            return None
        return min(
            self.candidates,
            key=lambda c: (abs(c.compiled.page_count - target_pages), -c.attempt),
        )


@dataclass
class RetryLoopResult:
    success: bool
    content: Optional[str]
    compiled_artifact: Optional[bytes]
    page_count: Optional[int]
    attempts: int
    error: Optional[str] = None
    history: list[GenerationAttempt] = field(default_factory=list)


def compose_attempt_prompt(
    composer: PromptComposer,
    context: GenerationContext,
    state: LoopState,
    target_pages: int,
) -> ComposedPrompt:
    """Base prompt for the first attempt, corrective prompt afterwards."""
    label = f"cv attempt {state.attempt}"
    base = context.as_prompt_context()

    if state.previous_outcome is None:
        return composer.compose("generate_cv", label=label, target_pages=target_pages, **base)

    if state.previous_outcome == AttemptOutcome.COMPILE_ERROR:
        return composer.compose(
            "fix_cv_compile_error",
            label=label,
            failed_cv=state.previous_content,
            compile_error=state.previous_error or "unknown compile error",
            target_pages=target_pages,
        )

    key = "fix_cv_too_long" if state.previous_page_count > target_pages else "fix_cv_too_short"
    return composer.compose(
        key,
        label=label,
        failed_cv=state.previous_content,
        page_count=state.previous_page_count,
        target_pages=target_pages,
        job_description=context.job_description,
        extensive_cv=context.extensive_cv,
    )


def _finish_exhausted(state: LoopState, target_pages: int, error: Optional[str] = None) -> RetryLoopResult:
    best = state.closest(target_pages)
    attempts = len(state.history)
    if best is not None:
        message = error or (
            f"CV compiled to {best.compiled.page_count} pages after {attempts} attempts "
            f"(target {target_pages})"
        )
        return RetryLoopResult(
            success=False,
            content=best.content,
            compiled_artifact=best.compiled.artifact_bytes,
            page_count=best.compiled.page_count,
            attempts=attempts,
            error=message,
            history=state.history,
        )
    return RetryLoopResult(
        success=False,
        content=state.previous_content,
        compiled_artifact=None,
        page_count=None,
        attempts=attempts,
        error=error or state.previous_error or "CV never compiled",
        history=state.history,
    )


def run_validation_loop(
    context: GenerationContext,
    *,
    generator,
    compiler: Compiler,
    composer: PromptComposer,
    scratch_dir: Path,
    target_pages: int = TARGET_PAGE_COUNT,
    max_attempts: int = MAX_PAGE_ATTEMPTS,
    log: Optional[LogCallback] = None,
) -> RetryLoopResult:
    """Produce the primary document, retrying until the page count matches.

    Args:
        context: Job facts and source material.
        generator: Object with ``generate(prompt, *, system_prompt, json_mode, label) -> str``.
        compiler: Compiler used to build and measure each attempt.
        composer: Renders the base and corrective prompts.
        scratch_dir: Caller-owned directory for intermediate files.
        target_pages: Exact page count required.
        max_attempts: Hard bound on generate/compile cycles.
        log: Progress callback ``log(message, level)``.

    Raises:
        GenerationBackendPermanent: If the backend fails before any attempt
            produced content.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    log = log or _no_log
    state = LoopState()

    for attempt in range(1, max_attempts + 1):
        state.attempt = attempt
        composed = compose_attempt_prompt(composer, context, state, target_pages)

        log(f"Generating CV (attempt {attempt}/{max_attempts})...")
        try:
            raw = generator.generate(
                composed.prompt,
                system_prompt=composed.system_prompt,
                json_mode=composed.json_mode,
                label=composed.label,
            )
        except GenerationBackendPermanent as e:
            if not state.history:
                raise
            log(f"AI service failed on attempt {attempt}: {e.message}", "error")
            logger.warning(f"CV generation aborted on attempt {attempt}, keeping earlier attempts")
            return _finish_exhausted(state, target_pages, error=e.message)

        content = strip_code_fences(raw)
        log(f"Compiling CV (attempt {attempt})...")

        try:
            if not content.strip():
                raise CompileError(EMPTY_SOURCE_ERROR)
            compiled = compiler.compile(content, scratch_dir / f"attempt_{attempt}", name="cv")
        except CompileError as e:
            state.record(content, AttemptOutcome.COMPILE_ERROR, error=e.message)
            log(f"Compilation failed on attempt {attempt}: {e.message}", "warning")
            continue

        state.candidates.append(_Candidate(attempt=attempt, content=content, compiled=compiled))

        if compiled.page_count == target_pages:
            state.record(content, AttemptOutcome.SUCCESS, page_count=compiled.page_count)
            log(f"CV compiled to exactly {target_pages} pages on attempt {attempt}", "success")
            return RetryLoopResult(
                success=True,
                content=content,
                compiled_artifact=compiled.artifact_bytes,
                page_count=compiled.page_count,
                attempts=attempt,
                history=state.history,
            )

        mismatch = PageCountMismatch(compiled.page_count, target_pages)
        state.record(content, AttemptOutcome.MISMATCH, page_count=compiled.page_count, error=mismatch.message)
        log(
            f"CV compiled to {compiled.page_count} pages, need {target_pages} "
            f"(attempt {attempt}/{max_attempts})",
            "warning",
        )

    result = _finish_exhausted(state, target_pages)
    log(f"Could not reach {target_pages} pages after {max_attempts} attempts: {result.error}", "warning")
    return result
