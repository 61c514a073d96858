"""Generation orchestrator: one request from raw input to finished session.

Flow for a run:

1. Validate the request (owner, input, preferences, existing session)
2. Resolve the job: fetch a posting URL, extract the description, company
   name, job title and contact e-mails; load the owner's source files
3. Create the session (or move an existing one back into processing)
4. Produce the CV through the validation-retry loop, inside a scratch
   area that is removed on every exit path
5. Generate each enabled secondary document independently; one failing
   never stops the next
6. Write artifact references, append the assistant message bundling the
   run's log and result, and move the session to its terminal state

Nothing is persisted before step 3, so a failure there leaves no trace.
After step 3 the session always ends completed or failed.

This runs in a background thread, spawned by start_generation().
"""

import json
import logging
import os
import re
import shutil
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from pydantic import ValidationError

from tailor.executor import session_manager
from tailor.executor.compiler import Compiler, get_compiler
from tailor.executor.content_store import (
    ContentStore,
    LocalContentStore,
    SourceFiles,
    generated_file_path,
    load_source_files,
)
from tailor.executor.engine_runner import TextGenerator
from tailor.executor.errors import (
    ConcurrentModification,
    GenerationBackendPermanent,
    InputInvalid,
    SessionLocked,
    TailorError,
)
from tailor.executor.link_resolver import HttpLinkResolver, LinkResolver, is_url
from tailor.executor.progress import ProgressChannel
from tailor.executor.retry_loop import GenerationContext, run_validation_loop
from tailor.executor.schemas import (
    SECONDARY_DOCUMENT_TYPES,
    ArtifactRef,
    ChatMessage,
    DocumentType,
    GenerationResult,
    JobContext,
    Preferences,
    PrimaryOutcome,
    PrimaryStatus,
    SecondaryOutcome,
    SecondaryStatus,
    Session,
    SessionState,
)
from tailor.llm.client import parse_llm_json_response, strip_code_fences
from tailor.prompts.composer import PromptComposer

logger = logging.getLogger(__name__)

USER_NAME = os.environ.get("USER_NAME", "candidate")

EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b")
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_FILENAME_RE = re.compile(r"[^A-Za-z0-9]+")

CHANGE_SUMMARY_FALLBACK = "Unable to generate change summary."

DOCUMENT_LABELS = {
    DocumentType.CV: "CV",
    DocumentType.COVER_LETTER: "cover letter",
    DocumentType.COLD_EMAIL: "cold email",
}
_FILENAME_DOC_TYPES = {
    DocumentType.CV: "CV",
    DocumentType.COVER_LETTER: "CoverLetter",
    DocumentType.COLD_EMAIL: "ColdEmail",
}


# -- Collaborators --


@dataclass
class GenerationServices:
    """The collaborators a run talks to."""

    generator: Any
    compiler: Compiler
    store: ContentStore
    resolver: LinkResolver
    composer: PromptComposer


_services: Optional[GenerationServices] = None
_services_lock = threading.Lock()


def get_services() -> GenerationServices:
    """Default collaborators, built on first use from the environment."""
    global _services
    with _services_lock:
        if _services is None:
            _services = GenerationServices(
                generator=TextGenerator(),
                compiler=get_compiler(),
                store=LocalContentStore(),
                resolver=HttpLinkResolver(),
                composer=PromptComposer(),
            )
        return _services


def configure_services(services: Optional[GenerationServices]) -> None:
    """Replace the default collaborators (None resets to the environment defaults)."""
    global _services
    with _services_lock:
        _services = services


@contextmanager
def scratch_area(prefix: str = "tailor-") -> Iterator[Path]:
    """Per-run temporary directory, removed on every exit path."""
    path = Path(tempfile.mkdtemp(prefix=prefix))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug(f"Removed scratch area {path}")


# -- Input helpers --


def extract_emails(text: str) -> list[str]:
    """Unique e-mail addresses in order of first appearance."""
    return list(dict.fromkeys(EMAIL_RE.findall(text or "")))


def _filename_part(text: str, limit: int = 40) -> str:
    return _FILENAME_RE.sub("_", text or "").strip("_")[:limit].strip("_") or "Unknown"


def descriptive_filename(
    job: JobContext,
    document_type: DocumentType,
    extension: str,
    date: Optional[datetime] = None,
) -> str:
    """``{date}_{Company}_{Title}_{USER_NAME}_{DocType}.{ext}``"""
    date = date or datetime.now(timezone.utc)
    return (
        f"{date.strftime('%Y-%m-%d')}_{_filename_part(job.company_name)}_"
        f"{_filename_part(job.job_title)}_{_filename_part(USER_NAME)}_"
        f"{_FILENAME_DOC_TYPES[document_type]}.{extension}"
    )


def validate_preferences(preferences: Optional[dict[str, Any]]) -> Preferences:
    """Parse the preference map; unknown keys are rejected.

    Raises:
        InputInvalid
    """
    if preferences is None:
        return Preferences()
    if isinstance(preferences, Preferences):
        return preferences
    try:
        return Preferences.model_validate(preferences)
    except ValidationError as e:
        raise InputInvalid(f"Invalid preferences: {e.errors()[0]['msg']}") from e


def validate_request(
    owner_id: str,
    raw_input: str,
    session_id: Optional[str] = None,
    preferences: Optional[dict[str, Any]] = None,
) -> tuple[Preferences, Optional[Session]]:
    """Precondition checks. Raises before anything is written.

    Raises:
        InputInvalid, SessionNotFound, SessionLocked, ConcurrentModification
    """
    if not owner_id or not owner_id.strip():
        raise InputInvalid("Owner id is required")
    if not raw_input or not raw_input.strip():
        raise InputInvalid("Job description or URL is required")
    prefs = validate_preferences(preferences)

    existing = None
    if session_id:
        existing = session_manager.load_owned_session(session_id, owner_id)
        if existing.locked:
            raise SessionLocked(session_id)
        if existing.state == SessionState.PROCESSING:
            raise ConcurrentModification(f"Session {session_id} is already being processed")
    return prefs, existing


def _generate_text(services: GenerationServices, key: str, label: str, **context: Any) -> str:
    composed = services.composer.compose(key, label=label, **context)
    raw = services.generator.generate(
        composed.prompt,
        system_prompt=composed.system_prompt,
        json_mode=composed.json_mode,
        label=composed.label,
    )
    return strip_code_fences(raw)


def _extract_job_details(services: GenerationServices, job_description: str) -> dict:
    text = _generate_text(
        services, "extract_job_details", "job details", job_description=job_description
    )
    try:
        return parse_llm_json_response(text)
    except (json.JSONDecodeError, ValueError):
        match = _JSON_OBJECT_RE.search(text)
        if match:
            try:
                return json.loads(match.group(0))
            except json.JSONDecodeError:
                pass
    logger.warning(f"Could not parse job details from model output: {text[:200]!r}")
    return {}


def resolve_job_context(raw_input: str, services: GenerationServices, log) -> JobContext:
    """Turn raw input (URL or pasted posting) into job facts.

    Raises:
        UpstreamFetchFailed: If the posting URL cannot be fetched
        GenerationBackendPermanent: If an extraction call fails
    """
    text = raw_input.strip()
    source_url = None

    if is_url(text):
        source_url = text
        log(f"Fetching job posting from {text}...")
        raw_content = services.resolver.fetch(text)
        log(f"Fetched {len(raw_content)} characters, extracting job description...")
        job_description = _generate_text(
            services, "extract_job_description", "job description", raw_content=raw_content
        )
    else:
        job_description = text

    log("Extracting company name and job title...")
    details = _extract_job_details(services, job_description)
    company_name = str(details.get("companyName") or details.get("company_name") or "").strip()
    job_title = str(details.get("jobTitle") or details.get("job_title") or "").strip()

    job = JobContext(
        company_name=company_name or "Unknown Company",
        job_title=job_title or "Position",
        job_description=job_description,
        source_url=source_url,
        emails=extract_emails(job_description),
    )
    log(f"Job: {job.job_title} at {job.company_name}", "success")
    if job.emails:
        log(f"Found {len(job.emails)} contact e-mail address(es): {', '.join(job.emails)}")
    return job


# -- Document steps --


def _generate_primary(
    session: Session,
    sources: SourceFiles,
    services: GenerationServices,
    channel: ProgressChannel,
    scratch: Path,
    artifacts: dict[str, ArtifactRef],
) -> tuple[PrimaryOutcome, str]:
    """Run the retry loop for the CV and persist what it produced.

    Returns the outcome and the text secondary documents should build on.
    """
    job = session.job
    context = GenerationContext(
        job_description=job.job_description,
        original_cv=sources.original_cv,
        company_name=job.company_name,
        job_title=job.job_title,
        extensive_cv=sources.extensive_cv,
        cv_strategy=sources.cv_strategy,
    )

    try:
        loop = run_validation_loop(
            context,
            generator=services.generator,
            compiler=services.compiler,
            composer=services.composer,
            scratch_dir=scratch / "cv",
            log=channel.log,
        )
    except GenerationBackendPermanent as e:
        channel.log(f"CV generation failed: {e.message}", "error")
        return PrimaryOutcome(success=False, status=PrimaryStatus.FAILED, error=e.message), ""

    outcome = PrimaryOutcome(
        success=loop.success,
        status=PrimaryStatus.GENERATED if loop.success else PrimaryStatus.DEGRADED,
        content=loop.content,
        page_count=loop.page_count,
        attempts=loop.attempts,
        error=loop.error,
    )

    source_path = generated_file_path(
        session.owner_id,
        session.session_id,
        descriptive_filename(job, DocumentType.CV, services.compiler.file_extension),
    )
    services.store.write(source_path, loop.content or "")
    outcome.source_path = source_path
    channel.log(f"Saved CV source ({len(loop.content or '')} chars)")

    if loop.compiled_artifact is not None:
        artifact_path = generated_file_path(
            session.owner_id,
            session.session_id,
            descriptive_filename(job, DocumentType.CV, "pdf"),
        )
        services.store.write(artifact_path, loop.compiled_artifact)
        outcome.artifact_path = artifact_path
        channel.log(f"Saved CV PDF ({loop.page_count} pages)")

    artifacts[DocumentType.CV.value] = ArtifactRef(
        document_type=DocumentType.CV,
        source_path=source_path,
        artifact_path=outcome.artifact_path,
        page_count=loop.page_count,
        attempts=loop.attempts,
        success=loop.success,
    )

    if loop.success:
        channel.log("Summarizing CV changes...")
        try:
            outcome.change_summary = _generate_text(
                services,
                "cv_change_summary",
                "cv change summary",
                original_cv=sources.original_cv,
                new_cv=loop.content,
            ) or CHANGE_SUMMARY_FALLBACK
        except Exception as e:
            logger.warning(f"CV change summary failed for {session.session_id}: {e}")
            outcome.change_summary = CHANGE_SUMMARY_FALLBACK
            channel.log(f"Could not summarize CV changes: {e}", "warning")
    else:
        channel.log(
            f"CV kept as best effort after {loop.attempts} attempts: {loop.error}", "warning"
        )

    cv_text = loop.content or ""
    if loop.compiled_artifact is not None:
        try:
            extracted = services.compiler.extract_text(loop.compiled_artifact, scratch / "extract")
            if extracted.strip():
                cv_text = extracted
                channel.log("Extracted text from the compiled CV")
        except Exception as e:
            logger.warning(f"Text extraction failed for {session.session_id}: {e}")
            channel.log("Could not read text from the CV PDF, using the generated source", "warning")

    return outcome, cv_text


def _generate_secondary(
    document_type: DocumentType,
    session: Session,
    sources: SourceFiles,
    cv_text: str,
    services: GenerationServices,
    channel: ProgressChannel,
    artifacts: dict[str, ArtifactRef],
) -> SecondaryOutcome:
    label = DOCUMENT_LABELS[document_type]
    job = session.job
    channel.log(f"Generating {label}...")

    content = _generate_text(
        services,
        document_type.value,
        label,
        job_title=job.job_title,
        company_name=job.company_name,
        job_description=job.job_description,
        validated_cv_text=cv_text,
        extensive_cv=sources.extensive_cv,
        cover_letter_strategy=sources.cover_letter_strategy,
        cold_email_strategy=sources.cold_email_strategy,
        emails=job.emails,
    ).strip()
    if not content:
        raise GenerationBackendPermanent(f"Empty {label} returned by the AI service")

    path = generated_file_path(
        session.owner_id,
        session.session_id,
        descriptive_filename(job, document_type, "txt"),
    )
    services.store.write(path, content)
    artifacts[document_type.value] = ArtifactRef(document_type=document_type, source_path=path)
    channel.log(f"Generated {label} ({len(content)} chars)", "success")
    return SecondaryOutcome(
        document_type=document_type,
        status=SecondaryStatus.GENERATED,
        content=content,
        path=path,
    )


def _summarize(result: GenerationResult) -> str:
    primary = result.primary
    if primary.status == PrimaryStatus.FAILED:
        parts = [f"CV generation failed: {primary.error}"]
    elif primary.status == PrimaryStatus.DEGRADED:
        pages = f"{primary.page_count} pages" if primary.page_count else "not compiled"
        parts = [f"CV generated as best effort ({pages}, {primary.attempts} attempts)"]
    else:
        parts = [f"CV generated ({primary.page_count} pages, {primary.attempts} attempt(s))"]

    for outcome in result.secondary.values():
        label = DOCUMENT_LABELS[outcome.document_type]
        if outcome.status == SecondaryStatus.GENERATED:
            parts.append(f"{label} generated")
        elif outcome.status == SecondaryStatus.SKIPPED:
            parts.append(f"{label} skipped")
        else:
            parts.append(f"{label} failed: {outcome.error}")
    return "; ".join(parts) + "."


# -- Entry points --


def run_generation(
    owner_id: str,
    raw_input: str,
    *,
    session_id: Optional[str] = None,
    preferences: Optional[dict[str, Any]] = None,
    channel: Optional[ProgressChannel] = None,
    services: Optional[GenerationServices] = None,
) -> GenerationResult:
    """Run one generation request to completion.

    Raises:
        InputInvalid, SessionNotFound, SessionLocked, ConcurrentModification,
        UpstreamFetchFailed: Before any session is created or touched.
        Anything unexpected after that point, once the session is marked failed.
    """
    services = services or get_services()
    channel = channel or ProgressChannel()

    prefs, existing = validate_request(owner_id, raw_input, session_id, preferences)

    channel.log("Analyzing job input...")
    job = resolve_job_context(raw_input, services, channel.log)
    sources = load_source_files(services.store, owner_id)
    channel.log("Loaded source files")

    if existing is not None:
        session_manager.begin_processing(existing.session_id, job)
        session = existing.model_copy(update={"job": job, "state": SessionState.PROCESSING})
    else:
        session = session_manager.create_session(owner_id, job)
    sid = session.session_id

    finished = False
    try:
        channel.bind_session(sid)
        session_manager.append_chat_message(sid, ChatMessage(role="user", content=raw_input))

        artifacts: dict[str, ArtifactRef] = {}
        secondary: dict[str, SecondaryOutcome] = {}

        with scratch_area() as scratch:
            primary, cv_text = _generate_primary(session, sources, services, channel, scratch, artifacts)

            for document_type in SECONDARY_DOCUMENT_TYPES:
                label = DOCUMENT_LABELS[document_type]
                if not prefs.wants(document_type):
                    channel.log(f"Skipping {label} (disabled in preferences)")
                    secondary[document_type.value] = SecondaryOutcome(
                        document_type=document_type, status=SecondaryStatus.SKIPPED
                    )
                    continue
                try:
                    secondary[document_type.value] = _generate_secondary(
                        document_type, session, sources, cv_text, services, channel, artifacts
                    )
                except Exception as e:
                    logger.exception(f"{label} generation failed for session {sid}")
                    message = e.message if isinstance(e, TailorError) else str(e)
                    code = e.code if isinstance(e, TailorError) else "internal_error"
                    channel.log(f"Failed to generate {label}: {message}", "error")
                    channel.error(f"Failed to generate {label}: {message}", code, terminal=False)
                    secondary[document_type.value] = SecondaryOutcome(
                        document_type=document_type, status=SecondaryStatus.FAILED, error=message
                    )

        merged = dict(existing.artifacts) if existing is not None else {}
        merged.update(artifacts)
        session_manager.write_artifacts(sid, merged)

        state = SessionState.FAILED if primary.status == PrimaryStatus.FAILED else SessionState.COMPLETED
        partial_failure = primary.status != PrimaryStatus.GENERATED or any(
            o.status == SecondaryStatus.FAILED for o in secondary.values()
        )
        result = GenerationResult(
            session_id=sid,
            run_id=channel.run_id,
            state=state,
            primary=primary,
            secondary=secondary,
            partial_failure=partial_failure,
            job=job,
        )

        summary = _summarize(result)
        channel.log(summary, "error" if state == SessionState.FAILED else "success")
        session_manager.append_chat_message(sid, ChatMessage(
            role="assistant",
            content=summary,
            result=result.model_dump(mode="json"),
            logs=channel.log_snapshot(),
        ))
        session_manager.finish_session(sid, state, error=primary.error if state == SessionState.FAILED else None)
        finished = True

        if state == SessionState.FAILED:
            channel.error(summary, GenerationBackendPermanent.code)
        else:
            channel.complete(result.model_dump(mode="json"))
        return result

    except Exception as e:
        if not finished:
            message = e.message if isinstance(e, TailorError) else str(e)
            logger.exception(f"Generation run {channel.run_id} failed for session {sid}")
            try:
                session_manager.finish_session(sid, SessionState.FAILED, error=message)
            except Exception:
                logger.exception(f"Could not mark session {sid} as failed")
            if not channel.closed:
                channel.error(f"Generation failed: {message}", getattr(e, "code", "internal_error"))
        raise


def _run_in_background(
    owner_id: str,
    raw_input: str,
    session_id: Optional[str],
    preferences: Optional[dict[str, Any]],
    channel: ProgressChannel,
    services: Optional[GenerationServices],
) -> None:
    try:
        run_generation(
            owner_id,
            raw_input,
            session_id=session_id,
            preferences=preferences,
            channel=channel,
            services=services,
        )
    except TailorError as e:
        logger.warning(f"Generation run {channel.run_id} ended with {e.code}: {e.message}")
        if not channel.closed:
            channel.error(e.message, e.code)
    except Exception as e:
        logger.exception(f"Generation run {channel.run_id} crashed")
        if not channel.closed:
            channel.error(f"Unexpected error: {e}", "internal_error")


def start_generation(
    owner_id: str,
    raw_input: str,
    session_id: Optional[str] = None,
    preferences: Optional[dict[str, Any]] = None,
    services: Optional[GenerationServices] = None,
) -> ProgressChannel:
    """Validate, then run the generation in a background thread.

    Precondition failures raise here, synchronously. Everything else is
    reported through the returned channel.
    """
    validate_request(owner_id, raw_input, session_id, preferences)

    channel = ProgressChannel()
    thread = threading.Thread(
        target=_run_in_background,
        args=(owner_id, raw_input, session_id, preferences, channel, services),
        name=f"generation-{channel.run_id}",
        daemon=True,
    )
    thread.start()
    logger.info(f"Started generation thread for run {channel.run_id}")
    return channel
