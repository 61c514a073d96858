import re
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from tailor.executor import db, engine_runner, orchestrator
from tailor.executor.compiler import CompiledDocument
from tailor.executor.content_store import LocalContentStore, save_source_file
from tailor.executor.errors import CompileError, UpstreamFetchFailed
from tailor.executor.orchestrator import GenerationServices
from tailor.prompts.composer import PromptComposer

OWNER = "owner-1"

JOB_POSTING = """Acme Analytics is hiring a Data Engineer.
You will build batch and streaming pipelines in Python and SQL.
Questions? Write to jobs@acme.example or hiring@acme.example (jobs@acme.example preferred).
"""

_PAGES_RE = re.compile(r"%pages=(\d+)")


def cv(pages: int, tag: str = "") -> str:
    """A fake CV whose compiled page count is encoded in the source."""
    return f"\\documentclass{{article}}\n%pages={pages}\n%tag={tag}\n\\begin{{document}}CV\\end{{document}}"


def broken_cv(tag: str = "") -> str:
    return f"\\documentclass{{article}}\n%broken\n%tag={tag}\n\\begin{{document}}\\oops"


class FakeGenerator:
    """Scripted generation backend keyed by call label.

    Values may be a string, an exception (raised), a callable taking the
    prompt, or a list consumed one item per call (the last item repeats).
    All CV attempts share the ``cv`` key.
    """

    def __init__(self, responses=None):
        self.responses = {
            "job details": '{"companyName": "Acme Analytics", "jobTitle": "Data Engineer"}',
            "job description": JOB_POSTING,
            "cv": cv(2),
            "cv change summary": "- Reworded the summary for data engineering",
            "cover letter": "Dear Hiring Manager,\nI would like to apply.",
            "cold email": "Subject: Data Engineer role\nHi there.",
        }
        self.responses.update(responses or {})
        self.calls = []

    def _key(self, label: str) -> str:
        if label.startswith("cv attempt"):
            return "cv"
        if label.startswith("refine"):
            return "refine"
        return label

    def generate(self, prompt, *, system_prompt="", json_mode=False, label=""):
        self.calls.append({
            "label": label,
            "prompt": prompt,
            "system_prompt": system_prompt,
            "json_mode": json_mode,
        })
        key = self._key(label)
        value = self.responses.get(key, f"generated {label}")
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if isinstance(value, BaseException):
            raise value
        if callable(value):
            return value(prompt)
        return value

    def labels(self) -> list[str]:
        return [c["label"] for c in self.calls]


class FakeCompiler:
    """Reads the page count from ``%pages=N``; ``%broken`` fails to compile."""

    file_extension = "tex"

    def __init__(self):
        self.compiled = []
        self.workdirs = []

    def compile(self, markup, workdir, name="document"):
        workdir.mkdir(parents=True, exist_ok=True)
        (workdir / f"{name}.tex").write_text(markup, encoding="utf-8")
        self.compiled.append(markup)
        self.workdirs.append(workdir)
        if "%broken" in markup:
            raise CompileError("! Undefined control sequence. l.4 \\oops", "! Undefined control sequence.")
        match = _PAGES_RE.search(markup)
        pages = int(match.group(1)) if match else 2
        return CompiledDocument(page_count=pages, artifact_bytes=f"%PDF-{markup}".encode("utf-8"))

    def extract_text(self, artifact_bytes, workdir):
        return "Extracted CV text: Python, SQL, Airflow"


class FakeResolver:
    def __init__(self, content="<main>Data Engineer at Acme Analytics</main>", error=None):
        self.content = content
        self.error = error
        self.fetched = []

    def fetch(self, url):
        self.fetched.append(url)
        if self.error is not None:
            raise self.error
        return self.content


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "DATABASE_URL", "")
    monkeypatch.setattr(db, "SQLITE_PATH", tmp_path / "tailor.db")
    monkeypatch.setattr(db, "_initialized", False)
    db.init_db()
    yield


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    sleeps = []
    monkeypatch.setattr(engine_runner.time, "sleep", lambda seconds: sleeps.append(seconds))
    return sleeps


@pytest.fixture()
def store(tmp_path):
    return LocalContentStore(tmp_path / "storage")


@pytest.fixture()
def generator():
    return FakeGenerator()


@pytest.fixture()
def compiler():
    return FakeCompiler()


@pytest.fixture()
def resolver():
    return FakeResolver()


@pytest.fixture()
def composer():
    return PromptComposer()


@pytest.fixture()
def services(generator, compiler, store, resolver, composer):
    services = GenerationServices(
        generator=generator,
        compiler=compiler,
        store=store,
        resolver=resolver,
        composer=composer,
    )
    orchestrator.configure_services(services)
    yield services
    orchestrator.configure_services(None)


@pytest.fixture()
def owner(store):
    save_source_file(store, OWNER, "original_cv", cv(2, "original"), "tex")
    save_source_file(store, OWNER, "extensive_cv", "Master CV: Airflow, Kafka, dbt", "txt")
    save_source_file(store, OWNER, "cover_letter_strategy", "Lead with impact.", "txt")
    return OWNER


@pytest.fixture()
def unreachable_resolver():
    return FakeResolver(error=UpstreamFetchFailed("Failed to fetch URL: connection refused"))
