"""Markup compilers: turn generated source into a paged PDF and measure it.

Two implementations behind one contract:
- LatexCompiler: pdflatex, then poppler's pdfinfo for the page count
- HtmlCompiler: markdown -> HTML -> WeasyPrint, page count from the layout

Both raise CompileError when no PDF comes out. Text extraction uses
poppler's pdftotext for either.
"""

import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import markdown

from tailor.executor.errors import CompileError

logger = logging.getLogger(__name__)

COMPILER_KIND = os.environ.get("TAILOR_COMPILER", "latex")
COMPILE_TIMEOUT = int(os.environ.get("TAILOR_COMPILE_TIMEOUT", "120"))  # seconds

_PAGES_RE = re.compile(r"Pages:\s+(\d+)")

CV_STYLESHEET = """
@page { size: A4; margin: 1.6cm 1.8cm; }
body { font-family: "DejaVu Sans", Arial, sans-serif; font-size: 10pt; line-height: 1.35; }
h1 { font-size: 18pt; margin: 0 0 4pt 0; }
h2 { font-size: 12pt; border-bottom: 1px solid #444; margin: 10pt 0 4pt 0; }
h3 { font-size: 10.5pt; margin: 6pt 0 2pt 0; }
ul { margin: 2pt 0 4pt 14pt; padding: 0; }
p { margin: 2pt 0; }
"""


@dataclass
class CompiledDocument:
    """A successfully compiled document."""

    page_count: int
    artifact_bytes: bytes
    artifact_path: Optional[Path] = None


class Compiler(Protocol):
    """Contract for turning source markup into a measured, paged artifact."""

    file_extension: str

    def compile(self, markup: str, workdir: Path, name: str = "document") -> CompiledDocument:
        ...

    def extract_text(self, artifact_bytes: bytes, workdir: Path) -> str:
        ...


def _run(args: list[str], cwd: Path) -> subprocess.CompletedProcess:
    return subprocess.run(
        args,
        cwd=str(cwd),
        capture_output=True,
        text=True,
        errors="replace",
        timeout=COMPILE_TIMEOUT,
        check=False,
    )


def pdf_page_count(pdf_path: Path) -> int:
    """Read the page count with pdfinfo (poppler)."""
    try:
        result = _run(["pdfinfo", str(pdf_path)], pdf_path.parent)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise CompileError(f"pdfinfo failed: {e}") from e
    match = _PAGES_RE.search(result.stdout)
    if not match:
        raise CompileError("Could not determine page count from pdfinfo output")
    return int(match.group(1))


def pdf_to_text(artifact_bytes: bytes, workdir: Path) -> str:
    """Extract plain text from PDF bytes with pdftotext (poppler)."""
    workdir.mkdir(parents=True, exist_ok=True)
    pdf_path = workdir / "extract.pdf"
    pdf_path.write_bytes(artifact_bytes)
    try:
        result = _run(["pdftotext", str(pdf_path), "-"], workdir)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise CompileError(f"pdftotext failed: {e}") from e
    if result.returncode != 0:
        raise CompileError(f"pdftotext exited with {result.returncode}: {result.stderr.strip()}")
    return result.stdout


def _latex_error_excerpt(log_text: str, max_lines: int = 12) -> str:
    """Pull the '!'-prefixed error lines (plus a line of context) out of a LaTeX log."""
    lines = log_text.splitlines()
    excerpt: list[str] = []
    for i, line in enumerate(lines):
        if line.startswith("!"):
            excerpt.extend(lines[i:i + 2])
        if len(excerpt) >= max_lines:
            break
    if not excerpt:
        excerpt = lines[-max_lines:]
    return "\n".join(excerpt[:max_lines])


class LatexCompiler:
    """pdflatex in nonstopmode; a produced PDF counts as success even on a non-zero exit."""

    file_extension = "tex"

    def __init__(self, binary: str = "pdflatex"):
        self.binary = binary

    def compile(self, markup: str, workdir: Path, name: str = "document") -> CompiledDocument:
        workdir.mkdir(parents=True, exist_ok=True)
        tex_path = workdir / f"{name}.tex"
        pdf_path = workdir / f"{name}.pdf"
        tex_path.write_text(markup, encoding="utf-8")
        if pdf_path.exists():
            pdf_path.unlink()

        try:
            result = _run(
                [self.binary, "-interaction=nonstopmode", "-halt-on-error", tex_path.name],
                workdir,
            )
        except FileNotFoundError as e:
            raise CompileError(f"{self.binary} is not installed") from e
        except subprocess.TimeoutExpired as e:
            raise CompileError(f"{self.binary} timed out after {COMPILE_TIMEOUT}s") from e

        if not pdf_path.exists():
            log_path = workdir / f"{name}.log"
            log_text = log_path.read_text(errors="replace") if log_path.exists() else result.stdout
            excerpt = _latex_error_excerpt(log_text)
            raise CompileError(f"PDF compilation failed: {excerpt or 'no output produced'}", excerpt)

        page_count = pdf_page_count(pdf_path)
        logger.debug(f"Compiled {tex_path.name}: {page_count} pages")
        return CompiledDocument(
            page_count=page_count,
            artifact_bytes=pdf_path.read_bytes(),
            artifact_path=pdf_path,
        )

    def extract_text(self, artifact_bytes: bytes, workdir: Path) -> str:
        return pdf_to_text(artifact_bytes, workdir)


class HtmlCompiler:
    """Markdown source laid out by WeasyPrint."""

    file_extension = "md"

    def __init__(self, stylesheet: str = CV_STYLESHEET):
        self.stylesheet = stylesheet

    def compile(self, markup: str, workdir: Path, name: str = "document") -> CompiledDocument:
        from weasyprint import HTML

        workdir.mkdir(parents=True, exist_ok=True)
        source_path = workdir / f"{name}.md"
        pdf_path = workdir / f"{name}.pdf"
        source_path.write_text(markup, encoding="utf-8")

        body = markdown.markdown(markup, extensions=["tables", "sane_lists"])
        html_str = (
            "<!DOCTYPE html><html><head><meta charset='utf-8'>"
            f"<style>{self.stylesheet}</style></head><body>{body}</body></html>"
        )
        try:
            document = HTML(string=html_str, base_url=str(workdir)).render()
            pdf_bytes = document.write_pdf()
        except Exception as e:
            raise CompileError(f"PDF rendering failed: {e}", str(e)) from e

        pdf_path.write_bytes(pdf_bytes)
        return CompiledDocument(
            page_count=len(document.pages),
            artifact_bytes=pdf_bytes,
            artifact_path=pdf_path,
        )

    def extract_text(self, artifact_bytes: bytes, workdir: Path) -> str:
        return pdf_to_text(artifact_bytes, workdir)


def get_compiler(kind: Optional[str] = None) -> Compiler:
    """Resolve the configured compiler ('latex' or 'html')."""
    kind = (kind or COMPILER_KIND).lower()
    if kind == "latex":
        if shutil.which("pdflatex") is None:
            logger.warning("pdflatex not found on PATH; CV compilation will fail")
        return LatexCompiler()
    elif kind == "html":
        return HtmlCompiler()
    raise ValueError(f"Unknown compiler: '{kind}'. Expected 'latex' or 'html'.")
