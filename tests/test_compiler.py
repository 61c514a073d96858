import subprocess

import pytest

from tailor.executor import compiler as compiler_module
from tailor.executor.compiler import HtmlCompiler, LatexCompiler, _latex_error_excerpt, get_compiler
from tailor.executor.errors import CompileError

LATEX_LOG = """This is pdfTeX, Version 3.141592653
(./cv.tex
LaTeX2e <2023-11-01>
! Undefined control sequence.
l.12 \\oops
            {}
No pages of output.
"""


def _fake_run(pages=None, write_pdf=True, log=LATEX_LOG):
    calls = []

    def run(args, cwd):
        calls.append(args)
        if args[0] == "pdfinfo":
            return subprocess.CompletedProcess(args, 0, stdout=f"Title: cv\nPages:          {pages}\n", stderr="")
        tex_name = args[-1]
        stem = tex_name.rsplit(".", 1)[0]
        (cwd / f"{stem}.log").write_text(log)
        if write_pdf:
            (cwd / f"{stem}.pdf").write_bytes(b"%PDF-1.5 fake")
        return subprocess.CompletedProcess(args, 1 if log else 0, stdout="", stderr="")

    run.calls = calls
    return run


def test_latex_compile_reads_page_count(tmp_path, monkeypatch):
    run = _fake_run(pages=2)
    monkeypatch.setattr(compiler_module, "_run", run)

    compiled = LatexCompiler().compile("\\documentclass{article}", tmp_path / "attempt_1", name="cv")

    assert compiled.page_count == 2
    assert compiled.artifact_bytes == b"%PDF-1.5 fake"
    assert (tmp_path / "attempt_1" / "cv.tex").read_text() == "\\documentclass{article}"
    assert run.calls[0][:2] == ["pdflatex", "-interaction=nonstopmode"]


def test_latex_nonzero_exit_with_pdf_counts_as_success(tmp_path, monkeypatch):
    monkeypatch.setattr(compiler_module, "_run", _fake_run(pages=3))

    assert LatexCompiler().compile("x", tmp_path).page_count == 3


def test_latex_without_pdf_raises_with_log_excerpt(tmp_path, monkeypatch):
    monkeypatch.setattr(compiler_module, "_run", _fake_run(write_pdf=False))

    with pytest.raises(CompileError) as excinfo:
        LatexCompiler().compile("x", tmp_path, name="cv")

    assert "! Undefined control sequence." in excinfo.value.message
    assert excinfo.value.log_excerpt.startswith("! Undefined control sequence.\nl.12")


def test_missing_binary_is_a_compile_error(tmp_path):
    with pytest.raises(CompileError) as excinfo:
        LatexCompiler(binary="definitely-not-a-latex-binary").compile("x", tmp_path)

    assert "is not installed" in excinfo.value.message


def test_error_excerpt_falls_back_to_log_tail():
    log = "\n".join(f"line {n}" for n in range(30))

    assert _latex_error_excerpt(log, max_lines=3) == "line 27\nline 28\nline 29"


def test_get_compiler():
    assert isinstance(get_compiler("latex"), LatexCompiler)
    assert isinstance(get_compiler("HTML"), HtmlCompiler)
    assert get_compiler("html").file_extension == "md"
    with pytest.raises(ValueError):
        get_compiler("docx")
