import pytest

from conftest import FakeGenerator, broken_cv, cv
from tailor.executor.errors import GenerationBackendPermanent
from tailor.executor.retry_loop import EMPTY_SOURCE_ERROR, GenerationContext, run_validation_loop
from tailor.executor.schemas import AttemptOutcome


@pytest.fixture()
def context():
    return GenerationContext(
        job_description="Data Engineer building pipelines in Python",
        original_cv=cv(2, "original"),
        company_name="Acme Analytics",
        job_title="Data Engineer",
        extensive_cv="Master CV",
    )


def _run(context, generator, compiler, composer, tmp_path, **kwargs):
    return run_validation_loop(
        context,
        generator=generator,
        compiler=compiler,
        composer=composer,
        scratch_dir=tmp_path / "scratch",
        **kwargs,
    )


def _cv_prompts(generator):
    return [c["prompt"] for c in generator.calls if c["label"].startswith("cv attempt")]


def test_three_pages_then_two_succeeds_on_second_attempt(context, compiler, composer, tmp_path):
    generator = FakeGenerator({"cv": [cv(3), cv(2)]})

    result = _run(context, generator, compiler, composer, tmp_path, target_pages=2, max_attempts=3)

    assert result.success is True
    assert result.attempts == 2
    assert result.page_count == 2
    assert result.error is None
    prompts = _cv_prompts(generator)
    assert len(prompts) == 2
    assert "compiled to 3 pages, need 2" in prompts[1]
    assert "reduce its compiled length" in prompts[1]
    assert [a.outcome for a in result.history] == [AttemptOutcome.MISMATCH, AttemptOutcome.SUCCESS]


def test_too_short_uses_extend_prompt(context, compiler, composer, tmp_path):
    generator = FakeGenerator({"cv": [cv(1), cv(2)]})

    result = _run(context, generator, compiler, composer, tmp_path)

    assert result.success is True
    second = _cv_prompts(generator)[1]
    assert "compiled to 1 pages, need 2" in second
    assert "extend its compiled length" in second


def test_first_attempt_uses_base_prompt_with_job_facts(context, generator, compiler, composer, tmp_path):
    result = _run(context, generator, compiler, composer, tmp_path)

    assert result.success is True
    assert result.attempts == 1
    first = _cv_prompts(generator)[0]
    assert "Acme Analytics" in first
    assert "Master CV" in first
    assert "%tag=original" in first


def test_all_attempts_fail_to_compile(context, compiler, composer, tmp_path):
    generator = FakeGenerator({"cv": [broken_cv("a"), broken_cv("b"), broken_cv("c")]})

    result = _run(context, generator, compiler, composer, tmp_path, max_attempts=3)

    assert result.success is False
    assert result.attempts == 3
    assert result.error
    assert "Undefined control sequence" in result.error
    assert result.compiled_artifact is None
    assert result.page_count is None
    # best effort: the last generated source is still returned
    assert "%tag=c" in result.content
    assert all(a.outcome == AttemptOutcome.COMPILE_ERROR for a in result.history)


def test_compile_error_feeds_corrective_prompt(context, compiler, composer, tmp_path):
    generator = FakeGenerator({"cv": [broken_cv(), cv(2)]})

    result = _run(context, generator, compiler, composer, tmp_path)

    assert result.success is True
    assert result.attempts == 2
    second = _cv_prompts(generator)[1]
    assert "failed to compile" in second
    assert "Undefined control sequence" in second
    assert "%broken" in second


def test_exhausted_returns_closest_attempt(context, compiler, composer, tmp_path):
    generator = FakeGenerator({"cv": [cv(4, "a"), cv(3, "b"), cv(5, "c")]})

    result = _run(context, generator, compiler, composer, tmp_path, target_pages=2, max_attempts=3)

    assert result.success is False
    assert result.attempts == 3
    assert result.page_count == 3
    assert "%tag=b" in result.content
    assert result.compiled_artifact is not None
    assert "3 pages" in result.error


def test_closest_attempt_tie_prefers_later(context, compiler, composer, tmp_path):
    generator = FakeGenerator({"cv": [cv(3, "a"), cv(1, "b"), broken_cv("c")]})

    result = _run(context, generator, compiler, composer, tmp_path, target_pages=2, max_attempts=3)

    assert result.success is False
    assert result.page_count == 1
    assert "%tag=b" in result.content


def test_permanent_failure_on_first_attempt_propagates(context, compiler, composer, tmp_path):
    generator = FakeGenerator({"cv": GenerationBackendPermanent("quota exceeded")})

    with pytest.raises(GenerationBackendPermanent):
        _run(context, generator, compiler, composer, tmp_path)

    assert compiler.compiled == []


def test_permanent_failure_after_first_attempt_keeps_earlier_result(context, compiler, composer, tmp_path):
    generator = FakeGenerator({"cv": [cv(3, "a"), GenerationBackendPermanent("quota exceeded")]})

    result = _run(context, generator, compiler, composer, tmp_path)

    assert result.success is False
    assert result.page_count == 3
    assert "%tag=a" in result.content
    assert "quota exceeded" in result.error


def test_code_fences_are_stripped_before_compiling(context, compiler, composer, tmp_path):
    generator = FakeGenerator({"cv": f"```latex\n{cv(2)}\n```"})

    result = _run(context, generator, compiler, composer, tmp_path)

    assert result.success is True
    assert compiler.compiled[0].startswith("\\documentclass")
    assert "```" not in result.content


def test_attempt_files_live_in_scratch_dir(context, compiler, composer, tmp_path):
    generator = FakeGenerator({"cv": [cv(3), cv(2)]})

    _run(context, generator, compiler, composer, tmp_path)

    assert (tmp_path / "scratch" / "attempt_1" / "cv.tex").exists()
    assert (tmp_path / "scratch" / "attempt_2" / "cv.tex").exists()


def test_every_step_is_logged(context, compiler, composer, tmp_path):
    generator = FakeGenerator({"cv": [cv(3), cv(2)]})
    lines = []

    _run(context, generator, compiler, composer, tmp_path, log=lambda message, level="info": lines.append((level, message)))

    messages = [m for _, m in lines]
    assert "Generating CV (attempt 1/3)..." in messages
    assert "Compiling CV (attempt 2)..." in messages
    assert any(level == "warning" and "compiled to 3 pages, need 2" in m for level, m in lines)
    assert lines[-1][0] == "success"


@pytest.mark.parametrize(
    "script",
    [
        [cv(2)],
        [cv(3), cv(2)],
        [cv(1), cv(3), cv(2)],
        [cv(3), cv(3), cv(3)],
        [broken_cv(), cv(4), broken_cv()],
        [broken_cv(), broken_cv(), cv(2)],
        [cv(5), cv(1), cv(2)],
    ],
)
def test_page_count_matches_or_attempts_exhausted(context, compiler, composer, tmp_path, script):
    generator = FakeGenerator({"cv": list(script)})

    result = _run(context, generator, compiler, composer, tmp_path, target_pages=2, max_attempts=3)

    assert result.page_count == 2 or result.attempts == 3
    assert result.success == (result.page_count == 2)
    assert result.attempts <= 3


def test_empty_fenced_output_consumes_an_attempt(context, compiler, composer, tmp_path):
    generator = FakeGenerator({"cv": ["```latex\n```", cv(2)]})

    result = _run(context, generator, compiler, composer, tmp_path, target_pages=2, max_attempts=3)

    assert result.success is True
    assert result.attempts == 2
    assert [a.outcome for a in result.history] == [AttemptOutcome.COMPILE_ERROR, AttemptOutcome.SUCCESS]
    assert result.history[0].error == EMPTY_SOURCE_ERROR
    assert len(compiler.compiled) == 1
    assert EMPTY_SOURCE_ERROR in _cv_prompts(generator)[1]
