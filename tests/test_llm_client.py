import json

import pytest

from tailor.llm.client import parse_llm_json_response, strip_code_fences


def test_strip_code_fences_with_language():
    assert strip_code_fences("```latex\n\\documentclass{article}\n```") == "\\documentclass{article}"


def test_strip_code_fences_leaves_plain_text():
    assert strip_code_fences("  Dear Hiring Manager,\n") == "Dear Hiring Manager,"


def test_parse_json_inside_fences():
    raw = '```json\n{"companyName": "Acme", "jobTitle": "Engineer"}\n```'

    assert parse_llm_json_response(raw) == {"companyName": "Acme", "jobTitle": "Engineer"}


def test_parse_json_rejects_non_object():
    with pytest.raises(ValueError):
        parse_llm_json_response("[1, 2]")


def test_parse_json_rejects_prose():
    with pytest.raises(json.JSONDecodeError):
        parse_llm_json_response("The company is Acme.")
