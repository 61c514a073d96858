import pytest

from tailor.executor.content_store import (
    check_path_segment,
    generated_file_path,
    load_source_files,
    read_text,
    save_source_file,
)
from tailor.executor.errors import ContentStoreError, InputInvalid


def test_write_read_list_delete(store):
    store.write("users/a/source_files/notes.txt", "hello")
    store.write("users/a/sessions/s1/generated_files/cv.pdf", b"%PDF")

    assert read_text(store, "users/a/source_files/notes.txt") == "hello"
    assert store.list("users/a") == [
        "users/a/sessions/s1/generated_files/cv.pdf",
        "users/a/source_files/notes.txt",
    ]
    store.delete("users/a/source_files/notes.txt")
    assert not store.exists("users/a/source_files/notes.txt")
    assert store.list("users/b") == []


def test_read_missing_file(store):
    with pytest.raises(ContentStoreError):
        store.read("users/a/nothing.txt")


def test_paths_cannot_escape_root(store):
    with pytest.raises(ContentStoreError):
        store.write("../outside.txt", "x")


def test_generated_file_path():
    assert generated_file_path("o", "s", "cv.tex") == "users/o/sessions/s/generated_files/cv.tex"


@pytest.mark.parametrize("owner_id", ["evil/../victim", "..", "a\\b", ""])
def test_owner_id_must_be_a_single_path_segment(owner_id):
    with pytest.raises(InputInvalid):
        check_path_segment(owner_id)
    with pytest.raises(InputInvalid):
        generated_file_path(owner_id, "s", "cv.tex")


def test_load_source_files_requires_base_cv(store):
    save_source_file(store, "o", "extensive_cv", "master", "txt")

    with pytest.raises(InputInvalid, match="original_cv not found"):
        load_source_files(store, "o")


def test_load_source_files_optional_material(store):
    save_source_file(store, "o", "original_cv", "# Jane", "md")
    save_source_file(store, "o", "cold_email_strategy", "Be brief", "md")

    sources = load_source_files(store, "o")

    assert sources.original_cv == "# Jane"
    assert sources.cold_email_strategy == "Be brief"
    assert sources.extensive_cv == ""


def test_reupload_replaces_other_extension(store):
    save_source_file(store, "o", "cv_strategy", "old", "md")
    path = save_source_file(store, "o", "cv_strategy", "new", "txt")

    assert store.list("users/o/source_files/") == [path]


@pytest.mark.parametrize(
    "kind, content, extension",
    [
        ("photo", "x", "txt"),
        ("original_cv", "x", "docx"),
        ("original_cv", "   ", "tex"),
    ],
)
def test_save_source_file_validation(store, kind, content, extension):
    with pytest.raises(InputInvalid):
        save_source_file(store, "o", kind, content, extension)
