"""Content store for source files and generated documents.

Layout (relative to the store root):
    users/{owner_id}/source_files/{name}
    users/{owner_id}/sessions/{session_id}/generated_files/{filename}

Paths handed to and returned from the store are always these relative,
forward-slash paths, so session records stay portable across roots.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Union

from tailor.executor.errors import ContentStoreError, InputInvalid

logger = logging.getLogger(__name__)

STORAGE_ROOT = Path(os.environ.get("TAILOR_STORAGE_ROOT", str(Path.cwd() / "storage")))

ORIGINAL_CV_NAMES = ("original_cv.tex", "original_cv.md")
TEXT_SOURCE_EXTENSIONS = (".txt", ".md", ".tex")
SOURCE_FILE_KINDS = (
    "original_cv",
    "extensive_cv",
    "cv_strategy",
    "cover_letter_strategy",
    "cold_email_strategy",
)


class ContentStore(Protocol):
    def write(self, path: str, data: Union[bytes, str]) -> None:
        ...

    def read(self, path: str) -> bytes:
        ...

    def exists(self, path: str) -> bool:
        ...

    def list(self, prefix: str) -> list[str]:
        ...

    def delete(self, path: str) -> None:
        ...


def check_path_segment(value: str, what: str = "owner id") -> str:
    """Reject values that would step outside their own ``users/...`` folder."""
    if not value or "/" in value or "\\" in value or ".." in value or "\x00" in value:
        raise InputInvalid(f"Invalid {what}: {value!r}")
    return value


def source_files_prefix(owner_id: str) -> str:
    return f"users/{check_path_segment(owner_id)}/source_files/"


def session_prefix(owner_id: str, session_id: str) -> str:
    return f"users/{check_path_segment(owner_id)}/sessions/{check_path_segment(session_id, 'session id')}/"


def generated_file_path(owner_id: str, session_id: str, filename: str) -> str:
    return f"{session_prefix(owner_id, session_id)}generated_files/{filename}"


class LocalContentStore:
    """Filesystem-backed store rooted at TAILOR_STORAGE_ROOT."""

    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root or STORAGE_ROOT).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        full = (self.root / path.lstrip("/")).resolve()
        if full != self.root and self.root not in full.parents:
            raise ContentStoreError(f"Path escapes the store root: {path}")
        return full

    def write(self, path: str, data: Union[bytes, str]) -> None:
        full = self._resolve(path)
        full.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(data, str):
            data = data.encode("utf-8")
        tmp = full.with_name(f".{full.name}.tmp")
        tmp.write_bytes(data)
        os.replace(tmp, full)
        logger.debug(f"Wrote {len(data)} bytes to {path}")

    def read(self, path: str) -> bytes:
        full = self._resolve(path)
        if not full.is_file():
            raise ContentStoreError(f"File not found: {path}")
        return full.read_bytes()

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def list(self, prefix: str) -> list[str]:
        """All file paths under ``prefix``, sorted."""
        base = self._resolve(prefix)
        if base.is_file():
            return [prefix]
        if not base.is_dir():
            return []
        return sorted(
            p.relative_to(self.root).as_posix()
            for p in base.rglob("*")
            if p.is_file() and not p.name.startswith(".")
        )

    def delete(self, path: str) -> None:
        full = self._resolve(path)
        if full.is_file():
            full.unlink()
            logger.debug(f"Deleted {path}")


def read_text(store: ContentStore, path: str) -> str:
    return store.read(path).decode("utf-8", errors="replace")


@dataclass
class SourceFiles:
    """The owner's base material for a generation run."""

    original_cv: str
    extensive_cv: str = ""
    cv_strategy: str = ""
    cover_letter_strategy: str = ""
    cold_email_strategy: str = ""


def _find_source(files: list[str], prefix: str, kind: str) -> Optional[str]:
    for ext in TEXT_SOURCE_EXTENSIONS:
        candidate = f"{prefix}{kind}{ext}"
        if candidate in files:
            return candidate
    return None


def load_source_files(store: ContentStore, owner_id: str) -> SourceFiles:
    """Load the owner's source files. Only the base CV is required.

    Raises:
        InputInvalid: If no base CV has been uploaded
    """
    prefix = source_files_prefix(owner_id)
    files = store.list(prefix)

    original_path = next((f"{prefix}{n}" for n in ORIGINAL_CV_NAMES if f"{prefix}{n}" in files), None)
    if original_path is None:
        raise InputInvalid("original_cv not found. Please upload your original CV first.")

    loaded = {"original_cv": read_text(store, original_path)}
    for kind in SOURCE_FILE_KINDS[1:]:
        path = _find_source(files, prefix, kind)
        if path is None:
            logger.info(f"No {kind} source file for owner {owner_id}")
            continue
        loaded[kind] = read_text(store, path)

    return SourceFiles(**loaded)


def save_source_file(store: ContentStore, owner_id: str, kind: str, content: str, extension: str = "txt") -> str:
    """Store one of the owner's source files, replacing any earlier upload of that kind.

    Raises:
        InputInvalid: For an unknown kind or extension
    """
    if kind not in SOURCE_FILE_KINDS:
        raise InputInvalid(f"Unknown source file kind: {kind}. Expected one of {', '.join(SOURCE_FILE_KINDS)}")
    if f".{extension}" not in TEXT_SOURCE_EXTENSIONS:
        raise InputInvalid(f"Unsupported source file extension: .{extension}")
    if not content.strip():
        raise InputInvalid(f"{kind} is empty")

    prefix = source_files_prefix(owner_id)
    path = f"{prefix}{kind}.{extension}"
    for ext in TEXT_SOURCE_EXTENSIONS:
        stale = f"{prefix}{kind}{ext}"
        if stale != path:
            store.delete(stale)
    store.write(path, content)
    logger.info(f"Saved {kind} for owner {owner_id} ({len(content)} chars)")
    return path
