from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Iterable

import fitz  # PyMuPDF

from .errors import SplitError

# Chunk files are named "<stem>_-<first>-<last>.<ext>"; page numbers are zero-padded
# to the width of the document's page count, the way qpdf --split-pages names them.
_RE_CHUNK_RANGE = re.compile(r"_-(\d+)-(\d+)$")
_RE_COUNTER = re.compile(r"\((\d+)\)$")


def ensure_dir(p: Path) -> None:
    Path(p).mkdir(parents=True, exist_ok=True)


def count_pages(pdf_path: Path) -> int:
    try:
        with fitz.open(str(pdf_path)) as doc:
            n = int(doc.page_count)
    except Exception as e:  # noqa: BLE001 - fitz raises several unrelated types
        raise SplitError(f"Could not determine page count of {pdf_path}: {e}") from e
    if n < 1:
        raise SplitError(f"Could not determine page count of {pdf_path}: document has no pages")
    return n


def chunk_file_stem(stem: str, first_page: int, last_page: int, total_pages: int) -> str:
    width = len(str(max(1, int(total_pages))))
    return f"{stem}_-{first_page:0{width}d}-{last_page:0{width}d}"


def chunk_page_range(name: str | Path) -> tuple[int, int] | None:
    """(first, last) page encoded in a chunk file or directory name, or None."""
    p = Path(name)
    # Directory names carry no extension but the stem may contain dots.
    m = _RE_CHUNK_RANGE.search(p.name) or _RE_CHUNK_RANGE.search(p.stem)
    if not m:
        return None
    return int(m.group(1)), int(m.group(2))


def chunk_sort_key(name: str | Path) -> int:
    rng = chunk_page_range(name)
    if rng is None:
        raise ValueError(f"not a chunk file name: {name}")
    return rng[0]


def sort_chunk_paths(paths: Iterable[Path]) -> list[Path]:
    """Page order from the numeric field in the name; listing order is never trusted."""
    return sorted((Path(p) for p in paths if chunk_page_range(p) is not None), key=chunk_sort_key)


def _sanitize_component(s: str) -> str:
    s = (s or "").strip()
    s = re.sub(r"[^\w]+", "", s, flags=re.UNICODE)
    return s.replace("_", "")


def attachment_dir_name(identity: str) -> str:
    """
    Deterministic, collision-free attachment directory name for one chunk output.

    16 sanitized characters of the identity followed by 8 hex chars of its md5.
    """
    digest = hashlib.md5(identity.encode("utf-8", errors="replace")).hexdigest()[:8]
    abbrev = _sanitize_component(identity)[:16]
    return f"attachments_{abbrev}{digest}"


def unique_path(path: Path) -> Path:
    """
    Return path, or "<name>(n).<ext>" with the first free counter when it exists.

    An existing "(n)" counter on the name is incremented rather than nested.
    """
    path = Path(path)
    while path.exists():
        name = path.name
        base, dot, rest = name.partition(".")
        counter = 1
        m = _RE_COUNTER.search(base)
        if m:
            counter = int(m.group(1)) + 1
            base = base[: m.start()]
        path = path.with_name(f"{base}({counter}){dot}{rest}")
    return path


def format_duration(total_seconds: float) -> str:
    s = max(0, int(total_seconds))
    return f"{s // 3600:02d}:{(s % 3600) // 60:02d}:{s % 60:02d}"
