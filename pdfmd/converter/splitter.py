from __future__ import annotations

from pathlib import Path

import fitz  # PyMuPDF

from ..errors import SplitError
from ..pdf_tools import chunk_file_stem, count_pages, ensure_dir, sort_chunk_paths
from .models import Chunk


def plan_chunks(total_pages: int, chunk_pages: int) -> list[tuple[int, int]]:
    """
    Partition pages 1..total_pages into (start_page, page_count) ranges of at most chunk_pages.

    The ranges are contiguous and disjoint, and their union is exactly [1, total_pages].
    """
    if total_pages < 1:
        raise SplitError("Document has no pages to split")
    if chunk_pages < 1:
        raise SplitError(f"Invalid chunk size: {chunk_pages}")
    out: list[tuple[int, int]] = []
    start = 1
    while start <= total_pages:
        n = min(chunk_pages, total_pages - start + 1)
        out.append((start, n))
        start += n
    return out


def split_pdf(
    pdf_path: Path,
    out_dir: Path,
    chunk_pages: int,
    *,
    total_pages: int | None = None,
    verbose: bool = False,
) -> list[Chunk]:
    """Write one PDF per chunk into out_dir and return the chunks in page order."""
    pdf_path = Path(pdf_path)
    out_dir = Path(out_dir)
    ensure_dir(out_dir)
    if total_pages is None:
        total_pages = count_pages(pdf_path)

    ranges = plan_chunks(total_pages, chunk_pages)
    try:
        src = fitz.open(str(pdf_path))
    except Exception as e:  # noqa: BLE001
        raise SplitError(f"Failed to open {pdf_path} for splitting: {e}") from e

    written: dict[Path, tuple[int, int]] = {}
    try:
        for start, n in ranges:
            end = start + n - 1
            name = chunk_file_stem(pdf_path.stem, start, end, total_pages) + ".pdf"
            dst_path = out_dir / name
            dst = fitz.open()
            try:
                dst.insert_pdf(src, from_page=start - 1, to_page=end - 1)
                dst.save(str(dst_path), garbage=3, deflate=True)
            except Exception as e:  # noqa: BLE001
                raise SplitError(f"Failed to write chunk {name}: {e}") from e
            finally:
                dst.close()
            written[dst_path] = (start, n)
    finally:
        src.close()

    chunks: list[Chunk] = []
    for i, p in enumerate(sort_chunk_paths(written.keys()), start=1):
        start, n = written[p]
        chunks.append(Chunk(index=i, start_page=start, page_count=n, path=p))

    if verbose:
        print(f"Split {pdf_path.name} ({total_pages} pages) into {len(chunks)} chunk(s):", flush=True)
        for c in chunks:
            print(f"  {c.index}: pages {c.start_page}-{c.end_page} -> {c.path.name}", flush=True)
    return chunks
