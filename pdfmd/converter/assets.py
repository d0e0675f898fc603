from __future__ import annotations

import shutil
from pathlib import Path

from ..pdf_tools import attachment_dir_name, ensure_dir
from .md_images import embed_images, rewrite_image_targets
from .models import ConversionResult, RelocatedChunk


def embed_chunk(result: ConversionResult, staging_dir: Path, *, verbose: bool = False) -> RelocatedChunk:
    """
    Inline every local image of one chunk as a data URI.

    The untouched engine markdown is kept beside it as "<stem>.bak.md" before
    the embedded version is written to staging_dir.
    """
    md = Path(result.markdown_path)
    text = md.read_text(encoding="utf-8", errors="replace")
    backup = md.with_name(f"{md.stem}.bak.md")
    shutil.copy2(md, backup)

    new_text, n = embed_images(text, md.parent)
    ensure_dir(staging_dir)
    dst = Path(staging_dir) / md.name
    dst.write_text(new_text, encoding="utf-8")
    if verbose:
        print(f"Embedded {n} image(s) into {md.name}", flush=True)
    return RelocatedChunk(sort_key=result.sort_key, markdown_path=dst)


def bundle_chunk(result: ConversionResult, staging_dir: Path, *, verbose: bool = False) -> RelocatedChunk:
    """
    Move every non-markdown output of one chunk into its own attachments_* directory
    and point the markdown's image references at it.
    """
    md = Path(result.markdown_path)
    chunk_dir = md.parent
    name = attachment_dir_name(md.stem)
    att_dir = chunk_dir / name
    ensure_dir(att_dir)

    moved = 0
    for entry in sorted(chunk_dir.iterdir()):
        if entry == att_dir or entry == md:
            continue
        shutil.move(str(entry), str(att_dir / entry.name))
        moved += 1

    text = md.read_text(encoding="utf-8", errors="replace")
    ensure_dir(staging_dir)
    dst_md = Path(staging_dir) / md.name
    dst_md.write_text(rewrite_image_targets(text, name), encoding="utf-8")

    dst_att = Path(staging_dir) / name
    if dst_att.exists():
        shutil.rmtree(dst_att)
    shutil.move(str(att_dir), str(dst_att))
    if verbose:
        print(f"Moved {moved} asset(s) of {md.name} into {name}", flush=True)
    return RelocatedChunk(sort_key=result.sort_key, markdown_path=dst_md, attachment_dir=dst_att)


def relocate_chunk(
    result: ConversionResult,
    staging_dir: Path,
    *,
    embed: bool,
    verbose: bool = False,
) -> RelocatedChunk:
    if embed:
        return embed_chunk(result, staging_dir, verbose=verbose)
    return bundle_chunk(result, staging_dir, verbose=verbose)
