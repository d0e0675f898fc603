from __future__ import annotations

import shutil
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from ..errors import MergeError
from ..pdf_tools import ensure_dir, unique_path
from .md_images import referenced_attachment_dirs, strip_image_links
from .models import RelocatedChunk


@dataclass
class AssemblyResult:
    markdown_path: Path
    bundle_path: Optional[Path] = None
    # Attachment directories left next to the markdown (bundling disabled).
    attachment_dirs: list[Path] = field(default_factory=list)


def order_chunks(chunks: Iterable[RelocatedChunk]) -> list[RelocatedChunk]:
    return sorted(chunks, key=lambda c: c.sort_key)


def merge_markdown(chunks: Iterable[RelocatedChunk]) -> str:
    """Chunk bodies in page order, separated by exactly one blank line."""
    bodies: list[str] = []
    for c in order_chunks(chunks):
        text = Path(c.markdown_path).read_text(encoding="utf-8", errors="replace").strip("\n")
        # Blank-page chunks contribute nothing, not an extra separator.
        if text.strip():
            bodies.append(text)
    if not bodies:
        raise MergeError("No chunk markdown content found to assemble")
    return "\n\n".join(bodies) + "\n"


def bundle_attachments(dirs: list[Path], archive_path: Path) -> Path:
    """Pack dirs into one xz-compressed tarball; never overwrites an existing file."""
    target = unique_path(archive_path)
    with tarfile.open(target, "w:xz") as tar:
        for d in sorted(dirs, key=lambda p: p.name):
            tar.add(str(d), arcname=d.name)
    return target


def assemble(
    chunks: list[RelocatedChunk],
    stem: str,
    staging_dir: Path,
    output_dir: Path,
    *,
    text_only: bool = False,
    embedded: bool = False,
    bundle: bool = True,
    verbose: bool = False,
) -> AssemblyResult:
    """
    Merge relocated chunks into staging_dir/<stem>.md and settle their attachments.

    - text-only: image references are stripped and every attachment directory is discarded
    - embedded: nothing to bundle
    - otherwise: attachment directories referenced by the merged text are packed into
      output_dir/<stem>_bundle.tar.xz (or moved into output_dir when bundle is False);
      directories nothing references are dropped
    """
    ordered = order_chunks(chunks)
    if verbose:
        for c in ordered:
            print(f"Merging {Path(c.markdown_path).name} (starts with page {c.sort_key})", flush=True)

    text = merge_markdown(ordered)
    produced = {Path(c.attachment_dir).name: Path(c.attachment_dir) for c in ordered if c.attachment_dir}

    ensure_dir(staging_dir)
    md_path = Path(staging_dir) / f"{stem}.md"
    result = AssemblyResult(markdown_path=md_path)

    if text_only:
        text = strip_image_links(text)
        md_path.write_text(text, encoding="utf-8")
        for d in produced.values():
            shutil.rmtree(d, ignore_errors=True)
        return result

    md_path.write_text(text, encoding="utf-8")
    if embedded:
        return result

    referenced = referenced_attachment_dirs(text)
    keep = [produced[name] for name in sorted(referenced) if name in produced and produced[name].is_dir()]
    for name, d in produced.items():
        if name not in referenced:
            if verbose:
                print(f"Dropping unreferenced attachment directory {name}", flush=True)
            shutil.rmtree(d, ignore_errors=True)

    if not keep:
        return result

    ensure_dir(output_dir)
    if bundle:
        result.bundle_path = bundle_attachments(keep, Path(output_dir) / f"{stem}_bundle.tar.xz")
        for d in keep:
            shutil.rmtree(d, ignore_errors=True)
        return result

    for d in keep:
        dst = Path(output_dir) / d.name
        if dst.exists():
            shutil.rmtree(dst)
        shutil.move(str(d), str(dst))
        result.attachment_dirs.append(dst)
    return result
