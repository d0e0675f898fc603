import itertools
import tarfile

import pytest

from pdfmd.converter.assembler import assemble, merge_markdown
from pdfmd.converter.models import RelocatedChunk
from pdfmd.errors import MergeError


def _chunks(tmp_path, with_dirs=False):
    out = []
    for start, end in [(1, 100), (101, 200), (201, 250)]:
        stem = f"doc_-{start:03d}-{end:03d}"
        md = tmp_path / "staging" / f"{stem}.md"
        md.parent.mkdir(parents=True, exist_ok=True)
        att = None
        body = f"Body {start}-{end}\n\n\n"
        if with_dirs:
            att = tmp_path / "staging" / f"attachments_{start}"
            att.mkdir()
            (att / "img.png").write_bytes(b"img")
            body = f"Body {start}-{end}\n\n![fig {start}]({att.name}/img.png)\n"
        md.write_text(body, encoding="utf-8")
        out.append(RelocatedChunk(sort_key=start, markdown_path=md, attachment_dir=att))
    return out


def test_merge_separates_chunks_by_one_blank_line(tmp_path):
    text = merge_markdown(_chunks(tmp_path))
    assert text == "Body 1-100\n\nBody 101-200\n\nBody 201-250\n"


def test_merge_order_ignores_input_order(tmp_path):
    chunks = _chunks(tmp_path)
    expected = merge_markdown(chunks)
    for perm in itertools.permutations(chunks):
        assert merge_markdown(list(perm)) == expected


def test_merge_without_chunks_fails():
    with pytest.raises(MergeError):
        merge_markdown([])


def test_merge_skips_blank_chunks(tmp_path):
    chunks = []
    for start, body in [(1, "A\n"), (3, "\n\n"), (5, "C\n")]:
        md = tmp_path / f"doc_-{start}-{start + 1}.md"
        md.write_text(body, encoding="utf-8")
        chunks.append(RelocatedChunk(sort_key=start, markdown_path=md))
    assert merge_markdown(chunks) == "A\n\nC\n"

    blank = tmp_path / "doc_-7-8.md"
    blank.write_text("\n \n", encoding="utf-8")
    with pytest.raises(MergeError):
        merge_markdown([RelocatedChunk(sort_key=7, markdown_path=blank)])


def test_bundle_collects_referenced_dirs_only(tmp_path):
    chunks = _chunks(tmp_path, with_dirs=True)
    orphan = tmp_path / "staging" / "attachments_orphan"
    orphan.mkdir()
    chunks.append(RelocatedChunk(sort_key=300, markdown_path=_empty_md(tmp_path), attachment_dir=orphan))
    out_dir = tmp_path / "out"

    res = assemble(chunks, "doc", tmp_path / "staging", out_dir)
    assert res.bundle_path == out_dir / "doc_bundle.tar.xz"
    with tarfile.open(res.bundle_path, "r:xz") as tar:
        names = set(tar.getnames())
    assert {"attachments_1/img.png", "attachments_101/img.png", "attachments_201/img.png"} <= names
    assert not any(n.startswith("attachments_orphan") for n in names)
    # Bundled and orphaned directories are gone afterwards.
    assert not any((tmp_path / "staging").glob("attachments_*"))


def _empty_md(tmp_path):
    md = tmp_path / "staging" / "doc_-300-300.md"
    md.write_text("Tail\n", encoding="utf-8")
    return md


def test_bundle_never_overwrites_existing_archive(tmp_path):
    out_dir = tmp_path / "out"
    out_dir.mkdir()
    (out_dir / "doc_bundle.tar.xz").write_bytes(b"keep me")
    (out_dir / "doc_bundle(1).tar.xz").write_bytes(b"keep me too")

    res = assemble(_chunks(tmp_path, with_dirs=True), "doc", tmp_path / "staging", out_dir)
    assert res.bundle_path == out_dir / "doc_bundle(2).tar.xz"
    assert (out_dir / "doc_bundle.tar.xz").read_bytes() == b"keep me"


def test_text_only_strips_images_and_discards_dirs(tmp_path):
    out_dir = tmp_path / "out"
    res = assemble(_chunks(tmp_path, with_dirs=True), "doc", tmp_path / "staging", out_dir, text_only=True)
    text = res.markdown_path.read_text(encoding="utf-8")
    assert "![" not in text
    assert "fig 101" in text
    assert res.bundle_path is None
    assert not any((tmp_path / "staging").glob("attachments_*"))
    assert not out_dir.exists() or not any(out_dir.iterdir())


def test_unbundled_dirs_move_next_to_markdown(tmp_path):
    out_dir = tmp_path / "out"
    res = assemble(_chunks(tmp_path, with_dirs=True), "doc", tmp_path / "staging", out_dir, bundle=False)
    assert res.bundle_path is None
    assert sorted(d.name for d in res.attachment_dirs) == ["attachments_1", "attachments_101", "attachments_201"]
    assert (out_dir / "attachments_101" / "img.png").is_file()


def test_embedded_output_has_nothing_to_bundle(tmp_path):
    out_dir = tmp_path / "out"
    res = assemble(_chunks(tmp_path), "doc", tmp_path / "staging", out_dir, embedded=True)
    assert res.bundle_path is None
    assert res.markdown_path.name == "doc.md"
