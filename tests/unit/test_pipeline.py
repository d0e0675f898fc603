import dataclasses
import json
import tarfile
import tempfile

import pytest

from pdfmd.config import OcrLayerConfig
from pdfmd.converter import pipeline as pipeline_mod
from pdfmd.converter.pipeline import PdfToMarkdownPipeline, find_pdfs, process_directory, run_document
from pdfmd.converter.runner import build_parser, config_from_args
from pdfmd.errors import ConfigError, InputError


@pytest.fixture
def scratch(tmp_path, monkeypatch):
    d = tmp_path / "scratch"
    d.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(d))
    return d


def test_end_to_end_bundle_mode(make_pdf, base_cfg, scratch, engine_calls):
    pdf = make_pdf("report.pdf", pages=7, words=3)
    cfg = dataclasses.replace(base_cfg, chunk_pages=3)
    result = PdfToMarkdownPipeline(cfg).convert(pdf)

    out = base_cfg.output_dir
    assert result.markdown_path == out / "report.md"
    assert result.pages == 7 and result.chunks == 3
    text = result.markdown_path.read_text(encoding="utf-8")
    bodies = ["Body of report_-1-3.", "Body of report_-4-6.", "Body of report_-7-7."]
    positions = [text.index(b) for b in bodies]
    assert positions == sorted(positions)
    assert "Body of report_-1-3.\n\n# Part report_-4-6" in text
    assert "\n\n\n" not in text

    assert result.bundle_path == out / "report_bundle.tar.xz"
    with tarfile.open(result.bundle_path, "r:xz") as tar:
        pngs = [n for n in tar.getnames() if n.endswith(".png")]
    assert len(pngs) == 3
    assert not any(out.glob("attachments_*"))

    # One engine run for all chunks, and nothing left in the temp area.
    assert len(engine_calls()) == 1
    assert list(scratch.iterdir()) == []


def test_text_only_output(make_pdf, base_cfg, scratch):
    pdf = make_pdf("doc.pdf", pages=4, words=3)
    cfg = dataclasses.replace(base_cfg, chunk_pages=2, text_only=True, embed_images=True)
    result = PdfToMarkdownPipeline(cfg).convert(pdf)
    text = result.markdown_path.read_text(encoding="utf-8")
    assert "![" not in text
    assert "data:image" not in text
    assert result.bundle_path is None
    assert sorted(p.name for p in base_cfg.output_dir.iterdir()) == ["doc.md"]


def test_embed_output(make_pdf, base_cfg, scratch):
    pdf = make_pdf("doc.pdf", pages=2, words=3)
    cfg = dataclasses.replace(base_cfg, embed_images=True)
    result = PdfToMarkdownPipeline(cfg).convert(pdf)
    text = result.markdown_path.read_text(encoding="utf-8")
    assert "data:image/png;base64," in text
    assert result.bundle_path is None
    assert list(scratch.iterdir()) == []


def test_existing_output_is_backed_up(make_pdf, base_cfg, scratch):
    pdf = make_pdf("doc.pdf", pages=1, words=3)
    base_cfg.output_dir.mkdir(parents=True)
    (base_cfg.output_dir / "doc.md").write_text("previous run", encoding="utf-8")
    result = PdfToMarkdownPipeline(base_cfg).convert(pdf)
    assert result.backup_path == base_cfg.output_dir / "doc.md.bak"
    assert result.backup_path.read_text(encoding="utf-8") == "previous run"
    assert "Body of doc_-1-1." in result.markdown_path.read_text(encoding="utf-8")


def test_detected_text_layer_is_stripped_and_engine_only_ocrs(make_pdf, base_cfg, scratch, engine_calls):
    pdf = make_pdf("scan.pdf", pages=5, text_pages={0, 1, 2, 3})
    cfg = dataclasses.replace(base_cfg, ocr_layer=OcrLayerConfig(mode="auto"))
    PdfToMarkdownPipeline(cfg).convert(pdf)
    call = engine_calls()[0]
    assert call["config"] == {"force_ocr": True}
    assert not call["disable_ocr"]


def test_no_text_layer_uses_engine_strip(make_pdf, base_cfg, scratch, engine_calls):
    pdf = make_pdf("scan.pdf", pages=5, text_pages=set())
    cfg = dataclasses.replace(base_cfg, ocr_layer=OcrLayerConfig(mode="auto"))
    PdfToMarkdownPipeline(cfg).convert(pdf)
    assert engine_calls()[0]["config"] == {"force_ocr": True, "strip_existing_ocr": True}


def test_engine_failure_cleans_up(make_pdf, base_cfg, scratch, monkeypatch, capsys):
    monkeypatch.setenv("FAKE_ENGINE_MODE", "oom_exit")
    pdf = make_pdf("doc.pdf", pages=2, words=3)
    assert run_document(base_cfg, pdf) == 1
    err = capsys.readouterr().err
    assert "Error [engine]" in err
    assert "--cpu" in err
    assert list(scratch.iterdir()) == []
    assert not (base_cfg.output_dir / "doc.md").exists()


def test_clean_pass_with_preclean_copy(make_pdf, base_cfg, scratch, fake_client_cls):
    pdf = make_pdf("doc.pdf", pages=1, words=3)
    cfg = dataclasses.replace(base_cfg, clean=True, preclean_copy=True, text_only=True)
    reply = json.dumps({"text": "Cleaned[[FN1]] body.", "notes": [{"id": 1, "original": "Bdy", "reason": "corrected"}]})
    client = fake_client_cls([reply])
    result = PdfToMarkdownPipeline(cfg, client=client).convert(pdf)

    out = base_cfg.output_dir
    assert result.preclean_path == out / "doc_preclean.md"
    assert "Body of doc_-1-1." in result.preclean_path.read_text(encoding="utf-8")
    assert (out / "doc.md.bak").read_text(encoding="utf-8") == result.preclean_path.read_text(encoding="utf-8")
    cleaned = result.markdown_path.read_text(encoding="utf-8")
    assert cleaned.startswith("Cleaned[^1] body.")
    assert "[^1]: Original text: Bdy" in cleaned
    assert result.corrections == 1


def test_clean_config_error_is_raised_before_conversion(make_pdf, base_cfg, scratch, engine_calls):
    pdf = make_pdf("doc.pdf", pages=1, words=3)
    llm = dataclasses.replace(base_cfg.llm, api_key=None)
    cfg = dataclasses.replace(base_cfg, clean=True, llm=llm)
    with pytest.raises(ConfigError):
        PdfToMarkdownPipeline(cfg).convert(pdf)
    assert engine_calls() == []


def test_missing_input(base_cfg, tmp_path):
    with pytest.raises(InputError):
        PdfToMarkdownPipeline(base_cfg).convert(tmp_path / "nope.pdf")


def test_find_pdfs(tmp_path):
    (tmp_path / "b.pdf").write_bytes(b"")
    (tmp_path / "A.PDF").write_bytes(b"")
    (tmp_path / "notes.txt").write_text("x")
    sub = tmp_path / "sub"
    sub.mkdir()
    (sub / "c.pdf").write_bytes(b"")
    assert [p.name for p in find_pdfs(tmp_path)] == ["A.PDF", "b.pdf"]
    assert [p.name for p in find_pdfs(tmp_path, recurse=True)] == ["A.PDF", "b.pdf", "c.pdf"]


def test_directory_mode_continues_after_failure(make_pdf, base_cfg, scratch, tmp_path):
    docs = tmp_path / "docs"
    docs.mkdir()
    make_pdf("docs/a.pdf", pages=1, words=3)
    (docs / "b.pdf").write_text("broken", encoding="utf-8")
    make_pdf("docs/c.pdf", pages=1, words=3)

    assert process_directory(base_cfg, docs) == 1
    assert (base_cfg.output_dir / "a.md").is_file()
    assert (base_cfg.output_dir / "c.md").is_file()
    assert not (base_cfg.output_dir / "b.md").exists()


def test_directory_mode_aborts_on_abnormal_exit(base_cfg, tmp_path, monkeypatch):
    docs = tmp_path / "docs"
    docs.mkdir()
    for name in ("a.pdf", "b.pdf", "c.pdf"):
        (docs / name).write_bytes(b"")
    seen = []

    def fake_run(cfg, pdf, client=None):
        seen.append(pdf.name)
        return 130 if pdf.name == "b.pdf" else 0

    monkeypatch.setattr(pipeline_mod, "run_document", fake_run)
    assert process_directory(base_cfg, docs) == 130
    assert seen == ["a.pdf", "b.pdf"]


def test_directory_mode_survives_filesystem_errors(base_cfg, tmp_path, monkeypatch, capsys):
    docs = tmp_path / "docs"
    docs.mkdir()
    for name in ("a.pdf", "b.pdf", "c.pdf"):
        (docs / name).write_bytes(b"")
    seen = []

    def fake_convert(self, pdf):
        seen.append(pdf.name)
        if pdf.name == "b.pdf":
            raise PermissionError(13, "Permission denied", str(pdf))

    monkeypatch.setattr(PdfToMarkdownPipeline, "convert", fake_convert)
    assert process_directory(base_cfg, docs) == 1
    assert seen == ["a.pdf", "b.pdf", "c.pdf"]
    err = capsys.readouterr().err
    assert "Error [output]: b.pdf" in err
    assert "1 of 3 document(s) failed" in err


def test_directory_without_pdfs(base_cfg, tmp_path):
    with pytest.raises(InputError):
        process_directory(base_cfg, tmp_path)


def test_cli_flags_map_onto_config(base_cfg, tmp_path):
    args = build_parser().parse_args(
        ["-etlvc", "-w", "2", "--chunk-pages", "9", "--ocr-layer", "forced", "--output-dir", str(tmp_path), "in.pdf"]
    )
    cfg = config_from_args(args, base_cfg)
    assert cfg.embed_images and cfg.text_only and cfg.use_llm and cfg.verbose and cfg.force_cpu
    assert cfg.workers == 2
    assert cfg.chunk_pages == 9
    assert cfg.ocr_layer.mode == "forced"
    assert cfg.output_dir == tmp_path
    assert cfg.engine_cmd == base_cfg.engine_cmd


def test_cli_rejects_non_positive_workers():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["-w", "0", "in.pdf"])
