from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import fitz  # PyMuPDF
import pikepdf

from ..config import OcrLayerConfig
from ..errors import OcrPrepassError, PreprocessError
from ..lifecycle import ResourceRegistry
from ..pdf_tools import ensure_dir

OCR_LAYER_MODES = ("auto", "forced", "disabled")

# MuPDF reports structural damage through its warning buffer rather than exceptions.
_MALFORMED_MARKERS = (
    "repair",
    "syntax error",
    "format error",
    "broken xref",
    "cannot find startxref",
)


class MalformedPdf(Exception):
    """Raised internally when MuPDF had to work around a damaged file."""


@dataclass(frozen=True)
class TextLayerReport:
    pages: int
    pages_with_text: int
    present: bool
    # True when the document was below the page floor and was not inspected.
    skipped: bool = False

    @property
    def fraction(self) -> float:
        return (self.pages_with_text / self.pages) if self.pages else 0.0


def detect_text_layer(pdf_path: Path, cfg: OcrLayerConfig) -> TextLayerReport:
    try:
        with fitz.open(str(pdf_path)) as doc:
            n = int(doc.page_count)
            if n < max(1, int(cfg.min_pages)):
                return TextLayerReport(pages=n, pages_with_text=0, present=False, skipped=True)
            with_text = 0
            for page in doc:
                chars = len("".join((page.get_text("text") or "").split()))
                if chars >= int(cfg.min_chars_per_page):
                    with_text += 1
    except Exception as e:  # noqa: BLE001
        raise PreprocessError(f"Could not inspect text layer of {pdf_path}: {e}") from e

    present = n > 0 and (with_text / n) >= float(cfg.min_page_fraction)
    return TextLayerReport(pages=n, pages_with_text=with_text, present=present)


def _check_warnings(doc: "fitz.Document") -> None:
    warnings = (fitz.TOOLS.mupdf_warnings(reset=True) or "").lower()
    if getattr(doc, "is_repaired", False) or any(m in warnings for m in _MALFORMED_MARKERS):
        raise MalformedPdf(warnings.strip() or "document required repair")


def strip_text_layer(src: Path, dst: Path) -> None:
    """
    Remove every text object from src and save the result as dst.

    Images and vector graphics are kept so the engine can OCR the page images.
    Raises MalformedPdf when MuPDF reported structural damage while doing so.
    """
    fitz.TOOLS.reset_mupdf_warnings()
    try:
        doc = fitz.open(str(src))
    except Exception as e:  # noqa: BLE001
        raise MalformedPdf(str(e)) from e
    try:
        _check_warnings(doc)
        for page in doc:
            page.add_redact_annot(page.rect)
            page.apply_redactions(
                images=fitz.PDF_REDACT_IMAGE_NONE,
                graphics=fitz.PDF_REDACT_LINE_ART_NONE,
            )
        _check_warnings(doc)
        doc.save(str(dst), garbage=3, deflate=True)
    except MalformedPdf:
        raise
    except Exception as e:  # noqa: BLE001
        raise MalformedPdf(str(e)) from e
    finally:
        doc.close()


def repair_pdf(src: Path, dst: Path) -> None:
    # qpdf (behind pikepdf) reconstructs xref tables and trailers on open.
    try:
        with pikepdf.open(str(src)) as pdf:
            pdf.save(str(dst))
    except pikepdf.PdfError as e:
        raise PreprocessError(f"Repair of {src.name} failed: {e}") from e


def preprocess_ocr_layer(
    pdf_path: Path,
    work_dir: Path,
    cfg: OcrLayerConfig,
    *,
    prepass_ran: bool = False,
    verbose: bool = False,
) -> Optional[Path]:
    """
    Apply the OCR-layer policy to the unsplit document.

    Returns the path of a stripped copy inside work_dir, or None when the
    document is used as-is (mode disabled, no layer detected, or an external
    OCR pre-pass already produced the text layer).
    """
    mode = (cfg.mode or "auto").lower()
    if mode not in OCR_LAYER_MODES:
        raise PreprocessError(f"Unknown OCR layer mode: {cfg.mode!r} (expected one of {', '.join(OCR_LAYER_MODES)})")

    if prepass_ran:
        if verbose and mode != "disabled":
            print("OCR pre-pass already ran; skipping text-layer stripping.", flush=True)
        return None
    if mode == "disabled":
        return None

    if mode == "auto":
        report = detect_text_layer(pdf_path, cfg)
        if verbose:
            if report.skipped:
                print(
                    f"Text-layer detection skipped: {report.pages} page(s) < {cfg.min_pages}.",
                    flush=True,
                )
            else:
                print(
                    f"Text layer on {report.pages_with_text}/{report.pages} page(s) "
                    f"({report.fraction:.0%}); threshold {cfg.min_page_fraction:.0%}.",
                    flush=True,
                )
        if not report.present:
            return None

    ensure_dir(work_dir)
    stripped = Path(work_dir) / f"{Path(pdf_path).stem}.pdf"
    try:
        strip_text_layer(pdf_path, stripped)
    except MalformedPdf as first:
        print(f"[WARN] {Path(pdf_path).name} looks malformed ({first}); attempting repair.", flush=True)
        repaired = Path(work_dir) / f"{Path(pdf_path).stem}.repaired.pdf"
        repair_pdf(pdf_path, repaired)
        try:
            strip_text_layer(repaired, stripped)
        except MalformedPdf as second:
            raise PreprocessError(
                f"Stripping the text layer of {Path(pdf_path).name} failed after repair: {second}"
            ) from second
        finally:
            repaired.unlink(missing_ok=True)

    if verbose:
        print(f"Stripped existing text layer -> {stripped}", flush=True)
    return stripped


def run_ocr_prepass(
    pdf_path: Path,
    out_dir: Path,
    script: Optional[Path],
    options: Sequence[str] = ("-aq",),
    *,
    registry: Optional[ResourceRegistry] = None,
    verbose: bool = False,
) -> Path:
    """Run the external OCR pre-processing script; returns the "<stem>_OCR.pdf" it produced."""
    pdf_path = Path(pdf_path).resolve()
    if script is None or not Path(script).is_file() or not os.access(script, os.X_OK):
        raise OcrPrepassError(f"OCR script not found or not executable: {script}")

    print(f"Running external OCR on {pdf_path.name}", flush=True)
    ensure_dir(out_dir)
    expected = Path(out_dir) / f"{pdf_path.stem}_OCR.pdf"
    cmd = [str(script), *options, str(pdf_path)]
    sink = None if verbose else subprocess.DEVNULL
    try:
        proc = subprocess.Popen(cmd, cwd=str(out_dir), stdout=sink, stderr=sink, start_new_session=True)
    except OSError as e:
        raise OcrPrepassError(f"Could not start OCR script {script}: {e}") from e

    if registry is not None:
        registry.track_process(proc)
    try:
        rc = proc.wait()
    finally:
        if registry is not None:
            registry.forget_process(proc)

    if rc != 0:
        print(f"[WARN] OCR script exited with status {rc}", flush=True)
    if not expected.is_file():
        raise OcrPrepassError(f"OCR output not found: {expected}")
    return expected
