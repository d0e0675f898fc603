from __future__ import annotations

import shutil
import sys
import time
from pathlib import Path
from typing import Optional

from ..config import ConvertConfig, resolve_chunk_pages
from ..errors import EngineInvocationError, InputError, MergeError, PdfMdError
from ..lifecycle import ResourceRegistry, signal_teardown
from ..pdf_tools import count_pages, ensure_dir, format_duration, unique_path
from .assembler import assemble
from .assets import relocate_chunk
from .cleanup import ChatClient, MarkdownCleaner
from .engine import ConversionOrchestrator, EngineOcrMode, collect_results
from .models import DocumentResult
from .ocr_layer import preprocess_ocr_layer, run_ocr_prepass
from .splitter import split_pdf


def _place_output(staged: Path, target: Path) -> Optional[Path]:
    """Move staged to target; an existing different file there is kept as a unique .bak first."""
    backup: Optional[Path] = None
    if target.exists():
        backup = unique_path(target.with_name(target.name + ".bak"))
        target.rename(backup)
        print(f"Existing output backed up to {backup}", flush=True)
    ensure_dir(target.parent)
    shutil.move(str(staged), str(target))
    return backup


class PdfToMarkdownPipeline:
    """
    One PDF in, one consolidated markdown file out.

    Every temporary file, directory and child process of a run belongs to a
    ResourceRegistry that is released on success, on error and on signals.
    """

    def __init__(self, cfg: ConvertConfig, *, client: Optional[ChatClient] = None) -> None:
        self.cfg = cfg
        self.client = client

    def convert(self, pdf_path: Path) -> DocumentResult:
        cfg = self.cfg
        t0 = time.monotonic()
        pdf_path = Path(pdf_path)
        if not pdf_path.is_file():
            raise InputError(f"Input PDF not found: {pdf_path}")
        try:
            chunk_pages = resolve_chunk_pages(cfg)
        except ValueError as e:
            raise InputError(str(e)) from e

        # Cleanup settings are checked before hours of conversion, not after.
        cleaner = MarkdownCleaner(cfg.llm, self.client, verbose=cfg.verbose) if cfg.clean else None

        output_dir = Path(cfg.output_dir) if cfg.output_dir else Path.cwd()
        ensure_dir(output_dir)
        if cfg.text_only and cfg.embed_images and cfg.verbose:
            print("Text-only output requested; ignoring --embed.", flush=True)

        with ResourceRegistry(kill_grace_s=cfg.kill_grace_s, verbose=cfg.verbose) as registry, signal_teardown(registry):
            source = pdf_path
            if cfg.ocr_prepass:
                source = run_ocr_prepass(
                    pdf_path, output_dir, cfg.ocr_script, cfg.ocr_options, registry=registry, verbose=cfg.verbose
                )
            stem = source.stem
            print(f"Converting {source.name}", flush=True)
            pages = count_pages(source)

            work = registry.mkdtemp(prefix="pdfmd-")
            stripped = preprocess_ocr_layer(
                source, work / "ocr-layer", cfg.ocr_layer, prepass_ran=cfg.ocr_prepass, verbose=cfg.verbose
            )
            if cfg.ocr_prepass:
                ocr_mode = EngineOcrMode.DISABLE
            elif stripped is not None:
                ocr_mode = EngineOcrMode.FORCE
            else:
                ocr_mode = EngineOcrMode.FORCE_STRIP

            chunks = split_pdf(stripped or source, work / "chunks", chunk_pages, total_pages=pages, verbose=cfg.verbose)

            engine_out = work / "engine"
            ensure_dir(engine_out)
            orchestrator = ConversionOrchestrator(cfg, registry)
            run = orchestrator.run(work / "chunks", engine_out, ocr_mode)
            print("Completed processing PDF chunks to turn them into markdown files", flush=True)

            results = collect_results(engine_out, chunks)
            if not results:
                raise MergeError(f"No chunk markdown files found for {stem}")

            staging = work / "merge"
            relocated = [
                relocate_chunk(r, staging / "chunks", embed=cfg.effective_embed, verbose=cfg.verbose)
                for r in results
            ]
            assembled = assemble(
                relocated,
                stem,
                staging,
                output_dir,
                text_only=cfg.text_only,
                embedded=cfg.effective_embed,
                bundle=cfg.bundle_attachments,
                verbose=cfg.verbose,
            )

            target = output_dir / f"{stem}.md"
            backup = _place_output(assembled.markdown_path, target)

        result = DocumentResult(
            source=source,
            markdown_path=target,
            pages=pages,
            chunks=len(chunks),
            bundle_path=assembled.bundle_path,
            attachment_dirs=assembled.attachment_dirs,
            backup_path=backup,
            degraded=run.degraded,
        )

        if cfg.preclean_copy:
            preclean = target.with_name(f"{stem}_preclean.md")
            shutil.copyfile(target, preclean)
            result.preclean_path = preclean
            print(f"Saved pre-clean copy: {preclean.name}", flush=True)

        if cleaner is not None:
            outcome = cleaner.clean_file(target)
            result.corrections = len(outcome.ledger.entries)

        result.elapsed_s = time.monotonic() - t0
        self._summary(result)
        return result

    def _summary(self, result: DocumentResult) -> None:
        print(f"Output markdown: {result.markdown_path.name}", flush=True)
        if result.bundle_path is not None:
            print(f"Output archive: {result.bundle_path.name}", flush=True)
            print("Note: Extract the archive in this directory for images to display properly.", flush=True)
        for d in result.attachment_dirs:
            print(f"Attachments: {d.name}", flush=True)
        print(f"Total time: {format_duration(result.elapsed_s)}", flush=True)
        if result.pages:
            print(f"Time per page: {result.elapsed_s / result.pages:.2f} s", flush=True)


def report_error(e: PdfMdError, *, verbose: bool = False) -> None:
    print(f"Error [{e.stage}]: {e}", file=sys.stderr, flush=True)
    if e.hint:
        print(e.hint, file=sys.stderr, flush=True)
    if verbose and isinstance(e, EngineInvocationError) and e.log_tail:
        print(e.log_tail, file=sys.stderr, flush=True)


def run_document(cfg: ConvertConfig, pdf_path: Path, *, client: Optional[ChatClient] = None) -> int:
    """Convert one document and map the outcome to a process exit status."""
    try:
        PdfToMarkdownPipeline(cfg, client=client).convert(pdf_path)
    except PdfMdError as e:
        report_error(e, verbose=cfg.verbose)
        return 1
    except OSError as e:
        # Filesystem trouble outside a stage (moving outputs, backups) fails this document only.
        print(f"Error [output]: {Path(pdf_path).name}: {e}", file=sys.stderr, flush=True)
        return 1
    except SystemExit as e:
        code = e.code if isinstance(e.code, int) else 1
        print(f"Error: interrupted while converting {Path(pdf_path).name} (exit code {code}).", file=sys.stderr, flush=True)
        return code
    return 0


def find_pdfs(directory: Path, recurse: bool = False) -> list[Path]:
    directory = Path(directory)
    pattern_iter = directory.rglob if recurse else directory.glob
    found = {p for pat in ("*.pdf", "*.PDF") for p in pattern_iter(pat) if p.is_file()}
    return sorted(found)


def process_directory(cfg: ConvertConfig, directory: Path, *, client: Optional[ChatClient] = None) -> int:
    """
    Convert every PDF in directory, one at a time.

    A failed document is recorded and the batch moves on; an exit status of 128
    or above (killed or interrupted) stops the batch immediately.
    """
    pdfs = find_pdfs(directory, cfg.recurse)
    if not pdfs:
        raise InputError(f"No PDF files found in {directory}")

    failed: list[Path] = []
    for i, pdf in enumerate(pdfs, start=1):
        print(f"[{i}/{len(pdfs)}] {pdf}", flush=True)
        rc = run_document(cfg, pdf, client=client)
        if rc >= 128:
            print(f"Aborting batch: {pdf.name} terminated abnormally (exit code {rc}).", file=sys.stderr, flush=True)
            return rc
        if rc != 0:
            failed.append(pdf)

    if failed:
        print(f"{len(failed)} of {len(pdfs)} document(s) failed:", file=sys.stderr, flush=True)
        for p in failed:
            print(f"  {p}", file=sys.stderr, flush=True)
        return 1
    return 0
