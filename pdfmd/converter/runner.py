from __future__ import annotations

import argparse
import dataclasses
import sys
from pathlib import Path
from typing import Optional, Sequence

from ..config import ConvertConfig, load_settings
from ..errors import PdfMdError
from .ocr_layer import OCR_LAYER_MODES
from .pipeline import process_directory, report_error, run_document


def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}")
    if n < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}")
    return n


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pdfmd",
        description="Convert large PDFs into one consolidated markdown file, chunk by chunk.",
    )
    parser.add_argument("input", help="PDF file, or a directory of PDFs")

    # Output
    parser.add_argument("-e", "--embed", action="store_true", help="Embed images as base64 data URIs")
    parser.add_argument("-t", "--text", action="store_true", help="Text-only output: drop every image (overrides --embed)")
    parser.add_argument("--output-dir", help="Where to write outputs (default: current directory)")
    parser.add_argument(
        "--no-bundle",
        dest="bundle",
        action="store_false",
        help="Leave attachment directories next to the markdown instead of packing them into a .tar.xz",
    )

    # Conversion
    parser.add_argument("-o", "--ocr", action="store_true", help="Run the external OCR pre-processing script first")
    parser.add_argument("-l", "--llm", action="store_true", help="Enable LLM-assist in the conversion engine")
    parser.add_argument("-c", "--cpu", action="store_true", help="Force the engine onto the CPU (TORCH_DEVICE=cpu)")
    parser.add_argument("-w", "--workers", type=_positive_int, help="Engine worker processes")
    parser.add_argument("--chunk-pages", type=_positive_int, help="Pages per chunk (overrides the mode defaults)")
    parser.add_argument("--ocr-layer", choices=OCR_LAYER_MODES, help="Existing text-layer policy")

    # Post-processing
    parser.add_argument("--clean", action="store_true", help="Run the LLM correction pass on the merged markdown")
    parser.add_argument("--preclean-copy", action="store_true", help="Keep <name>_preclean.md before --clean")

    parser.add_argument("-r", "--recurse", action="store_true", help="With a directory, include PDFs in subdirectories")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show engine output and detailed progress")
    return parser


def config_from_args(args: argparse.Namespace, base: Optional[ConvertConfig] = None) -> ConvertConfig:
    cfg = base or load_settings()
    changes: dict = {
        "embed_images": bool(args.embed),
        "text_only": bool(args.text),
        "use_llm": bool(args.llm),
        "clean": bool(args.clean),
        "preclean_copy": bool(args.preclean_copy),
        "ocr_prepass": bool(args.ocr),
        "force_cpu": bool(args.cpu),
        "recurse": bool(args.recurse),
        "verbose": bool(args.verbose),
        "bundle_attachments": bool(args.bundle),
    }
    if args.workers is not None:
        changes["workers"] = args.workers
    if args.chunk_pages is not None:
        changes["chunk_pages"] = args.chunk_pages
    if args.output_dir:
        changes["output_dir"] = Path(args.output_dir).expanduser()
    if args.ocr_layer:
        changes["ocr_layer"] = dataclasses.replace(cfg.ocr_layer, mode=args.ocr_layer)
    return dataclasses.replace(cfg, **changes)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = config_from_args(args)

    target = Path(args.input).expanduser()
    try:
        if target.is_dir():
            return process_directory(cfg, target)
        if not target.is_file():
            print(f"Error: input not found: {target}", file=sys.stderr)
            return 1
        return run_document(cfg, target)
    except PdfMdError as e:
        report_error(e, verbose=cfg.verbose)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
