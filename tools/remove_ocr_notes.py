from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

from pdfmd.converter.notes import backup_path_for, remove_correction_notes


def process_file(path: Path, output: Optional[Path]) -> int:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"[remove_ocr_notes] file not found: {path}", file=sys.stderr)
        return 2

    res = remove_correction_notes(text)
    if not res.section_removed:
        print(f"[remove_ocr_notes] no OCR Corrections Notes section in {path}")
        return 0
    if res.text == text:
        print(f"[remove_ocr_notes] no changes needed for {path}")
        return 0

    if output is not None:
        output.write_text(res.text, encoding="utf-8")
        print(f"[remove_ocr_notes] wrote {output}")
    else:
        backup = backup_path_for(path)
        backup.write_text(text, encoding="utf-8")
        path.write_text(res.text, encoding="utf-8")
        print(f"[remove_ocr_notes] updated {path} (backup: {backup})")

    if res.removed_ids:
        print(f"[remove_ocr_notes] removed {len(res.removed_ids)} footnote id(s) and {res.ref_count} reference(s)")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Remove the OCR Corrections Notes section and the footnote references that point into it."
    )
    parser.add_argument("paths", nargs="+", help="Markdown file(s) to process")
    parser.add_argument("-o", "--output", help="Write the result here (single input only)")
    args = parser.parse_args(argv)

    if args.output and len(args.paths) != 1:
        print("[remove_ocr_notes] --output requires exactly one input file.", file=sys.stderr)
        return 2

    output = Path(args.output) if args.output else None
    rc = 0
    for raw in args.paths:
        rc = max(rc, process_file(Path(raw), output))
    return rc


if __name__ == "__main__":
    raise SystemExit(main())
