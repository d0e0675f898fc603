"""
Log signatures of the conversion engine.

Every string the pipeline reacts to in the engine's output lives here. The
engine has no structured status channel, so these patterns are the contract;
when upstream log wording changes, bump SIGNATURE_VERSION and update the
patterns below (and their tests) together.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

SIGNATURE_VERSION = "marker-1"

RATE_LIMIT_PATTERNS: tuple[str, ...] = ("Rate limit error",)

OOM_PATTERNS: tuple[str, ...] = (
    "OutOfMemoryError",
    "CUDA out of memory",
    "CUDA error: out of memory",
    "torch.cuda.OutOfMemoryError",
    "CUBLAS_STATUS_ALLOC_FAILED",
    "CUDNN_STATUS_ALLOC_FAILED",
    "CUDNN_STATUS_NOT_SUPPORTED",
)

FAILURE_PATTERNS: tuple[str, ...] = ("Error converting", "Traceback") + OOM_PATTERNS


def _compile(patterns: tuple[str, ...], *, ignore_case: bool = False) -> re.Pattern[str]:
    flags = re.IGNORECASE if ignore_case else 0
    return re.compile("|".join(re.escape(p) for p in patterns), flags)


_RE_RATE_LIMIT = _compile(RATE_LIMIT_PATTERNS)
_RE_OOM = _compile(OOM_PATTERNS, ignore_case=True)
_RE_FAILURE = _compile(FAILURE_PATTERNS)


def is_rate_limit(line: str) -> bool:
    return bool(_RE_RATE_LIMIT.search(line or ""))


def is_out_of_memory(text: str) -> bool:
    return bool(_RE_OOM.search(text or ""))


def is_failure(text: str) -> bool:
    return bool(_RE_FAILURE.search(text or "")) or is_out_of_memory(text)


@dataclass
class LogScan:
    """Result of scanning a complete engine log after the process exited."""

    failure_lines: list[str] = field(default_factory=list)
    out_of_memory: bool = False

    @property
    def has_failure(self) -> bool:
        return bool(self.failure_lines)


def scan_log(path: Path, *, keep: int = 20) -> LogScan:
    scan = LogScan()
    try:
        fh = open(path, "r", encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return scan
    with fh:
        for line in fh:
            line = line.rstrip("\n")
            if is_out_of_memory(line):
                scan.out_of_memory = True
            if is_failure(line) and len(scan.failure_lines) < keep:
                scan.failure_lines.append(line)
    return scan


def log_tail(path: Path, lines: int = 30) -> str:
    try:
        text = Path(path).read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return ""
    return "\n".join(text.splitlines()[-lines:])
