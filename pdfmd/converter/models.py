from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field


class Chunk(BaseModel):
    index: int  # 1-based, gap-free
    start_page: int  # 1-based
    page_count: int
    path: Path

    @property
    def end_page(self) -> int:
        return self.start_page + self.page_count - 1


class ConversionResult(BaseModel):
    chunk_index: int
    sort_key: int  # starting page parsed from the output name
    markdown_path: Path


class RelocatedChunk(BaseModel):
    sort_key: int
    markdown_path: Path
    # Set in bundle mode only.
    attachment_dir: Optional[Path] = None


class CorrectionNote(BaseModel):
    id: str = ""
    original: str = ""
    reason: Literal["corrected", "removed"] = "corrected"


class LedgerEntry(BaseModel):
    id: int
    description: str


class EngineRun(BaseModel):
    exit_code: int
    log_path: Path
    degraded: bool = False
    states: list[str] = Field(default_factory=list)


class DocumentResult(BaseModel):
    source: Path
    markdown_path: Path
    pages: int
    chunks: int
    bundle_path: Optional[Path] = None
    attachment_dirs: list[Path] = Field(default_factory=list)
    preclean_path: Optional[Path] = None
    backup_path: Optional[Path] = None
    corrections: int = 0
    degraded: bool = False
    elapsed_s: float = 0.0
