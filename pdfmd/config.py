from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_CHUNK_PAGES = 100
LLM_CHUNK_PAGES = 25
LLM_CLEAN_CHUNK_PAGES = 20

OPENAI_SERVICE = "marker.services.openai.OpenAIService"
_PLACEHOLDER = "..."


@dataclass(frozen=True)
class LlmConfig:
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4.1"
    # Engine-side service class; None lets the engine pick its own default.
    service: str | None = None
    timeout_s: float = 600.0
    max_tokens: str | int = 30000

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key) and self.api_key != _PLACEHOLDER


@dataclass(frozen=True)
class OcrLayerConfig:
    mode: str = "auto"  # "auto" | "forced" | "disabled"
    min_chars_per_page: int = 50
    min_page_fraction: float = 0.5
    min_pages: int = 3


@dataclass(frozen=True)
class ConvertConfig:
    embed_images: bool = False
    text_only: bool = False
    use_llm: bool = False
    clean: bool = False
    preclean_copy: bool = False
    ocr_prepass: bool = False
    force_cpu: bool = False
    recurse: bool = False
    verbose: bool = False
    bundle_attachments: bool = True
    workers: int = 1
    chunk_pages: int | None = None
    engine_cmd: tuple[str, ...] = ("marker",)
    engine_timeout_s: int = 240
    # Seconds between SIGTERM and SIGKILL when stopping the engine.
    kill_grace_s: float = 2.0
    ocr_script: Path | None = None
    ocr_options: tuple[str, ...] = ("-aq",)
    output_dir: Path | None = None
    llm: LlmConfig = field(default_factory=LlmConfig)
    ocr_layer: OcrLayerConfig = field(default_factory=OcrLayerConfig)

    @property
    def effective_embed(self) -> bool:
        # Text-only output has no images left to embed.
        return self.embed_images and not self.text_only


def resolve_chunk_pages(cfg: ConvertConfig) -> int:
    """
    Pages per chunk, in precedence order:
    - explicit cfg.chunk_pages
    - LLM-assist together with the cleanup pass
    - LLM-assist alone
    - baseline
    """
    if cfg.chunk_pages is not None:
        if int(cfg.chunk_pages) < 1:
            raise ValueError("chunk_pages must be a positive integer")
        return int(cfg.chunk_pages)
    if cfg.use_llm and cfg.clean:
        return LLM_CLEAN_CHUNK_PAGES
    if cfg.use_llm:
        return LLM_CHUNK_PAGES
    return DEFAULT_CHUNK_PAGES


def _env(name: str, default: str = "") -> str:
    raw = (os.environ.get(name) or "").strip()
    # Users often set env vars with quotes (e.g. PDFMD_OCR_SCRIPT="/opt/ocr-pdf.sh").
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in {'"', "'"}:
        raw = raw[1:-1].strip()
    return raw or default


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env(name, str(default)))
    except ValueError:
        return default


def load_settings() -> ConvertConfig:
    api_key = _env("OPENAI_API_KEY") or None
    if api_key == _PLACEHOLDER:
        api_key = None
    base_url = _env("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
    model = _env("OPENAI_MODEL", "gpt-4.1")
    service = _env("PDFMD_LLM_SERVICE") or (OPENAI_SERVICE if api_key else None)

    # Kept as raw text; the cleanup pass validates it before any network call.
    raw_max_tokens = _env("PDFMD_MAX_TOKENS", "30000")
    max_tokens: str | int = int(raw_max_tokens) if raw_max_tokens.isdigit() else raw_max_tokens

    llm = LlmConfig(
        api_key=api_key,
        base_url=base_url,
        model=model,
        service=service,
        timeout_s=_env_float("PDFMD_LLM_TIMEOUT_S", 600.0),
        max_tokens=max_tokens,
    )

    ocr_layer = OcrLayerConfig(
        mode=_env("PDFMD_OCR_LAYER", "auto").lower(),
        min_chars_per_page=_env_int("PDFMD_OCR_LAYER_MIN_CHARS", 50),
        min_page_fraction=_env_float("PDFMD_OCR_LAYER_MIN_FRACTION", 0.5),
        min_pages=_env_int("PDFMD_OCR_LAYER_MIN_PAGES", 3),
    )

    ocr_script = _env("PDFMD_OCR_SCRIPT")
    return ConvertConfig(
        workers=max(1, _env_int("PDFMD_WORKERS", 1)),
        engine_cmd=tuple(shlex.split(_env("PDFMD_ENGINE_CMD", "marker"))),
        engine_timeout_s=_env_int("PDFMD_ENGINE_TIMEOUT_S", 240),
        ocr_script=Path(ocr_script).expanduser() if ocr_script else None,
        ocr_options=tuple(shlex.split(_env("PDFMD_OCR_OPTIONS", "-aq"))),
        llm=llm,
        ocr_layer=ocr_layer,
    )
