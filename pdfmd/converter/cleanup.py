from __future__ import annotations

import json
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

from ..config import LlmConfig
from ..errors import ConfigError
from ..pdf_tools import unique_path
from .models import CorrectionNote, LedgerEntry

_RE_DATA_URI = re.compile(r"data:image/[a-zA-Z0-9.+-]+;base64,[A-Za-z0-9+/=]+")
_RE_ANY_PLACEHOLDER = re.compile(r"\[\[FN(\d*)\]\]")
_TOKEN_FMT = "__DATA_IMAGE_TOKEN_{n}__"

CHARS_PER_TOKEN = 4
# Share of max_tokens given to each chunk; the same share is reserved for the reply.
CHUNK_SHARE = 0.45
MIN_BUDGET = 1000

NOTES_HEADING = "# OCR Corrections Notes"
RESTORED_IMAGES_HEADING = "## Embedded Images (restored)"
UNPLACED_HEADING = "## Unplaced Corrections (restored)"
NO_CORRECTIONS = "No corrections were logged."

SYSTEM_PROMPT = (
    "You are a meticulous editor. Improve readability and correct likely OCR errors "
    "without inventing new content. Preserve markdown structure (headings, lists, code, "
    "tables, links). When you replace or remove text, insert a placeholder like [[FN1]] "
    "at the correction point and record the original text in notes. "
    "Do not alter any __DATA_IMAGE_TOKEN_n__ placeholders."
)
STRICT_SUFFIX = "Return ONLY valid JSON. No markdown, no extra text."


class ChatClient(Protocol):
    def complete(
        self,
        messages: list[dict],
        *,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        json_mode: bool = True,
    ) -> str: ...


def build_user_prompt(text: str, index: int, total: int) -> str:
    return (
        f"Chunk {index}/{total}. Edit the markdown below.\n\n"
        "Rules:\n"
        "- Preserve meaning; fix OCR errors and improve readability.\n"
        "- Keep markdown structure.\n"
        "- Do not alter any __DATA_IMAGE_TOKEN_n__ placeholders.\n"
        "- For each correction/removal, insert a placeholder [[FNn]] where the change occurs.\n"
        "- Return ONLY JSON with keys: text, notes.\n"
        '- notes is a list of objects: {"id": n, "original": "...", "reason": "corrected"|"removed"}.\n'
        "- Use ids starting at 1 and increment for each note in this chunk.\n\n"
        "Markdown:\n" + text
    )


class ImageTokenMap:
    """Reversible replacement of embedded data-URI images with short opaque tokens."""

    def __init__(self) -> None:
        self.tokens: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self.tokens)

    def tokenize(self, text: str) -> str:
        def _repl(m: re.Match) -> str:
            token = _TOKEN_FMT.format(n=len(self.tokens) + 1)
            self.tokens[token] = m.group(0)
            return token

        return _RE_DATA_URI.sub(_repl, text)

    def missing_from(self, text: str) -> list[str]:
        return [t for t in self.tokens if t not in text]

    def restore(self, text: str) -> str:
        # Longest tokens first so TOKEN_1 never clobbers the prefix of TOKEN_12.
        for token in sorted(self.tokens, key=len, reverse=True):
            text = text.replace(token, self.tokens[token])
        return text


def estimate_tokens(text: str) -> int:
    return max(1, int(len(text) / CHARS_PER_TOKEN))


def parse_max_tokens(value: Any) -> int:
    raw = str(value).strip() if value is not None else ""
    if not raw.isdigit() or int(raw) < 1:
        raise ConfigError(f"max_tokens must be a positive integer, got {value!r}")
    return int(raw)


def chunk_budget(max_tokens: int) -> int:
    return max(MIN_BUDGET, int(max_tokens * CHUNK_SHARE))


def split_paragraphs(text: str, budget_tokens: int) -> list[str]:
    """
    Greedily pack "\\n\\n"-separated paragraphs into chunks of at most budget_tokens.

    A paragraph that alone exceeds the budget is cut into fixed-size character slices.
    """
    max_chars = budget_tokens * CHARS_PER_TOKEN
    chunks: list[str] = []
    current: list[str] = []
    current_tokens = 0
    for para in text.split("\n\n"):
        p_tokens = estimate_tokens(para)
        if p_tokens > budget_tokens:
            if current:
                chunks.append("\n\n".join(current))
                current, current_tokens = [], 0
            for i in range(0, len(para), max_chars):
                chunks.append(para[i : i + max_chars])
            continue
        if current and current_tokens + p_tokens > budget_tokens:
            chunks.append("\n\n".join(current))
            current, current_tokens = [para], p_tokens
        else:
            current.append(para)
            current_tokens += p_tokens
    if current:
        chunks.append("\n\n".join(current))
    return chunks


def split_for_cleanup(text: str, max_tokens: int) -> list[str]:
    if estimate_tokens(text) <= max_tokens:
        return [text]
    return split_paragraphs(text, chunk_budget(max_tokens))


def strip_fences(text: str) -> str:
    text = (text or "").strip()
    if text.startswith("```"):
        nl = text.find("\n")
        if nl != -1:
            text = text[nl + 1 :]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()
    return text


def parse_correction_response(content: str) -> dict:
    """
    Decode the service reply into {"text": str, "notes": list}.

    Accepts fenced JSON and JSON surrounded by prose; raises ValueError otherwise.
    """
    text = strip_fences(content)
    obj: Any = None
    try:
        obj = json.loads(text)
    except json.JSONDecodeError:
        decoder = json.JSONDecoder()
        for i, ch in enumerate(text):
            if ch != "{":
                continue
            try:
                obj, _ = decoder.raw_decode(text[i:])
                break
            except json.JSONDecodeError:
                continue
        if obj is None:
            start, end = text.find("{"), text.rfind("}")
            if start == -1 or end <= start:
                raise ValueError("no JSON object in response")
            try:
                obj = json.loads(text[start : end + 1])
            except json.JSONDecodeError as e:
                raise ValueError(f"invalid JSON in response: {e}") from e

    if not isinstance(obj, dict) or not isinstance(obj.get("text"), str):
        raise ValueError("response JSON has no 'text' string")
    notes = obj.get("notes") or []
    if not isinstance(notes, list):
        notes = []
    return {"text": obj["text"], "notes": notes}


def coerce_notes(raw: list) -> list[CorrectionNote]:
    out: list[CorrectionNote] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        note_id = item.get("id")
        out.append(
            CorrectionNote(
                id="" if note_id is None else str(note_id).strip(),
                original=" ".join(str(item.get("original", "")).split()),
                reason="removed" if str(item.get("reason", "")).strip().lower() == "removed" else "corrected",
            )
        )
    return out


@dataclass
class CorrectionLedger:
    """Globally numbered corrections across every chunk of one cleanup pass."""

    entries: list[LedgerEntry] = field(default_factory=list)
    # Ledger ids whose placeholder never came back in the text.
    unplaced: list[int] = field(default_factory=list)

    @property
    def next_id(self) -> int:
        return len(self.entries) + 1

    def apply(self, text: str, notes: list[CorrectionNote]) -> str:
        """Renumber a chunk's [[FNn]] placeholders to global [^id] references."""
        pending = {n.id for n in notes if n.id}
        for note in notes:
            gid = self.next_id
            pending.discard(note.id)
            placeholder = f"[[FN{note.id}]]"
            if note.id and placeholder in text:
                text = text.replace(placeholder, f"[^{gid}]", 1)
            else:
                m = next((m for m in _RE_ANY_PLACEHOLDER.finditer(text) if m.group(1) not in pending), None)
                if m is not None:
                    text = text[: m.start()] + f"[^{gid}]" + text[m.end() :]
                else:
                    self.unplaced.append(gid)
            label = "Removed OCR garble" if note.reason == "removed" else "Original text"
            self.entries.append(LedgerEntry(id=gid, description=f"{label}: {note.original}"))
        return _RE_ANY_PLACEHOLDER.sub("", text)

    def render(self) -> str:
        lines = ["", "---", "", NOTES_HEADING, ""]
        if self.entries:
            lines += [f"[^{e.id}]: {e.description}" for e in self.entries]
        else:
            lines.append(NO_CORRECTIONS)
        return "\n".join(lines)


@dataclass
class CleanupOutcome:
    text: str
    chunks: int
    ledger: CorrectionLedger
    fallback_chunks: list[int] = field(default_factory=list)
    backup_path: Optional[Path] = None


class MarkdownCleaner:
    """
    Post-assembly correction pass over a consolidated markdown document.

    Configuration is validated before anything is sent. A failure of the service
    aborts the whole pass, so a document is either fully cleaned or untouched.
    """

    def __init__(self, cfg: LlmConfig, client: Optional[ChatClient] = None, *, verbose: bool = False) -> None:
        missing = []
        if not (cfg.base_url or "").strip():
            missing.append("OPENAI_BASE_URL")
        if not (cfg.model or "").strip():
            missing.append("OPENAI_MODEL")
        if not cfg.has_api_key:
            missing.append("OPENAI_API_KEY")
        if missing:
            raise ConfigError("Cleanup requires OpenAI-compatible settings. Missing: " + ", ".join(missing))
        self.max_tokens = parse_max_tokens(cfg.max_tokens)
        self.response_budget = chunk_budget(self.max_tokens)
        self.verbose = verbose
        if client is None:
            from ..llm import CorrectionClient

            client = CorrectionClient(cfg)
        self.client = client

    def _vprint(self, msg: str) -> None:
        if self.verbose:
            print(msg, flush=True)

    def _correct_chunk(self, text: str, index: int, total: int) -> tuple[dict, bool]:
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_user_prompt(text, index, total)},
        ]
        self._vprint(f"Sending chunk {index}/{total} to LLM...")
        content = self.client.complete(messages, temperature=0.2, max_tokens=self.response_budget)
        try:
            return parse_correction_response(content), False
        except ValueError:
            pass

        strict = messages + [{"role": "user", "content": STRICT_SUFFIX}]
        content = self.client.complete(strict, temperature=0.0, max_tokens=self.response_budget)
        try:
            return parse_correction_response(content), False
        except ValueError:
            print(f"[WARN] Chunk {index}/{total}: unparsable reply twice; keeping raw text without notes.", flush=True)
            return {"text": strip_fences(content), "notes": []}, True

    def clean_text(self, content: str) -> CleanupOutcome:
        images = ImageTokenMap()
        stripped = images.tokenize(content)
        self._vprint(f"Stripped {len(images)} embedded image(s) before LLM cleanup.")

        chunks = split_for_cleanup(stripped, self.max_tokens)
        self._vprint(
            f"Estimated tokens: {estimate_tokens(stripped)} (max {self.max_tokens}); "
            f"{len(chunks)} chunk(s), response budget {self.response_budget}."
        )

        ledger = CorrectionLedger()
        cleaned_chunks: list[str] = []
        fallbacks: list[int] = []
        for idx, chunk in enumerate(chunks, start=1):
            result, fell_back = self._correct_chunk(chunk, idx, len(chunks))
            if fell_back:
                fallbacks.append(idx)
            cleaned_chunks.append(ledger.apply(result["text"], coerce_notes(result["notes"])))

        cleaned = "\n\n".join(cleaned_chunks).rstrip()

        missing = images.missing_from(cleaned)
        if missing:
            restored = ["", RESTORED_IMAGES_HEADING, ""] + [f"![]({t})" for t in missing]
            cleaned = cleaned + "\n" + "\n".join(restored)
        if ledger.unplaced:
            unplaced = ["", UNPLACED_HEADING, ""] + [f"- [^{gid}]" for gid in ledger.unplaced]
            cleaned = cleaned + "\n" + "\n".join(unplaced)

        cleaned = cleaned + "\n" + ledger.render() + "\n"
        cleaned = images.restore(cleaned)
        return CleanupOutcome(text=cleaned, chunks=len(chunks), ledger=ledger, fallback_chunks=fallbacks)

    def clean_file(self, path: Path) -> CleanupOutcome:
        path = Path(path)
        original = path.read_bytes()
        outcome = self.clean_text(original.decode("utf-8", errors="replace"))
        outcome.backup_path = write_with_backup(path, outcome.text, original)
        print(f"Cleaned markdown written to: {path}", flush=True)
        print(f"Backup of original markdown saved to: {outcome.backup_path}", flush=True)
        return outcome


def _fsync_write(path: Path, data: bytes) -> None:
    with open(path, "wb") as fh:
        fh.write(data)
        fh.flush()
        os.fsync(fh.fileno())


def write_with_backup(path: Path, new_text: str, original: Optional[bytes] = None) -> Path:
    """
    Replace path with new_text after an exact copy of its current bytes is on disk.

    The new content goes to a sibling temp file that is renamed over path, so at
    every moment either the old or the new document is complete on disk.
    """
    path = Path(path)
    if original is None:
        original = path.read_bytes()
    backup = unique_path(path.with_name(path.name + ".bak"))
    _fsync_write(backup, original)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    os.close(fd)
    tmp = Path(tmp_name)
    try:
        _fsync_write(tmp, new_text.encode("utf-8"))
        os.replace(tmp, path)
    finally:
        tmp.unlink(missing_ok=True)
    return backup
