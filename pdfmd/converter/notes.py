from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

_RE_NOTES_HEADING = re.compile(r"^(#{1,6})\s*OCR\s+Corrections?\s+Notes?\s*$", re.IGNORECASE)
_RE_UNPLACED_HEADING = re.compile(r"^(#{1,6})\s*Unplaced\s+Corrections\s*\(restored\)\s*$", re.IGNORECASE)
_RE_ANY_HEADING = re.compile(r"^(#{1,6})\s+\S")
_RE_FOOTNOTE_DEF = re.compile(r"^\[\^([^\]]+)\]:")
_RE_RULE = re.compile(r"^(-{3,}|\*{3,}|_{3,})\s*$")


@dataclass
class NotesRemoval:
    text: str
    section_removed: bool = False
    removed_ids: set[str] = field(default_factory=set)
    ref_count: int = 0

    @property
    def changed(self) -> bool:
        return self.section_removed


def _section_bounds(lines: list[str], heading: re.Pattern[str]) -> Optional[tuple[int, int]]:
    """[start, end) of the section under a matching heading, pulling in a preceding rule."""
    for i, line in enumerate(lines):
        m = heading.match(line.strip())
        if not m:
            continue
        level = len(m.group(1))
        start = i
        j = i - 1
        while j >= 0 and not lines[j].strip():
            j -= 1
        if j >= 0 and _RE_RULE.match(lines[j].strip()):
            start = j
        while start > 0 and not lines[start - 1].strip():
            start -= 1
        end = len(lines)
        for k in range(i + 1, len(lines)):
            h = _RE_ANY_HEADING.match(lines[k])
            if h and len(h.group(1)) <= level:
                end = k
                break
        return start, end
    return None


def remove_correction_notes(text: str) -> NotesRemoval:
    """
    Drop the correction-notes section appended by the cleanup pass.

    Footnote references are removed only for ids whose definition lived in that
    section; footnotes defined elsewhere in the document survive.
    """
    newline = "\r\n" if "\r\n" in text else "\n"
    trailing = text.endswith("\n")
    lines = text.splitlines()

    bounds = _section_bounds(lines, _RE_NOTES_HEADING)
    if bounds is None:
        return NotesRemoval(text=text)
    start, end = bounds
    section = lines[start:end]
    remaining = lines[:start] + lines[end:]

    unplaced = _section_bounds(remaining, _RE_UNPLACED_HEADING)
    if unplaced is not None:
        remaining = remaining[: unplaced[0]] + remaining[unplaced[1] :]

    note_ids = {m.group(1) for m in (_RE_FOOTNOTE_DEF.match(s.strip()) for s in section) if m}
    kept_ids = {m.group(1) for m in (_RE_FOOTNOTE_DEF.match(s.strip()) for s in remaining) if m}
    drop = note_ids - kept_ids

    new_text = newline.join(remaining)
    count = 0
    if drop:
        alternatives = "|".join(re.escape(i) for i in sorted(drop, key=len, reverse=True))
        new_text, count = re.subn(r"\[\^(?:" + alternatives + r")\]", "", new_text)
    if trailing and not new_text.endswith(newline):
        new_text += newline
    return NotesRemoval(text=new_text, section_removed=True, removed_ids=drop, ref_count=count)


def backup_path_for(path: Path) -> Path:
    """<name>.bak, then <name>.bak.1, <name>.bak.2, ..."""
    candidate = path.with_name(path.name + ".bak")
    n = 0
    while candidate.exists():
        n += 1
        candidate = path.with_name(f"{path.name}.bak.{n}")
    return candidate
