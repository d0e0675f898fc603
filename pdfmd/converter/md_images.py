"""
Image references in markdown.

scan_images() finds every image occurrence in one pass and returns ImageRef
spans; the stripping, rewriting and embedding transforms below all consume
those spans instead of matching the text again with their own patterns.
"""

from __future__ import annotations

import base64
import mimetypes
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional
from urllib.parse import unquote

# Alt text may hold one level of nested [...]; a destination may hold one level
# of balanced (...), as in "p(1).png", or be wrapped in <...>.
_ALT = r"(?:[^\[\]]|\[[^\[\]]*\])*"
_DEST = r"\s*(?:<[^>\n]*>|(?:[^()\s]|\([^()\s]*\))+)(?:\s+(?:\"[^\"]*\"|'[^']*'|\([^()]*\)))?\s*"

_RE_IMAGE = re.compile(
    r"(?P<html><img\b[^>]*>)"
    r"|!\[(?P<ialt>" + _ALT + r")\]\((?P<itarget>" + _DEST + r")\)"
    r"|!\[(?P<ralt>" + _ALT + r")\]\[(?P<rlabel>[^\]]*)\]"
    r"|^[ \t]*\[(?P<dlabel>[^\]\n]+)\]:[ \t]*(?P<dtarget>\S+)[^\n]*(?:\n|$)",
    re.IGNORECASE | re.MULTILINE,
)
_RE_HTML_SRC = re.compile(r"""\bsrc\s*=\s*(["'])(?P<src>[^"']+)\1""", re.IGNORECASE)
_RE_HTML_ALT = re.compile(r"""\balt\s*=\s*(["'])(?P<alt>[^"']*)\1""", re.IGNORECASE)
_RE_IMAGE_EXT = re.compile(r"\.(png|jpg|jpeg|gif|svg|webp|bmp|tiff?)(\?|#|$)", re.IGNORECASE)

_REMOTE_PREFIXES = ("http://", "https://", "//", "data:", "mailto:", "#")


@dataclass(frozen=True)
class ImageRef:
    kind: str  # "inline" | "reference" | "html" | "definition"
    start: int
    end: int
    alt: str = ""
    target: str = ""
    # Span of the target inside the text; (-1, -1) when there is none to rewrite.
    target_start: int = -1
    target_end: int = -1

    @property
    def is_local(self) -> bool:
        return bool(self.target) and self.target_start >= 0 and is_local_target(self.target)


def is_image_target(url: str) -> bool:
    u = (url or "").strip().strip("<>").lower()
    if u.startswith("data:image/"):
        return True
    return _RE_IMAGE_EXT.search(u) is not None


def is_local_target(url: str) -> bool:
    u = (url or "").strip().lower()
    return bool(u) and not u.startswith(_REMOTE_PREFIXES)


def _split_title(raw: str, offset: int) -> tuple[str, int, int]:
    # ![alt](path "title") -> path with its absolute span
    lead = len(raw) - len(raw.lstrip())
    body = raw.strip()
    if body.startswith("<") and ">" in body:
        target = body[1 : body.index(">")]
        start = offset + lead + 1
        return target, start, start + len(target)
    target = body.split()[0] if body else ""
    start = offset + lead
    return target, start, start + len(target)


def scan_images(text: str) -> list[ImageRef]:
    refs: list[ImageRef] = []
    for m in _RE_IMAGE.finditer(text or ""):
        if m.group("html") is not None:
            tag = m.group("html")
            src = _RE_HTML_SRC.search(tag)
            alt = _RE_HTML_ALT.search(tag)
            if src:
                ts = m.start() + src.start("src")
                refs.append(
                    ImageRef("html", m.start(), m.end(), alt.group("alt") if alt else "", src.group("src"), ts, ts + len(src.group("src")))
                )
            else:
                refs.append(ImageRef("html", m.start(), m.end(), alt.group("alt") if alt else ""))
        elif m.group("itarget") is not None:
            target, ts, te = _split_title(m.group("itarget"), m.start("itarget"))
            refs.append(ImageRef("inline", m.start(), m.end(), m.group("ialt") or "", target, ts, te))
        elif m.group("rlabel") is not None:
            refs.append(ImageRef("reference", m.start(), m.end(), m.group("ralt") or "", m.group("rlabel") or ""))
        else:
            target = m.group("dtarget")
            if not is_image_target(target):
                continue
            ts = m.start("dtarget")
            refs.append(ImageRef("definition", m.start(), m.end(), m.group("dlabel"), target, ts, ts + len(target)))
    return refs


def _apply(text: str, refs: Iterable[ImageRef], fn: Callable[[ImageRef], Optional[str]]) -> str:
    out: list[str] = []
    pos = 0
    for ref in refs:
        repl = fn(ref)
        if repl is None:
            continue
        out.append(text[pos : ref.start])
        out.append(repl)
        pos = ref.end
    out.append(text[pos:])
    return "".join(out)


def _with_target(text: str, ref: ImageRef, new_target: str) -> str:
    return text[ref.start : ref.target_start] + new_target + text[ref.target_end : ref.end]


def strip_image_links(text: str) -> str:
    """
    Text-only transform: inline and reference images become their alt text,
    <img> tags and image reference definitions are removed. Idempotent.
    """

    def _strip(ref: ImageRef) -> str:
        if ref.kind in ("html", "definition"):
            return ""
        # Alt text can itself hold an image; strip it too so one pass is final.
        return strip_image_links(ref.alt).strip()

    return _apply(text, scan_images(text), _strip)


def rewrite_image_targets(text: str, prefix: str) -> str:
    """Prefix every local image target with the attachment directory name."""
    prefix = prefix.rstrip("/")

    def _rewrite(ref: ImageRef) -> Optional[str]:
        if not ref.is_local:
            return None
        target = ref.target[2:] if ref.target.startswith("./") else ref.target
        if target.startswith(prefix + "/"):
            return None
        return _with_target(text, ref, f"{prefix}/{target}")

    return _apply(text, scan_images(text), _rewrite)


def referenced_attachment_dirs(text: str) -> set[str]:
    """Top-level attachments_* directory names referenced by local image targets."""
    out: set[str] = set()
    for ref in scan_images(text):
        if not ref.is_local:
            continue
        head = unquote(ref.target).lstrip("./").split("/", 1)[0]
        if head.startswith("attachments_"):
            out.add(head)
    return out


def image_mime_type(path: Path) -> str:
    guessed, _ = mimetypes.guess_type(path.name)
    if guessed and guessed.startswith("image/"):
        return guessed
    return f"image/{path.suffix.lstrip('.').lower() or 'png'}"


def data_uri_for(path: Path) -> str:
    encoded = base64.b64encode(Path(path).read_bytes()).decode("ascii")
    return f"data:{image_mime_type(Path(path))};base64,{encoded}"


def embed_images(text: str, base_dir: Path) -> tuple[str, int]:
    """
    Replace every local image target that exists under base_dir with a data URI.

    Remote targets, existing data URIs and files that cannot be found are left as they are.
    Returns the new text and the number of images embedded.
    """
    base_dir = Path(base_dir)
    count = 0

    def _embed(ref: ImageRef) -> Optional[str]:
        nonlocal count
        if not ref.is_local:
            return None
        candidate = base_dir / unquote(ref.target)
        if not candidate.is_file():
            return None
        count += 1
        return _with_target(text, ref, data_uri_for(candidate))

    new_text = _apply(text, scan_images(text), _embed)
    return new_text, count


def decode_data_uri(uri: str) -> bytes:
    _, _, payload = uri.partition(";base64,")
    return base64.b64decode(payload)
