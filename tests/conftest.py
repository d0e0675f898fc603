import json
import sys
import textwrap
from pathlib import Path

import fitz
import pytest

from pdfmd.config import ConvertConfig, LlmConfig, OcrLayerConfig

FAKE_ENGINE = textwrap.dedent(
    '''
    """Stand-in for the conversion engine: same CLI, deterministic output."""
    import argparse
    import json
    import os
    import sys
    import time
    from pathlib import Path

    PNG = bytes.fromhex(
        "89504e470d0a1a0a0000000d49484452000000010000000108060000001f15c489"
        "0000000d49444154789c6360f8cfc0f01f0005fe02fea7d4a8a80000000049454e44ae426082"
    )

    p = argparse.ArgumentParser()
    p.add_argument("input_dir")
    p.add_argument("--output_dir", required=True)
    p.add_argument("--workers")
    p.add_argument("--timeout")
    p.add_argument("--use_llm", action="store_true")
    p.add_argument("--llm_service")
    p.add_argument("--openai_api_key")
    p.add_argument("--openai_model")
    p.add_argument("--openai_base_url")
    p.add_argument("--disable_ocr", action="store_true")
    p.add_argument("--config_json")
    a = p.parse_args()

    calls = os.environ.get("FAKE_ENGINE_CALLS")
    if calls:
        config = None
        if a.config_json:
            config = json.loads(Path(a.config_json).read_text(encoding="utf-8"))
        with open(calls, "a", encoding="utf-8") as fh:
            fh.write(json.dumps({
                "use_llm": a.use_llm,
                "disable_ocr": a.disable_ocr,
                "config": config,
                "workers": a.workers,
                "torch_device": os.environ.get("TORCH_DEVICE"),
            }) + "\\n")

    mode = os.environ.get("FAKE_ENGINE_MODE", "ok")
    print("Loading models...", flush=True)
    if mode == "ratelimit_always" or (mode == "ratelimit_llm" and a.use_llm):
        print("Rate limit error: 429 Too Many Requests", flush=True)
        time.sleep(30)
        sys.exit(0)
    if mode == "ratelimit_noise":
        print("Rate limit error: 429 from an unrelated client", flush=True)
    if mode == "oom_exit":
        print("torch.cuda.OutOfMemoryError: CUDA out of memory. Tried to allocate 2.00 GiB", flush=True)
        sys.exit(1)
    if mode.startswith("exit"):
        sys.exit(int(mode[4:]))

    out = Path(a.output_dir)
    for pdf in sorted(Path(a.input_dir).glob("*.pdf")):
        d = out / pdf.stem
        d.mkdir(parents=True, exist_ok=True)
        (d / "_page_0_Picture_1.png").write_bytes(PNG)
        (d / f"{pdf.stem}_meta.json").write_text("{}", encoding="utf-8")
        (d / f"{pdf.stem}.md").write_text(
            f"# Part {pdf.stem}\\n\\n![](_page_0_Picture_1.png)\\n\\nBody of {pdf.stem}.\\n\\n\\n",
            encoding="utf-8",
        )
        print(f"Converted {pdf.name}", flush=True)

    if mode == "traceback":
        print("Error converting broken.pdf", flush=True)
        print("Traceback (most recent call last):", flush=True)
    sys.exit(0)
    '''
)


def _write_pdf(path: Path, pages: int, text_pages=None, words: int = 40) -> Path:
    doc = fitz.open()
    for i in range(pages):
        page = doc.new_page()
        if text_pages is None or i in text_pages:
            line = " ".join(f"word{i}x{j}" for j in range(words))
            page.insert_textbox(fitz.Rect(50, 50, 550, 800), f"Page {i + 1}. {line}", fontsize=10)
        else:
            # Keep the page non-empty without a text layer.
            page.draw_rect(fitz.Rect(100, 100, 200, 200), color=(0, 0, 0))
    doc.save(str(path))
    doc.close()
    return path


@pytest.fixture
def make_pdf(tmp_path):
    """make_pdf(name, pages, text_pages=None) -> Path of a generated PDF."""

    def _make(name: str = "doc.pdf", pages: int = 3, text_pages=None, words: int = 40) -> Path:
        return _write_pdf(tmp_path / name, pages, text_pages=text_pages, words=words)

    return _make


@pytest.fixture
def fake_engine(tmp_path, monkeypatch):
    script = tmp_path / "fake_engine.py"
    script.write_text(FAKE_ENGINE, encoding="utf-8")
    calls = tmp_path / "engine_calls.jsonl"
    monkeypatch.setenv("FAKE_ENGINE_CALLS", str(calls))
    monkeypatch.setenv("FAKE_ENGINE_MODE", "ok")
    return {"cmd": (sys.executable, str(script)), "calls": calls}


def read_calls(path: Path) -> list:
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


@pytest.fixture
def engine_calls(fake_engine):
    return lambda: read_calls(fake_engine["calls"])


@pytest.fixture
def base_cfg(tmp_path, fake_engine):
    out = tmp_path / "out"
    return ConvertConfig(
        engine_cmd=fake_engine["cmd"],
        kill_grace_s=0.5,
        output_dir=out,
        llm=LlmConfig(api_key="sk-test", base_url="http://llm.local/v1", model="test-model", max_tokens=30000),
        ocr_layer=OcrLayerConfig(mode="disabled"),
    )


class FakeChatClient:
    """In-memory correction service; replies come from a callable or a list."""

    def __init__(self, replies):
        self.replies = replies
        self.calls = []

    def complete(self, messages, *, temperature=0.2, max_tokens=4096, json_mode=True):
        self.calls.append({"messages": messages, "temperature": temperature, "max_tokens": max_tokens})
        if callable(self.replies):
            return self.replies(messages)
        return self.replies.pop(0)


@pytest.fixture
def fake_client_cls():
    return FakeChatClient
