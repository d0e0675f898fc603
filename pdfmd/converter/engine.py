from __future__ import annotations

import json
import os
import shlex
import subprocess
import threading
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from ..config import OPENAI_SERVICE, ConvertConfig
from ..errors import EngineInvocationError, TransientRateLimit
from ..lifecycle import ResourceRegistry, terminate_process_tree
from ..pdf_tools import chunk_page_range, sort_chunk_paths
from .models import Chunk, ConversionResult, EngineRun
from .signatures import is_rate_limit, log_tail, scan_log


class EngineOcrMode(str, Enum):
    # An external OCR pre-pass already produced the text layer.
    DISABLE = "disable"
    # The text layer was stripped locally; the engine only has to OCR. Not
    # DISABLE: with the layer gone, --disable_ocr would yield no text at all.
    FORCE = "force"
    # Default: the engine strips any existing layer itself and re-OCRs.
    FORCE_STRIP = "force_strip"


_REDACTED = "[redacted]"


def engine_config_payload(mode: EngineOcrMode) -> Optional[dict]:
    if mode == EngineOcrMode.DISABLE:
        return None
    if mode == EngineOcrMode.FORCE:
        return {"force_ocr": True}
    return {"force_ocr": True, "strip_existing_ocr": True}


def build_engine_command(
    cfg: ConvertConfig,
    input_dir: Path,
    output_dir: Path,
    *,
    use_llm: bool,
    ocr_mode: EngineOcrMode,
    config_json: Optional[Path] = None,
) -> list[str]:
    """
    Full argv for one batch invocation of the engine over every chunk in input_dir.
    """
    cmd = list(cfg.engine_cmd) + [
        str(input_dir),
        "--output_dir",
        str(output_dir),
        "--workers",
        str(int(cfg.workers)),
        f"--timeout={int(cfg.engine_timeout_s)}",
    ]
    llm = cfg.llm
    if use_llm:
        cmd.append("--use_llm")
    if llm.service:
        cmd += ["--llm_service", llm.service]
    if use_llm and llm.service == OPENAI_SERVICE:
        if llm.has_api_key:
            cmd += ["--openai_api_key", str(llm.api_key)]
        if llm.model:
            cmd += ["--openai_model", llm.model]
        if llm.base_url:
            cmd += ["--openai_base_url", llm.base_url]

    if ocr_mode == EngineOcrMode.DISABLE:
        cmd.append("--disable_ocr")
    elif config_json is not None:
        cmd += ["--config_json", str(config_json)]
    return cmd


def redact_command(cmd: Iterable[str]) -> str:
    out: list[str] = []
    hide_next = False
    for part in cmd:
        if hide_next:
            out.append(_REDACTED)
            hide_next = False
            continue
        if part == "--openai_api_key":
            hide_next = True
        elif part.startswith("--openai_api_key="):
            part = "--openai_api_key=" + _REDACTED
        out.append(part)
    return shlex.join(out)


class ConversionOrchestrator:
    """
    Runs the engine once over the whole chunk directory.

    States: preparing -> running -> [monitoring_for_fallback] ->
    succeeded | failed | retrying_degraded (which re-enters preparing with
    LLM-assist off). At most one degraded retry happens per run.
    """

    def __init__(self, cfg: ConvertConfig, registry: ResourceRegistry) -> None:
        self.cfg = cfg
        self.registry = registry
        self.state = "preparing"
        self.history: list[str] = []
        self.invocations = 0

    def _enter(self, state: str) -> None:
        self.state = state
        self.history.append(state)
        if self.cfg.verbose:
            print(f"[ENGINE] {state}", flush=True)

    def _child_env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self.cfg.force_cpu:
            env["TORCH_DEVICE"] = "cpu"
        return env

    def run(self, input_dir: Path, output_dir: Path, ocr_mode: EngineOcrMode) -> EngineRun:
        use_llm = bool(self.cfg.use_llm)
        fallback_used = False
        log_path = self.registry.mkstemp(prefix="pdfmd-engine-", suffix=".log")

        while True:
            self._enter("preparing")
            config_json: Optional[Path] = None
            payload = engine_config_payload(ocr_mode)
            if payload is not None:
                config_json = self.registry.mkstemp(prefix="pdfmd-engine-", suffix=".json")
                config_json.write_text(json.dumps(payload), encoding="utf-8")

            cmd = build_engine_command(
                self.cfg, input_dir, output_dir, use_llm=use_llm, ocr_mode=ocr_mode, config_json=config_json
            )
            if self.cfg.verbose:
                print(f"Running engine command: {redact_command(cmd)}", flush=True)

            # Only runs that asked for LLM-assist watch for the rate-limit signature;
            # the degraded retry keeps watching so a second hit is terminal.
            exit_code, rate_limited = self._invoke(cmd, log_path, watch=bool(self.cfg.use_llm))

            if rate_limited:
                if not fallback_used:
                    fallback_used = True
                    use_llm = False
                    self._enter("retrying_degraded")
                    print("Detected engine rate limit error; retrying without LLM assist.", flush=True)
                    continue
                self._enter("failed")
                raise TransientRateLimit(
                    "Engine hit the rate limit again after falling back to non-LLM mode",
                    exit_code=exit_code,
                    log_tail=log_tail(log_path),
                )

            scan = scan_log(log_path)
            if exit_code != 0:
                self._enter("failed")
                raise EngineInvocationError(
                    f"Engine failed (exit code {exit_code}).",
                    exit_code=exit_code,
                    out_of_memory=scan.out_of_memory,
                    log_tail=log_tail(log_path),
                )
            # The engine logs per-document failures without failing its own exit status.
            if scan.has_failure:
                self._enter("failed")
                raise EngineInvocationError(
                    "Engine reported conversion failures: " + scan.failure_lines[0].strip(),
                    exit_code=exit_code,
                    out_of_memory=scan.out_of_memory,
                    log_tail=log_tail(log_path),
                )

            self._enter("succeeded")
            return EngineRun(
                exit_code=exit_code,
                log_path=log_path,
                degraded=fallback_used,
                states=list(self.history),
            )

    def _invoke(self, cmd: list[str], log_path: Path, *, watch: bool = True) -> tuple[int, bool]:
        self.invocations += 1
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=self._child_env(),
                start_new_session=True,
            )
        except OSError as e:
            self._enter("failed")
            raise EngineInvocationError(f"Could not start engine {cmd[0]!r}: {e}") from e

        self.registry.track_process(proc)
        self._enter("running")
        rate_hit = threading.Event()
        echo = self.cfg.verbose
        stdout = proc.stdout

        def _pump() -> None:
            with open(log_path, "w", encoding="utf-8") as log_fh:
                for line in stdout:
                    log_fh.write(line)
                    log_fh.flush()
                    if echo:
                        print(line, end="", flush=True)
                    if watch and not rate_hit.is_set() and is_rate_limit(line):
                        rate_hit.set()

        reader = threading.Thread(target=_pump, name="engine-log", daemon=True)
        reader.start()
        try:
            while proc.poll() is None:
                if rate_hit.wait(0.1):
                    self._enter("monitoring_for_fallback")
                    terminate_process_tree(proc, self.cfg.kill_grace_s)
                    break
            proc.wait()
            reader.join(timeout=10)
        finally:
            self.registry.forget_process(proc)
            if proc.stdout is not None:
                proc.stdout.close()

        return int(proc.returncode), rate_hit.is_set()


def collect_results(output_dir: Path, chunks: list[Chunk]) -> list[ConversionResult]:
    """
    Map every engine output directory back to its chunk.

    Order comes from the page number encoded in each directory name, never
    from the directory listing. Missing chunk outputs are reported and skipped.
    """
    output_dir = Path(output_dir)
    by_start = {c.start_page: c for c in chunks}
    listed = [p for p in output_dir.iterdir() if p.is_dir()] if output_dir.is_dir() else []

    results: list[ConversionResult] = []
    seen: set[int] = set()
    for d in sort_chunk_paths(listed):
        start, _end = chunk_page_range(d.name) or (0, 0)
        chunk = by_start.get(start)
        if chunk is None:
            continue
        md = d / f"{d.name}.md"
        if not md.is_file():
            print(f"[WARN] No markdown produced for {d.name}", flush=True)
            continue
        results.append(ConversionResult(chunk_index=chunk.index, sort_key=start, markdown_path=md))
        seen.add(start)

    for c in chunks:
        if c.start_page not in seen and not (output_dir / c.path.stem).is_dir():
            print(f"[WARN] Missing engine output for {c.path.name}", flush=True)
    return results
