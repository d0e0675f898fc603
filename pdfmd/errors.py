from __future__ import annotations


class PdfMdError(Exception):
    """Base class for every failure the pipeline reports to the user."""

    stage = "pipeline"

    @property
    def hint(self) -> str:
        return ""


class InputError(PdfMdError):
    stage = "input"


class SplitError(PdfMdError):
    stage = "split"


class PreprocessError(PdfMdError):
    stage = "ocr-layer"


class OcrPrepassError(PreprocessError):
    stage = "ocr-prepass"


class EngineInvocationError(PdfMdError):
    stage = "engine"

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        out_of_memory: bool = False,
        log_tail: str = "",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.out_of_memory = out_of_memory
        self.log_tail = log_tail

    @property
    def hint(self) -> str:
        if self.out_of_memory:
            return (
                "Detected GPU memory exhaustion in the engine output. "
                "Try --cpu, reduce workers with -w 1, or re-run with -v for details."
            )
        return "The engine reported conversion failures. Re-run with -v for details."


class TransientRateLimit(EngineInvocationError):
    """Rate-limit signature seen with no degraded retry left."""


class MergeError(PdfMdError):
    stage = "merge"


class ConfigError(PdfMdError):
    stage = "cleanup"


class ServiceError(PdfMdError):
    stage = "cleanup"
