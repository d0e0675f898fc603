from .runner import main
from .pipeline import PdfToMarkdownPipeline, process_directory, run_document
from ..config import ConvertConfig, LlmConfig

__all__ = ["PdfToMarkdownPipeline", "ConvertConfig", "LlmConfig", "main", "process_directory", "run_document"]
