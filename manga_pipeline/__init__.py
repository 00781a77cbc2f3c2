"""Quality-gated, resumable generation of manga pages from a Markdown story."""

from .config import RunConfig, build_run_config, load_config
from .errors import (
    AuthenticationError,
    ConfigurationError,
    FileIOError,
    GenerationError,
    PipelineError,
    QuotaExceededError,
    ReviewParseError,
    TransientGenerationError,
)
from .models import RunResult
from .pipeline import GenerationPipeline

__version__ = "0.1.0"
