import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger

from .errors import ConfigurationError

# layout -> (aspect ratio for the image config, directive for the prompt text)
LAYOUTS: Dict[str, tuple] = {
    "square": ("1:1", "aspect ratio 1:1, square format"),
    "single_page": ("3:4", "aspect ratio 3:4, portrait orientation"),
    "webtoon": ("9:16", "aspect ratio 9:16, vertical orientation"),
    "strip": ("16:9", "aspect ratio 16:9, landscape orientation"),
}

DEFAULT_ART_MODEL = "gemini-2.5-flash-image"
DEFAULT_TEXT_MODEL = "gemini-3-pro-image-preview"
DEFAULT_EXTRACT_MODEL = "gemini-2.0-flash"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class ReviewThresholds:
    """Percent thresholds applied by the pipeline's own acceptance gate."""
    total: float
    likeness: float
    continuity: float
    story: float
    lettering: float


@dataclass(frozen=True)
class RunConfig:
    """All options of one pipeline run, validated once at entry.

    Score options use the 1-10 scale of the command line. ``min_score`` is
    compared against the 0-400 total (x40), the per-dimension minimums
    against their 0-100 sub-scores (x10).
    """
    two_phase: bool = False
    retry_count: int = 3
    min_score: float = 8
    min_likeness: Optional[float] = None
    min_continuity: Optional[float] = None
    min_story: Optional[float] = None
    min_lettering: Optional[float] = None
    min_no_bubbles: Optional[float] = None
    color: bool = False
    layout: str = "square"
    style: str = "shonen"
    scene_prompt: str = "manga page"
    page_selector: Optional[str] = None
    start_page: Optional[str] = None
    auto_generate_characters: bool = False
    auto_generate_environments: bool = False
    character_generation_only: bool = False
    environment_generation_only: bool = False
    character_image: Optional[str] = None
    reference_page: Optional[str] = None
    include_text: bool = False
    pass_on_review_error: bool = True
    output_dir: Optional[str] = None
    page_delay: float = 0.0

    def __post_init__(self):
        if isinstance(self.retry_count, bool) or not isinstance(self.retry_count, int) or self.retry_count < 1:
            raise ConfigurationError("retry_count must be a positive integer", {"retry_count": self.retry_count})
        if self.layout not in LAYOUTS:
            raise ConfigurationError(f"Unknown layout '{self.layout}'", {"allowed": sorted(LAYOUTS)})
        for name in ("min_score", "min_likeness", "min_continuity", "min_story", "min_lettering", "min_no_bubbles"):
            value = getattr(self, name)
            if value is None and name != "min_score":
                continue
            if not _is_number(value) or not 0 < value <= 10:
                raise ConfigurationError(f"{name} must be between 1 and 10", {name: value})
        if not _is_number(self.page_delay) or self.page_delay < 0:
            raise ConfigurationError("page_delay must be a non-negative number", {"page_delay": self.page_delay})

    @property
    def aspect_ratio(self) -> str:
        return LAYOUTS[self.layout][0]

    @property
    def aspect_ratio_instruction(self) -> str:
        return LAYOUTS[self.layout][1]

    def thresholds(self, is_phase1: bool = False) -> ReviewThresholds:
        """Resolve the per-phase thresholds with their defaults."""
        if is_phase1:
            lettering = self.min_no_bubbles or self.min_lettering
            lettering_pct = lettering * 10 if lettering else 50
        else:
            lettering_pct = self.min_lettering * 10 if self.min_lettering else 95
        return ReviewThresholds(
            total=self.min_score * 40,
            likeness=self.min_likeness * 10 if self.min_likeness else 70,
            continuity=self.min_continuity * 10 if self.min_continuity else 70,
            story=self.min_story * 10 if self.min_story else 70,
            lettering=lettering_pct,
        )

    def resolve_output_dir(self, story_path: Path) -> Path:
        if self.output_dir:
            return Path(self.output_dir).expanduser().resolve()
        return story_path.resolve().parent / "output"


def load_config(config_path: Optional[str]) -> dict:
    """Load the optional YAML configuration file."""
    if not config_path:
        return {}
    path = Path(config_path)
    if not path.exists():
        logger.debug(f"No configuration file at {path}, using defaults")
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a mapping")
    return data


def build_run_config(file_config: Optional[dict] = None, **overrides: Any) -> RunConfig:
    """Merge the YAML ``run`` section with explicit overrides into a RunConfig."""
    section = dict((file_config or {}).get("run", {}) or {})
    known = {f.name for f in fields(RunConfig)}
    unknown = sorted(set(section) - known)
    if unknown:
        raise ConfigurationError("Unknown run options in configuration file", {"options": unknown})
    section.update({k: v for k, v in overrides.items() if v is not None})
    return RunConfig(**section)


def model_settings() -> Dict[str, str]:
    """Model names from the environment (.env is honoured)."""
    load_dotenv()
    text_model = os.getenv("GEMINI_TEXT_MODEL", DEFAULT_TEXT_MODEL)
    return {
        "art": os.getenv("GEMINI_ART_MODEL", DEFAULT_ART_MODEL),
        "text": text_model,
        "review": os.getenv("GEMINI_REVIEW_MODEL", text_model),
        "extract": os.getenv("GEMINI_EXTRACT_MODEL", DEFAULT_EXTRACT_MODEL),
    }
