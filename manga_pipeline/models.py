import base64
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple

ART_PHASE = 1
FINAL_PHASE = 2

PASSED = "PASSED"
FAILED = "FAILED"

# Keys of ReviewResult.sub_scores, each scored 0-100
LIKENESS = "likeness"
CONTINUITY = "continuity"
LETTERING = "lettering_or_no_bubbles"
STORY = "story"
SUB_SCORE_KEYS = (LIKENESS, CONTINUITY, LETTERING, STORY)

DEFAULT_SAFETY_THRESHOLDS: Tuple[Tuple[str, str], ...] = (
    ("HARM_CATEGORY_HARASSMENT", "BLOCK_NONE"),
    ("HARM_CATEGORY_HATE_SPEECH", "BLOCK_NONE"),
    ("HARM_CATEGORY_SEXUALLY_EXPLICIT", "BLOCK_NONE"),
    ("HARM_CATEGORY_DANGEROUS_CONTENT", "BLOCK_NONE"),
)


@dataclass(frozen=True)
class PageRecord:
    """One page of the story script, in continuity order."""
    header: str
    content: str
    index: int


@dataclass(frozen=True)
class Entity:
    """A character or environment defined in the story's global context."""
    name: str
    description: str
    kind: str  # "character" | "environment"
    source_line: str = ""


@dataclass
class ReferenceImage:
    """Image attached to a request. Not owned by the pipeline."""
    source_label: str
    data: bytes
    mime_type: str = "image/png"
    tag: str = ""
    caption: Optional[str] = None

    @property
    def label(self) -> str:
        """Human label derived from the file name, e.g. 'kenji portrait'."""
        return Path(self.source_label).stem.replace("_", " ")

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("utf-8")


@dataclass
class GenerationAttempt:
    page_header: str
    phase: int
    prompt_text: str
    attempt_number: int


@dataclass
class ReviewResult:
    sub_scores: Dict[str, float]
    total_score: float
    reason: str
    pass_flag: bool
    parse_failed: bool = False

    def score(self, key: str) -> float:
        return self.sub_scores.get(key, 0)


@dataclass(frozen=True)
class PhaseFlags:
    is_phase1: bool = False
    is_color: bool = False


@dataclass
class PhaseRecord:
    artifact_path: Optional[str] = None
    status: Optional[str] = None
    prompt_ref: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.status == PASSED and bool(self.artifact_path)


@dataclass
class FailureRecord:
    phase: int
    reason: str
    failed_artifact_path: Optional[str] = None


@dataclass
class PageMemoryEntry:
    page_header: str
    phase1: PhaseRecord = field(default_factory=PhaseRecord)
    phase2: PhaseRecord = field(default_factory=PhaseRecord)
    failure_log: List[FailureRecord] = field(default_factory=list)

    def phase(self, number: int) -> PhaseRecord:
        return self.phase1 if number == ART_PHASE else self.phase2


@dataclass(frozen=True)
class GenerationConstraints:
    response_modalities: Tuple[str, ...] = ("IMAGE",)
    aspect_ratio: str = "1:1"
    safety_thresholds: Tuple[Tuple[str, str], ...] = DEFAULT_SAFETY_THRESHOLDS
    model: Optional[str] = None


@dataclass
class GenerationOutput:
    """Zero-or-one image plus any text the model sent back."""
    image: Optional[bytes] = None
    mime_type: str = "image/png"
    text: Optional[str] = None


@dataclass
class RunResult:
    success: bool
    message: str
    generated_files: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        result = {
            "success": self.success,
            "message": self.message,
            "generatedFiles": list(self.generated_files),
        }
        if self.error:
            result["error"] = self.error
        return result


class GenerationService(Protocol):
    def generate(self, prompt: str, attachments: List[ReferenceImage],
                 constraints: GenerationConstraints) -> GenerationOutput:
        ...

    def generate_text(self, prompt: str) -> str:
        ...


class ReviewService(Protocol):
    def review(self, candidate: bytes, references: List[ReferenceImage],
               story_context: str, phase_flags: PhaseFlags) -> ReviewResult:
        ...
