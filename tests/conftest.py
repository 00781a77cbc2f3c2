"""
Pytest Configuration and Fixtures

Fake generation and review services, tiny Pillow-made PNGs and story files
written into a temporary directory.
"""

from io import BytesIO
from pathlib import Path
from typing import List, Optional

import pytest
from PIL import Image

from manga_pipeline.config import RunConfig
from manga_pipeline.models import (
    CONTINUITY,
    LETTERING,
    LIKENESS,
    STORY,
    GenerationConstraints,
    GenerationOutput,
    PhaseFlags,
    ReferenceImage,
    ReviewResult,
)


def png_bytes(color=(255, 255, 255), size=(8, 8)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, "PNG")
    return buffer.getvalue()


def make_review(likeness=100, continuity=100, lettering=100, story=100, total=None,
                reason="Looks good", pass_flag=True) -> ReviewResult:
    scores = {LIKENESS: likeness, CONTINUITY: continuity, LETTERING: lettering, STORY: story}
    return ReviewResult(scores, total if total is not None else sum(scores.values()), reason, pass_flag)


class FakeGenerator:
    """GenerationService double. Each item of ``script`` is a GenerationOutput or an exception."""

    def __init__(self, script: Optional[list] = None, text: str = ""):
        self.script = list(script or [])
        self.text = text
        self.calls: List[tuple] = []
        self.text_calls: List[str] = []
        self._counter = 0

    def generate(self, prompt: str, attachments: List[ReferenceImage],
                 constraints: GenerationConstraints) -> GenerationOutput:
        self.calls.append((prompt, list(attachments), constraints))
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        self._counter += 1
        return GenerationOutput(image=png_bytes((self._counter * 20 % 256, 0, 0)))

    def generate_text(self, prompt: str) -> str:
        self.text_calls.append(prompt)
        return self.text


class FakeReviewer:
    """ReviewService double. Each item of ``script`` is a ReviewResult or an exception; then it passes."""

    def __init__(self, script: Optional[list] = None):
        self.script = list(script or [])
        self.calls: List[tuple] = []

    def review(self, candidate: bytes, references: List[ReferenceImage],
               story_context: str, phase_flags: PhaseFlags) -> ReviewResult:
        self.calls.append((candidate, list(references), story_context, phase_flags))
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return make_review()


TWO_PAGE_STORY = """# Sunset Academy

## Style Notes
Clean line art, heavy screentones.

# Page 1: Arrival
Kenji walks through the school gate.
- **Kenji**: "Finally here!"

# Page 2: The Classroom
Kenji meets Mika at her desk.
- **Mika**: "You're late."
- **Kenji**: "Sorry!"
"""


@pytest.fixture
def story_file(tmp_path) -> Path:
    """A two-page story without entity definitions."""
    path = tmp_path / "story.md"
    path.write_text(TWO_PAGE_STORY, encoding="utf-8")
    return path


@pytest.fixture
def write_story(tmp_path):
    def _write(text: str, name: str = "story.md") -> Path:
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return path
    return _write


@pytest.fixture
def config() -> RunConfig:
    return RunConfig(retry_count=3, page_delay=0)


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def reviewer() -> FakeReviewer:
    return FakeReviewer()
