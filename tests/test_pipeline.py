"""
Tests for the page generation pipeline: gating, retries, memory and resume.
"""

from pathlib import Path

import pytest

from conftest import FakeGenerator, FakeReviewer, make_review, png_bytes
from manga_pipeline.config import RunConfig, ReviewThresholds
from manga_pipeline.errors import AuthenticationError, QuotaExceededError, ReviewParseError
from manga_pipeline.models import ART_PHASE, GenerationOutput
from manga_pipeline.page_memory import MEMORY_FILE_NAME, PageMemory
from manga_pipeline.pipeline import GenerationPipeline, passes_thresholds

PAGE_1 = "# Page 1: Arrival"
PAGE_2 = "# Page 2: The Classroom"


def output_files(story_file, pattern="*.png"):
    return sorted(p.name for p in (story_file.parent / "output").glob(pattern))


def memory_text(story_file):
    return (story_file.parent / MEMORY_FILE_NAME).read_text(encoding="utf-8")


def section_of(story_file, header):
    """Lines of one page's memory section."""
    lines = memory_text(story_file).splitlines()
    start = lines.index(f"## {header}") + 1
    section = []
    for line in lines[start:]:
        if line.startswith("## "):
            break
        if line.strip():
            section.append(line)
    return section


def captions(attachments):
    return [a.caption for a in attachments]


class TestPassesThresholds:
    """Tests for the conjunctive acceptance gate."""

    THRESHOLDS = ReviewThresholds(total=320, likeness=70, continuity=70, story=70, lettering=95)

    def test_everything_above_threshold(self):
        assert passes_thresholds(make_review(), self.THRESHOLDS) is True

    def test_one_low_dimension_fails_despite_high_total(self):
        review = make_review(likeness=100, continuity=100, lettering=90, story=100, total=390)

        assert passes_thresholds(review, self.THRESHOLDS) is False

    def test_low_total_fails(self):
        review = make_review(total=300)

        assert passes_thresholds(review, self.THRESHOLDS) is False

    def test_pass_flag_is_not_trusted(self):
        review = make_review(likeness=50, pass_flag=True)

        assert passes_thresholds(review, self.THRESHOLDS) is False


class TestSinglePhaseRun:
    """Tests for a single-phase run."""

    def test_generates_every_page(self, story_file, config, generator, reviewer):
        result = GenerationPipeline(generator, reviewer).run(story_file, config)

        assert result.success is True
        assert result.message == "Successfully generated 2 of 2 page(s)."
        assert [Path(f).name for f in result.generated_files] == [
            "manga_page_1_arrival_final.png",
            "manga_page_2_the_classroom_final.png",
        ]
        assert all(Path(f).exists() for f in result.generated_files)
        assert section_of(story_file, PAGE_1) == [f"- Phase 2: `{result.generated_files[0]}` [PASSED]"]
        assert (story_file.parent / "output" / "manga-output.log").exists()

    def test_prompts_are_saved_per_attempt(self, story_file, config, generator, reviewer):
        GenerationPipeline(generator, reviewer).run(story_file, config)

        prompt = story_file.parent / "prompts" / "page_manga_page_1_arrival_phase2_attempt1.txt"
        assert prompt.read_text(encoding="utf-8") == generator.calls[0][0]

    def test_second_run_is_idempotent(self, story_file, config, generator, reviewer):
        pipeline = GenerationPipeline(generator, reviewer)
        first = pipeline.run(story_file, config)
        calls = len(generator.calls)
        memory_before = memory_text(story_file)

        second = pipeline.run(story_file, config)

        assert second.success is True
        assert second.generated_files == first.generated_files
        assert len(generator.calls) == calls
        assert memory_text(story_file) == memory_before

    def test_final_file_on_disk_is_skipped(self, story_file, config, generator, reviewer):
        existing = story_file.parent / "output" / "manga_page_1_arrival_final.png"
        existing.parent.mkdir()
        existing.write_bytes(png_bytes())

        result = GenerationPipeline(generator, reviewer).run(story_file, config)

        assert result.success is True
        assert result.generated_files[0] == str(existing)
        assert len(generator.calls) == 1

    def test_explicit_page_selection_regenerates(self, story_file, config, generator, reviewer):
        pipeline = GenerationPipeline(generator, reviewer)
        pipeline.run(story_file, config)

        result = pipeline.run(story_file, RunConfig(page_selector="1", page_delay=0))

        assert result.success is True
        assert len(generator.calls) == 3
        assert Path(result.generated_files[0]).name == "manga_page_1_arrival_final_1.png"

    def test_unknown_page(self, story_file, generator, reviewer):
        result = GenerationPipeline(generator, reviewer).run(story_file, RunConfig(page_selector="9"))

        assert result.success is False
        assert result.error == "Page not found"
        assert generator.calls == []

    def test_missing_story_file(self, tmp_path, config, generator, reviewer):
        result = GenerationPipeline(generator, reviewer).run(tmp_path / "missing.md", config)

        assert result.success is False
        assert result.error == "Story file not found"

    def test_delay_only_between_generated_pages(self, story_file, generator, reviewer):
        delays = []
        pipeline = GenerationPipeline(generator, reviewer, sleep=delays.append)

        pipeline.run(story_file, RunConfig(page_delay=5))
        pipeline.run(story_file, RunConfig(page_delay=5))

        assert delays == [5]


class TestContinuity:
    """Tests for previous-page references."""

    def test_previous_page_from_this_run(self, story_file, config, generator, reviewer):
        result = GenerationPipeline(generator, reviewer).run(story_file, config)

        first_attachments = generator.calls[0][1]
        second_attachments = generator.calls[1][1]
        assert "Reference: Previous Page" not in captions(first_attachments)
        previous = second_attachments[captions(second_attachments).index("Reference: Previous Page")]
        assert previous.data == Path(result.generated_files[0]).read_bytes()
        assert PAGE_1 in generator.calls[1][0]

    def test_previous_page_from_earlier_run(self, story_file, generator, reviewer):
        pipeline = GenerationPipeline(generator, reviewer)
        first = pipeline.run(story_file, RunConfig(page_selector="1", page_delay=0))

        pipeline.run(story_file, RunConfig(page_selector="2", page_delay=0))

        attachments = generator.calls[-1][1]
        previous = attachments[captions(attachments).index("Reference: Previous Page")]
        assert previous.data == Path(first.generated_files[0]).read_bytes()

    def test_reviewer_sees_previous_page(self, story_file, config, generator, reviewer):
        GenerationPipeline(generator, reviewer).run(story_file, config)

        assert len(reviewer.calls[0][1]) == 0
        assert len(reviewer.calls[1][1]) == 1


class TestRetries:
    """Tests for rejection, retry and exhaustion."""

    def test_rejected_attempt_is_retried_with_correction(self, story_file, config, generator):
        reviewer = FakeReviewer([make_review(likeness=40, total=340, reason="Face does not look like Kenji")])

        result = GenerationPipeline(generator, reviewer).run(story_file, config)

        assert result.success is True
        assert len(generator.calls) == 3
        retry_prompt = generator.calls[1][0]
        assert "[CRITICAL CORRECTION REQUIRED]" in retry_prompt
        assert "Face does not look like Kenji" in retry_prompt
        assert "[FACE IDENTITY FIX]" in retry_prompt
        assert output_files(story_file) == ["manga_page_1_arrival_final.png", "manga_page_2_the_classroom_final.png"]
        assert section_of(story_file, PAGE_1)[1] == (
            "- Phase 2 Attempt: FAILED. Reason: Face does not look like Kenji")

    def test_retry_exhaustion_stops_the_run(self, story_file, generator):
        bad = make_review(story=20, total=320, reason="Wrong panel layout")
        reviewer = FakeReviewer([bad, bad])

        result = GenerationPipeline(generator, reviewer).run(story_file, RunConfig(retry_count=2))

        assert result.success is False
        assert result.message == f"Generation stopped at {PAGE_1}. 0 of 2 page(s) completed."
        assert "Wrong panel layout" in result.error
        assert result.generated_files == []
        assert len(generator.calls) == 2
        assert output_files(story_file) == []
        assert section_of(story_file, PAGE_1) == ["- Phase 2 Attempt: FAILED. Reason: Wrong panel layout"]

    def test_completed_pages_are_reported_on_failure(self, story_file, generator):
        bad = make_review(continuity=10, total=310, reason="Lighting jumps")
        reviewer = FakeReviewer([make_review(), bad])

        result = GenerationPipeline(generator, reviewer).run(story_file, RunConfig(retry_count=1))

        assert result.success is False
        assert result.message == f"Generation stopped at {PAGE_2}. 1 of 2 page(s) completed."
        assert [Path(f).name for f in result.generated_files] == ["manga_page_1_arrival_final.png"]

    def test_missing_image_counts_as_attempt(self, story_file, config, reviewer):
        generator = FakeGenerator([GenerationOutput(), GenerationOutput(image=b"garbage")])

        result = GenerationPipeline(generator, reviewer).run(story_file, config)

        assert result.success is True
        assert len(generator.calls) == 4
        assert len(reviewer.calls) == 2
        assert "FAILED" not in memory_text(story_file)

    def test_prior_failures_reach_a_later_run(self, story_file, generator):
        reviewer = FakeReviewer([make_review(likeness=10, total=310, reason="Hair is blond, should be black")])
        pipeline = GenerationPipeline(generator, reviewer)
        pipeline.run(story_file, RunConfig(retry_count=1))

        pipeline.run(story_file, RunConfig(retry_count=1))

        assert "[CRITICAL WARNING: PAST FAILURES]" in generator.calls[-2][0]
        assert "- Hair is blond, should be black" in generator.calls[-2][0]


class TestReviewErrors:
    """Tests for unreadable reviews."""

    def test_accepted_by_default(self, story_file, config, generator):
        reviewer = FakeReviewer([ReviewParseError("garbled"), ReviewParseError("garbled")])

        result = GenerationPipeline(generator, reviewer).run(story_file, config)

        assert result.success is True
        assert len(generator.calls) == 2
        assert "[PASSED]" in section_of(story_file, PAGE_1)[0]

    def test_rejected_in_strict_mode(self, story_file, generator):
        reviewer = FakeReviewer([ReviewParseError("garbled")])
        config = RunConfig(retry_count=1, pass_on_review_error=False)

        result = GenerationPipeline(generator, reviewer).run(story_file, config)

        assert result.success is False
        assert section_of(story_file, PAGE_1) == ["- Phase 2 Attempt: FAILED. Reason: Review failed: garbled"]
        assert output_files(story_file) == []


class TestFatalErrors:
    """Tests for errors that stop the whole run."""

    @pytest.mark.parametrize("error", [QuotaExceededError("quota exceeded"), AuthenticationError("bad key")])
    def test_fatal_generation_error(self, story_file, config, reviewer, error):
        generator = FakeGenerator([error])

        result = GenerationPipeline(generator, reviewer).run(story_file, config)

        assert result.success is False
        assert result.error == str(error)
        assert len(generator.calls) == 1
        assert reviewer.calls == []


class TestTwoPhaseRun:
    """Tests for art-then-lettering runs."""

    @pytest.fixture
    def config(self):
        return RunConfig(two_phase=True, retry_count=3, page_delay=0)

    def test_art_then_lettering(self, story_file, config, generator, reviewer):
        result = GenerationPipeline(generator, reviewer, lettering_model="text-model").run(story_file, config)

        assert result.success is True
        assert len(generator.calls) == 4
        art_prompt, _, art_constraints = generator.calls[0]
        letter_prompt, letter_attachments, letter_constraints = generator.calls[1]
        assert "[TWO-PHASE GENERATION: ART PHASE]" in art_prompt
        assert art_constraints.model is None
        assert letter_constraints.model == "text-model"
        assert letter_attachments[0].caption == "Generated Image (Phase 1 art):"
        assert "[VISUAL CONTEXT FROM ART PHASE]" in letter_prompt
        assert reviewer.calls[0][3].is_phase1 is True
        assert reviewer.calls[1][3].is_phase1 is False
        assert output_files(story_file) == ["manga_page_1_arrival_final.png", "manga_page_2_the_classroom_final.png"]

    def test_phase_1_line_records_prompt(self, story_file, config, generator, reviewer):
        GenerationPipeline(generator, reviewer).run(story_file, config)

        entry = PageMemory.for_story(story_file).get(PAGE_1)
        assert entry.phase1.status == "PASSED"
        assert entry.phase1.prompt_ref.endswith("page_manga_page_1_arrival_phase1_attempt1.txt")
        assert entry.phase2.status == "PASSED"

    def test_wrong_hairstyle_scenario(self, story_file, config, generator):
        reviewer = FakeReviewer([make_review(likeness=40, total=340, reason="Wrong hairstyle for Kenji")])

        result = GenerationPipeline(generator, reviewer).run(story_file, config)

        assert result.success is True
        assert len(result.generated_files) == 2
        section = section_of(story_file, PAGE_1)
        assert section[0].startswith("- Phase 1: ")
        assert section[0].endswith("`)") and "[PASSED]" in section[0]
        assert section[1].startswith("- Phase 2: ") and "[PASSED]" in section[1]
        failures = [line for line in section if "Attempt: FAILED" in line]
        assert failures == ["- Phase 1 Attempt: FAILED. Reason: Wrong hairstyle for Kenji"]
        retry_prompt = generator.calls[1][0]
        assert "[CRITICAL ART CORRECTION]" in retry_prompt
        assert "[HAIR FIX]" in retry_prompt
        page_2_art_prompt, page_2_art_attachments, _ = generator.calls[3]
        assert "[TWO-PHASE GENERATION: ART PHASE]" in page_2_art_prompt
        previous = page_2_art_attachments[captions(page_2_art_attachments).index("Reference: Previous Page")]
        assert previous.data == Path(result.generated_files[0]).read_bytes()

    def test_art_and_lettering_share_the_page_budget(self, story_file, config, generator):
        reviewer = FakeReviewer([
            make_review(likeness=40, reason="Wrong hairstyle for Kenji"),
            make_review(),
            make_review(lettering=30, reason="Gibberish text"),
            make_review(lettering=30, reason="Gibberish text"),
        ])

        result = GenerationPipeline(generator, reviewer).run(story_file, config)

        assert result.success is False
        assert result.message == f"Generation stopped at {PAGE_1}. 0 of 2 page(s) completed."
        assert len(generator.calls) == 3
        assert len(reviewer.calls) == 3
        assert sorted(p.name for p in (story_file.parent / "prompts").glob("page_*.txt")) == [
            "page_manga_page_1_arrival_phase1_attempt1.txt",
            "page_manga_page_1_arrival_phase1_attempt2.txt",
            "page_manga_page_1_arrival_phase2_attempt3.txt",
        ]

    def test_art_passing_on_the_last_attempt_leaves_no_lettering_attempt(self, story_file, generator):
        reviewer = FakeReviewer([make_review(likeness=40, reason="Wrong hairstyle for Kenji")])
        config = RunConfig(two_phase=True, retry_count=2, page_delay=0)

        result = GenerationPipeline(generator, reviewer).run(story_file, config)

        assert result.success is False
        assert len(generator.calls) == 2
        assert PageMemory.for_story(story_file).get(PAGE_1).phase1.status == "PASSED"
        assert output_files(story_file) == ["manga_page_1_arrival_phase_1.png"]

    def test_resume_into_lettering_gets_a_fresh_budget(self, story_file, generator):
        art = story_file.parent / "output" / "manga_page_1_arrival_phase_1.png"
        art.parent.mkdir()
        art.write_bytes(png_bytes())
        PageMemory.for_story(story_file).record_pass(PAGE_1, ART_PHASE, str(art))
        reviewer = FakeReviewer([make_review(lettering=30, reason="Gibberish text")] * 2)
        config = RunConfig(two_phase=True, retry_count=3, page_selector="1", page_delay=0)

        result = GenerationPipeline(generator, reviewer).run(story_file, config)

        assert result.success is True
        assert len(generator.calls) == 3

    def test_resume_from_phase_1_in_memory(self, story_file, config, generator, reviewer):
        art = story_file.parent / "output" / "manga_page_1_arrival_phase_1.png"
        art.parent.mkdir()
        art.write_bytes(png_bytes())
        PageMemory.for_story(story_file).record_pass(PAGE_1, ART_PHASE, str(art))

        result = GenerationPipeline(generator, reviewer).run(story_file, RunConfig(two_phase=True, page_selector="1"))

        assert result.success is True
        assert len(generator.calls) == 1
        assert generator.calls[0][1][0].data == png_bytes()
        assert not art.exists()

    def test_resume_from_phase_1_on_disk(self, story_file, config, generator, reviewer):
        art = story_file.parent / "output" / "manga_page_1_arrival_phase_1.png"
        art.parent.mkdir()
        art.write_bytes(png_bytes())

        result = GenerationPipeline(generator, reviewer).run(story_file, config)

        assert result.success is True
        assert len(generator.calls) == 3
        assert "[TWO-PHASE GENERATION: ART PHASE]" not in generator.calls[0][0]

    def test_failed_lettering_is_kept_for_reference(self, story_file, config, generator):
        reviewer = FakeReviewer([make_review(), make_review(lettering=30, total=330, reason="Gibberish text")])

        result = GenerationPipeline(generator, reviewer).run(story_file, config)

        assert result.success is True
        failed = output_files(story_file, "*_failed_*.png")
        assert len(failed) == 1 and failed[0].startswith("manga_page_1_arrival_final_failed_")
        failure_line = section_of(story_file, PAGE_1)[-1]
        assert failure_line.startswith("- Phase 2 Attempt: FAILED. Reason: Gibberish text [FILE: `")
        retry_attachments = generator.calls[2][1]
        assert "Reference: Previous Attempt (Bad Text/Layout)" in captions(retry_attachments)
        assert "[TEXT FIX]" in generator.calls[2][0]

    def test_bubble_remark_on_passed_art_is_forwarded(self, story_file, config, generator):
        reviewer = FakeReviewer([make_review(reason="Good, but a faint speech bubble in panel 3")])

        GenerationPipeline(generator, reviewer).run(story_file, config)

        assert "[CORRECTION INSTRUCTION]" in generator.calls[1][0]
        assert "[CORRECTION INSTRUCTION]" not in generator.calls[3][0]


class TestReferenceOnlyModes:
    """Tests for runs that only create reference images."""

    def test_characters_only(self, write_story, generator, reviewer):
        story = write_story("## Characters\n- **Kenji**: Tall boy.\n\n# Page 1: Start\nKenji waves.\n")

        result = GenerationPipeline(generator, reviewer).run(story, RunConfig(character_generation_only=True))

        assert result.success is True
        assert result.message == "Generated 2 reference image(s)."
        assert [Path(f).name for f in result.generated_files] == ["kenji_portrait.png", "kenji_portrait_color.png"]
        assert not (story.parent / MEMORY_FILE_NAME).exists()

    def test_auto_characters_are_attached_to_pages(self, write_story, generator, reviewer):
        story = write_story("## Characters\n- **Kenji**: Tall boy.\n\n# Page 1: Start\nKenji waves.\n")

        result = GenerationPipeline(generator, reviewer).run(story, RunConfig(auto_generate_characters=True))

        assert result.success is True
        page_attachments = generator.calls[2][1]
        assert captions(page_attachments) == ['Reference image for: "kenji portrait"']
        assert "![Kenji](characters/kenji_portrait.png)" in story.read_text(encoding="utf-8")


class Interrupted(BaseException):
    """Stands in for the process being killed while a review is in flight."""


class TestInterruptedRun:
    """Tests for runs killed between generation and review."""

    @pytest.mark.parametrize("two_phase", [False, True])
    def test_unreviewed_candidate_is_not_taken_as_done(self, story_file, generator, two_phase):
        with pytest.raises(Interrupted):
            GenerationPipeline(generator, FakeReviewer([Interrupted()])).run(
                story_file, RunConfig(two_phase=two_phase, page_delay=0))
        assert output_files(story_file, "*_final*.png") == []
        assert output_files(story_file, "*_phase_1*.png") == []

        rejecting = FakeReviewer([make_review(likeness=10, reason="Off model")])
        result = GenerationPipeline(generator, rejecting).run(
            story_file, RunConfig(two_phase=two_phase, retry_count=1, page_delay=0))

        assert result.success is False
        assert result.message == f"Generation stopped at {PAGE_1}. 0 of 2 page(s) completed."
        assert len(rejecting.calls) == 1
        assert rejecting.calls[0][3].is_phase1 is two_phase
        assert output_files(story_file) == []
