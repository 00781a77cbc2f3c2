import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from loguru import logger

from .config import ReviewThresholds, RunConfig
from .errors import (
    FATAL_ERRORS,
    ConfigurationError,
    FileIOError,
    GenerationError,
    PipelineError,
    ReviewParseError,
    TransientGenerationError,
)
from .image_store import FINAL_SUFFIX, PHASE_1_SUFFIX, ArtifactStore, page_base_name
from .logging_setup import add_run_log, remove_run_log
from .models import (
    ART_PHASE,
    CONTINUITY,
    FINAL_PHASE,
    LETTERING,
    LIKENESS,
    STORY,
    SUB_SCORE_KEYS,
    GenerationAttempt,
    GenerationConstraints,
    GenerationService,
    PageRecord,
    PhaseFlags,
    ReferenceImage,
    ReviewResult,
    ReviewService,
    RunResult,
)
from .page_memory import PageMemory
from .prompt_builder import PromptBuilder
from .reference_resolver import ReferenceCache, ReferenceResolver
from .reviewer import review_summary
from .story_parser import CHARACTER, ENVIRONMENT, StoryParser, extract_image_paths, select_pages


def passes_thresholds(review: ReviewResult, thresholds: ReviewThresholds) -> bool:
    """Conjunctive acceptance: every dimension and the total must clear its threshold."""
    return (
        review.total_score >= thresholds.total
        and review.score(LIKENESS) >= thresholds.likeness
        and review.score(CONTINUITY) >= thresholds.continuity
        and review.score(STORY) >= thresholds.story
        and review.score(LETTERING) >= thresholds.lettering
    )


@dataclass
class RunContext:
    """Everything one run owns. Nothing here outlives the run."""
    story_path: Path
    config: RunConfig
    global_context: str
    pages: List[PageRecord]
    memory: PageMemory
    store: ArtifactStore
    cache: ReferenceCache
    resolver: ReferenceResolver
    builder: PromptBuilder
    references: List[ReferenceImage] = field(default_factory=list)
    completed: Dict[int, Path] = field(default_factory=dict)
    generated_files: List[str] = field(default_factory=list)
    first_error: Optional[str] = None


@dataclass
class PhaseOutcome:
    artifact: Optional[Path] = None
    review: Optional[ReviewResult] = None
    prompt_path: Optional[Path] = None
    reason: Optional[str] = None
    attempts_used: int = 0


@dataclass
class PageOutcome:
    success: bool
    artifact: Optional[Path] = None
    generated: bool = False
    reason: Optional[str] = None


class GenerationPipeline:
    """Drives every page through generation, review and retry until it passes or the budget runs out."""

    def __init__(self, generator: GenerationService, reviewer: ReviewService,
                 parser: Optional[StoryParser] = None, lettering_model: Optional[str] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.generator = generator
        self.reviewer = reviewer
        self.parser = parser or StoryParser()
        self.lettering_model = lettering_model
        self.sleep = sleep

    # --- Entry point --- #

    def run(self, story_path, config: RunConfig) -> RunResult:
        """Generate every selected page of the story. Never raises for pipeline errors."""
        story_path = Path(story_path).resolve()
        if not story_path.is_file():
            return RunResult(False, f"Story file not found: {story_path}", error="Story file not found")

        output_dir = config.resolve_output_dir(story_path)
        sink_id = add_run_log(output_dir)
        try:
            return self._run(story_path, config, output_dir)
        except PipelineError as e:
            logger.error(f"Run aborted: {e}")
            return RunResult(False, f"Generation aborted: {e.message}", error=str(e))
        finally:
            remove_run_log(sink_id)

    def _run(self, story_path: Path, config: RunConfig, output_dir: Path) -> RunResult:
        ctx = self._prepare(story_path, config, output_dir)

        if config.character_generation_only or config.environment_generation_only:
            files = [str(p) for p in ctx.resolver.generated_files]
            return RunResult(True, f"Generated {len(files)} reference image(s).", generated_files=files)

        try:
            selected = select_pages(ctx.pages, config.page_selector, config.start_page)
        except ConfigurationError as e:
            return RunResult(False, e.message, error="Page not found")

        logger.info(f"Processing {len(selected)} of {len(ctx.pages)} page(s), two-phase={config.two_phase}")
        succeeded = 0
        failed_page: Optional[PageRecord] = None
        for position, page in enumerate(selected):
            try:
                outcome = self._process_page(ctx, page)
            except FATAL_ERRORS as e:
                logger.error(f"Fatal error on {page.header}: {e}")
                ctx.first_error = ctx.first_error or str(e)
                failed_page = page
                break
            except FileIOError as e:
                logger.error(f"Could not store results for {page.header}: {e}")
                ctx.first_error = ctx.first_error or str(e)
                failed_page = page
                break

            if not outcome.success:
                ctx.first_error = ctx.first_error or outcome.reason
                failed_page = page
                break

            succeeded += 1
            ctx.completed[page.index] = outcome.artifact
            ctx.generated_files.append(str(outcome.artifact))

            if outcome.generated and position < len(selected) - 1 and config.page_delay:
                logger.info(f"Waiting {config.page_delay:g} seconds before next page...")
                self.sleep(config.page_delay)

        total = len(selected)
        if failed_page is None:
            message = f"Successfully generated {succeeded} of {total} page(s)."
            logger.info(message)
            return RunResult(True, message, ctx.generated_files)

        message = (f"Generation stopped at {failed_page.header}. "
                   f"{succeeded} of {total} page(s) completed.")
        logger.error(f"{message} Reason: {ctx.first_error}")
        return RunResult(False, message, ctx.generated_files, error=ctx.first_error)

    def _prepare(self, story_path: Path, config: RunConfig, output_dir: Path) -> RunContext:
        """Parse the story and resolve its references."""
        try:
            document = story_path.read_text(encoding="utf-8")
        except OSError as e:
            raise FileIOError(f"Could not read story file: {e}", str(story_path))

        global_context, pages = self.parser.parse(document)
        store = ArtifactStore(output_dir, story_path.parent / "prompts")
        cache = ReferenceCache()
        resolver = ReferenceResolver(story_path, config, self.generator, cache, store, self.parser)
        memory = PageMemory.for_story(story_path)

        entities = self.parser.extract_entities(global_context)
        if config.character_generation_only and config.character_image:
            resolver.create_character_sheet(config.character_image, entities)
            return RunContext(story_path, config, global_context, pages, memory, store, cache, resolver,
                              PromptBuilder(config))

        wants_environments = config.auto_generate_environments or config.environment_generation_only
        if wants_environments and not any(e.kind == ENVIRONMENT for e in entities):
            extracted = resolver.extract_environments(document)
            if extracted:
                global_context, pages = self.parser.parse(story_path.read_text(encoding="utf-8"))
                entities = self.parser.extract_entities(global_context)

        if config.character_generation_only:
            entities = [e for e in entities if e.kind == CHARACTER]
        elif config.environment_generation_only:
            entities = [e for e in entities if e.kind == ENVIRONMENT]

        paths = resolver.resolve_entities(entities)
        paths.extend(resolver.explicit_references(global_context))
        ctx = RunContext(story_path, config, global_context, pages, memory, store, cache, resolver,
                         PromptBuilder(config))
        ctx.references = cache.load_many(paths)
        logger.info(f"Loaded {len(ctx.references)} global reference image(s)")
        return ctx

    # --- Per page --- #

    def _process_page(self, ctx: RunContext, page: PageRecord) -> PageOutcome:
        config = ctx.config
        header = page.header
        explicit = bool(config.page_selector)
        logger.info(f"Processing {header}...")

        if not explicit:
            done = ctx.memory.passed_artifact(header, FINAL_PHASE)
            if done:
                logger.info(f"Memory: Found PASSED Phase 2 file: {done}. SKIPPING generation.")
                return PageOutcome(True, Path(done))

        art_path: Optional[Path] = None
        art_prompt_ref: Optional[str] = None
        if config.two_phase:
            found = ctx.memory.passed_artifact(header, ART_PHASE)
            if found:
                art_path = Path(found)
                art_prompt_ref = ctx.memory.get(header).phase1.prompt_ref
                logger.info(f"Memory: Found PASSED Phase 1 file: {found}. Resuming from Phase 2.")

        if not explicit and art_path is None:
            on_disk = ctx.store.find_page_artifact(header)
            if on_disk and FINAL_SUFFIX in on_disk.name:
                logger.info(f"Final file found on disk: {on_disk}. SKIPPING generation (Resume Mode).")
                return PageOutcome(True, on_disk)
            if on_disk and config.two_phase and PHASE_1_SUFFIX in on_disk.name:
                art_path = on_disk
                logger.info(f"Found existing Phase 1 art on disk: {on_disk}. Resuming from Phase 2.")

        ctx.store.discard_candidates(header)
        previous, previous_header = self._previous_page(ctx, page)
        references = ctx.references + self._page_references(ctx, page)
        self._log_attachments(ctx, page, references, previous)

        # one attempt budget per page, shared by both phases
        attempts_used = 0
        forwarded: Optional[str] = None
        if config.two_phase and art_path is None:
            art = self._run_phase(ctx, page, ART_PHASE, references, previous, previous_header)
            if art.artifact is None:
                return PageOutcome(False, reason=art.reason)
            attempts_used = art.attempts_used
            art_path = art.artifact
            art_prompt_ref = str(art.prompt_path) if art.prompt_path else None
            forwarded = ctx.builder.art_remark_correction(art.review) if art.review else None

        final = self._run_phase(ctx, page, FINAL_PHASE, references, previous, previous_header,
                                art_path=art_path, art_prompt=self._read_prompt(art_prompt_ref),
                                initial_correction=forwarded, attempts_used=attempts_used)
        if final.artifact is None:
            return PageOutcome(False, reason=final.reason)

        if config.two_phase and art_path is not None:
            ctx.store.delete(art_path)
            ctx.cache.invalidate(art_path)
        return PageOutcome(True, final.artifact, generated=True)

    def _previous_page(self, ctx: RunContext, page: PageRecord):
        """The preceding page's final artifact from this run, memory or disk."""
        if page.index == 0:
            return None, None
        previous = ctx.pages[page.index - 1]
        path = ctx.completed.get(previous.index)
        if path is None:
            found = ctx.memory.passed_artifact(previous.header, FINAL_PHASE)
            path = Path(found) if found else ctx.store.find_page_artifact(previous.header)
        if path is None:
            logger.debug(f"No existing previous page found for {previous.header}")
            return None, previous.header
        image = ctx.cache.get(path)
        if image is not None:
            logger.info(f"Using {Path(path).name} as previous page reference for {page.header}")
        return image, previous.header

    def _page_references(self, ctx: RunContext, page: PageRecord) -> List[ReferenceImage]:
        known = {ref.source_label for ref in ctx.references}
        paths = [p for p in (ctx.resolver.find_image(raw) for raw in extract_image_paths(page.content)) if p]
        return [ref for ref in ctx.cache.load_many(paths) if ref.source_label not in known]

    def _log_attachments(self, ctx, page, references, previous) -> None:
        names = [f"Ref: {Path(ref.source_label).name}" for ref in references]
        if previous is not None:
            names.append(f"Prev Page Ref: {Path(previous.source_label).name}")
        logger.info(f"Generating {page.header}. Aspect Ratio: {ctx.config.aspect_ratio}. "
                    f"Attached References: {', '.join(names) or 'none'}")

    @staticmethod
    def _read_prompt(prompt_ref: Optional[str]) -> Optional[str]:
        if not prompt_ref:
            return None
        try:
            return Path(prompt_ref).read_text(encoding="utf-8")
        except OSError:
            logger.warning(f"Phase 1 prompt file not found: {prompt_ref}")
            return None

    # --- Per phase --- #

    def _run_phase(self, ctx: RunContext, page: PageRecord, phase: int, references: List[ReferenceImage],
                   previous: Optional[ReferenceImage], previous_header: Optional[str],
                   art_path: Optional[Path] = None, art_prompt: Optional[str] = None,
                   initial_correction: Optional[str] = None, attempts_used: int = 0) -> PhaseOutcome:
        """Attempt one phase with whatever is left of the page's retry_count after attempts_used.

        Returns the passed artifact or the last failure reason.
        """
        config = ctx.config
        header = page.header
        two_phase_art = config.two_phase and phase == ART_PHASE
        lettering = config.two_phase and phase == FINAL_PHASE
        flags = PhaseFlags(is_phase1=two_phase_art, is_color=config.color)
        thresholds = config.thresholds(is_phase1=two_phase_art)

        art_image = None
        if lettering and art_path is not None:
            art_image = ReferenceImage(str(art_path), ctx.store.read_bytes(art_path))

        correction = initial_correction
        reason = f"No attempts left for Phase {phase}"
        for attempt_number in range(attempts_used + 1, config.retry_count + 1):
            reasons, failed_paths = ctx.memory.failures(header)
            failed_attempt = ctx.cache.get(failed_paths[-1]) if failed_paths and not two_phase_art else None

            prompt, attachments = ctx.builder.build(
                page, ctx.global_context, references, reasons, phase,
                correction=correction, previous_page=None if lettering else previous,
                previous_header=previous_header, failed_attempt=failed_attempt,
                art_image=art_image, art_prompt=art_prompt,
            )
            attempt = GenerationAttempt(header, phase, prompt, attempt_number)
            prompt_path = ctx.store.save_prompt(
                f"page_{page_base_name(header)}_phase{phase}_attempt{attempt_number}.txt", prompt)
            logger.info(f"{header} Phase {phase}: attempt {attempt_number}/{config.retry_count}")

            candidate = self._generate(ctx, attempt, attachments)
            if candidate is None:
                reason = f"No image generated for {header} (Phase {phase}, attempt {attempt_number})"
                continue

            review_refs = references + ([previous] if previous is not None else [])
            review, passed = self._review(ctx, candidate, review_refs, page, flags, thresholds)
            logger.info(f"{review_summary(review, flags)} Pass: {passed}")

            if passed:
                accepted = ctx.store.promote(candidate, header, art_phase=two_phase_art)
                ctx.memory.record_pass(header, phase, str(accepted),
                                       prompt_ref=str(prompt_path) if two_phase_art and prompt_path else None)
                return PhaseOutcome(accepted, review, prompt_path, attempts_used=attempt_number)

            reason = review.reason
            failed_path: Optional[Path] = None
            if lettering:
                failed_path = ctx.store.retire_failed(candidate, stem=page_base_name(header) + FINAL_SUFFIX)
            else:
                ctx.store.delete(candidate)
            ctx.memory.record_failure(header, phase, review.reason, str(failed_path) if failed_path else None)
            correction = ctx.builder.correction(review, phase)

        logger.error(f"Failed to generate a consistent image for {header} after {config.retry_count} attempts")
        return PhaseOutcome(reason=f"Failed to generate {header} after {config.retry_count} attempts: {reason}",
                            attempts_used=config.retry_count)

    def _generate(self, ctx: RunContext, attempt: GenerationAttempt,
                  attachments: List[ReferenceImage]) -> Optional[Path]:
        """One generation call. Returns the unreviewed candidate, or None when the attempt produced nothing usable."""
        config = ctx.config
        constraints = GenerationConstraints(
            response_modalities=("IMAGE", "TEXT") if config.include_text else ("IMAGE",),
            aspect_ratio=config.aspect_ratio,
            model=self.lettering_model if config.two_phase and attempt.phase == FINAL_PHASE else None,
        )
        try:
            output = self.generator.generate(attempt.prompt_text, attachments, constraints)
        except FATAL_ERRORS:
            raise
        except GenerationError as e:
            logger.error(f"Error generating {attempt.page_header} (attempt {attempt.attempt_number}): {e}")
            return None

        if not output.image:
            logger.warning(f"No image returned for {attempt.page_header} (attempt {attempt.attempt_number})")
            return None
        try:
            return ctx.store.save_candidate(output.image, attempt.page_header)
        except TransientGenerationError as e:
            logger.error(f"Unusable image for {attempt.page_header}: {e}")
            return None

    def _review(self, ctx: RunContext, candidate: Path, references: List[ReferenceImage], page: PageRecord,
                flags: PhaseFlags, thresholds: ReviewThresholds):
        """Score the candidate and apply this run's thresholds. Returns (review, passed)."""
        try:
            review = self.reviewer.review(ctx.store.read_bytes(candidate), references, page.content, flags)
        except FATAL_ERRORS:
            raise
        except (ReviewParseError, TransientGenerationError) as e:
            zero = dict.fromkeys(SUB_SCORE_KEYS, 0)
            if ctx.config.pass_on_review_error:
                logger.warning(f"Review failed ({e}). Accepting {candidate.name} with score 0.")
                return ReviewResult(zero, 0, f"Review failed: {e.message}", True, parse_failed=True), True
            logger.warning(f"Review failed ({e}). Treating {candidate.name} as rejected.")
            return ReviewResult(zero, 0, f"Review failed: {e.message}", False, parse_failed=True), False

        return review, passes_thresholds(review, thresholds)
