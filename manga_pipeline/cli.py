import argparse
import json
import sys
from typing import List, Optional

from loguru import logger

from .api_client import APIClient
from .config import LAYOUTS, build_run_config, load_config, model_settings
from .errors import PipelineError
from .logging_setup import configure_console
from .pipeline import GenerationPipeline
from .reviewer import GeminiReviewer


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="manga-pipeline",
                                     description="Generate manga pages from a Markdown story script.")
    parser.add_argument("story", help="Path to the story Markdown file")
    parser.add_argument("--config", default="config.yaml", help="YAML configuration file (default: config.yaml)")
    parser.add_argument("--log-level", help="Console log level (default: LOG_LEVEL or INFO)")
    parser.add_argument("--json", action="store_true", help="Print the run result as JSON")

    generation = parser.add_argument_group("generation")
    generation.add_argument("--two-phase", action="store_true", default=None,
                            help="Draw the art first, then letter it in a second pass")
    generation.add_argument("--color", action="store_true", default=None, help="Generate pages in full colour")
    generation.add_argument("--layout", choices=sorted(LAYOUTS), help="Page layout / aspect ratio")
    generation.add_argument("--style", help="Art style, e.g. shonen, shojo, seinen")
    generation.add_argument("--prompt", dest="scene_prompt", help="Scene prompt prefix for every page")
    generation.add_argument("--retry-count", type=int, help="Attempts per page and phase")
    generation.add_argument("--page", dest="page_selector", help='Pages to (re)generate, e.g. "1, 3" or "2 and 4"')
    generation.add_argument("--start-page", help="Resume from this page onwards")
    generation.add_argument("--output-dir", help="Where page images go (default: <story dir>/output)")
    generation.add_argument("--page-delay", type=float, help="Seconds to wait between generated pages")
    generation.add_argument("--include-text", action="store_true", default=None,
                            help="Also ask the model for text parts alongside images")

    review = parser.add_argument_group("review thresholds (1-10)")
    review.add_argument("--min-score", type=float, help="Minimum overall score")
    review.add_argument("--min-likeness", type=float, help="Minimum character likeness")
    review.add_argument("--min-continuity", type=float, help="Minimum continuity with the previous page")
    review.add_argument("--min-story", type=float, help="Minimum story and layout accuracy")
    review.add_argument("--min-lettering", type=float, help="Minimum lettering accuracy")
    review.add_argument("--min-no-bubbles", type=float, help="Minimum no-bubbles score for the art phase")
    review.add_argument("--strict-review", action="store_true",
                        help="Reject a page when its review cannot be read instead of accepting it")

    references = parser.add_argument_group("references")
    references.add_argument("--auto-characters", dest="auto_generate_characters", action="store_true",
                            default=None, help="Generate missing character sheets")
    references.add_argument("--auto-environments", dest="auto_generate_environments", action="store_true",
                            default=None, help="Generate missing environment references")
    references.add_argument("--characters-only", dest="character_generation_only", action="store_true",
                            default=None, help="Only generate character sheets, no pages")
    references.add_argument("--environments-only", dest="environment_generation_only", action="store_true",
                            default=None, help="Only generate environment references, no pages")
    references.add_argument("--create-character", metavar="IMAGE",
                            help="Create a character sheet from a photo (implies --characters-only)")
    references.add_argument("--character-image", help="Extra character reference attached to every page")
    references.add_argument("--reference-page", help="Style reference page attached to every page")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the manga generation command."""
    args = build_parser().parse_args(argv)
    configure_console(args.log_level)

    overrides = {
        key: getattr(args, key)
        for key in (
            "two_phase", "color", "layout", "style", "scene_prompt", "retry_count", "page_selector",
            "start_page", "output_dir", "page_delay", "include_text", "min_score", "min_likeness",
            "min_continuity", "min_story", "min_lettering", "min_no_bubbles", "auto_generate_characters",
            "auto_generate_environments", "character_generation_only", "environment_generation_only",
            "character_image", "reference_page",
        )
    }
    if args.strict_review:
        overrides["pass_on_review_error"] = False
    if args.create_character:
        overrides["character_generation_only"] = True
        overrides["character_image"] = args.create_character

    try:
        config = build_run_config(load_config(args.config), **overrides)
        models = model_settings()
        client = APIClient(models)
    except PipelineError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    pipeline = GenerationPipeline(client, GeminiReviewer(client), lettering_model=models["text"])
    result = pipeline.run(args.story, config)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(result.message)
        for path in result.generated_files:
            print(f"  {path}")

    if not result.success:
        logger.error(f"Failed to generate manga: {result.error or result.message}")
        logger.info("Tip: Run again to resume, finished pages are skipped")
        logger.info('Tip: Run with --page "1, 2" to regenerate specific pages')
        logger.info("Tip: Lower --min-score or raise --retry-count if pages keep failing review")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
