import os
import re
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from loguru import logger

from .config import RunConfig
from .errors import FATAL_ERRORS, FileIOError, GenerationError
from .image_store import ArtifactStore, mime_type_for, slugify
from .models import Entity, GenerationConstraints, GenerationService, ReferenceImage
from .story_parser import CHARACTER, ENVIRONMENT, PAGE_HEADER_RE, StoryParser, extract_image_paths

TAG_SUFFIX_RE = re.compile(r"\s+(portrait|sheet|reference|ref|far|view|env|environment|color)$", re.IGNORECASE)

SHEET_LAYOUTS = {
    "strip": "Wide Landscape 16:9",
    "webtoon": "Tall Vertical 9:16",
    "single_page": "Portrait 3:4",
    "square": "Square 1:1",
}

FULL_BODY_RULES = (
    "Full body from head to toe (must include complete legs and shoes), neutral pose, white background. "
    "DO NOT SQUASH or compress the figure vertically. Avoid chibi, dwarf, or super-deformed proportions. "
    "Zoom out to fit the entire character within the frame."
)
AGE_RULES = (
    "Determine the character's age category and apply the corresponding anatomical guidelines:\n"
    "- Child (approx 7-10): Head-to-body ratio 1:6, softer jawlines, shorter/slender limbs.\n"
    "- Adult (approx 25-40): Standard 1:7.5 to 1:8 head-to-body ratio, defined bone structure.\n"
    "- Elder (70+): Slight natural spinal curvature, settled center of gravity, prominent joint articulation."
)

MAX_EXTRACTION_CONTEXT = 15000


def reference_tag(label: str) -> str:
    """'kenji portrait color' -> 'kenji', 'unity hq env far' -> 'unity hq'."""
    tag = label.strip()
    while True:
        stripped = TAG_SUFFIX_RE.sub("", tag).strip()
        if stripped == tag or not stripped:
            return tag
        tag = stripped


class ReferenceCache:
    """Reference images loaded during one run, keyed by resolved path."""

    def __init__(self, max_workers: int = 4):
        self.max_workers = max_workers
        self._images: Dict[str, ReferenceImage] = {}

    def __contains__(self, path) -> bool:
        return str(Path(path).resolve()) in self._images

    def __len__(self) -> int:
        return len(self._images)

    def _read(self, path: Path) -> Optional[ReferenceImage]:
        try:
            data = path.read_bytes()
        except OSError as e:
            logger.warning(f"Failed to load reference image {path}: {e}")
            return None
        image = ReferenceImage(source_label=str(path), data=data, mime_type=mime_type_for(path))
        image.tag = reference_tag(image.label)
        return image

    def get(self, path) -> Optional[ReferenceImage]:
        key = str(Path(path).resolve())
        if key not in self._images:
            image = self._read(Path(key))
            if image is None:
                return None
            self._images[key] = image
        return self._images[key]

    def load_many(self, paths: Iterable) -> List[ReferenceImage]:
        """Load several images in parallel, keeping the given order and skipping failures."""
        keys = list(dict.fromkeys(str(Path(p).resolve()) for p in paths))
        missing = [k for k in keys if k not in self._images]
        if missing:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                for key, image in zip(missing, executor.map(lambda k: self._read(Path(k)), missing)):
                    if image is not None:
                        self._images[key] = image
        return [self._images[k] for k in keys if k in self._images]

    def invalidate(self, path) -> None:
        self._images.pop(str(Path(path).resolve()), None)


class ReferenceResolver:
    """Finds, or creates when allowed, the reference images for a story's entities."""

    def __init__(self, story_path: Path, config: RunConfig, generator: GenerationService,
                 cache: ReferenceCache, store: ArtifactStore, parser: Optional[StoryParser] = None):
        self.story_path = Path(story_path).resolve()
        self.story_dir = self.story_path.parent
        self.config = config
        self.generator = generator
        self.cache = cache
        self.store = store
        self.parser = parser or StoryParser()
        self.characters_dir = self.story_dir / "characters"
        self.environments_dir = self.story_dir / "environments"
        self.generated_files: List[Path] = []

    # --- Lookups --- #

    def find_image(self, raw_path: str) -> Optional[Path]:
        """An image path as written in the story: absolute, story-relative or cwd-relative."""
        candidate = Path(raw_path.strip())
        options = [candidate] if candidate.is_absolute() else [self.story_dir / candidate, Path.cwd() / candidate]
        for option in options:
            if option.is_file():
                return option.resolve()
        return None

    def slug_paths(self, name: str, kind: str) -> Tuple[Path, Path]:
        """(baseline, colour) reference paths for an entity."""
        slug = slugify(name)
        if kind == ENVIRONMENT:
            return (self.environments_dir / f"{slug}_env_far.png",
                    self.environments_dir / f"{slug}_env_far_color.png")
        return (self.characters_dir / f"{slug}_portrait.png",
                self.characters_dir / f"{slug}_portrait_color.png")

    def _auto_generate(self, kind: str) -> bool:
        if kind == ENVIRONMENT:
            return self.config.auto_generate_environments or self.config.environment_generation_only
        return self.config.auto_generate_characters or self.config.character_generation_only

    # --- Resolution --- #

    def resolve(self, name: str, description: str, kind: str = CHARACTER) -> Optional[Path]:
        """Explicit path, then the slug path, then generate baseline and colour variants."""
        for raw in extract_image_paths(description):
            explicit = self.find_image(raw)
            if explicit:
                logger.debug(f"Using explicit reference for {name}: {explicit}")
                return explicit

        baseline, color = self.slug_paths(name, kind)
        wanted, fallback = (color, baseline) if self.config.color else (baseline, color)
        if wanted.is_file():
            return wanted

        if self._auto_generate(kind):
            self.generate_variants(name, description, kind)
            if wanted.is_file():
                return wanted

        if fallback.is_file():
            logger.info(f"Using {fallback.name} for {name}, the {'colour' if self.config.color else 'monochrome'} variant is missing")
            return fallback

        logger.warning(f"No reference image for {kind} '{name}'. Continuing without it.")
        return None

    def resolve_entities(self, entities: List[Entity]) -> List[Path]:
        """Resolve every entity and link newly found references into the story file."""
        resolved: List[Path] = []
        links: List[Tuple[str, str]] = []
        for entity in entities:
            try:
                path = self.resolve(entity.name, entity.description, entity.kind)
            except FATAL_ERRORS:
                raise
            except (GenerationError, FileIOError) as e:
                logger.error(f"Failed to resolve reference for {entity.name}: {e}")
                continue
            if not path:
                continue
            resolved.append(path)
            if entity.source_line and not extract_image_paths(entity.description):
                links.append((entity.source_line, self._story_link(entity.name, path)))

        if links:
            self.link_in_story(links)
        return resolved

    def _story_link(self, name: str, path: Path) -> str:
        try:
            relative = os.path.relpath(path, self.story_dir)
        except ValueError:
            relative = str(path)
        return f"![{name}]({Path(relative).as_posix()})"

    def link_in_story(self, links: List[Tuple[str, str]]) -> bool:
        """Append ![Name](path) links to their definition lines. Existing valid links are left alone."""
        try:
            text = self.story_path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not read story file for linking: {e}")
            return False

        lines = text.split("\n")
        changed = False
        for source_line, link in links:
            for position, line in enumerate(lines):
                if line.rstrip() != source_line.rstrip():
                    continue
                existing = [p for p in extract_image_paths(line) if self.find_image(p)]
                if link in line or existing:
                    break
                lines[position] = f"{line.rstrip()} {link}"
                changed = True
                break

        if not changed:
            return False
        try:
            self.story_path.write_text("\n".join(lines), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not update story file with reference links: {e}")
            return False
        logger.info(f"Linked {len(links)} reference image(s) into {self.story_path.name}")
        return True

    def explicit_references(self, global_context: str) -> List[Path]:
        """Global-context image links plus the character_image / reference_page options."""
        paths = [p for p in (self.find_image(raw) for raw in extract_image_paths(global_context)) if p]
        for option in (self.config.character_image, self.config.reference_page):
            if not option:
                continue
            found = self.find_image(option)
            if found:
                paths.append(found)
            else:
                logger.warning(f"Reference image not found: {option}")
        return list(dict.fromkeys(paths))

    # --- Generation --- #

    def _constraints(self, kind: str) -> GenerationConstraints:
        modalities = ("IMAGE", "TEXT") if self.config.include_text else ("IMAGE",)
        aspect_ratio = "16:9" if kind == ENVIRONMENT else self.config.aspect_ratio
        return GenerationConstraints(response_modalities=modalities, aspect_ratio=aspect_ratio)

    def _views(self) -> str:
        if self.config.layout == "strip":
            return "Include the following views side-by-side: Front view, Left profile view, Right profile view, and Back view."
        return ("Composition: Split the image. Left Half: Full Body Standing Pose (Front View). "
                "Right Half Top: Close-up Face (Front View). Right Half Bottom: Back of Head/Upper Back View.")

    def baseline_prompt(self, name: str, description: str, kind: str, has_source: bool = False) -> str:
        style = self.config.style
        if kind == ENVIRONMENT:
            return (f"Environment Design: {name}. {description}.\n"
                    "Extreme wide establishing shot. Far distance view showing the entire room/location layout. "
                    "Capture the full scale, atmosphere, and furniture placement.\n"
                    f"{style} manga style, black and white background art, screentones, detailed, high quality.\n"
                    "NO CHARACTERS. Scenery only.")
        sheet = SHEET_LAYOUTS[self.config.layout]
        source = ("IMPORTANT: You MUST use the attached reference photo as the PRIMARY source for the character's "
                  "physical appearance (face, body type, hair, clothing).\n" if has_source else "")
        return (f"Character Design Sheet ({sheet}): {name}. {description}.\n"
                f"{source}{self._views()}\n"
                "Ensure the character appeal and details strictly follow the story description.\n"
                f"{AGE_RULES}\n"
                f"{style} manga style, black and white, screentones, high quality line art.\n"
                f"{FULL_BODY_RULES}")

    def color_prompt(self, name: str, description: str, kind: str) -> str:
        if kind == ENVIRONMENT:
            return (f"Environment Design: {name}. {description}.\n"
                    "Use the attached black and white image as the STRICT reference for layout and design. "
                    "Colorize it accurately. GENERATE IN FULL COLOR.\nNO CHARACTERS. Scenery only.")
        sheet = SHEET_LAYOUTS[self.config.layout]
        return (f"Character Design Sheet ({sheet}): {name}. {description}.\n"
                "GENERATE IN FULL COLOR. Vibrant colors, detailed shading.\n"
                "Use the attached B&W image as the STRICT reference for line art and design. Colorize it accurately.\n"
                f"{self._views()}\n{FULL_BODY_RULES}")

    def _generate_one(self, prompt: str, attachments: List[ReferenceImage], kind: str,
                      target: Path, prompt_name: str) -> Optional[Path]:
        self.store.save_prompt(prompt_name, prompt)
        try:
            output = self.generator.generate(prompt, attachments, self._constraints(kind))
            if not output.image:
                logger.error(f"No image returned for {target.name}")
                return None
            saved = self.store.save_image(output.image, target, unique=False)
        except FATAL_ERRORS:
            raise
        except (GenerationError, FileIOError) as e:
            logger.error(f"Failed to generate {target.name}: {e}")
            return None
        self.generated_files.append(saved)
        self.cache.invalidate(saved)
        return saved

    def generate_variants(self, name: str, description: str, kind: str,
                          source: Optional[ReferenceImage] = None) -> List[Path]:
        """Create the monochrome baseline, then the colour variant conditioned on it. Existing files are kept."""
        baseline, color = self.slug_paths(name, kind)
        slug = slugify(name)
        prefix = "env" if kind == ENVIRONMENT else "character_create"
        created: List[Path] = []

        if baseline.is_file():
            logger.info(f"Baseline reference already exists: {baseline}. Skipping generation.")
        else:
            logger.info(f"Generating baseline {kind} reference for {name}...")
            result = self._generate_one(self.baseline_prompt(name, description, kind, source is not None),
                                        [source] if source else [], kind, baseline, f"{prefix}_{slug}_bw.txt")
            if result:
                created.append(result)

        if color.is_file():
            logger.info(f"Colour reference already exists: {color}. Skipping generation.")
        elif baseline.is_file():
            base_image = self.cache.get(baseline)
            if base_image is not None:
                logger.info(f"Generating colour {kind} reference for {name} from its baseline...")
                result = self._generate_one(self.color_prompt(name, description, kind), [base_image], kind,
                                            color, f"{prefix}_{slug}_color.txt")
                if result:
                    created.append(result)
        return created

    def create_character_sheet(self, photo_path: str, entities: List[Entity]) -> List[Path]:
        """Baseline and colour character sheets from a source photo."""
        photo = self.find_image(photo_path)
        if not photo:
            raise FileIOError("Input image not found", photo_path)

        name = photo.stem
        wanted = re.sub(r"[\s_]+", " ", name).strip().lower()
        description = next((e.description for e in entities
                            if e.kind == CHARACTER and re.sub(r"[\s_]+", " ", e.name).strip().lower() == wanted), "")
        if description:
            logger.info(f"Found story description for {name}: {description[:50]}...")

        source = self.cache.get(photo)
        self.generate_variants(name, description, CHARACTER, source=source)
        return [p for p in self.slug_paths(name, CHARACTER) if p.is_file()]

    def extract_environments(self, document: str) -> List[Entity]:
        """Ask the text model for an Environment Setup section and append it to the story."""
        logger.info("No explicit Environment Setup found. Analyzing story to extract settings...")
        prompt = (
            "Analyze the following manga story script. Identify the key recurring locations/settings "
            "(Environment Anchors) where the scenes take place.\n\n"
            'Generate a Markdown section titled "## Environment Setup".\n'
            "Under it, list the environments as bullet points in this EXACT format:\n"
            "- **Name**: Visual description of the setting, furniture, lighting, and atmosphere.\n\n"
            "Only include major locations that appear in the script. Do not include characters in the descriptions.\n\n"
            f"STORY SCRIPT:\n{document[:MAX_EXTRACTION_CONTEXT]}"
        )
        try:
            extracted = self.generator.generate_text(prompt).strip()
        except FATAL_ERRORS:
            raise
        except GenerationError as e:
            logger.error(f"Failed to auto-extract environments: {e}")
            return []

        if "**" not in extracted:
            logger.warning("Environment extraction returned no usable list")
            return []
        if "## Environment Setup" not in extracted:
            extracted = f"## Environment Setup\n{extracted}"

        entities = [e for e in self.parser.extract_entities(extracted) if e.kind == ENVIRONMENT]
        if entities:
            self._insert_into_global_context(extracted)
        logger.info(f"Extracted {len(entities)} environment(s)")
        return entities

    def _insert_into_global_context(self, section: str) -> None:
        """Place a new section right before the first page so it stays global context."""
        try:
            text = self.story_path.read_text(encoding="utf-8")
            first_page = PAGE_HEADER_RE.search(text)
            position = first_page.start() if first_page else len(text)
            text = f"{text[:position].rstrip()}\n\n{section.strip()}\n\n{text[position:].lstrip()}"
            self.story_path.write_text(text, encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not add extracted environments to story: {e}")
