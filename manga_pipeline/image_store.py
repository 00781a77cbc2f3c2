import re
import time
from io import BytesIO
from pathlib import Path
from typing import List, Optional

from PIL import Image, UnidentifiedImageError
from loguru import logger

from .errors import FileIOError, TransientGenerationError
from .story_parser import page_number

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".webp")
MIME_TYPES = {".jpg": "image/jpeg", ".jpeg": "image/jpeg", ".webp": "image/webp"}

PHASE_1_SUFFIX = "_phase_1"
FINAL_SUFFIX = "_final"
FAILED_MARKER = "_failed_"
CANDIDATE_SUFFIX = "_candidate"


def sanitized_base_name(text: str) -> str:
    """File-system friendly base name: 'Manga Page 1: Start!' -> 'manga_page_1_start'."""
    base_name = re.sub(r"[^a-z0-9\s]", "", text.lower())
    base_name = re.sub(r"\s+", "_", base_name)[:64]
    return base_name or "generated_image"


def slugify(name: str) -> str:
    """Entity slug used for reference file names: 'Dr. Kenji' -> 'dr__kenji'."""
    return re.sub(r"[^a-z0-9]", "_", name.lower())


def mime_type_for(path: Path) -> str:
    return MIME_TYPES.get(Path(path).suffix.lower(), "image/png")


def page_base_name(page_header: str) -> str:
    return sanitized_base_name(f"manga {page_header}")


class ArtifactStore:
    """Writes, validates and locates generated page artifacts."""

    def __init__(self, output_dir: Path, prompts_dir: Optional[Path] = None):
        self.output_dir = Path(output_dir)
        self.prompts_dir = Path(prompts_dir) if prompts_dir else None

    def ensure_output_dir(self) -> Path:
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileIOError(f"Could not create output directory: {e}", str(self.output_dir))
        return self.output_dir

    def _unique_path(self, directory: Path, stem: str, suffix: str = ".png") -> Path:
        candidate = directory / f"{stem}{suffix}"
        counter = 1
        while candidate.exists():
            candidate = directory / f"{stem}_{counter}{suffix}"
            counter += 1
        return candidate

    # --- Saving --- #

    def save_image(self, image_data: bytes, target: Path, unique: bool = True) -> Path:
        """Decode the model output with Pillow and save it as PNG.

        Raises TransientGenerationError when the bytes are not an image and
        FileIOError when the file cannot be written.
        """
        if not image_data:
            raise TransientGenerationError("Empty image data returned by the model")
        try:
            img = Image.open(BytesIO(image_data))
            img.load()
        except (UnidentifiedImageError, OSError) as e:
            raise TransientGenerationError(f"Model returned invalid image data: {e}")

        logger.debug(f"Decoded image: format={img.format}, mode={img.mode}, size={img.size}")
        if img.mode not in ("RGB", "RGBA", "L"):
            img = img.convert("RGB")

        target = Path(target)
        if unique:
            target = self._unique_path(target.parent, target.stem, ".png")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            img.save(target, "PNG")
        except OSError as e:
            raise FileIOError(f"Could not save image: {e}", str(target))

        logger.info(f"Saved image: {target}")
        return target

    def save_candidate(self, image_data: bytes, page_header: str) -> Path:
        """Save an unreviewed page artifact as <base>_candidate.png. Lookups never return it."""
        return self.save_image(image_data, self.ensure_output_dir() / f"{page_base_name(page_header)}{CANDIDATE_SUFFIX}.png")

    def promote(self, candidate: Path, page_header: str, art_phase: bool) -> Path:
        """Rename a reviewed candidate to <base>_phase_1.png or <base>_final.png."""
        suffix = PHASE_1_SUFFIX if art_phase else FINAL_SUFFIX
        target = self._unique_path(self.output_dir, f"{page_base_name(page_header)}{suffix}", Path(candidate).suffix)
        try:
            Path(candidate).rename(target)
        except OSError as e:
            raise FileIOError(f"Could not rename reviewed artifact: {e}", str(candidate))
        logger.info(f"Accepted {Path(candidate).name} as {target.name}")
        return target

    def discard_candidates(self, page_header: str) -> int:
        """Delete pending candidates left behind by an interrupted run."""
        pattern = re.compile(rf"^{re.escape(page_base_name(page_header))}{CANDIDATE_SUFFIX}(_\d+)?\.png$")
        stale = [p for p in self._image_files() if pattern.match(p.name)]
        for path in stale:
            self.delete(path)
        return len(stale)

    def save_prompt(self, file_name: str, prompt: str) -> Optional[Path]:
        """Keep the exact prompt text sent to the model. Failure only logs."""
        if not self.prompts_dir:
            return None
        path = self.prompts_dir / file_name
        try:
            self.prompts_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(prompt, encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to save prompt file {path}: {e}")
            return None
        logger.debug(f"Saved prompt to {path}")
        return path

    # --- Reading and retiring --- #

    def read_bytes(self, path: Path) -> bytes:
        try:
            return Path(path).read_bytes()
        except OSError as e:
            raise FileIOError(f"Could not read file: {e}", str(path))

    def delete(self, path: Optional[Path]) -> bool:
        """Remove an artifact. Failure only logs."""
        if not path:
            return False
        try:
            Path(path).unlink()
            logger.info(f"Deleted {path}")
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Failed to delete {path}: {e}")
            return False

    def retire_failed(self, path: Path, stem: Optional[str] = None) -> Path:
        """Rename a rejected artifact to <stem>_failed_<ms timestamp> and return the new path."""
        path = Path(path)
        failed_path = path.with_name(f"{stem or path.stem}{FAILED_MARKER}{int(time.time() * 1000)}{path.suffix}")
        try:
            path.rename(failed_path)
        except OSError as e:
            logger.warning(f"Failed to rename rejected artifact {path}: {e}")
            return path
        logger.info(f"Renamed failed artifact to {failed_path.name}")
        return failed_path

    # --- Lookups --- #

    def _image_files(self) -> List[Path]:
        if not self.output_dir.is_dir():
            return []
        return [p for p in self.output_dir.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES]

    def find_latest(self, base_name: str) -> Optional[Path]:
        """Newest artifact named <base_name> with any _phase_1/_final/_N suffixes."""
        pattern = re.compile(rf"^{re.escape(base_name)}({PHASE_1_SUFFIX}|{FINAL_SUFFIX}|_\d+)*\.(png|jpg|jpeg)$", re.IGNORECASE)
        matches = [p for p in self._image_files() if pattern.match(p.name)]
        if not matches:
            return None
        newest = max(matches, key=lambda p: p.stat().st_mtime)
        logger.debug(f"find_latest({base_name}) found {len(matches)} match(es). Newest: {newest.name}")
        return newest

    def find_page_file(self, number: str) -> Optional[Path]:
        """Best artifact for 'Page N' when the exact header lookup missed. Final beats Phase 1."""
        pattern = re.compile(rf"^manga_page_{re.escape(str(number))}_.*\.(png|jpg|jpeg)$", re.IGNORECASE)
        matches = [p for p in self._image_files() if pattern.match(p.name)
                   and FAILED_MARKER not in p.name and CANDIDATE_SUFFIX not in p.name]
        if not matches:
            return None

        def priority(path: Path):
            rank = 3 if FINAL_SUFFIX in path.name else 2 if PHASE_1_SUFFIX in path.name else 1
            return rank, path.stat().st_mtime

        best = max(matches, key=priority)
        logger.debug(f"find_page_file({number}) found match: {best.name}")
        return best

    def find_page_artifact(self, page_header: str) -> Optional[Path]:
        """Exact base-name lookup first, then the page-number fallback."""
        found = self.find_latest(page_base_name(page_header))
        if found:
            return found
        number = page_number(page_header)
        return self.find_page_file(number) if number else None
