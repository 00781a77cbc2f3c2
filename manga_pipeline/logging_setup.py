import os
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

LOG_FILE_NAME = "manga-output.log"


def configure_console(level: Optional[str] = None) -> None:
    """Replace loguru's default stderr sink with one at the requested level."""
    logger.remove()
    logger.add(sys.stderr, level=level or os.getenv("LOG_LEVEL", "INFO"))


def add_run_log(output_dir: Path) -> Optional[int]:
    """Attach the per-output-directory generation log. Returns the sink id."""
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
        return logger.add(output_dir / LOG_FILE_NAME, rotation="500 MB", level="INFO")
    except OSError as e:
        # The run log is auxiliary; generation continues without it
        logger.warning(f"Could not open run log in {output_dir}: {e}")
        return None


def remove_run_log(sink_id: Optional[int]) -> None:
    if sink_id is not None:
        logger.remove(sink_id)
