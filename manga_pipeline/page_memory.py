import os
import re
from collections import OrderedDict
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from loguru import logger

from .errors import FileIOError
from .models import FAILED, PASSED, FailureRecord, PageMemoryEntry, PhaseRecord

MEMORY_FILE_NAME = "manga_memory.md"
MEMORY_TITLE = "# Manga Generation Memory"

SECTION_PREFIX = "## "
PHASE_LINE_RE = re.compile(r"^\s*- Phase (\d+): `([^`]+)` \[(PASSED|FAILED)\](?: \(prompt: `([^`]+)`\))?\s*$")
FAILURE_LINE_RE = re.compile(r"^\s*- Phase (\d+) Attempt: FAILED\. Reason: (.*?)(?: \[FILE: `([^`]+)`\])?\s*$")


def phase_line(phase: int, record: PhaseRecord) -> str:
    line = f"- Phase {phase}: `{record.artifact_path}` [{record.status or PASSED}]"
    if record.prompt_ref:
        line += f" (prompt: `{record.prompt_ref}`)"
    return line


def failure_line(failure: FailureRecord) -> str:
    # One line per failure, reasons from the reviewer can span several
    reason = " ".join((failure.reason or "Unknown").split())
    line = f"- Phase {failure.phase} Attempt: FAILED. Reason: {reason}"
    if failure.failed_artifact_path:
        line += f" [FILE: `{failure.failed_artifact_path}`]"
    return line


class PageMemory:
    """Durable per-story ledger of phase statuses and failures, kept as Markdown."""

    def __init__(self, story_dir: Path):
        self.memory_file = Path(story_dir) / MEMORY_FILE_NAME
        self.preamble: List[str] = []
        self.sections: "OrderedDict[str, List[str]]" = OrderedDict()
        self._load()

    @classmethod
    def for_story(cls, story_path: Path) -> "PageMemory":
        return cls(Path(story_path).resolve().parent)

    def _load(self) -> None:
        """Read the memory file if one exists."""
        if not self.memory_file.exists():
            return
        try:
            content = self.memory_file.read_text(encoding="utf-8")
        except OSError as e:
            raise FileIOError(f"Could not read memory file: {e}", str(self.memory_file))

        current: Optional[List[str]] = None
        for line in content.splitlines():
            if line.startswith(SECTION_PREFIX):
                current = self.sections.setdefault(line[len(SECTION_PREFIX):].strip(), [])
            elif current is None:
                if line.strip() and line.strip() != MEMORY_TITLE:
                    self.preamble.append(line)
            elif line.strip():
                current.append(line)
        logger.debug(f"Loaded memory for {len(self.sections)} page(s) from {self.memory_file}")

    def _save(self) -> None:
        """Atomically rewrite the memory file."""
        parts = [MEMORY_TITLE]
        if self.preamble:
            parts.append("\n".join(self.preamble))
        for header, lines in self.sections.items():
            parts.append("\n".join([SECTION_PREFIX + header] + lines))
        text = "\n\n".join(parts) + "\n"

        tmp_file = self.memory_file.with_name(self.memory_file.name + ".tmp")
        try:
            self.memory_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_file.write_text(text, encoding="utf-8")
            os.replace(tmp_file, self.memory_file)
        except OSError as e:
            raise FileIOError(f"Could not write memory file: {e}", str(self.memory_file))

    def _section_key(self, page_header: str) -> Optional[str]:
        wanted = page_header.strip().lower()
        for key in self.sections:
            if key.lower() == wanted:
                return key
        return None

    def _section(self, page_header: str) -> List[str]:
        key = self._section_key(page_header)
        if key is None:
            key = page_header.strip()
            self.sections[key] = []
        return self.sections[key]

    # --- Reading --- #

    def read(self) -> Dict[str, PageMemoryEntry]:
        """Every recorded page, keyed by header, as written on disk."""
        return {header: self.get(header) for header in self.sections}

    def get(self, page_header: str) -> PageMemoryEntry:
        """The recorded state of one page. Empty when the page was never written."""
        entry = PageMemoryEntry(page_header=page_header)
        key = self._section_key(page_header)
        if key is None:
            return entry

        for line in self.sections[key]:
            status = PHASE_LINE_RE.match(line)
            if status:
                record = entry.phase(int(status.group(1)))
                record.artifact_path = status.group(2)
                record.status = status.group(3)
                record.prompt_ref = status.group(4)
                continue
            failure = FAILURE_LINE_RE.match(line)
            if failure:
                entry.failure_log.append(FailureRecord(int(failure.group(1)), failure.group(2).strip(), failure.group(3)))
        return entry

    def passed_artifact(self, page_header: str, phase: int) -> Optional[str]:
        """Path of the phase's PASSED artifact, only if it still exists on disk."""
        record = self.get(page_header).phase(phase)
        if record.passed and Path(record.artifact_path).exists():
            return record.artifact_path
        return None

    def failures(self, page_header: str) -> Tuple[List[str], List[str]]:
        """Unique failure reasons and the failed artifacts still on disk, oldest first."""
        reasons: List[str] = []
        failed_paths: List[str] = []
        for failure in self.get(page_header).failure_log:
            if failure.reason not in reasons:
                reasons.append(failure.reason)
            path = failure.failed_artifact_path
            if path and path not in failed_paths and Path(path).exists():
                failed_paths.append(path)
        return reasons, failed_paths

    # --- Writing --- #

    def write(self, entry: PageMemoryEntry) -> None:
        """Replace a page's section with the given entry and save."""
        lines = []
        for number in (1, 2):
            record = entry.phase(number)
            if record.artifact_path and record.status:
                lines.append(phase_line(number, record))
        for failure in entry.failure_log:
            line = failure_line(failure)
            if line not in lines:
                lines.append(line)

        key = self._section_key(entry.page_header) or entry.page_header.strip()
        self.sections[key] = lines
        self._save()

    def record_pass(self, page_header: str, phase: int, artifact_path: str, prompt_ref: Optional[str] = None) -> None:
        """Overwrite the phase's status line with a PASSED artifact and save."""
        section = self._section(page_header)
        new_line = phase_line(phase, PhaseRecord(artifact_path, PASSED, prompt_ref))
        for position, line in enumerate(section):
            match = PHASE_LINE_RE.match(line)
            if match and int(match.group(1)) == phase:
                section[position] = new_line
                break
        else:
            phase_lines = [i for i, line in enumerate(section) if PHASE_LINE_RE.match(line)]
            section.insert(phase_lines[-1] + 1 if phase_lines else 0, new_line)
        self._save()
        logger.info(f"Memory updated: {page_header} Phase {phase} [{PASSED}]")

    def record_failure(self, page_header: str, phase: int, reason: str, failed_path: Optional[str] = None) -> bool:
        """Append a failure line unless the exact same line is already logged."""
        section = self._section(page_header)
        line = failure_line(FailureRecord(phase, reason, failed_path))
        if line in (existing.strip() for existing in section):
            logger.debug(f"Failure already recorded for {page_header}, not duplicating")
            return False
        section.append(line)
        self._save()
        logger.info(f"Memory updated: {page_header} Phase {phase} [{FAILED}]")
        return True
