import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from loguru import logger

from .errors import ConfigurationError
from .models import Entity, PageRecord

CHARACTER = "character"
ENVIRONMENT = "environment"

# Page markers: "# Page 1 ...", "### Page 2: Title", "Page 3: ..."
PAGE_HEADER_RE = re.compile(r"(?:^|\n)((?:#{1,3}[ \t]*Page[ \t]*\d+|Page[ \t]*\d+:)[^\n]*)", re.IGNORECASE)
HEADING_RE = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
BULLET_RE = re.compile(r"^(\s*)[*\-+]\s+(.*)$")
BOLD_ITEM_RE = re.compile(r"^\*\*([^*:\n]+):?\*\*\s*:?\s*(.*)$")
LABEL_RE = re.compile(r"^\s*(?:\*\*|__)\s*([^*_:\n]+?)\s*:?\s*(?:\*\*|__)\s*:?\s*$|^\s*([A-Za-z][\w &/]*):\s*$")
PROPERTY_KEY_RE = re.compile(
    r"^\*\*(?:Role|Vibe|Personality|Visuals|Appearance|Traits|Outfit|Features):\*\*\s*", re.IGNORECASE
)
IMAGE_LINK_RE = re.compile(r"!\[[^\]]*\]\([^)]*\)")
IMAGE_PATH_RE = re.compile(r"[\w\-./\\:]+\.(?:png|jpg|jpeg|webp)", re.IGNORECASE)
DIALOGUE_RE = re.compile(r"(?:^|\n)\s*(?:[-*]\s*)?(?:\*\*)?([a-zA-Z0-9 '\-]+?)(?:\*\*)?\s*:\s*[\"“](.*?)[\"”]")

CHARACTER_WORDS_RE = re.compile(r"\b(characters?|cast|persons?|people|roles?|protagonists?|antagonists?)\b", re.IGNORECASE)
ENVIRONMENT_WORDS_RE = re.compile(r"\b(environments?|settings?|locations?)\b", re.IGNORECASE)
# Headings that talk about characters without defining any
NON_DEFINING_WORDS_RE = re.compile(r"\b(style|rules?|prompts?|instructions?|format|optimization|export)\b", re.IGNORECASE)

MAX_DESCRIPTION_LINES = 20


@dataclass
class Block:
    """Node of the document tree: headings contain bullets, bullets nest by indent."""
    kind: str  # root | heading | label | bullet | text
    level: int
    text: str
    line: str = ""
    section: Optional[str] = None
    children: List["Block"] = field(default_factory=list)


def section_kind(title: str) -> Optional[str]:
    """Map a heading or label title onto the entity vocabulary."""
    if NON_DEFINING_WORDS_RE.search(title):
        return None
    if CHARACTER_WORDS_RE.search(title):
        return CHARACTER
    if ENVIRONMENT_WORDS_RE.search(title):
        return ENVIRONMENT
    return None


def extract_image_paths(text: str) -> List[str]:
    """Unique image-looking paths in the text, in order of appearance."""
    seen: Dict[str, None] = {}
    for match in IMAGE_PATH_RE.findall(text or ""):
        seen.setdefault(match, None)
    return list(seen)


def extract_dialogue(text: str) -> List[str]:
    """Every quoted dialogue line of a script, as 'Speaker: "line"'."""
    return [f'{m.group(1).strip()}: "{m.group(2).strip()}"' for m in DIALOGUE_RE.finditer(text or "")]


def page_number(header: str) -> Optional[str]:
    match = re.search(r"Page\s*(\d+)", header, re.IGNORECASE)
    return match.group(1) if match else None


def _matches_target(header: str, target: str) -> bool:
    header_lower = header.lower()
    if target.isdigit():
        return target in re.findall(r"\d+", header_lower)
    return target in header_lower


def select_pages(pages: List[PageRecord], page_selector: Optional[str] = None,
                 start_page: Optional[str] = None) -> List[PageRecord]:
    """Filter pages by an explicit selector ("1, 2", "3 and 4") or a start page."""
    if page_selector:
        targets = [t.strip().lower() for t in re.split(r"[,&]|\s+and\s+", page_selector) if t.strip()]
        selected = [p for p in pages if any(_matches_target(p.header, t) for t in targets)]
        if not selected:
            raise ConfigurationError(f'Page(s) "{page_selector}" not found in story file.')
        logger.info(f'Filtering for pages "{page_selector}". Found {len(selected)} match(es).')
        return selected
    if start_page:
        target = start_page.strip().lower()
        for position, page in enumerate(pages):
            if _matches_target(page.header, target):
                logger.info(f'Starting generation from "{start_page}". Processing {len(pages) - position} pages.')
                return pages[position:]
        raise ConfigurationError(f'Start page "{start_page}" not found in story file.')
    return list(pages)


class StoryParser:
    """Splits a story document into pages and reads its entity definitions."""

    def parse(self, document: str) -> Tuple[str, List[PageRecord]]:
        """Return (global_context, pages)."""
        sections = PAGE_HEADER_RE.split(document)
        if len(sections) < 2:
            logger.info("No page headers found, treating the whole document as a single page")
            return "", [PageRecord(header="Single Page", content=document, index=0)]

        global_context = sections[0].strip()
        pages = []
        seen_headers = set()
        for position in range(1, len(sections), 2):
            header = sections[position].strip()
            content = sections[position + 1] if position + 1 < len(sections) else ""
            if header in seen_headers:
                logger.warning(f"Duplicate page header '{header}', later copy will share its memory section")
            seen_headers.add(header)
            pages.append(PageRecord(header=header, content=content, index=len(pages)))

        logger.info(f"Parsed {len(pages)} page(s) from story file. Global context length: {len(global_context)}")
        return global_context, pages

    # --- Block tree --- #

    def build_tree(self, text: str) -> Block:
        root = Block(kind="root", level=0, text="")
        stack = [root]

        for raw_line in text.splitlines():
            if not raw_line.strip():
                continue

            heading = HEADING_RE.match(raw_line)
            if heading:
                level = len(heading.group(1))
                while stack[-1].kind != "root" and not (stack[-1].kind == "heading" and stack[-1].level < level):
                    stack.pop()
                title = heading.group(2).strip().rstrip(":")
                block = Block(kind="heading", level=level, text=title, line=raw_line, section=section_kind(title))
                stack[-1].children.append(block)
                stack.append(block)
                continue

            bullet = BULLET_RE.match(raw_line)
            if bullet:
                indent = len(bullet.group(1).expandtabs(4))
                while stack[-1].kind == "bullet" and stack[-1].level >= indent:
                    stack.pop()
                block = Block(kind="bullet", level=indent, text=bullet.group(2).strip(), line=raw_line)
                stack[-1].children.append(block)
                stack.append(block)
                continue

            label = LABEL_RE.match(raw_line)
            label_title = label and (label.group(1) or label.group(2))
            if label_title and section_kind(label_title):
                while stack[-1].kind in ("bullet", "label"):
                    stack.pop()
                block = Block(kind="label", level=0, text=label_title.strip(), line=raw_line,
                              section=section_kind(label_title))
                stack[-1].children.append(block)
                stack.append(block)
                continue

            indent = len(raw_line) - len(raw_line.lstrip())
            while stack[-1].kind == "bullet" and stack[-1].level >= indent:
                stack.pop()
            stack[-1].children.append(Block(kind="text", level=indent, text=raw_line.strip(), line=raw_line))

        return root

    # --- Entities --- #

    def extract_entities(self, global_context: str) -> List[Entity]:
        """Character and environment definitions from validated sections only."""
        entities: Dict[str, Entity] = {}
        self._walk(self.build_tree(global_context), None, entities)
        logger.debug(f"Found {len(entities)} entity definition(s): {', '.join(entities) or 'none'}")
        return list(entities.values())

    def _walk(self, block: Block, scope: Optional[str], found: Dict[str, Entity]) -> None:
        for child in block.children:
            if child.kind == "heading":
                if child.section:
                    self._walk(child, child.section, found)
                elif scope and child.text.lower() not in ("characters", "character style"):
                    self._add(found, Entity(child.text, self._flatten(child), scope))
                else:
                    if block.kind == "heading" and scope is None:
                        logger.debug(f'Skipping section "{child.text}" (not a character/environment section)')
                    self._walk(child, None, found)
            elif child.kind == "label":
                self._walk(child, child.section, found)
            elif child.kind == "bullet":
                self._visit_bullet(child, scope, found)

    def _visit_bullet(self, bullet: Block, scope: Optional[str], found: Dict[str, Entity]) -> None:
        item = BOLD_ITEM_RE.match(bullet.text)
        if not item:
            return
        name, inline = item.group(1).strip(), item.group(2).strip()

        # "- **ENVIRONMENT ANCHORS**:" style group labels open a scope for their nested bullets
        group_kind = section_kind(name)
        if group_kind and len(inline) < 5 and bullet.children:
            self._walk(bullet, group_kind, found)
            return
        if not scope:
            return

        description = inline
        # Reference links appended to the line do not count as a description
        if len(IMAGE_LINK_RE.sub("", inline).strip()) < 5:
            nested = self._flatten(bullet)
            if nested:
                description = f"{nested} {inline}".strip()
        self._add(found, Entity(name, description, scope, source_line=bullet.line))

    def _flatten(self, block: Block) -> str:
        """Join nested bullet/text lines into one description."""
        lines: List[str] = []

        def collect(node: Block) -> None:
            for child in node.children:
                if len(lines) >= MAX_DESCRIPTION_LINES or child.kind == "heading":
                    continue
                cleaned = PROPERTY_KEY_RE.sub("", child.text).strip()
                if cleaned:
                    lines.append(cleaned)
                collect(child)

        collect(block)
        return " ".join(lines)

    @staticmethod
    def _add(found: Dict[str, Entity], entity: Entity) -> None:
        if entity.name in found:
            logger.debug(f"Entity '{entity.name}' defined more than once, keeping the first definition")
            return
        found[entity.name] = entity
