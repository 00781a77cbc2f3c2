"""
Tests for story splitting, entity extraction and page selection.
"""

import pytest

from manga_pipeline.errors import ConfigurationError
from manga_pipeline.models import PageRecord
from manga_pipeline.story_parser import (
    CHARACTER,
    ENVIRONMENT,
    StoryParser,
    extract_dialogue,
    extract_image_paths,
    section_kind,
    select_pages,
)

ENTITY_STORY = """# Neon Nights

## Style Rules
- **Kenji**: This bullet lives in a style section and is not a character.

## Characters
- **Kenji**: Tall boy with spiky black hair and a red scarf.
- **Mika**:
  - Short girl with twin tails.
  - Always carries a sketchbook.

## Cast
### Ryo
- Quiet transfer student with round glasses.

## World
- **ENVIRONMENT ANCHORS**:
  - **Unity HQ**: Glass tower lobby with a huge atrium.

## Environment Setup
- **Rooftop**: Windy school rooftop with a rusty fence.

# Page 1: Start
Kenji runs.
"""


class TestPageSplitting:
    """Tests for StoryParser.parse."""

    @pytest.fixture
    def parser(self):
        return StoryParser()

    def test_splits_pages_and_global_context(self, parser, story_file):
        global_context, pages = parser.parse(story_file.read_text(encoding="utf-8"))

        assert "Style Notes" in global_context
        assert [p.header for p in pages] == ["# Page 1: Arrival", "# Page 2: The Classroom"]
        assert [p.index for p in pages] == [0, 1]
        assert "school gate" in pages[0].content
        assert "school gate" not in pages[1].content

    def test_accepts_other_header_styles(self, parser):
        document = "Intro\n### Page 1 - Opening\nText one\nPage 2: Closing\nText two\n"
        _, pages = parser.parse(document)

        assert [p.header for p in pages] == ["### Page 1 - Opening", "Page 2: Closing"]

    def test_document_without_headers_is_one_page(self, parser):
        global_context, pages = parser.parse("Just a single illustration of a cat.")

        assert global_context == ""
        assert len(pages) == 1
        assert pages[0].header == "Single Page"
        assert pages[0].content == "Just a single illustration of a cat."


class TestEntityExtraction:
    """Tests for StoryParser.extract_entities."""

    @pytest.fixture
    def entities(self):
        parser = StoryParser()
        global_context, _ = parser.parse(ENTITY_STORY)
        return {e.name: e for e in parser.extract_entities(global_context)}

    def test_bold_bullets_in_character_section(self, entities):
        kenji = entities["Kenji"]
        assert kenji.kind == CHARACTER
        assert kenji.description == "Tall boy with spiky black hair and a red scarf."
        assert kenji.source_line == "- **Kenji**: Tall boy with spiky black hair and a red scarf."

    def test_style_section_does_not_define_entities(self, entities):
        assert "not a character" not in entities["Kenji"].description

    def test_nested_description_is_flattened(self, entities):
        assert entities["Mika"].description == "Short girl with twin tails. Always carries a sketchbook."

    def test_heading_entity_inside_cast_section(self, entities):
        assert entities["Ryo"].kind == CHARACTER
        assert "round glasses" in entities["Ryo"].description

    def test_group_label_opens_environment_scope(self, entities):
        assert entities["Unity HQ"].kind == ENVIRONMENT
        assert "atrium" in entities["Unity HQ"].description

    def test_environment_section(self, entities):
        assert entities["Rooftop"].kind == ENVIRONMENT

    def test_headings_outside_sections_are_ignored(self, entities):
        assert "Neon Nights" not in entities
        assert "World" not in entities

    def test_image_link_alone_is_not_a_description(self):
        parser = StoryParser()
        text = "## Characters\n- **Kenji**: ![Kenji](characters/kenji_portrait.png)\n  - Tall boy.\n"
        entity = parser.extract_entities(text)[0]

        assert entity.description.startswith("Tall boy.")
        assert "characters/kenji_portrait.png" in entity.description


class TestHelpers:
    """Tests for the module-level helpers."""

    def test_section_kind(self):
        assert section_kind("Main Characters") == CHARACTER
        assert section_kind("Locations") == ENVIRONMENT
        assert section_kind("Character Style Rules") is None
        assert section_kind("Plot") is None

    def test_extract_image_paths_unique_in_order(self):
        text = "See ![a](refs/a.png) and refs/b.JPG, then refs/a.png again."
        assert extract_image_paths(text) == ["refs/a.png", "refs/b.JPG"]

    def test_extract_dialogue(self):
        script = 'Kenji looks up.\n- **Kenji**: "We made it!"\nMika: "Barely."\n'
        assert extract_dialogue(script) == ['Kenji: "We made it!"', 'Mika: "Barely."']


class TestSelectPages:
    """Tests for select_pages."""

    @pytest.fixture
    def pages(self):
        headers = ["# Page 1: A", "# Page 2: B", "# Page 12: C"]
        return [PageRecord(h, "", i) for i, h in enumerate(headers)]

    def test_no_filter_returns_everything(self, pages):
        assert select_pages(pages) == pages

    def test_numeric_selector_matches_exact_number(self, pages):
        assert [p.header for p in select_pages(pages, "2")] == ["# Page 2: B"]

    def test_selector_list(self, pages):
        assert [p.index for p in select_pages(pages, "1 and 12")] == [0, 2]
        assert [p.index for p in select_pages(pages, "1, 2")] == [0, 1]

    def test_text_selector(self, pages):
        assert [p.index for p in select_pages(pages, "page 12")] == [2]

    def test_start_page(self, pages):
        assert [p.index for p in select_pages(pages, start_page="2")] == [1, 2]

    def test_unknown_page_raises(self, pages):
        with pytest.raises(ConfigurationError):
            select_pages(pages, "7")
        with pytest.raises(ConfigurationError):
            select_pages(pages, start_page="9")
