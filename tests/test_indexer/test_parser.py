"""Tests for the Markdown parser."""

from latent_mcp.indexer.parser import (
    ParsedLink,
    count_words,
    extract_links,
    extract_title,
    normalize_link_target,
    parse_markdown,
    render_frontmatter,
    split_frontmatter,
    strip_frontmatter,
)


class TestStripFrontmatter:
    def test_strips_yaml_frontmatter(self):
        content = """---
title: Test
---
# Content
Body text"""
        result = strip_frontmatter(content)
        assert result == "# Content\nBody text"

    def test_preserves_content_without_frontmatter(self):
        content = "# No frontmatter\n\nJust content"
        result = strip_frontmatter(content)
        assert result == content

    def test_handles_empty_frontmatter(self):
        content = """---
---
Content"""
        result = strip_frontmatter(content)
        assert result == "Content"

    def test_handles_content_starting_with_triple_dash(self):
        content = "---not frontmatter\ncontent"
        result = strip_frontmatter(content)
        assert result == content


class TestSplitFrontmatter:
    def test_parses_mapping(self):
        content = """---
title: Quantum
tags: [physics, computing]
draft: false
---
Body"""
        data, body = split_frontmatter(content)
        assert data == {"title": "Quantum", "tags": ["physics", "computing"], "draft": False}
        assert body == "Body"

    def test_invalid_yaml_leaves_content_untouched(self):
        content = """---
invalid: [unclosed
---
# Content"""
        data, body = split_frontmatter(content, "broken.md")
        assert data == {}
        assert body == content

    def test_non_mapping_yaml_is_dropped(self):
        content = """---
- list item
- another
---
# Content"""
        data, body = split_frontmatter(content)
        assert data == {}
        assert body == "# Content"

    def test_frontmatter_must_start_the_file(self):
        content = "Intro\n---\ntitle: x\n---\n"
        data, body = split_frontmatter(content)
        assert data == {}
        assert body == content

    def test_crlf_line_endings(self):
        content = "---\r\ntitle: Windows\r\n---\r\nBody"
        data, body = split_frontmatter(content)
        assert data == {"title": "Windows"}
        assert body == "Body"


class TestRenderFrontmatter:
    def test_round_trips_through_split(self):
        rendered = render_frontmatter({"title": "X", "tags": ["a", "b"]}, "# Heading\n\nBody\n")
        data, body = split_frontmatter(rendered)
        assert data == {"title": "X", "tags": ["a", "b"]}
        assert body == "# Heading\n\nBody\n"

    def test_keeps_key_order(self):
        rendered = render_frontmatter({"zeta": 1, "alpha": 2}, "")
        assert rendered.index("zeta") < rendered.index("alpha")

    def test_empty_mapping_returns_body(self):
        assert render_frontmatter({}, "Body") == "Body"


class TestExtractTitle:
    def test_first_atx_heading(self):
        assert extract_title("Intro\n\n# Quantum Computing\n\nText") == "Quantum Computing"

    def test_ignores_lower_level_headings(self):
        assert extract_title("## Section\n\n# Main\n") == "Main"

    def test_setext_heading(self):
        assert extract_title("Main Title\n==========\n\nText") == "Main Title"

    def test_earliest_heading_wins(self):
        body = "Setext First\n============\n\n# Later ATX\n"
        assert extract_title(body) == "Setext First"

    def test_strips_closing_hashes_and_emphasis(self):
        assert extract_title("# **Bold** title #") == "Bold title"

    def test_wikilink_in_heading_uses_display_text(self):
        assert extract_title("# About [[people/ada|Ada]]") == "About Ada"

    def test_heading_inside_code_fence_is_ignored(self):
        body = "```\n# not a title\n```\n\n# Real Title\n"
        assert extract_title(body) == "Real Title"

    def test_no_heading(self):
        assert extract_title("Just text\n\nMore text") is None

    def test_hashtag_is_not_a_heading(self):
        assert extract_title("#tag at the start") is None


class TestNormalizeLinkTarget:
    def test_appends_md_extension(self):
        assert normalize_link_target("notes/idea") == "notes/idea.md"

    def test_keeps_existing_extension(self):
        assert normalize_link_target("images/diagram.png") == "images/diagram.png"

    def test_drops_heading_fragment(self):
        assert normalize_link_target("idea#Background") == "idea.md"

    def test_drops_leading_slash(self):
        assert normalize_link_target("/projects/plan") == "projects/plan.md"

    def test_fragment_only_points_nowhere(self):
        assert normalize_link_target("#Background") is None


class TestExtractLinks:
    def test_wikilink(self):
        assert extract_links("See [[qubits]].") == [
            ParsedLink(type="wikilink", target="qubits.md", text="qubits")
        ]

    def test_wikilink_with_display_text(self):
        assert extract_links("[[physics/entanglement|spooky action]]") == [
            ParsedLink(type="wikilink", target="physics/entanglement.md", text="spooky action")
        ]

    def test_markdown_link(self):
        links = extract_links("Read the [setup guide](docs/setup.md) first.")
        assert links == [ParsedLink(type="markdown", target="docs/setup.md", text="setup guide")]

    def test_markdown_link_is_url_decoded(self):
        links = extract_links("[Plan](my%20plan.md)")
        assert links[0].target == "my plan.md"

    def test_external_and_anchor_links_are_ignored(self):
        body = "[Site](https://example.com) [Mail](mailto:a@b.c) [Top](#top)"
        assert extract_links(body) == []

    def test_image_is_not_a_link(self):
        assert extract_links("![diagram](img/diagram.png)") == []

    def test_embed(self):
        assert extract_links("![[diagram.png]]") == [
            ParsedLink(type="embed", target="diagram.png", text="diagram.png")
        ]

    def test_links_in_code_are_ignored(self):
        body = "```\n[[hidden]]\n```\n\nInline `[[also-hidden]]` and [[visible]]"
        assert [link.target for link in extract_links(body)] == ["visible.md"]

    def test_order_is_markdown_then_wikilink_then_embed(self):
        body = "![[pic.png]] [[second]] [first](first.md)"
        assert [link.type for link in extract_links(body)] == ["markdown", "wikilink", "embed"]


class TestCountWords:
    def test_ignores_markup_and_keeps_link_text(self):
        text = "# Hello **world**\n\nSee [the guide](guide.md) and [[other|that note]]."
        assert count_words(text) == 8

    def test_skips_code_blocks(self):
        assert count_words("one two\n```\ncode here\n```\nthree") == 3

    def test_empty(self):
        assert count_words("") == 0


class TestParseMarkdown:
    def test_full_note(self):
        content = """---
tags: [physics]
---
# Quantum Computing

Qubits are explained in [[qubits]].
"""
        parsed = parse_markdown(content, "research/quantum.md")

        assert parsed.frontmatter == {"tags": ["physics"]}
        assert parsed.title == "Quantum Computing"
        assert parsed.body.startswith("# Quantum Computing")
        assert parsed.links == [ParsedLink(type="wikilink", target="qubits.md", text="qubits")]

    def test_empty_note(self):
        parsed = parse_markdown("")
        assert parsed.frontmatter == {}
        assert parsed.title is None
        assert parsed.body == ""
        assert parsed.links == []
