"""Markdown parser: YAML frontmatter, title, body and outgoing links."""

import logging
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote

import yaml

from latent_mcp.indexer.models import LinkType

logger = logging.getLogger(__name__)

# Leading "---" block, closed by a line holding only "---"
FRONTMATTER_PATTERN = re.compile(
    r"\A---[ \t]*\r?\n(.*?)^---[ \t]*(?:\r?\n|\Z)", re.DOTALL | re.MULTILINE
)

CODE_FENCE_PATTERN = re.compile(
    r"^[ \t]*(`{3,}|~{3,})[^\n]*\n.*?^[ \t]*\1[ \t]*$", re.DOTALL | re.MULTILINE
)
INLINE_CODE_PATTERN = re.compile(r"`[^`\n]+`")

ATX_H1_PATTERN = re.compile(r"^ {0,3}#(?!#)[ \t]+(.+?)(?:[ \t]+#+)?[ \t]*$", re.MULTILINE)
SETEXT_H1_PATTERN = re.compile(r"^ {0,3}([^\s#>\-*=].*?)[ \t]*\n {0,3}=+[ \t]*$", re.MULTILINE)

# [text](target "optional title"), but not ![alt](image)
MARKDOWN_LINK_PATTERN = re.compile(
    r"(?<![!\[])\[([^\]\n]*)\]\(\s*<?([^)\s>]+)>?(?:\s+[\"'(][^)]*[\"')])?\s*\)"
)
# [[target]] or [[target|display]], but not ![[embed]]
WIKILINK_PATTERN = re.compile(r"(?<!!)\[\[([^\[\]|\n]+)(?:\|([^\]\n]+))?\]\]")
EMBED_PATTERN = re.compile(r"!\[\[([^\[\]|\n]+)(?:\|([^\]\n]+))?\]\]")

EXTERNAL_URL_PATTERN = re.compile(r"^(?:[a-zA-Z][a-zA-Z0-9+.\-]*:|//)")
EXTENSION_PATTERN = re.compile(r"\.[a-zA-Z0-9]+$")
EMPHASIS_PATTERN = re.compile(
    r"(\*\*|\*|~~)(?=\S)(.+?)(?<=\S)\1|(?<!\w)(__|_)(?=\S)(.+?)(?<=\S)\3(?!\w)"
)


@dataclass
class ParsedLink:
    """An outgoing link found in a note body."""

    type: LinkType
    target: str
    text: str


@dataclass
class ParsedDocument:
    """Structured view of a raw Markdown note."""

    frontmatter: dict[str, Any] = field(default_factory=dict)
    title: str | None = None
    body: str = ""
    links: list[ParsedLink] = field(default_factory=list)


def split_frontmatter(content: str, path_hint: str = "") -> tuple[dict[str, Any], str]:
    """
    Split YAML frontmatter from markdown content.

    Args:
        content: The full markdown content
        path_hint: Relative path, only used in log messages

    Returns:
        Tuple of (frontmatter mapping, body). A missing or non-mapping block
        yields an empty mapping. Invalid YAML leaves the content untouched.
    """
    match = FRONTMATTER_PATTERN.match(content)
    if not match:
        return {}, content

    try:
        raw = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        logger.debug("Invalid YAML frontmatter in %s: %s", path_hint or "<note>", e)
        return {}, content

    body = content[match.end() :]
    if not isinstance(raw, dict):
        return {}, body
    return {str(key): value for key, value in raw.items()}, body


def strip_frontmatter(content: str) -> str:
    """Remove YAML frontmatter from content."""
    return split_frontmatter(content)[1]


def render_frontmatter(data: dict[str, Any], body: str) -> str:
    """Serialize a frontmatter mapping back in front of an untouched body."""
    if not data:
        return body
    dumped = yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)
    return f"---\n{dumped}---\n{body}"


def normalize_link_target(raw: str) -> str | None:
    """
    Normalize a link target to a vault-relative path.

    Drops "#heading" fragments and leading slashes, and appends ".md" when the
    target has no extension. Returns None for targets that point nowhere
    (e.g. a bare "#heading").
    """
    target = raw.split("#", 1)[0].strip()
    target = target.lstrip("/")
    if not target:
        return None
    if not EXTENSION_PATTERN.search(target):
        target += ".md"
    return target


def _without_code(text: str) -> str:
    """Blank out fenced blocks and inline code so they are not scanned."""
    text = CODE_FENCE_PATTERN.sub("\n", text)
    return INLINE_CODE_PATTERN.sub("", text)


def _inline_text(text: str) -> str:
    """Reduce inline markdown to its visible text."""
    text = EMBED_PATTERN.sub("", text)
    text = re.sub(r"!\[([^\]]*)\]\([^)]*\)", r"\1", text)
    text = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", text)
    text = WIKILINK_PATTERN.sub(lambda m: (m.group(2) or m.group(1)).strip(), text)
    text = text.replace("`", "")
    text = EMPHASIS_PATTERN.sub(lambda m: m.group(2) or m.group(4), text)
    return text.strip()


def extract_title(body: str) -> str | None:
    """Return the text of the first level-1 heading, or None."""
    scannable = _without_code(body)
    candidates = []
    atx = ATX_H1_PATTERN.search(scannable)
    if atx:
        candidates.append((atx.start(), atx.group(1)))
    setext = SETEXT_H1_PATTERN.search(scannable)
    if setext:
        candidates.append((setext.start(), setext.group(1)))
    if not candidates:
        return None

    _, raw_title = min(candidates)
    title = _inline_text(raw_title)
    return title or None


def extract_links(body: str) -> list[ParsedLink]:
    """Collect markdown links, wikilinks and embeds from a note body."""
    scannable = _without_code(body)
    links: list[ParsedLink] = []

    for match in MARKDOWN_LINK_PATTERN.finditer(scannable):
        url = match.group(2)
        if EXTERNAL_URL_PATTERN.match(url):
            continue
        target = normalize_link_target(unquote(url))
        if target is None:
            continue
        text = _inline_text(match.group(1)) or url
        links.append(ParsedLink(type="markdown", target=target, text=text))

    for match in WIKILINK_PATTERN.finditer(scannable):
        raw_target = match.group(1).strip()
        target = normalize_link_target(raw_target)
        if target is None:
            continue
        display = (match.group(2) or "").strip() or raw_target
        links.append(ParsedLink(type="wikilink", target=target, text=display))

    for match in EMBED_PATTERN.finditer(scannable):
        raw_target = match.group(1).strip()
        target = normalize_link_target(raw_target)
        if target is None:
            continue
        links.append(ParsedLink(type="embed", target=target, text=raw_target))

    return links


def count_words(text: str) -> int:
    """Count words, ignoring markdown syntax but keeping link text."""
    cleaned = re.sub(r"```[\s\S]*?```", "", text)
    cleaned = re.sub(r"`([^`]+)`", r"\1", cleaned)
    cleaned = EMBED_PATTERN.sub("", cleaned)
    cleaned = re.sub(r"!\[.*?\]\(.*?\)", "", cleaned)
    cleaned = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", cleaned)
    cleaned = WIKILINK_PATTERN.sub(lambda m: m.group(2) or m.group(1), cleaned)
    cleaned = re.sub(r"[#*_~`]", "", cleaned)
    return len(cleaned.split())


def parse_markdown(content: str, path_hint: str = "") -> ParsedDocument:
    """
    Parse a raw Markdown note.

    Args:
        content: The full markdown content, frontmatter included
        path_hint: Relative path, only used in log messages

    Returns:
        ParsedDocument with frontmatter, title (None when there is no H1),
        body without frontmatter, and outgoing links in document order
        (markdown links, then wikilinks, then embeds).
    """
    frontmatter, body = split_frontmatter(content, path_hint)
    return ParsedDocument(
        frontmatter=frontmatter,
        title=extract_title(body),
        body=body,
        links=extract_links(body),
    )
