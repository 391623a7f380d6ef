"""Text-to-block conversion for notes pushed by chat agents.

Converts a loosely Markdown-flavoured text blob into an ordered list of
ContentNode values, and serializes those nodes into Notion block payloads.

The scan is a single left-to-right pass over the lines. At every cursor
position the rules in LINE_RULES are tried in priority order; the first rule
that matches consumes one line (or a contiguous run) and emits its nodes.
Conversion never fails: anything unrecognized becomes a paragraph.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
from urllib.parse import urlsplit, urlunsplit

import parsy as P

logger = logging.getLogger("notes-bridge.blocks")

# Notion's append endpoint and the documents we accept are both capped here
MAX_NODES = 100

# Notion rejects rich_text segments longer than this
RICH_TEXT_LIMIT = 2000


# =============================================================================
# Content Nodes
# =============================================================================


class NodeKind(Enum):
    """Closed set of node kinds the converter can emit."""
    HEADING_1 = "heading1"
    HEADING_2 = "heading2"
    HEADING_3 = "heading3"
    PARAGRAPH = "paragraph"
    BULLETED_ITEM = "bulletedItem"
    NUMBERED_ITEM = "numberedItem"
    TODO_ITEM = "todoItem"
    QUOTE = "quote"
    DIVIDER = "divider"
    CALLOUT = "callout"
    TOGGLE = "toggle"
    CODE_BLOCK = "codeBlock"
    TABLE = "table"
    IMAGE = "image"
    VIDEO = "video"
    FILE = "file"
    BOOKMARK = "bookmark"
    EMBED = "embed"
    TABLE_OF_CONTENTS = "tableOfContents"
    SYNCED_BLOCK = "syncedBlock"


@dataclass(frozen=True)
class ContentNode:
    """One unit of converted content."""
    kind: NodeKind
    text: str = ""
    checked: Optional[bool] = None  # todoItem only
    language: Optional[str] = None  # codeBlock only
    url: Optional[str] = None  # image, video, file, bookmark, embed
    rows: tuple[tuple[str, ...], ...] = ()  # table only, rows[0] is the header
    children: tuple["ContentNode", ...] = ()  # syncedBlock, toggle


def _empty_paragraph() -> ContentNode:
    return ContentNode(NodeKind.PARAGRAPH, text="")


# =============================================================================
# Code Languages
# =============================================================================

# Languages accepted by Notion code blocks
SUPPORTED_CODE_LANGUAGES = frozenset({
    "abap", "abc", "agda", "arduino", "ascii art", "assembly", "bash", "basic", "bnf",
    "c", "c#", "c++", "clojure", "coffeescript", "coq", "css", "dart", "dhall", "diff",
    "docker", "ebnf", "elixir", "elm", "erlang", "f#", "flow", "fortran", "gherkin", "glsl",
    "go", "graphql", "groovy", "haskell", "hcl", "html", "idris", "java", "javascript",
    "json", "julia", "kotlin", "latex", "less", "lisp", "livescript", "llvm ir", "lua",
    "makefile", "markdown", "markup", "matlab", "mathematica", "mermaid", "nix",
    "notion formula", "objective-c", "ocaml", "pascal", "perl", "php", "plain text",
    "powershell", "prolog", "protobuf", "purescript", "python", "r", "racket", "reason",
    "ruby", "rust", "sass", "scala", "scheme", "scss", "shell", "smalltalk", "solidity",
    "sql", "swift", "toml", "typescript", "vb.net", "verilog", "vhdl", "visual basic",
    "webassembly", "xml", "yaml",
})

# Common fence tags that are not Notion language names
CODE_LANGUAGE_ALIASES = {
    "": "plain text",
    "txt": "plain text",
    "text": "plain text",
    "plaintext": "plain text",
    "plain_text": "plain text",
    "js": "javascript",
    "jsx": "javascript",
    "node": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "py": "python",
    "python3": "python",
    "sh": "bash",
    "zsh": "bash",
    "console": "shell",
    "yml": "yaml",
    "md": "markdown",
    "json5": "json",
    "dockerfile": "docker",
    "rb": "ruby",
    "rs": "rust",
    "kt": "kotlin",
    "cpp": "c++",
    "cs": "c#",
    "csharp": "c#",
    "golang": "go",
    "ps1": "powershell",
    "objc": "objective-c",
}


def resolve_code_language(tag: str) -> str:
    """Map a fence tag to a Notion code language, defaulting to plain text."""
    language = tag.strip().lower()
    language = CODE_LANGUAGE_ALIASES.get(language, language)
    if language in SUPPORTED_CODE_LANGUAGES:
        return language
    return "plain text"


# =============================================================================
# URL Classification
# =============================================================================

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg")

VIDEO_HOST_PATTERN = re.compile(r'(youtube\.com|youtu\.be)', re.IGNORECASE)

HAS_SCHEME_PATTERN = re.compile(r'^https?://', re.IGNORECASE)


def is_video_url(url: str) -> bool:
    """True when the URL points at a recognized video host."""
    return bool(VIDEO_HOST_PATTERN.search(url))


def is_image_url(url: str) -> bool:
    """True when the URL path ends in a known image extension."""
    try:
        path = urlsplit(url).path
    except ValueError:
        return False
    return path.lower().endswith(IMAGE_EXTENSIONS)


def ensure_scheme(url: str) -> str:
    """Prefix https:// when the URL carries no http(s) scheme."""
    if HAS_SCHEME_PATTERN.match(url):
        return url
    return f"https://{url}"


def normalize_video_url(url: str) -> str:
    """Rewrite a YouTube URL to its canonical watch form.

    Handles:
    - https://youtu.be/<id>            → https://www.youtube.com/watch?v=<id>
    - https://youtube.com/shorts/<id>  → https://www.youtube.com/watch?v=<id>

    Other URLs are forced to https with any www. prefix dropped. When the URL
    cannot be parsed it is returned unchanged.
    """
    try:
        parts = urlsplit(url)
        host = (parts.hostname or "").lower()
        if host.startswith("www."):
            host = host[4:]
        segments = [s for s in parts.path.split("/") if s]

        if host == "youtu.be" and segments:
            return f"https://www.youtube.com/watch?v={segments[0]}"

        if host in ("youtube.com", "m.youtube.com"):
            if len(segments) >= 2 and segments[0] == "shorts":
                return f"https://www.youtube.com/watch?v={segments[1]}"

        netloc = host
        if parts.port:
            netloc = f"{host}:{parts.port}"
        return urlunsplit(("https", netloc, parts.path, parts.query, parts.fragment))
    except ValueError:
        return url


def _video_or_embed(url: str) -> ContentNode:
    if is_video_url(url):
        return ContentNode(NodeKind.VIDEO, url=normalize_video_url(url))
    if is_image_url(url):
        return ContentNode(NodeKind.IMAGE, url=url)
    return ContentNode(NodeKind.EMBED, url=url)


# =============================================================================
# Text Chunking
# =============================================================================


def chunk_text(text: str, size: int = RICH_TEXT_LIMIT) -> list[str]:
    """Split text into pieces no longer than size.

    Prefers to cut after a newline when one falls in the second half of the
    window, so code and prose are not split mid-line where avoidable.
    """
    if len(text) <= size:
        return [text]

    chunks = []
    start = 0
    while start < len(text):
        end = min(start + size, len(text))
        if end < len(text):
            cut = text.rfind("\n", start, end)
            if cut > start + size // 2:
                end = cut + 1
        chunks.append(text[start:end])
        start = end
    return chunks


def rich_text(text: str) -> list[dict]:
    """Build a Notion rich_text array, splitting over the segment limit."""
    return [
        {"type": "text", "text": {"content": chunk}}
        for chunk in chunk_text(text or "")
    ]


# =============================================================================
# Single-Pattern Promotion (Parsy-based)
# =============================================================================

VIDEO_MARKER = "!!영상!!("
EMBED_MARKER = "!!임베드!!("
FILE_MARKER = "!!파일!!("


def _make_promotion_parser():
    """Build the parser for lines that stand for a single media node.

    Every alternative must consume the whole line; anything left over means
    the line is ordinary text.
    """
    # Marker argument runs to the last closing paren on the line
    marker_arg = P.regex(r'(.*)\)', group=1).map(str.strip)

    # ![alt](URL)
    image = (
        P.string('![') >>
        P.regex(r'[^\]]*') >>
        P.string('](') >>
        P.regex(r'(.*)\)', group=1)
    ).map(lambda url: ContentNode(NodeKind.IMAGE, url=url.strip()))

    video = (P.string(VIDEO_MARKER) >> marker_arg).map(
        lambda url: _explicit_video(ensure_scheme(url))
    )

    embed = (P.string(EMBED_MARKER) >> marker_arg).map(
        lambda url: _video_or_embed(ensure_scheme(url))
    )

    file = (P.string(FILE_MARKER) >> marker_arg).map(
        lambda url: ContentNode(NodeKind.FILE, url=url)
    )

    # <URL>
    bookmark = P.regex(r'<(.+)>', group=1).map(
        lambda url: ContentNode(NodeKind.BOOKMARK, url=url.strip())
    )

    bare_url = P.regex(r'https?://\S+', flags=re.IGNORECASE).map(_bare_url_node)

    # Order matters: explicit markers before the generic bookmark and bare URL
    alternatives = [image, video, embed, file, bookmark, bare_url]
    return P.alt(*(alternative << P.eof for alternative in alternatives))


def _bare_url_node(url: str) -> ContentNode:
    if is_image_url(url):
        return ContentNode(NodeKind.IMAGE, url=url)
    if is_video_url(url):
        return ContentNode(NodeKind.VIDEO, url=normalize_video_url(url))
    return ContentNode(NodeKind.EMBED, url=url)


def _explicit_video(url: str) -> ContentNode:
    if is_video_url(url):
        url = normalize_video_url(url)
    return ContentNode(NodeKind.VIDEO, url=url)


# Build the parser once at module load
_promotion_parser = _make_promotion_parser()


def promote(text: str) -> Optional[ContentNode]:
    """Return a media node when text is exactly one media pattern, else None."""
    text = text.strip()
    if not text:
        return None
    try:
        return _promotion_parser.parse(text)
    except P.ParseError:
        return None


# =============================================================================
# Line Rules
# =============================================================================

# A rule receives (lines, i) and returns (nodes, next_i) or None when it
# does not apply at this position.
RuleResult = Optional[tuple[list[ContentNode], int]]
Rule = Callable[[list[str], int], RuleResult]

HEADING_PREFIXES = (
    ("### ", NodeKind.HEADING_3),
    ("## ", NodeKind.HEADING_2),
    ("# ", NodeKind.HEADING_1),
)

TODO_PATTERN = re.compile(r'^[-*]\s+\[([ xX])\]\s+')
NUMBERED_PATTERN = re.compile(r'^\d+\.\s+')
BULLET_PATTERN = re.compile(r'^[-*]\s+')

CODE_FENCE = "```"
CALLOUT_PREFIX = "> 📌"
CALLOUT_ICON = "📌"
TOGGLE_PREFIX = "!! "
SYNC_START = "/sync"
SYNC_END = "/endsync"
TOC_MARKER = "[목차]"


def _blank(lines: list[str], i: int) -> RuleResult:
    if not lines[i].strip():
        return [], i + 1
    return None


def _heading(lines: list[str], i: int) -> RuleResult:
    # Headings match on the raw line, so indented "# x" stays a paragraph
    line = lines[i]
    for prefix, kind in HEADING_PREFIXES:
        if line.startswith(prefix):
            return [ContentNode(kind, text=line[len(prefix):])], i + 1
    return None


def _code_fence(lines: list[str], i: int) -> RuleResult:
    line = lines[i]
    if not line.startswith(CODE_FENCE):
        return None

    language = resolve_code_language(line[len(CODE_FENCE):])
    j = i + 1
    code_lines = []
    while j < len(lines) and not lines[j].startswith(CODE_FENCE):
        code_lines.append(lines[j])
        j += 1

    node = ContentNode(NodeKind.CODE_BLOCK, text="\n".join(code_lines), language=language)
    # Skip the closing fence (no-op at end of input)
    return [node], j + 1


def _split_row(row: str) -> list[str]:
    cells = [cell.strip() for cell in row.split("|")]
    if cells and not cells[0]:
        cells = cells[1:]
    if cells and not cells[-1]:
        cells = cells[:-1]
    return cells


def _table(lines: list[str], i: int) -> RuleResult:
    if i + 1 >= len(lines):
        return None
    header_line, separator = lines[i], lines[i + 1]
    if "|" not in header_line or "|" not in separator or "-" not in separator:
        return None

    raw_rows = [header_line]
    j = i + 2
    while j < len(lines) and "|" in lines[j]:
        raw_rows.append(lines[j])
        j += 1

    parsed = [_split_row(row) for row in raw_rows]
    width = max(len(cells) for cells in parsed)
    rows = tuple(
        tuple(cells + [""] * (width - len(cells)))
        for cells in parsed
    )
    return [ContentNode(NodeKind.TABLE, rows=rows)], j


def _todo(lines: list[str], i: int) -> RuleResult:
    t = lines[i].strip()
    match = TODO_PATTERN.match(t)
    if not match:
        return None
    checked = match.group(1).lower() == "x"
    return [ContentNode(NodeKind.TODO_ITEM, text=t[match.end():], checked=checked)], i + 1


def _list_item(pattern: re.Pattern, kind: NodeKind) -> Rule:
    def rule(lines: list[str], i: int) -> RuleResult:
        t = lines[i].strip()
        match = pattern.match(t)
        if not match:
            return None
        text = t[match.end():]
        promoted = promote(text)
        if promoted is not None:
            return [promoted], i + 1
        return [ContentNode(kind, text=text)], i + 1
    return rule


def _quote_or_callout(lines: list[str], i: int) -> RuleResult:
    t = lines[i].strip()
    if t.startswith(CALLOUT_PREFIX):
        return [ContentNode(NodeKind.CALLOUT, text=t[len(CALLOUT_PREFIX):].strip())], i + 1
    if t.startswith("> "):
        return [ContentNode(NodeKind.QUOTE, text=t[2:])], i + 1
    return None


def _divider(lines: list[str], i: int) -> RuleResult:
    if lines[i].strip() in ("---", "***"):
        return [ContentNode(NodeKind.DIVIDER)], i + 1
    return None


def _toggle(lines: list[str], i: int) -> RuleResult:
    t = lines[i].strip()
    if t.startswith(TOGGLE_PREFIX):
        return [ContentNode(NodeKind.TOGGLE, text=t[len(TOGGLE_PREFIX):].strip())], i + 1
    return None


def _synced_block(lines: list[str], i: int) -> RuleResult:
    if lines[i].strip() != SYNC_START:
        return None
    j = i + 1
    children = []
    while j < len(lines) and lines[j].strip() != SYNC_END:
        children.append(ContentNode(NodeKind.PARAGRAPH, text=lines[j]))
        j += 1
    return [ContentNode(NodeKind.SYNCED_BLOCK, children=tuple(children))], j + 1


def _table_of_contents(lines: list[str], i: int) -> RuleResult:
    if lines[i].strip() == TOC_MARKER:
        return [ContentNode(NodeKind.TABLE_OF_CONTENTS)], i + 1
    return None


def _promoted_line(lines: list[str], i: int) -> RuleResult:
    node = promote(lines[i])
    if node is None:
        return None
    return [node], i + 1


def _paragraph(lines: list[str], i: int) -> RuleResult:
    return [ContentNode(NodeKind.PARAGRAPH, text=lines[i])], i + 1


# Rules in precedence order (first match wins); _paragraph always matches
LINE_RULES: list[tuple[str, Rule]] = [
    ("blank", _blank),
    ("heading", _heading),
    ("code", _code_fence),
    ("table", _table),
    ("todo", _todo),
    ("numbered", _list_item(NUMBERED_PATTERN, NodeKind.NUMBERED_ITEM)),
    ("bulleted", _list_item(BULLET_PATTERN, NodeKind.BULLETED_ITEM)),
    ("quote", _quote_or_callout),
    ("divider", _divider),
    ("toggle", _toggle),
    ("synced", _synced_block),
    ("toc", _table_of_contents),
    ("media", _promoted_line),
    ("paragraph", _paragraph),
]


def convert(raw: str) -> list[ContentNode]:
    """Convert a text blob into content nodes.

    Args:
        raw: Note body. Non-string input is coerced with str(); None is empty.

    Returns:
        Between 1 and MAX_NODES nodes. Empty input yields a single empty
        paragraph.
    """
    text = "" if raw is None else str(raw)
    lines = [line.rstrip() for line in text.split("\n")]
    nodes: list[ContentNode] = []

    i = 0
    while i < len(lines):
        for _name, rule in LINE_RULES:
            result = rule(lines, i)
            if result is not None:
                emitted, i = result
                nodes.extend(emitted)
                break

    if len(nodes) > MAX_NODES:
        logger.warning(f"Truncating converted note from {len(nodes)} to {MAX_NODES} nodes")
        nodes = nodes[:MAX_NODES]
    return nodes or [_empty_paragraph()]


# =============================================================================
# Notion Serialization
# =============================================================================

# Simple rich text kinds: consolidated because they share one payload shape
_RICH_TEXT_TYPES = {
    NodeKind.HEADING_1: "heading_1",
    NodeKind.HEADING_2: "heading_2",
    NodeKind.HEADING_3: "heading_3",
    NodeKind.PARAGRAPH: "paragraph",
    NodeKind.BULLETED_ITEM: "bulleted_list_item",
    NodeKind.NUMBERED_ITEM: "numbered_list_item",
    NodeKind.QUOTE: "quote",
}

_EXTERNAL_FILE_TYPES = {
    NodeKind.IMAGE: "image",
    NodeKind.VIDEO: "video",
    NodeKind.FILE: "file",
}


def to_notion_block(node: ContentNode) -> dict:
    """Convert a ContentNode to a Notion block-creation payload."""
    kind = node.kind

    if kind in _RICH_TEXT_TYPES:
        block_type = _RICH_TEXT_TYPES[kind]
        return {"type": block_type, block_type: {"rich_text": rich_text(node.text)}}

    elif kind == NodeKind.TODO_ITEM:
        return {
            "type": "to_do",
            "to_do": {"rich_text": rich_text(node.text), "checked": bool(node.checked)}
        }

    elif kind == NodeKind.CODE_BLOCK:
        return {
            "type": "code",
            "code": {
                "rich_text": rich_text(node.text),
                "language": node.language or "plain text"
            }
        }

    elif kind == NodeKind.CALLOUT:
        return {
            "type": "callout",
            "callout": {
                "icon": {"type": "emoji", "emoji": CALLOUT_ICON},
                "rich_text": rich_text(node.text),
                "color": "default"
            }
        }

    elif kind == NodeKind.TOGGLE:
        return {
            "type": "toggle",
            "toggle": {
                "rich_text": rich_text(node.text),
                "children": [to_notion_block(c) for c in node.children]
            }
        }

    elif kind == NodeKind.DIVIDER:
        return {"type": "divider", "divider": {}}

    elif kind == NodeKind.TABLE_OF_CONTENTS:
        return {"type": "table_of_contents", "table_of_contents": {}}

    elif kind == NodeKind.TABLE:
        width = max((len(row) for row in node.rows), default=0)
        return {
            "type": "table",
            "table": {
                "table_width": width,
                "has_column_header": True,
                "has_row_header": False,
                "children": [
                    {
                        "type": "table_row",
                        "table_row": {"cells": [rich_text(cell) for cell in row]}
                    }
                    for row in node.rows
                ]
            }
        }

    elif kind in _EXTERNAL_FILE_TYPES:
        block_type = _EXTERNAL_FILE_TYPES[kind]
        return {
            "type": block_type,
            block_type: {"type": "external", "external": {"url": node.url}}
        }

    elif kind == NodeKind.BOOKMARK:
        return {"type": "bookmark", "bookmark": {"url": node.url}}

    elif kind == NodeKind.EMBED:
        return {"type": "embed", "embed": {"url": node.url}}

    elif kind == NodeKind.SYNCED_BLOCK:
        return {
            "type": "synced_block",
            "synced_block": {
                "synced_from": None,
                "children": [to_notion_block(c) for c in node.children]
            }
        }

    # Unreachable for the closed NodeKind set
    return {"type": "paragraph", "paragraph": {"rich_text": rich_text(node.text)}}


def to_notion_blocks(nodes: list[ContentNode]) -> list[dict]:
    """Serialize a node list for the Notion append-children endpoint."""
    return [to_notion_block(node) for node in nodes]
