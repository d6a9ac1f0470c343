"""Line-oriented scanner for proposal bodies.

The scanner does not attempt full CommonMark; it recognises the structures
the pipeline needs (ATX headings, fenced code blocks, inline links and
images, reference definitions and citation markers) and records absolute
line/column positions so diagnostics point into the original file.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterator

_FENCE_RE = re.compile(r"^(?P<indent> {0,3})(?P<fence>`{3,}|~{3,})[ \t]*(?P<info>[^`]*?)[ \t]*$")
_HEADING_RE = re.compile(r"^ {0,3}(?P<marks>#{1,6})(?:[ \t]+(?P<text>.*?))?(?:[ \t]+#+)?[ \t]*$")
_CODE_SPAN_RE = re.compile(r"(?P<ticks>`+)(?P<code>.+?)(?P=ticks)")
_LINK_RE = re.compile(
    r"(?P<bang>!?)\[(?P<text>(?:[^\[\]]|\[[^\[\]]*\])*)\]"
    r"\(\s*(?P<target><[^>\n]*>|[^\s()]*(?:\([^\s()]*\)[^\s()]*)*)"
    r"(?:\s+(?P<title>\"[^\"]*\"|'[^']*'|\([^)]*\)))?\s*\)"
)
_DEFINITION_RE = re.compile(
    r"^ {0,3}\[(?P<label>[^\]]+)\]:[ \t]*(?P<target><[^>]*>|\S+)"
    r"(?:[ \t]+(?P<title>\"[^\"]*\"|'[^']*'|\([^)]*\)))?[ \t]*$"
)
_CITATION_KEY = r"[A-Za-z0-9_][\w:.#$%&+?<>~/-]*"
_CITATION_RE = re.compile(
    rf"(?<![!\\])\[(?P<body>@{_CITATION_KEY}(?:[ \t]*;[ \t]*@{_CITATION_KEY})*)\](?![(\[:])"
)
_CITATION_KEY_RE = re.compile(rf"@(?P<key>{_CITATION_KEY})")


def slugify_heading(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "section"


@dataclass(frozen=True)
class Heading:
    level: int
    text: str
    line: int
    column: int = 1

    @property
    def anchor(self) -> str:
        return slugify_heading(self.text)


@dataclass(frozen=True)
class CodeBlock:
    info: str
    line: int
    end_line: int
    text: str
    closed: bool = True

    @property
    def language(self) -> str:
        return self.info.split()[0] if self.info.split() else ""


@dataclass(frozen=True)
class Paragraph:
    line: int
    end_line: int


@dataclass(frozen=True)
class Link:
    kind: str  # "link", "image" or "definition"
    text: str
    target: str
    line: int
    column: int
    start: int
    end: int
    target_start: int
    target_end: int


@dataclass(frozen=True)
class CitationMarker:
    keys: tuple[str, ...]
    line: int
    column: int
    start: int
    end: int


@dataclass(frozen=True)
class Document:
    """Scanned body: blocks plus inline references, all with file positions."""

    first_line: int
    lines: tuple[str, ...]
    headings: tuple[Heading, ...] = ()
    code_blocks: tuple[CodeBlock, ...] = ()
    paragraphs: tuple[Paragraph, ...] = ()
    links: tuple[Link, ...] = ()
    citations: tuple[CitationMarker, ...] = ()
    text_lines: frozenset[int] = field(default_factory=frozenset)

    def line_text(self, line: int) -> str:
        return self.lines[line - self.first_line]

    @property
    def anchors(self) -> frozenset[str]:
        return frozenset(heading.anchor for heading in self.headings)

    def citation_keys(self) -> tuple[str, ...]:
        seen: dict[str, None] = {}
        for marker in self.citations:
            for key in marker.keys:
                seen.setdefault(key, None)
        return tuple(seen)

    def blocks(self) -> Iterator[Heading | CodeBlock | Paragraph]:
        items: list[Heading | CodeBlock | Paragraph] = [*self.headings, *self.code_blocks, *self.paragraphs]
        yield from sorted(items, key=lambda item: item.line)


def _mask_code_spans(text: str) -> str:
    return _CODE_SPAN_RE.sub(lambda match: " " * len(match.group(0)), text)


def _strip_angle(target: str) -> str:
    if target.startswith("<") and target.endswith(">"):
        return target[1:-1]
    return target


def parse_document(body: str, *, first_line: int = 1) -> Document:
    lines = tuple(body.split("\n"))
    headings: list[Heading] = []
    code_blocks: list[CodeBlock] = []
    links: list[Link] = []
    citations: list[CitationMarker] = []
    text_lines: set[int] = set()
    paragraphs: list[Paragraph] = []
    paragraph_start: int | None = None

    def close_paragraph(end_line: int) -> None:
        nonlocal paragraph_start
        if paragraph_start is not None:
            paragraphs.append(Paragraph(line=paragraph_start, end_line=end_line))
            paragraph_start = None

    fence: tuple[str, int, str, int] | None = None
    fence_lines: list[str] = []
    for offset, raw in enumerate(lines):
        line_no = first_line + offset
        if fence is not None:
            char, length, info, start = fence
            stripped = raw.strip()
            if stripped and set(stripped) == {char} and len(stripped) >= length and len(raw) - len(raw.lstrip(" ")) < 4:
                code_blocks.append(
                    CodeBlock(info=info, line=start, end_line=line_no, text="\n".join(fence_lines))
                )
                fence = None
                fence_lines = []
            else:
                fence_lines.append(raw)
            continue

        if not raw.strip():
            close_paragraph(line_no - 1)
            continue

        fence_match = _FENCE_RE.match(raw)
        if fence_match:
            close_paragraph(line_no - 1)
            marks = fence_match.group("fence")
            fence = (marks[0], len(marks), fence_match.group("info").strip(), line_no)
            continue

        heading_match = _HEADING_RE.match(raw)
        if heading_match:
            close_paragraph(line_no - 1)
            text = (heading_match.group("text") or "").strip()
            headings.append(
                Heading(
                    level=len(heading_match.group("marks")),
                    text=text,
                    line=line_no,
                    column=raw.index("#") + 1,
                )
            )
        elif paragraph_start is None:
            paragraph_start = line_no

        text_lines.add(line_no)
        _scan_inline(raw, line_no, links=links, citations=citations)

    close_paragraph(first_line + len(lines) - 1)
    if fence is not None:
        char, length, info, start = fence
        code_blocks.append(
            CodeBlock(
                info=info,
                line=start,
                end_line=first_line + len(lines) - 1,
                text="\n".join(fence_lines),
                closed=False,
            )
        )

    return Document(
        first_line=first_line,
        lines=lines,
        headings=tuple(headings),
        code_blocks=tuple(code_blocks),
        paragraphs=tuple(paragraphs),
        links=tuple(links),
        citations=tuple(citations),
        text_lines=frozenset(text_lines),
    )


def _scan_inline(
    raw: str,
    line_no: int,
    *,
    links: list[Link],
    citations: list[CitationMarker],
) -> None:
    masked = _mask_code_spans(raw)

    definition = _DEFINITION_RE.match(masked)
    if definition:
        target = definition.group("target")
        links.append(
            Link(
                kind="definition",
                text=definition.group("label"),
                target=_strip_angle(target),
                line=line_no,
                column=definition.start("label"),
                start=definition.start(),
                end=definition.end(),
                target_start=definition.start("target") + (1 if target.startswith("<") else 0),
                target_end=definition.end("target") - (1 if target.endswith(">") and target.startswith("<") else 0),
            )
        )
        return

    for match in _LINK_RE.finditer(masked):
        target = match.group("target")
        angled = target.startswith("<") and target.endswith(">")
        links.append(
            Link(
                kind="image" if match.group("bang") else "link",
                text=match.group("text"),
                target=_strip_angle(target),
                line=line_no,
                column=match.start() + 1,
                start=match.start(),
                end=match.end(),
                target_start=match.start("target") + (1 if angled else 0),
                target_end=match.end("target") - (1 if angled else 0),
            )
        )

    for match in _CITATION_RE.finditer(masked):
        keys = tuple(_clean_key(item.group("key")) for item in _CITATION_KEY_RE.finditer(match.group("body")))
        citations.append(
            CitationMarker(
                keys=keys,
                line=line_no,
                column=match.start() + 1,
                start=match.start(),
                end=match.end(),
            )
        )


def _clean_key(key: str) -> str:
    return key.rstrip(".:,;?")
