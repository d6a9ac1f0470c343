"""Front-matter ("preamble") parsing.

A proposal starts with a block delimited by ``---`` lines holding one
``name: value`` field per line. Every problem becomes a schema diagnostic at
the offending field; parsing carries on so one bad field never hides the
rest of the document.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Callable, Iterable
from urllib.parse import urlsplit

from propsite.markdown import Document, parse_document
from propsite.model import (
    Author,
    Category,
    Diagnostic,
    ErrorKind,
    Kind,
    Proposal,
    Severity,
    SourceSpan,
    Status,
)
from propsite.walker import ProposalCandidate

logger = logging.getLogger(__name__)

DELIMITER = "---"

FIELD_ALIASES = {"eip": "number", "type": "kind"}
REQUIRED_FIELDS = ("number", "title", "status", "kind", "author", "created")
# Canonical order used by the `preamble-order` lint.
FIELD_ORDER = (
    "number",
    "title",
    "description",
    "author",
    "discussions-to",
    "status",
    "last-call-deadline",
    "kind",
    "category",
    "created",
    "requires",
    "withdrawal-reason",
)

_FIELD_RE = re.compile(r"^(?P<name>[A-Za-z][A-Za-z0-9_-]*)[ \t]*:(?P<gap>[ \t]*)(?P<value>.*?)[ \t]*$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_AUTHOR_NAME = r"[^()<>,@]+?"
_AUTHOR_GITHUB = r"[A-Za-z\d-]+"
_AUTHOR_EMAIL = r"[^@<>\s][^<>]*@[^<>]+\.[^<>]+"
_AUTHOR_RE = re.compile(
    rf"^(?P<name>{_AUTHOR_NAME})"
    rf"(?:[ \t]+\(@(?P<github>{_AUTHOR_GITHUB})\))?"
    rf"(?:[ \t]+<(?P<email>{_AUTHOR_EMAIL})>)?$"
)


@dataclass(frozen=True)
class PreambleField:
    name: str
    value: str
    line: int
    column: int

    @property
    def canonical(self) -> str:
        lowered = self.name.lower()
        return FIELD_ALIASES.get(lowered, lowered)

    @property
    def span(self) -> SourceSpan:
        return SourceSpan.at(self.line, self.column, length=len(self.value))

    @property
    def name_span(self) -> SourceSpan:
        return SourceSpan.at(self.line, 1, length=len(self.name))


@dataclass(frozen=True)
class ParsedProposal:
    candidate: ProposalCandidate
    proposal: Proposal | None
    document: Document
    diagnostics: tuple[Diagnostic, ...] = ()
    raw: bytes = b""
    fields: tuple[PreambleField, ...] = ()
    text: str = ""

    @property
    def number(self) -> int:
        return self.candidate.number

    @property
    def schema_valid(self) -> bool:
        return self.proposal is not None and not any(item.is_error for item in self.diagnostics)

    def get_field(self, name: str) -> PreambleField | None:
        for item in self.fields:
            if item.canonical == name:
                return item
        return None


def split_preamble(text: str) -> tuple[tuple[str, ...] | None, str, int]:
    """Return ``(preamble_lines, body, body_start_line)``.

    ``preamble_lines`` is ``None`` when the text does not open with a
    terminated ``---`` block, in which case the whole text is the body.
    """
    lines = text.split("\n")
    if not lines or lines[0].rstrip("\r").strip() != DELIMITER:
        return None, text, 1
    for index in range(1, len(lines)):
        if lines[index].rstrip("\r").strip() == DELIMITER:
            preamble = tuple(line.rstrip("\r") for line in lines[1:index])
            body = "\n".join(lines[index + 1 :])
            return preamble, body, index + 2
    return None, text, 1


def read_status(text: str) -> Status | None:
    """Status recorded in ``text``'s preamble, or ``None`` when absent or invalid."""
    preamble, _, _ = split_preamble(text)
    for line in preamble or ():
        match = _FIELD_RE.match(line)
        if match is not None and match.group("name").lower() == "status":
            return Status.parse(match.group("value"))
    return None


def parse_authors(value: str) -> tuple[Author, ...]:
    authors: list[Author] = []
    for chunk in value.split(","):
        item = chunk.strip()
        if not item:
            raise ValueError("empty author entry")
        match = _AUTHOR_RE.match(item)
        if match is None:
            raise ValueError(
                f"author `{item}` should look like `Name`, `Name (@handle)`, "
                "`Name <email>` or `Name (@handle) <email>`"
            )
        authors.append(
            Author(
                name=match.group("name").strip(),
                github=match.group("github"),
                email=match.group("email"),
            )
        )
    return tuple(authors)


def parse_requires(value: str) -> list[int]:
    numbers: list[int] = []
    for chunk in value.split(","):
        item = chunk.strip()
        if not (item.isascii() and item.isdigit()) or int(item) <= 0:
            raise ValueError(f"`{item}` is not a proposal number")
        numbers.append(int(item))
    return numbers


def _parse_number(value: str) -> int:
    if not (value.isascii() and value.isdigit()) or int(value) <= 0:
        raise ValueError(f"`{value}` is not a positive integer")
    return int(value)


def _parse_date(value: str) -> date:
    if not _DATE_RE.match(value):
        raise ValueError(f"`{value}` is not a date in YYYY-MM-DD form")
    return date.fromisoformat(value)


def _parse_url(value: str) -> str:
    parts = urlsplit(value)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValueError(f"`{value}` is not an http(s) URL")
    return value


def _enum_parser(parse: Callable[[str], object], label: str, choices: Iterable[str]) -> Callable[[str], object]:
    def _parse(value: str) -> object:
        parsed = parse(value)
        if parsed is None:
            expected = ", ".join(f"`{choice}`" for choice in choices)
            raise ValueError(f"unknown {label} `{value}`; expected one of {expected}")
        return parsed

    return _parse


def _dedupe(numbers: list[int]) -> tuple[int, ...]:
    return tuple(dict.fromkeys(numbers))


_PARSERS: dict[str, Callable[[str], object]] = {
    "number": _parse_number,
    "title": str,
    "description": str,
    "status": _enum_parser(Status.parse, "status", [item.value for item in Status]),
    "kind": _enum_parser(Kind.parse, "kind", [item.value for item in Kind]),
    "category": _enum_parser(Category.parse, "category", [item.value for item in Category]),
    "author": parse_authors,
    "created": _parse_date,
    "requires": lambda value: _dedupe(parse_requires(value)),
    "discussions-to": _parse_url,
}


class _Collector:
    def __init__(self, candidate: ProposalCandidate):
        self.candidate = candidate
        self.items: list[Diagnostic] = []

    def error(self, rule: str, message: str, span: SourceSpan, *, kind: ErrorKind = ErrorKind.SCHEMA) -> None:
        self.items.append(
            Diagnostic(
                severity=Severity.ERROR,
                rule=rule,
                message=message,
                path=self.candidate.path,
                number=self.candidate.number,
                span=span,
                kind=kind,
            )
        )


def _unreadable(candidate: ProposalCandidate, message: str, raw: bytes = b"") -> ParsedProposal:
    collector = _Collector(candidate)
    collector.error("discovery-unreadable", message, SourceSpan(), kind=ErrorKind.DISCOVERY)
    return ParsedProposal(
        candidate=candidate,
        proposal=None,
        document=parse_document(""),
        diagnostics=tuple(collector.items),
        raw=raw,
    )


def load_proposal(candidate: ProposalCandidate) -> ParsedProposal:
    """Read ``candidate`` from disk and parse it; read failures become diagnostics."""
    if candidate.error is not None:
        return _unreadable(candidate, candidate.error)
    try:
        raw = candidate.path.read_bytes()
    except OSError as exc:
        return _unreadable(candidate, f"could not read `{candidate.path}`: {exc.strerror or exc}")
    return parse_proposal(candidate, raw)


def parse_proposal(candidate: ProposalCandidate, raw: bytes) -> ParsedProposal:
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        return _unreadable(candidate, f"file is not valid UTF-8 (byte {exc.start})", raw)
    if text.startswith("\ufeff"):
        text = text[1:]

    collector = _Collector(candidate)
    preamble, body, body_start = split_preamble(text)
    document = parse_document(body, first_line=body_start)
    if preamble is None:
        collector.error(
            "preamble-missing",
            f"proposal must start with a preamble delimited by `{DELIMITER}` lines",
            SourceSpan.at(1, 1),
        )
        return ParsedProposal(
            candidate=candidate,
            proposal=None,
            document=document,
            diagnostics=tuple(collector.items),
            raw=raw,
            text=text,
        )

    fields: list[PreambleField] = []
    seen: dict[str, PreambleField] = {}
    for offset, line in enumerate(preamble):
        line_no = offset + 2
        if not line.strip():
            continue
        match = _FIELD_RE.match(line)
        if match is None:
            collector.error(
                "preamble-malformed-line",
                "preamble lines must have the form `name: value`",
                SourceSpan.at(line_no, 1, length=len(line)),
            )
            continue
        item = PreambleField(
            name=match.group("name"),
            value=match.group("value"),
            line=line_no,
            column=match.start("value") + 1,
        )
        previous = seen.get(item.canonical)
        if previous is not None:
            collector.error(
                "preamble-duplicate-field",
                f"field `{item.name}` is already defined on line {previous.line}",
                item.name_span,
            )
            continue
        seen[item.canonical] = item
        fields.append(item)

    values: dict[str, object] = {}
    extra: dict[str, str] = {}
    spans: dict[str, SourceSpan] = {}
    for item in fields:
        spans[item.canonical] = item.span
        parser = _PARSERS.get(item.canonical)
        if parser is None:
            extra[item.name] = item.value
            continue
        if not item.value:
            collector.error(
                "preamble-invalid-field",
                f"field `{item.name}` must not be empty",
                item.name_span,
            )
            continue
        try:
            values[item.canonical] = parser(item.value)
        except ValueError as exc:
            collector.error(
                "preamble-invalid-field",
                f"invalid `{item.name}`: {exc}",
                item.span,
            )

    for name in REQUIRED_FIELDS:
        if name not in seen:
            collector.error(
                "preamble-missing-field",
                f"preamble is missing required field `{name}`",
                SourceSpan.at(1, 1, length=len(DELIMITER)),
            )

    number = values.get("number")
    proposal: Proposal | None = None
    if isinstance(number, int):
        proposal = Proposal(
            number=number,
            path=candidate.path,
            title=str(values.get("title", "")),
            description=values.get("description"),  # type: ignore[arg-type]
            status=values.get("status"),  # type: ignore[arg-type]
            kind=values.get("kind"),  # type: ignore[arg-type]
            category=values.get("category"),  # type: ignore[arg-type]
            authors=values.get("author", ()),  # type: ignore[arg-type]
            created=values.get("created"),  # type: ignore[arg-type]
            requires=values.get("requires", ()),  # type: ignore[arg-type]
            discussions_to=values.get("discussions-to"),  # type: ignore[arg-type]
            extra=extra,
            assets=candidate.assets,
            field_spans=spans,
        )
    else:
        logger.debug("`%s` has no usable number; downstream stages skip it", candidate.path)

    return ParsedProposal(
        candidate=candidate,
        proposal=proposal,
        document=document,
        diagnostics=tuple(collector.items),
        raw=raw,
        fields=tuple(fields),
        text=text,
    )
