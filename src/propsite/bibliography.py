"""Bibliography store, citation resolution and CSL style rendering.

The store is a CSL-JSON array keyed by ``id``. Rendering goes through
``citeproc-py``; one style is loaded per run and each entry is rendered once
and memoised, so a key cited many times renders identically everywhere.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from propsite.errors import CitationError
from propsite.markdown import Document
from propsite.model import Diagnostic, ErrorKind, Severity, SourceSpan
from propsite.runtime.stable_encode import stable_compact_bytes

logger = logging.getLogger(__name__)

# Info string of fenced code blocks holding one inline CSL-JSON entry.
CSL_JSON_LANGUAGE = "csl-json"

CSL_TYPES = frozenset(
    {
        "article",
        "article-journal",
        "article-magazine",
        "article-newspaper",
        "bill",
        "book",
        "broadcast",
        "chapter",
        "dataset",
        "entry",
        "entry-dictionary",
        "entry-encyclopedia",
        "figure",
        "graphic",
        "interview",
        "legal_case",
        "legislation",
        "manuscript",
        "map",
        "motion_picture",
        "musical_score",
        "pamphlet",
        "paper-conference",
        "patent",
        "personal_communication",
        "post",
        "post-weblog",
        "report",
        "review",
        "review-book",
        "song",
        "speech",
        "thesis",
        "treaty",
        "webpage",
    }
)

# Fields handed to the style evaluator; the rest is kept but not rendered.
_RENDERED_FIELDS = (
    "id",
    "type",
    "title",
    "author",
    "editor",
    "issued",
    "accessed",
    "container-title",
    "publisher",
    "publisher-place",
    "volume",
    "issue",
    "page",
    "DOI",
    "URL",
    "note",
)


class CslName(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    family: Optional[str] = None
    given: Optional[str] = None
    literal: Optional[str] = None


class CslDate(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    date_parts: Optional[List[List[Union[int, str]]]] = Field(default=None, alias="date-parts")
    literal: Optional[str] = None
    raw: Optional[str] = None


class BibliographyEntry(BaseModel):
    """One CSL-JSON record; unknown fields are preserved as extras."""

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    id: str
    type: str = "article"
    title: Optional[str] = None
    author: List[CslName] = []
    issued: Optional[CslDate] = None
    container_title: Optional[str] = Field(default=None, alias="container-title")
    URL: Optional[str] = None

    def csl_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def renderable(self) -> Dict[str, Any]:
        payload = self.csl_json()
        if payload.get("type") not in CSL_TYPES:
            payload["type"] = "article"
        return {name: payload[name] for name in _RENDERED_FIELDS if name in payload and payload[name] != []}

    def canonical_bytes(self) -> bytes:
        return stable_compact_bytes(self.csl_json())


def parse_entry(payload: object) -> BibliographyEntry:
    """Validate one CSL-JSON record; raises ``CitationError`` with a readable reason."""
    if not isinstance(payload, Mapping):
        raise CitationError("bibliography entry must be a JSON object")
    key = payload.get("id")
    try:
        entry = BibliographyEntry.model_validate(dict(payload))
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'entry'}: {error['msg']}"
            for error in exc.errors()
        )
        raise CitationError(
            f"invalid CSL-JSON entry: {problems}",
            key=key if isinstance(key, str) else None,
        ) from exc
    if not entry.id.strip():
        raise CitationError("CSL-JSON entry has an empty `id`")
    if entry.type not in CSL_TYPES:
        raise CitationError(f"unknown CSL type `{entry.type}`", key=entry.id)
    return entry


@dataclass(frozen=True)
class BibliographyStore:
    entries: Mapping[str, BibliographyEntry] = field(default_factory=dict)
    available: bool = True
    path: Path | None = None

    def __contains__(self, key: object) -> bool:
        return key in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, key: str) -> BibliographyEntry | None:
        return self.entries.get(key)

    @classmethod
    def unavailable(cls, path: Path | None = None) -> "BibliographyStore":
        return cls(entries={}, available=False, path=path)

    @classmethod
    def from_entries(cls, items: Iterable[object], *, path: Path | None = None) -> "BibliographyStore":
        entries: dict[str, BibliographyEntry] = {}
        for index, item in enumerate(items):
            try:
                entry = parse_entry(item)
            except CitationError as exc:
                raise CitationError(f"entry #{index + 1}: {exc}", key=exc.key) from exc
            if entry.id in entries:
                raise CitationError(f"duplicate bibliography key `{entry.id}`", key=entry.id)
            entries[entry.id] = entry
        return cls(entries=entries, available=True, path=path)

    @classmethod
    def load(cls, path: Path) -> "BibliographyStore":
        """Load a CSL-JSON array; a missing file gives an unavailable store."""
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("no bibliography at `%s`", path)
            return cls.unavailable(path)
        except OSError as exc:
            raise CitationError(f"could not read bibliography `{path}`: {exc}") from exc
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CitationError(f"bibliography `{path}` is not valid JSON: {exc}") from exc
        if not isinstance(payload, list):
            raise CitationError(f"bibliography `{path}` must hold a JSON array of CSL-JSON entries")
        store = cls.from_entries(payload, path=path)
        logger.info("loaded %d bibliography entr%s from `%s`", len(store), "y" if len(store) == 1 else "ies", path)
        return store


class CitationStyle(Protocol):
    name: str

    def render(self, entry: BibliographyEntry) -> str: ...


class CslStyle:
    """A CSL style evaluated with citeproc-py, memoised per key."""

    def __init__(self, name: str, *, style: Any):
        self.name = name
        self._style = style
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    @classmethod
    def load(cls, name_or_path: str, *, root: Path | None = None) -> "CslStyle":
        from citeproc import CitationStylesStyle

        candidate = Path(name_or_path)
        if root is not None and not candidate.is_absolute():
            candidate = root / candidate
        target = str(candidate) if candidate.suffix == ".csl" else name_or_path
        try:
            style = CitationStylesStyle(target, validate=False)
        except Exception as exc:
            raise CitationError(f"could not load citation style `{name_or_path}`: {exc}") from exc
        return cls(name_or_path, style=style)

    def render(self, entry: BibliographyEntry) -> str:
        with self._lock:
            cached = self._cache.get(entry.id)
            if cached is None:
                cached = self._render(entry)
                self._cache[entry.id] = cached
            return cached

    def _render(self, entry: BibliographyEntry) -> str:
        from citeproc import Citation, CitationItem, CitationStylesBibliography, formatter
        from citeproc.source.json import CiteProcJSON

        try:
            source = CiteProcJSON([entry.renderable()])
            bibliography = CitationStylesBibliography(self._style, source, formatter.html)
            bibliography.register(Citation([CitationItem(entry.id)]))
            items = [str(item) for item in bibliography.bibliography()]
        except Exception as exc:
            raise CitationError(f"could not render `{entry.id}`: {exc}", key=entry.id) from exc
        if not items:
            raise CitationError(f"style produced no output for `{entry.id}`", key=entry.id)
        return items[0].strip()


@dataclass(frozen=True)
class ResolvedCitations:
    keys: Tuple[str, ...] = ()
    numbers: Mapping[str, int] = field(default_factory=dict)
    entries: Mapping[str, BibliographyEntry] = field(default_factory=dict)
    diagnostics: Tuple[Diagnostic, ...] = ()

    @property
    def resolved_keys(self) -> Tuple[str, ...]:
        return tuple(key for key in self.keys if key in self.entries)

    def cited_entries(self) -> Tuple[BibliographyEntry, ...]:
        return tuple(self.entries[key] for key in self.resolved_keys)


def resolve_citations(
    document: Document,
    store: BibliographyStore,
    *,
    path: Path,
    number: int | None = None,
) -> ResolvedCitations:
    """Number resolved keys by first appearance; flag every unresolved marker."""
    keys = document.citation_keys()
    entries: dict[str, BibliographyEntry] = {}
    for key in keys:
        entry = store.get(key)
        if entry is not None:
            entries[key] = entry
    numbers = {key: index for index, key in enumerate((key for key in keys if key in entries), start=1)}

    diagnostics: list[Diagnostic] = []
    for marker in document.citations:
        for key in marker.keys:
            if key in entries:
                continue
            reason = (
                f"citation key `{key}` is not in the bibliography"
                if store.available
                else f"citation key `{key}` cannot be resolved: no bibliography is available"
            )
            diagnostics.append(
                Diagnostic(
                    severity=Severity.ERROR,
                    rule="citation-resolves",
                    message=reason,
                    path=path,
                    number=number,
                    span=SourceSpan.at(marker.line, marker.column, length=marker.end - marker.start),
                    kind=ErrorKind.CITATION,
                )
            )
    return ResolvedCitations(
        keys=keys,
        numbers=numbers,
        entries=entries,
        diagnostics=tuple(diagnostics),
    )


def bibliography_anchor(key: str) -> str:
    """HTML id for ``key``; keys that had to be rewritten get a digest suffix."""
    slug = "".join(ch if ch.isalnum() or ch in "-_" else "-" for ch in key)
    if slug == key:
        return f"bib-{slug}"
    digest = hashlib.sha3_256(key.encode("utf-8")).hexdigest()[:8]
    return f"bib-{slug}-{digest}"


def render_bibliography(resolved: ResolvedCitations, style: CitationStyle) -> str:
    """Markdown section listing each resolved key once, in citation order."""
    keys = resolved.resolved_keys
    if not keys:
        return ""
    lines = ["## References", "", "<ol class=\"references\">"]
    for key in keys:
        rendered = style.render(resolved.entries[key])
        lines.append(f"<li id=\"{bibliography_anchor(key)}\">{rendered}</li>")
    lines.append("</ol>")
    return "\n".join(lines) + "\n"
