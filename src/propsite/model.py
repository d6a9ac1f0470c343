from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping

_ENUM_TOKEN_RE = re.compile(r"[\s_\-]+")


def _enum_token(value: str) -> str:
    return _ENUM_TOKEN_RE.sub(" ", value.strip()).lower()


class Status(str, Enum):
    DRAFT = "Draft"
    REVIEW = "Review"
    LAST_CALL = "Last Call"
    FINAL = "Final"
    STAGNANT = "Stagnant"
    WITHDRAWN = "Withdrawn"
    LIVING = "Living"

    @classmethod
    def parse(cls, value: str) -> "Status | None":
        token = _enum_token(value)
        for candidate in cls:
            if _enum_token(candidate.value) == token:
                return candidate
        return None

    @property
    def published(self) -> bool:
        return self in (Status.FINAL, Status.LIVING)

    def can_become(self, target: "Status") -> bool:
        """True when ``target`` is reachable from this status (reflexively)."""
        if target is self:
            return True
        seen: set[Status] = {self}
        frontier = [self]
        while frontier:
            current = frontier.pop()
            for following in STATUS_TRANSITIONS[current]:
                if following is target:
                    return True
                if following not in seen:
                    seen.add(following)
                    frontier.append(following)
        return False


# Final, Withdrawn and Living are terminal.
STATUS_TRANSITIONS: Mapping[Status, tuple[Status, ...]] = {
    Status.DRAFT: (Status.REVIEW, Status.STAGNANT, Status.WITHDRAWN, Status.LIVING),
    Status.REVIEW: (
        Status.DRAFT,
        Status.LAST_CALL,
        Status.STAGNANT,
        Status.WITHDRAWN,
        Status.LIVING,
    ),
    Status.LAST_CALL: (
        Status.REVIEW,
        Status.FINAL,
        Status.STAGNANT,
        Status.WITHDRAWN,
        Status.LIVING,
    ),
    Status.STAGNANT: (Status.DRAFT, Status.REVIEW, Status.WITHDRAWN),
    Status.FINAL: (),
    Status.WITHDRAWN: (),
    Status.LIVING: (),
}


class Kind(str, Enum):
    PRIMARY_TRACK = "Primary Track"
    APPLICATION_TRACK = "Application Track"

    @classmethod
    def parse(cls, value: str) -> "Kind | None":
        token = _enum_token(value)
        for candidate in cls:
            if _enum_token(candidate.value) == token:
                return candidate
        return None


class Category(str, Enum):
    CORE = "Core"
    NETWORKING = "Networking"
    INTERFACE = "Interface"
    ERC = "ERC"

    @classmethod
    def parse(cls, value: str) -> "Category | None":
        token = _enum_token(value)
        for candidate in cls:
            if _enum_token(candidate.value) == token:
                return candidate
        return None


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class ErrorKind(str, Enum):
    DISCOVERY = "discovery"
    SCHEMA = "schema"
    GRAPH = "graph"
    CITATION = "citation"
    TRANSFORM = "transform"
    LINT = "lint"


@dataclass(frozen=True)
class Author:
    name: str
    github: str | None = None
    email: str | None = None

    def as_dict(self) -> dict[str, str]:
        payload = {"name": self.name}
        if self.github is not None:
            payload["github"] = self.github
        if self.email is not None:
            payload["email"] = self.email
        return payload


@dataclass(frozen=True, order=True)
class SourceSpan:
    line: int = 1
    column: int = 1
    end_line: int | None = None
    end_column: int | None = None

    @classmethod
    def at(cls, line: int, column: int = 1, *, length: int = 0) -> "SourceSpan":
        if length > 0:
            return cls(line=line, column=column, end_line=line, end_column=column + length)
        return cls(line=line, column=column)


@dataclass(frozen=True)
class Proposal:
    number: int
    path: Path
    title: str = ""
    description: str | None = None
    status: Status | None = None
    kind: Kind | None = None
    category: Category | None = None
    authors: tuple[Author, ...] = ()
    created: date | None = None
    requires: tuple[int, ...] = ()
    discussions_to: str | None = None
    extra: Mapping[str, str] = field(default_factory=dict)
    assets: tuple[str, ...] = ()
    field_spans: Mapping[str, SourceSpan] = field(default_factory=dict)

    def span_of(self, name: str) -> SourceSpan:
        return self.field_spans.get(name, SourceSpan())


@dataclass(frozen=True)
class Diagnostic:
    severity: Severity
    rule: str
    message: str
    path: Path
    number: int | None = None
    span: SourceSpan = field(default_factory=SourceSpan)
    kind: ErrorKind = ErrorKind.LINT
    help: str | None = None

    @property
    def is_error(self) -> bool:
        return self.severity is Severity.ERROR

    def sort_key(self) -> tuple[object, ...]:
        return (
            self.number is None,
            self.number if self.number is not None else 0,
            str(self.path),
            self.span.line,
            self.span.column,
            self.rule,
            self.message,
        )

    def with_severity(self, severity: Severity) -> "Diagnostic":
        return Diagnostic(
            severity=severity,
            rule=self.rule,
            message=self.message,
            path=self.path,
            number=self.number,
            span=self.span,
            kind=self.kind,
            help=self.help,
        )

    def as_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "severity": self.severity.value,
            "rule": self.rule,
            "kind": self.kind.value,
            "message": self.message,
            "path": str(self.path),
            "number": self.number,
            "line": self.span.line,
            "column": self.span.column,
        }
        if self.span.end_line is not None:
            payload["end_line"] = self.span.end_line
            payload["end_column"] = self.span.end_column
        if self.help:
            payload["help"] = self.help
        return payload


@dataclass(frozen=True)
class DiagnosticReport:
    diagnostics: tuple[Diagnostic, ...] = ()

    @classmethod
    def collect(cls, diagnostics: Iterable[Diagnostic]) -> "DiagnosticReport":
        unique = dict.fromkeys(diagnostics)
        return cls(tuple(sorted(unique, key=Diagnostic.sort_key)))

    @property
    def error_count(self) -> int:
        return sum(1 for item in self.diagnostics if item.is_error)

    @property
    def warning_count(self) -> int:
        return len(self.diagnostics) - self.error_count

    @property
    def failed(self) -> bool:
        return self.error_count > 0

    def merge(self, other: "DiagnosticReport") -> "DiagnosticReport":
        return DiagnosticReport.collect((*self.diagnostics, *other.diagnostics))


@dataclass(frozen=True)
class AssetCopy:
    source: Path
    target: str


@dataclass(frozen=True)
class ContentArtifact:
    number: int
    target: str
    body: str
    front_matter: Mapping[str, object]
    assets: tuple[AssetCopy, ...] = ()
    pages: tuple["ContentArtifact", ...] = ()
