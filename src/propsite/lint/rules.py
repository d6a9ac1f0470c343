"""Built-in lint rules.

Each rule is a small class with a fixed ``rule_id``; ``DEFAULT_RULES`` is the
closed, ordered set the engine runs. Rules only look at the subject, the
reference graph and the bibliography store; they never touch the disk.
"""

from __future__ import annotations

import json
import posixpath
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Iterable, Iterator

from propsite.bibliography import CSL_JSON_LANGUAGE, BibliographyStore, parse_entry, resolve_citations
from propsite.errors import CitationError
from propsite.graph import EdgeKind, ReferenceGraph, resolve_link
from propsite.markdown import Link
from propsite.model import (
    Diagnostic,
    ErrorKind,
    Kind,
    Proposal,
    Severity,
    SourceSpan,
    Status,
    STATUS_TRANSITIONS,
)
from propsite.preamble import FIELD_ORDER, ParsedProposal, parse_requires
from propsite.walker import ASSETS_DIR, parse_number


REQUIRED_SECTIONS: dict[Kind, tuple[str, ...]] = {
    Kind.PRIMARY_TRACK: (
        "Abstract",
        "Specification",
        "Rationale",
        "Backwards Compatibility",
        "Security Considerations",
        "Copyright",
    ),
    Kind.APPLICATION_TRACK: (
        "Abstract",
        "Specification",
        "Rationale",
        "Security Considerations",
        "Copyright",
    ),
}


@dataclass(frozen=True)
class LintSubject:
    """One parsed proposal plus the context rules need about it."""

    parsed: ParsedProposal
    source: PurePosixPath
    previous_status: Status | None = None
    content_dir: str = "content"

    @property
    def proposal(self) -> Proposal | None:
        return self.parsed.proposal

    @property
    def number(self) -> int:
        return self.parsed.number

    @property
    def bundle_path(self) -> str | None:
        """Repo-relative directory of a directory proposal."""
        if self.parsed.candidate.bundle_dir is None:
            return None
        return self.source.parent.as_posix()


class Rule:
    rule_id = ""
    default_severity = Severity.ERROR
    kind = ErrorKind.LINT
    description = ""
    needs_proposal = True

    def evaluate(
        self,
        subject: LintSubject,
        graph: ReferenceGraph,
        bibliography: BibliographyStore,
    ) -> Iterable[Diagnostic]:
        raise NotImplementedError

    def diagnostic(
        self,
        subject: LintSubject,
        message: str,
        span: SourceSpan | None = None,
        *,
        help: str | None = None,
        kind: ErrorKind | None = None,
    ) -> Diagnostic:
        return Diagnostic(
            severity=self.default_severity,
            rule=self.rule_id,
            message=message,
            path=subject.parsed.candidate.path,
            number=subject.number,
            span=span if span is not None else SourceSpan(),
            kind=kind if kind is not None else self.kind,
            help=help,
        )


def _link_span(link: Link) -> SourceSpan:
    return SourceSpan.at(link.line, link.target_start + 1, length=link.target_end - link.target_start)


def _is_graph_node(subject: LintSubject, graph: ReferenceGraph) -> bool:
    proposal = subject.proposal
    return proposal is not None and graph.proposal(proposal.number) is proposal


def _asset_owner(repo_path: str, *, content_dir: str) -> tuple[int, str, str] | None:
    """``(number, bundle_dir, relative)`` when ``repo_path`` is inside an assets tree."""
    parts = PurePosixPath(repo_path).parts
    if len(parts) < 4 or parts[0] != content_dir or parts[2] != ASSETS_DIR:
        return None
    number = parse_number(parts[1])
    if number is None:
        return None
    return number, f"{parts[0]}/{parts[1]}", posixpath.join(*parts[2:])


class PreambleSchemaRule(Rule):
    rule_id = "preamble-schema"
    kind = ErrorKind.SCHEMA
    description = "preamble is present, well formed and every field has the right type"
    needs_proposal = False

    def evaluate(self, subject, graph, bibliography):
        return subject.parsed.diagnostics


class PreambleOrderRule(Rule):
    rule_id = "preamble-order"
    default_severity = Severity.WARNING
    kind = ErrorKind.SCHEMA
    description = "known preamble fields appear in canonical order"

    def evaluate(self, subject, graph, bibliography):
        furthest: tuple[int, str] | None = None
        for item in subject.parsed.fields:
            if item.canonical not in FIELD_ORDER:
                continue
            position = FIELD_ORDER.index(item.canonical)
            if furthest is not None and position < furthest[0]:
                yield self.diagnostic(
                    subject,
                    f"preamble field `{item.name}` should come before `{furthest[1]}`",
                    item.name_span,
                )
                continue
            furthest = (position, item.name)


class NumberMatchesFileRule(Rule):
    rule_id = "number-matches-file"
    kind = ErrorKind.SCHEMA
    description = "preamble number matches the file or directory name"

    def evaluate(self, subject, graph, bibliography):
        proposal = subject.proposal
        if proposal is not None and proposal.number != subject.parsed.candidate.number:
            yield self.diagnostic(
                subject,
                f"preamble number {proposal.number} does not match file number "
                f"{subject.parsed.candidate.number}",
                proposal.span_of("number"),
            )


class NumberUniqueRule(Rule):
    rule_id = "number-unique"
    kind = ErrorKind.SCHEMA
    description = "no two files claim the same proposal number"

    def evaluate(self, subject, graph, bibliography):
        proposal = subject.proposal
        claimants = graph.duplicates.get(proposal.number, ()) if proposal is not None else ()
        others = [path for path in claimants if path != subject.parsed.candidate.path]
        if others:
            listing = ", ".join(f"`{path.parent.name}/{path.name}`" for path in others)
            yield self.diagnostic(
                subject,
                f"proposal number {proposal.number} is also claimed by {listing}",
                proposal.span_of("number"),
            )


class StatusTransitionRule(Rule):
    rule_id = "status-transition"
    description = "status is reachable from the previously committed status (or Draft)"

    def evaluate(self, subject, graph, bibliography):
        proposal = subject.proposal
        if proposal is None or proposal.status is None:
            return
        previous = subject.previous_status or Status.DRAFT
        if previous.can_become(proposal.status):
            return
        allowed = ", ".join(f"`{item.value}`" for item in STATUS_TRANSITIONS[previous]) or "none"
        origin = "previously committed" if subject.previous_status is not None else "initial"
        yield self.diagnostic(
            subject,
            f"status cannot change from {origin} `{previous.value}` to `{proposal.status.value}`",
            proposal.span_of("status"),
            help=f"`{previous.value}` may move to: {allowed}",
        )


class RequiresExistsRule(Rule):
    rule_id = "requires-exists"
    kind = ErrorKind.GRAPH
    description = "every `requires` entry names an existing proposal"

    def evaluate(self, subject, graph, bibliography):
        if not _is_graph_node(subject, graph):
            return
        for item in graph.dangling_for(subject.proposal.number, kind=EdgeKind.REQUIRES):
            yield self.diagnostic(
                subject,
                f"requires proposal {item.target}, which does not exist",
                item.span,
            )


class RequiresWithdrawnRule(Rule):
    rule_id = "requires-withdrawn"
    kind = ErrorKind.GRAPH
    description = "non-withdrawn proposals do not require withdrawn ones"

    def evaluate(self, subject, graph, bibliography):
        proposal = subject.proposal
        if proposal is None or proposal.status is Status.WITHDRAWN:
            return
        for target in proposal.requires:
            upstream = graph.proposal(target)
            if upstream is not None and upstream.status is Status.WITHDRAWN:
                yield self.diagnostic(
                    subject,
                    f"requires proposal {target}, which is withdrawn",
                    proposal.span_of("requires"),
                )


class RequiresCycleRule(Rule):
    rule_id = "requires-cycle"
    kind = ErrorKind.GRAPH
    description = "`requires` edges form no cycle"

    def evaluate(self, subject, graph, bibliography):
        if not _is_graph_node(subject, graph):
            return
        number = subject.proposal.number
        for cycle in graph.cycles_through(number):
            # One diagnostic per cycle, reported at its smallest member.
            if cycle[0] != number:
                continue
            chain = " -> ".join(str(item) for item in (*cycle, cycle[0]))
            members = ", ".join(str(item) for item in cycle)
            yield self.diagnostic(
                subject,
                f"`requires` cycle: {chain}",
                subject.proposal.span_of("requires"),
                help=f"cycle members: {members}",
            )


class RequiresSortedRule(Rule):
    rule_id = "requires-sorted"
    default_severity = Severity.WARNING
    description = "`requires` lists numbers in ascending order without repeats"

    def evaluate(self, subject, graph, bibliography):
        item = subject.parsed.get_field("requires")
        if item is None or not item.value:
            return
        try:
            numbers = parse_requires(item.value)
        except ValueError:
            return
        expected = sorted(set(numbers))
        if numbers != expected:
            yield self.diagnostic(
                subject,
                "`requires` should be sorted in ascending order without duplicates",
                item.span,
                help="expected: " + ", ".join(str(number) for number in expected),
            )


class LinkResolvesRule(Rule):
    rule_id = "link-resolves"
    kind = ErrorKind.GRAPH
    description = "relative links point at an existing proposal, asset or heading"

    def evaluate(self, subject, graph, bibliography):
        document = subject.parsed.document
        own_anchors = document.anchors
        for link in document.links:
            if link.target.startswith("#"):
                fragment = link.target[1:]
                if fragment and fragment not in own_anchors and not fragment.startswith("bib-"):
                    yield self.diagnostic(
                        subject,
                        f"link fragment `#{fragment}` does not match any heading",
                        _link_span(link),
                        kind=ErrorKind.LINT,
                    )
                continue
            resolved = resolve_link(link.target, source=subject.source, content_dir=subject.content_dir)
            if resolved is None:
                continue
            if resolved.number is not None:
                if resolved.number not in graph:
                    yield self.diagnostic(
                        subject,
                        f"link to proposal {resolved.number}, which does not exist",
                        _link_span(link),
                    )
                elif resolved.fragment and resolved.fragment not in graph.anchors.get(resolved.number, frozenset()):
                    yield self.diagnostic(
                        subject,
                        f"proposal {resolved.number} has no heading for fragment `#{resolved.fragment}`",
                        _link_span(link),
                        kind=ErrorKind.LINT,
                    )
                continue
            if _asset_owner(resolved.repo_path, content_dir=subject.content_dir) is not None:
                continue
            yield self.diagnostic(
                subject,
                f"relative link `{link.target}` does not point at a proposal or an asset",
                _link_span(link),
                kind=ErrorKind.LINT,
            )


class AssetExistsRule(Rule):
    rule_id = "asset-exists"
    description = "links into an `assets/` directory name files that exist"

    def evaluate(self, subject, graph, bibliography):
        for link in subject.parsed.document.links:
            resolved = resolve_link(link.target, source=subject.source, content_dir=subject.content_dir)
            if resolved is None or resolved.number is not None:
                continue
            owner = _asset_owner(resolved.repo_path, content_dir=subject.content_dir)
            if owner is None:
                continue
            number, bundle, relative = owner
            if bundle == subject.bundle_path:
                available = subject.parsed.candidate.assets
            else:
                upstream = graph.proposal(number)
                available = upstream.assets if upstream is not None else ()
            if relative not in available:
                yield self.diagnostic(
                    subject,
                    f"asset `{resolved.repo_path}` does not exist",
                    _link_span(link),
                )


class AssetUnreferencedRule(Rule):
    rule_id = "asset-unreferenced"
    default_severity = Severity.WARNING
    description = "every file under `assets/` is referenced from the proposal"
    needs_proposal = False

    def evaluate(self, subject, graph, bibliography):
        bundle = subject.bundle_path
        if bundle is None or not subject.parsed.candidate.assets:
            return
        referenced: set[str] = set()
        for link in subject.parsed.document.links:
            resolved = resolve_link(link.target, source=subject.source, content_dir=subject.content_dir)
            if resolved is not None:
                referenced.add(resolved.repo_path)
        for asset in subject.parsed.candidate.assets:
            if f"{bundle}/{asset}" in referenced:
                continue
            yield self.diagnostic(subject, f"asset `{asset}` is not referenced")


class HeadingHierarchyRule(Rule):
    rule_id = "heading-hierarchy"
    description = "body headings start at level 2 and never skip a level"
    needs_proposal = False

    def evaluate(self, subject, graph, bibliography):
        previous = 1
        for heading in subject.parsed.document.headings:
            span = SourceSpan.at(heading.line, heading.column, length=heading.level)
            if heading.level == 1:
                yield self.diagnostic(
                    subject,
                    "top-level heading in body; the title comes from the preamble",
                    span,
                    help="use `##` for sections",
                )
            elif heading.level > previous + 1:
                yield self.diagnostic(
                    subject,
                    f"heading level jumps from h{previous} to h{heading.level}",
                    span,
                )
            previous = max(heading.level, 2)


class RequiredSectionsRule(Rule):
    rule_id = "required-sections"
    description = "sections required for the proposal's kind are present"

    def evaluate(self, subject, graph, bibliography):
        proposal = subject.proposal
        if proposal is None or proposal.kind is None:
            return
        document = subject.parsed.document
        present = {heading.text.strip().lower() for heading in document.headings if heading.level == 2}
        for section in REQUIRED_SECTIONS[proposal.kind]:
            if section.lower() not in present:
                yield self.diagnostic(
                    subject,
                    f"missing required section `## {section}` for {proposal.kind.value} proposals",
                    SourceSpan.at(document.first_line),
                )


class CitationResolvesRule(Rule):
    rule_id = "citation-resolves"
    kind = ErrorKind.CITATION
    description = "every citation marker names a bibliography entry"
    needs_proposal = False

    def evaluate(self, subject, graph, bibliography):
        resolved = resolve_citations(
            subject.parsed.document,
            bibliography,
            path=subject.parsed.candidate.path,
            number=subject.number,
        )
        return resolved.diagnostics


class CslJsonValidRule(Rule):
    rule_id = "csl-json-valid"
    kind = ErrorKind.CITATION
    description = "inline `csl-json` blocks hold one valid CSL-JSON entry"
    needs_proposal = False

    def evaluate(self, subject, graph, bibliography):
        for block in subject.parsed.document.code_blocks:
            if block.language != CSL_JSON_LANGUAGE:
                continue
            span = SourceSpan.at(block.line)
            try:
                parse_entry(json.loads(block.text))
            except json.JSONDecodeError as exc:
                yield self.diagnostic(subject, f"`csl-json` block is not valid JSON: {exc.msg}", span)
            except CitationError as exc:
                yield self.diagnostic(subject, f"`csl-json` block: {exc}", span)


DEFAULT_RULES: tuple[Rule, ...] = (
    PreambleSchemaRule(),
    PreambleOrderRule(),
    NumberMatchesFileRule(),
    NumberUniqueRule(),
    StatusTransitionRule(),
    RequiresExistsRule(),
    RequiresWithdrawnRule(),
    RequiresCycleRule(),
    RequiresSortedRule(),
    LinkResolvesRule(),
    AssetExistsRule(),
    AssetUnreferencedRule(),
    HeadingHierarchyRule(),
    RequiredSectionsRule(),
    CitationResolvesRule(),
    CslJsonValidRule(),
)


def rule_ids(rules: Iterable[Rule] = DEFAULT_RULES) -> Iterator[str]:
    for rule in rules:
        yield rule.rule_id
