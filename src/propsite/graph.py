"""Directed reference graph over the parsed corpus.

Nodes are proposal numbers. Edges come from ``requires`` preamble entries,
body links that name another proposal file, and citation keys. Dangling
targets and ``requires`` cycles are kept as evidence for the lint stage; the
builder itself never fails on them.
"""

from __future__ import annotations

import logging
import posixpath
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Iterable, Mapping
from urllib.parse import urlsplit

from propsite.model import Proposal, SourceSpan, Status
from propsite.preamble import ParsedProposal
from propsite.walker import INDEX_NAME, is_proposal_path, parse_number

logger = logging.getLogger(__name__)


class EdgeKind(str, Enum):
    REQUIRES = "requires"
    LINK = "link"
    CITATION = "citation"


@dataclass(frozen=True)
class Edge:
    source: int
    target: int | str
    kind: EdgeKind
    span: SourceSpan = field(default_factory=SourceSpan)


@dataclass(frozen=True)
class DanglingReference:
    source: int
    target: int
    kind: EdgeKind
    span: SourceSpan = field(default_factory=SourceSpan)


@dataclass(frozen=True)
class LinkTarget:
    """Where a relative body link points, resolved against the source file."""

    repo_path: str
    fragment: str
    number: int | None = None


def resolve_link(
    target: str,
    *,
    source: PurePosixPath,
    content_dir: str = "content",
) -> LinkTarget | None:
    """Resolve a relative link ``target`` written in ``source`` (repo-relative).

    Returns ``None`` for external URLs, absolute paths, pure fragments and
    targets that do not parse as URLs at all.
    """
    if not target or target.startswith("#"):
        return None
    try:
        parts = urlsplit(target)
    except ValueError:
        logger.debug("treating unparseable link target `%s` as external", target)
        return None
    if parts.scheme or parts.netloc or parts.path.startswith("/"):
        return None
    joined = posixpath.normpath(posixpath.join(source.parent.as_posix(), parts.path))
    repo_path = PurePosixPath(joined)
    number: int | None = None
    if is_proposal_path(repo_path, content_dir=content_dir):
        name = repo_path.parent.name if repo_path.name == INDEX_NAME else repo_path.stem
        number = parse_number(name)
    return LinkTarget(repo_path=joined, fragment=parts.fragment, number=number)


def repo_relative(path: Path, root: Path) -> PurePosixPath:
    try:
        return PurePosixPath(path.relative_to(root).as_posix())
    except ValueError:
        return PurePosixPath(path.as_posix())


@dataclass(frozen=True)
class UpstreamSummary:
    number: int
    title: str
    status: Status | None

    def as_dict(self) -> dict[str, object]:
        return {
            "number": self.number,
            "title": self.title,
            "status": self.status.value if self.status is not None else None,
        }


class ReferenceGraph:
    def __init__(self) -> None:
        self.nodes: dict[int, Proposal] = {}
        self.anchors: dict[int, frozenset[str]] = {}
        self.edges: list[Edge] = []
        self.dangling: list[DanglingReference] = []
        self.duplicates: dict[int, tuple[Path, ...]] = {}
        self._forward: dict[int, dict[int, None]] = {}
        self._reverse: dict[int, set[int]] = {}
        self._requires: dict[int, tuple[int, ...]] = {}
        self._citations: dict[int, tuple[str, ...]] = {}
        self._cycles: tuple[tuple[int, ...], ...] | None = None

    def __contains__(self, number: object) -> bool:
        return number in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def proposal(self, number: int) -> Proposal | None:
        return self.nodes.get(number)

    def requires_of(self, number: int) -> tuple[int, ...]:
        return self._requires.get(number, ())

    def citations_of(self, number: int) -> tuple[str, ...]:
        return self._citations.get(number, ())

    def upstream_of(self, number: int) -> tuple[int, ...]:
        """Existing proposals that ``number`` requires or links to, ascending."""
        return tuple(sorted(target for target in self._forward.get(number, {}) if target in self.nodes))

    def summary(self, number: int) -> UpstreamSummary | None:
        proposal = self.nodes.get(number)
        if proposal is None:
            return None
        return UpstreamSummary(number=number, title=proposal.title, status=proposal.status)

    def dangling_for(self, number: int, *, kind: EdgeKind | None = None) -> tuple[DanglingReference, ...]:
        return tuple(
            item
            for item in self.dangling
            if item.source == number and (kind is None or item.kind is kind)
        )

    def dependents(self, number: int) -> tuple[int, ...]:
        return tuple(sorted(self._reverse.get(number, ())))

    def transitive_dependents(self, numbers: Iterable[int]) -> frozenset[int]:
        """Every proposal reachable from ``numbers`` along reverse edges."""
        seen: set[int] = set()
        queue = deque(numbers)
        while queue:
            current = queue.popleft()
            for dependent in self._reverse.get(current, ()):
                if dependent not in seen:
                    seen.add(dependent)
                    queue.append(dependent)
        return frozenset(seen)

    def add_node(self, proposal: Proposal, *, anchors: frozenset[str] = frozenset()) -> None:
        self.nodes[proposal.number] = proposal
        self.anchors[proposal.number] = anchors

    def add_edge(self, edge: Edge) -> None:
        self.edges.append(edge)
        if edge.kind is EdgeKind.CITATION:
            if isinstance(edge.target, str):
                keys = self._citations.setdefault(edge.source, ())
                if edge.target not in keys:
                    self._citations[edge.source] = (*keys, edge.target)
            return
        if not isinstance(edge.target, int):
            return
        if edge.kind is EdgeKind.REQUIRES:
            current = self._requires.setdefault(edge.source, ())
            if edge.target not in current:
                self._requires[edge.source] = (*current, edge.target)
            self._cycles = None
        self._forward.setdefault(edge.source, {})[edge.target] = None
        self._reverse.setdefault(edge.target, set()).add(edge.source)

    def requires_cycles(self) -> tuple[tuple[int, ...], ...]:
        """Minimal ``requires`` cycles, each rotated to start at its smallest member."""
        if self._cycles is None:
            self._cycles = self._find_cycles()
        return self._cycles

    def _find_cycles(self) -> tuple[tuple[int, ...], ...]:
        cycles: list[tuple[int, ...]] = []
        for component in _strongly_connected(self.nodes, self._requires):
            members = set(component)
            start = min(members)
            if len(members) == 1:
                if start in self._requires.get(start, ()):
                    cycles.append((start,))
                continue
            cycle = _shortest_cycle(start, members, self._requires)
            if cycle:
                cycles.append(cycle)
        return tuple(sorted(cycles))

    def cycles_through(self, number: int) -> tuple[tuple[int, ...], ...]:
        return tuple(cycle for cycle in self.requires_cycles() if number in cycle)


def _strongly_connected(
    nodes: Mapping[int, object],
    successors: Mapping[int, tuple[int, ...]],
) -> list[list[int]]:
    # Iterative Tarjan; deep requires chains must not hit the recursion limit.
    index_of: dict[int, int] = {}
    lowlink: dict[int, int] = {}
    on_stack: set[int] = set()
    stack: list[int] = []
    components: list[list[int]] = []
    counter = 0
    for root in sorted(nodes):
        if root in index_of:
            continue
        work: list[tuple[int, int]] = [(root, 0)]
        while work:
            node, position = work.pop()
            if position == 0:
                index_of[node] = lowlink[node] = counter
                counter += 1
                stack.append(node)
                on_stack.add(node)
            targets = [item for item in successors.get(node, ()) if item in nodes]
            advanced = False
            while position < len(targets):
                target = targets[position]
                position += 1
                if target not in index_of:
                    work.append((node, position))
                    work.append((target, 0))
                    advanced = True
                    break
                if target in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[target])
            if advanced:
                continue
            if lowlink[node] == index_of[node]:
                component: list[int] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(sorted(component))
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
    return components


def _shortest_cycle(
    start: int,
    members: set[int],
    successors: Mapping[int, tuple[int, ...]],
) -> tuple[int, ...]:
    previous: dict[int, int] = {}
    queue = deque([start])
    seen = {start}
    while queue:
        current = queue.popleft()
        for target in sorted(successors.get(current, ())):
            if target not in members:
                continue
            if target == start:
                path = [current]
                while path[-1] != start:
                    path.append(previous[path[-1]])
                return tuple(reversed(path))
            if target not in seen:
                seen.add(target)
                previous[target] = current
                queue.append(target)
    return ()


def build_graph(
    parsed: Iterable[ParsedProposal],
    *,
    root: Path,
    content_dir: str = "content",
) -> ReferenceGraph:
    graph = ReferenceGraph()
    usable: list[tuple[Proposal, ParsedProposal]] = sorted(
        ((item.proposal, item) for item in parsed if item.proposal is not None),
        key=lambda pair: (pair[0].number, pair[1].candidate.path.as_posix()),
    )

    claimants: dict[int, list[Path]] = {}
    for proposal, item in usable:
        claimants.setdefault(proposal.number, []).append(item.candidate.path)
        if proposal.number not in graph.nodes:
            graph.add_node(proposal, anchors=item.document.anchors)
    graph.duplicates = {
        number: tuple(paths) for number, paths in claimants.items() if len(paths) > 1
    }

    for proposal, item in usable:
        if graph.nodes[proposal.number] is not proposal:
            continue
        source = proposal.number
        requires_span = proposal.span_of("requires")
        for target in proposal.requires:
            graph.add_edge(Edge(source, target, EdgeKind.REQUIRES, requires_span))
            if target not in graph.nodes:
                graph.dangling.append(DanglingReference(source, target, EdgeKind.REQUIRES, requires_span))

        source_path = repo_relative(item.candidate.path, root)
        for link in item.document.links:
            resolved = resolve_link(link.target, source=source_path, content_dir=content_dir)
            if resolved is None or resolved.number is None:
                continue
            span = SourceSpan.at(link.line, link.target_start + 1, length=link.target_end - link.target_start)
            graph.add_edge(Edge(source, resolved.number, EdgeKind.LINK, span))
            if resolved.number not in graph.nodes:
                graph.dangling.append(DanglingReference(source, resolved.number, EdgeKind.LINK, span))

        for marker in item.document.citations:
            for key in marker.keys:
                graph.add_edge(Edge(source, key, EdgeKind.CITATION, SourceSpan.at(marker.line, marker.column)))

    cycles = graph.requires_cycles()
    logger.debug(
        "reference graph: %d node(s), %d edge(s), %d dangling, %d cycle(s)",
        len(graph.nodes),
        len(graph.edges),
        len(graph.dangling),
        len(cycles),
    )
    return graph
