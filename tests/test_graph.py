from __future__ import annotations

from pathlib import Path, PurePosixPath

from propsite.graph import EdgeKind, build_graph, repo_relative, resolve_link
from propsite.preamble import load_proposal
from propsite.walker import RepositoryWalker


def _graph(repo):
    parsed = [load_proposal(candidate) for candidate in RepositoryWalker(repo.root)]
    return build_graph(parsed, root=repo.root)


def test_requires_links_and_citations_become_edges(repo) -> None:
    repo.proposal(1)
    repo.proposal(2, requires=(1,), body="Builds on [EIP-1](./00001.md#abstract) [@paper].")
    repo.proposal(3, requires=(2,))

    graph = _graph(repo)

    assert sorted(graph.nodes) == [1, 2, 3]
    assert graph.requires_of(2) == (1,)
    assert graph.citations_of(2) == ("paper",)
    assert graph.upstream_of(2) == (1,)
    assert graph.dependents(1) == (2,)
    assert graph.transitive_dependents([1]) == frozenset({2, 3})
    assert graph.requires_cycles() == ()
    assert {edge.kind for edge in graph.edges if edge.source == 2} == {
        EdgeKind.REQUIRES,
        EdgeKind.LINK,
        EdgeKind.CITATION,
    }
    assert "abstract" in graph.anchors[1]


def test_dangling_requires_is_recorded_not_raised(repo) -> None:
    repo.proposal(1, requires=(999,))

    graph = _graph(repo)

    dangling = graph.dangling_for(1, kind=EdgeKind.REQUIRES)
    assert [(item.source, item.target) for item in dangling] == [(1, 999)]
    assert dangling[0].span.line == 9
    assert graph.upstream_of(1) == ()


def test_cycles_are_minimal_and_rotated_to_smallest_member(repo) -> None:
    repo.proposal(5, requires=(7,))
    repo.proposal(6, requires=(5,))
    repo.proposal(7, requires=(6,))
    repo.proposal(8, requires=(8,))
    repo.proposal(9, requires=(5,))

    graph = _graph(repo)

    assert graph.requires_cycles() == ((5, 7, 6), (8,))
    assert graph.cycles_through(6) == ((5, 7, 6),)
    assert graph.cycles_through(9) == ()


def test_long_requires_chain_does_not_recurse(repo) -> None:
    for number in range(1, 1501):
        repo.proposal(number, requires=(number + 1,))
    repo.proposal(1501)

    graph = _graph(repo)

    assert graph.requires_cycles() == ()
    assert len(graph.transitive_dependents([1501])) == 1500


def test_duplicate_numbers_keep_first_claimant(repo) -> None:
    first = repo.proposal(4)
    second = repo.write(5, (repo.content / "00004.md").read_text(encoding="utf-8"))

    graph = _graph(repo)

    assert graph.proposal(4).path == first
    assert graph.duplicates == {4: (first, second)}


def test_resolve_link_handles_relative_and_external_targets() -> None:
    source = PurePosixPath("content/00002/index.md")

    resolved = resolve_link("../00001.md#spec", source=source)
    assert resolved is not None
    assert (resolved.repo_path, resolved.fragment, resolved.number) == ("content/00001.md", "spec", 1)
    bundle = resolve_link("../00003/index.md", source=source)
    assert bundle is not None and bundle.number == 3
    asset = resolve_link("assets/a.png", source=source)
    assert asset is not None and asset.repo_path == "content/00002/assets/a.png" and asset.number is None
    assert resolve_link("https://example.org", source=source) is None
    assert resolve_link("/absolute", source=source) is None
    assert resolve_link("#local", source=source) is None
    assert resolve_link("mailto:a@b.c", source=source) is None


def test_paths_outside_root_stay_absolute() -> None:
    assert repo_relative(Path("/repo/content/00001.md"), Path("/repo")) == PurePosixPath("content/00001.md")
    assert repo_relative(Path("/elsewhere/x.md"), Path("/repo")) == PurePosixPath("/elsewhere/x.md")


def test_unparseable_link_targets_count_as_external(repo) -> None:
    repo.proposal(1, body="See [local](http://[::1/x) and [two](./00002.md).")
    repo.proposal(2)

    graph = _graph(repo)

    assert resolve_link("http://[::1/x", source=PurePosixPath("content/00001.md")) is None
    assert [(edge.target, edge.kind) for edge in graph.edges if edge.source == 1] == [(2, EdgeKind.LINK)]
    assert graph.dangling == []
