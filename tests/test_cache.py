from __future__ import annotations

from pathlib import Path

import pytest

from propsite.bibliography import parse_entry
from propsite.cache import (
    BuildCache,
    ManifestEntry,
    artifact_fingerprint,
    artifact_matches,
    content_fingerprint,
    settings_fingerprint,
    write_artifact,
)
from propsite.errors import CacheConsistencyError
from propsite.graph import Edge, EdgeKind, ReferenceGraph, UpstreamSummary
from propsite.model import Proposal, Status

SETTINGS = settings_fingerprint({"base_url": "https://example.org/"})


def _graph(*edges: tuple[int, int]) -> ReferenceGraph:
    graph = ReferenceGraph()
    for number in {item for edge in edges for item in edge} | {1, 2, 3}:
        graph.add_node(Proposal(number=number, path=Path(f"content/{number:05d}.md")))
    for source, target in edges:
        graph.add_edge(Edge(source, target, EdgeKind.REQUIRES))
    return graph


def _entry(content: str, files: list[str], root: Path) -> ManifestEntry:
    payload = [(relative, (root / relative).read_bytes()) for relative in files]
    return ManifestEntry(
        content_fingerprint=content,
        artifact_fingerprint=artifact_fingerprint(payload),
        files=files,
    )


def test_content_fingerprint_covers_every_input() -> None:
    base = content_fingerprint(b"body")
    cited = parse_entry({"id": "foo", "type": "book", "title": "Foo"})
    upstream = UpstreamSummary(number=1, title="Base", status=Status.FINAL)

    assert content_fingerprint(b"body") == base
    assert content_fingerprint(b"body!") != base
    assert content_fingerprint(b"body", assets=[("assets/a.png", b"x")]) != base
    assert content_fingerprint(b"body", cited=[cited]) != base
    assert content_fingerprint(b"body", upstream=[upstream]) != base
    renamed = UpstreamSummary(number=1, title="Renamed", status=Status.FINAL)
    assert content_fingerprint(b"body", upstream=[renamed]) != content_fingerprint(b"body", upstream=[upstream])
    stamped = content_fingerprint(b"body", updated="2024-02-03T04:05:06+00:00")
    assert stamped != base
    assert stamped != content_fingerprint(b"body", updated="2024-02-03T04:05:07+00:00")


def test_content_fingerprint_ignores_input_order() -> None:
    assets = [("assets/a.png", b"a"), ("assets/b.png", b"b")]
    assert content_fingerprint(b"x", assets=assets) == content_fingerprint(b"x", assets=list(reversed(assets)))
    # Length framing keeps a path/data split from colliding with another split.
    assert content_fingerprint(b"x", assets=[("ab", b"c")]) != content_fingerprint(b"x", assets=[("a", b"bc")])


def test_write_artifact_replaces_atomically(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "page.md"

    write_artifact(target, "first")
    write_artifact(target, b"second")

    assert target.read_bytes() == b"second"
    assert sorted(path.name for path in target.parent.iterdir()) == ["page.md"]


def test_artifact_matches_detects_missing_and_tampered_files(tmp_path: Path) -> None:
    write_artifact(tmp_path / "1" / "index.md", "page")
    entry = _entry("c1", ["1/index.md"], tmp_path)

    assert artifact_matches(tmp_path, entry)
    (tmp_path / "1" / "index.md").write_text("edited", encoding="utf-8")
    assert not artifact_matches(tmp_path, entry)
    (tmp_path / "1" / "index.md").unlink()
    assert not artifact_matches(tmp_path, entry)
    assert not artifact_matches(tmp_path, ManifestEntry(content_fingerprint="c", artifact_fingerprint="a"))


def test_manifest_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "manifest.json"
    cache = BuildCache.open(path, settings=SETTINGS)
    assert len(cache) == 0

    cache.record(2, ManifestEntry(content_fingerprint="c2", artifact_fingerprint="a2", files=["2/index.md"]))
    cache.record(10, ManifestEntry(content_fingerprint="c10", artifact_fingerprint="a10"))
    cache.save()

    reopened = BuildCache.open(path, settings=SETTINGS)
    assert reopened.numbers() == (2, 10)
    assert reopened.entry(2).files == ["2/index.md"]
    assert list(reopened.payload()["entries"]) == ["2", "10"]


def test_changed_settings_discard_the_manifest(tmp_path: Path) -> None:
    path = tmp_path / "manifest.json"
    cache = BuildCache.open(path, settings=SETTINGS)
    cache.record(1, ManifestEntry(content_fingerprint="c", artifact_fingerprint="a"))
    cache.save()

    other = settings_fingerprint({"base_url": "https://example.org/docs/"})

    assert len(BuildCache.open(path, settings=other)) == 0


@pytest.mark.parametrize("text", ["{not json", "{\"entries\": []}"])
def test_corrupt_manifest_is_a_consistency_error(tmp_path: Path, text: str) -> None:
    path = tmp_path / "manifest.json"
    path.write_text(text, encoding="utf-8")

    with pytest.raises(CacheConsistencyError):
        BuildCache.open(path, settings=SETTINGS)


def test_plan_invalidates_transitive_dependents(tmp_path: Path) -> None:
    cache = BuildCache(tmp_path / "manifest.json", settings=SETTINGS)
    for number in (1, 2, 3):
        cache.record(number, ManifestEntry(content_fingerprint=f"c{number}", artifact_fingerprint="a"))
    graph = _graph((2, 1), (3, 2))

    plan = cache.plan({1: "changed", 2: "c2", 3: "c3"}, graph, lambda number, entry: True)

    assert plan.rebuild == (1, 2, 3)
    assert plan.invalidated == (2, 3)
    assert plan.reuse == ()


def test_plan_reuses_untouched_and_rebuilds_missing_artifacts(tmp_path: Path) -> None:
    cache = BuildCache(tmp_path / "manifest.json", settings=SETTINGS)
    for number in (1, 2):
        cache.record(number, ManifestEntry(content_fingerprint=f"c{number}", artifact_fingerprint="a"))
    graph = _graph()

    plan = cache.plan({1: "c1", 2: "c2", 3: "c3"}, graph, lambda number, entry: number != 2)

    assert plan.reuse == (1,)
    assert plan.rebuild == (2, 3)
    assert plan.invalidated == ()


def test_retain_and_forget(tmp_path: Path) -> None:
    cache = BuildCache(tmp_path / "manifest.json", settings=SETTINGS)
    for number in (1, 2, 3):
        cache.record(number, ManifestEntry(content_fingerprint="c", artifact_fingerprint="a"))

    cache.retain([1, 3])
    cache.forget(3)
    cache.forget(42)

    assert cache.numbers() == (1,)
