from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
for entry in (ROOT / "src", ROOT):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))


import pytest

from propsite.config import BuildConfig
from propsite.history import GitHistory
from propsite.orchestrator import BuildOrchestrator
from propsite.renderer import Renderer
from tests.repo_helpers import FakeGit, FakeStyle, FakeZola, RepoBuilder


@pytest.fixture
def repo(tmp_path: Path) -> RepoBuilder:
    return RepoBuilder(tmp_path / "repo")


@pytest.fixture
def fake_zola() -> FakeZola:
    return FakeZola()


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture
def fake_style() -> FakeStyle:
    return FakeStyle()


@pytest.fixture
def make_orchestrator(repo: RepoBuilder, fake_zola: FakeZola, fake_git: FakeGit, fake_style: FakeStyle):
    def _make(config: BuildConfig | None = None, **overrides: object) -> BuildOrchestrator:
        resolved = config if config is not None else BuildConfig(**overrides)  # type: ignore[arg-type]
        return BuildOrchestrator(
            repo.root,
            resolved,
            renderer=Renderer(resolved.renderer, run_fn=fake_zola),
            history=GitHistory(repo.root, run_fn=fake_git),
            style_factory=lambda name: fake_style,
        )

    return _make
