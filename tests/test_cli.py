from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import typer
from typer.testing import CliRunner

from propsite import cli
from propsite.config import BuildConfig
from propsite.errors import HistoryError
from propsite.history import GitHistory
from propsite.lock import ProcessLock
from propsite.orchestrator import BuildOrchestrator
from propsite.renderer import Renderer
from tests.repo_helpers import FakeGit, FakeStyle, FakeZola


def _obj(zola: FakeZola, git: FakeGit | None = None, seen: list[BuildConfig] | None = None) -> dict[str, object]:
    def factory(root: Path, config: BuildConfig) -> BuildOrchestrator:
        if seen is not None:
            seen.append(config)
        return BuildOrchestrator(
            root,
            config,
            renderer=Renderer(config.renderer, run_fn=zola),
            history=GitHistory(root, run_fn=git or FakeGit()),
            style_factory=lambda name: FakeStyle(),
        )

    return {"orchestrator_factory": factory}


def _invoke(args: list[str], *, obj: dict[str, object]):
    return CliRunner().invoke(cli.app, [*args, "--log-level", "ERROR"], obj=obj)


def test_check_clean_repository_exits_zero(repo, fake_zola) -> None:
    repo.proposal(1)

    result = _invoke(["check", "--root", str(repo.root)], obj=_obj(fake_zola))

    assert result.exit_code == cli.EXIT_OK
    assert "0 errors, 0 warnings" in result.output
    assert fake_zola.calls == []


def test_check_reports_errors_as_json(repo, fake_zola) -> None:
    repo.proposal(1, requires=(999,))

    result = _invoke(["check", "--root", str(repo.root), "--format", "json"], obj=_obj(fake_zola))

    assert result.exit_code == cli.EXIT_DIAGNOSTICS
    payload = json.loads(result.output)
    assert payload["errors"] == 1
    assert payload["diagnostics"][0]["rule"] == "requires-exists"
    assert payload["diagnostics"][0]["path"] == "content/00001.md"


def test_check_finds_root_from_a_subdirectory(repo, fake_zola) -> None:
    repo.proposal(1)

    result = _invoke(["check", "--root", str(repo.content)], obj=_obj(fake_zola))

    assert result.exit_code == cli.EXIT_OK


def test_unknown_format_is_a_usage_error(repo, fake_zola) -> None:
    result = _invoke(["check", "--root", str(repo.root), "--format", "xml"], obj=_obj(fake_zola))

    assert result.exit_code == 2
    assert "--format" in result.output


def test_build_summarises_and_renders(repo, fake_zola) -> None:
    repo.proposal(1)
    repo.proposal(2, requires=(1,))

    result = _invoke(["build", "--root", str(repo.root), "--workers", "2"], obj=_obj(fake_zola))

    assert result.exit_code == cli.EXIT_OK
    assert "built 2, reused 0, failed 0, skipped 0" in result.output
    assert (repo.root / "build" / "site" / "content" / "2" / "index.md").is_file()
    assert fake_zola.commands("build")


def test_build_with_diagnostics_exits_one(repo, fake_zola) -> None:
    repo.proposal(1, requires=(999,))

    result = _invoke(["build", "--root", str(repo.root)], obj=_obj(fake_zola))

    assert result.exit_code == cli.EXIT_DIAGNOSTICS
    assert "error[requires-exists]" in result.output
    assert (repo.root / "build" / "site" / "content" / "1" / "index.md").is_file()


def test_renderer_failure_is_fatal(repo) -> None:
    repo.proposal(1)
    zola = FakeZola(build_returncode=1, build_stderr="Error: template missing\n")

    result = _invoke(["build", "--root", str(repo.root)], obj=_obj(zola))

    assert result.exit_code == cli.EXIT_FATAL
    assert "template missing" in result.output


def test_renderer_failure_still_reports_diagnostics(repo) -> None:
    repo.proposal(3, requires=(999,))
    zola = FakeZola(build_returncode=1, build_stderr="Error: boom\n")

    result = _invoke(["build", "--root", str(repo.root)], obj=_obj(zola))

    assert result.exit_code == cli.EXIT_FATAL
    assert "content/00003.md:9:11: error[requires-exists]" in result.output
    assert "zola exited with status 1" in result.output
    assert "boom" in result.output


def test_held_lock_is_fatal(repo, fake_zola) -> None:
    repo.proposal(1)

    with ProcessLock(repo.root / "build" / ".lock"):
        result = _invoke(["build", "--root", str(repo.root)], obj=_obj(fake_zola))

    assert result.exit_code == cli.EXIT_FATAL
    assert "another build is in progress" in result.output


def test_missing_root_is_fatal(tmp_path, fake_zola) -> None:
    result = _invoke(["check", "--root", str(tmp_path)], obj=_obj(fake_zola))

    assert result.exit_code == cli.EXIT_FATAL
    assert "could not find root directory" in result.output


def test_config_file_and_flags_are_merged(repo, fake_zola) -> None:
    repo.proposal(1)
    repo.config('[build]\nworkers = 3\nlock_wait = 1.5\n\n[site]\ntitle = "Improvement Proposals"\n')
    seen: list[BuildConfig] = []

    result = _invoke(
        ["check", "--root", str(repo.root), "--workers", "7"],
        obj=_obj(fake_zola, seen=seen),
    )

    assert result.exit_code == cli.EXIT_OK
    [config] = seen
    assert config.workers == 7
    assert config.lock_wait == 1.5
    assert config.site.title == "Improvement Proposals"


def test_serve_builds_then_hands_off(repo) -> None:
    repo.proposal(1)
    zola = FakeZola(serve_returncode=0)

    result = _invoke(["serve", "--root", str(repo.root)], obj=_obj(zola))

    assert result.exit_code == cli.EXIT_OK
    assert zola.commands("build")
    [serve_call] = zola.commands("serve")
    assert serve_call[-2:] == ["-o", str(repo.root / "build" / "output")]


def test_clean_lists_removed_entries(repo, fake_zola) -> None:
    repo.proposal(1)
    obj = _obj(fake_zola)
    _invoke(["build", "--root", str(repo.root)], obj=obj)

    result = _invoke(["clean", "--root", str(repo.root)], obj=obj)

    assert result.exit_code == cli.EXIT_OK
    assert result.output.splitlines() == ["manifest.json", "output", "site"]


def test_changed_lists_only_proposals_unless_all(repo, fake_zola) -> None:
    repo.proposal(1)
    git = FakeGit(tracked=["README.md", "content/00001.md", "content/00002/assets/a.png", "content/00002/index.md"])
    obj = _obj(fake_zola, git)

    proposals = _invoke(["changed", "--root", str(repo.root)], obj=obj)
    everything = _invoke(["changed", "--root", str(repo.root), "--all"], obj=obj)

    assert proposals.exit_code == cli.EXIT_OK
    assert proposals.output.splitlines() == ["content/00001.md", "content/00002/index.md"]
    assert everything.output.splitlines() == [
        "README.md",
        "content/00001.md",
        "content/00002/assets/a.png",
        "content/00002/index.md",
    ]


def test_changed_output_formats(repo, fake_zola) -> None:
    repo.proposal(1)
    git = FakeGit(tracked=["content/00001.md", "content/00002.md"])
    obj = _obj(fake_zola, git)

    nul = _invoke(["changed", "--root", str(repo.root), "--format", "nul"], obj=obj)
    as_json = _invoke(["changed", "--root", str(repo.root), "--format", "json"], obj=obj)
    bogus = _invoke(["changed", "--root", str(repo.root), "--format", "csv"], obj=obj)

    assert nul.output == "content/00001.md\0content/00002.md\0"
    assert json.loads(as_json.output) == ["content/00001.md", "content/00002.md"]
    assert bogus.exit_code == 2


def test_changed_refuses_paths_containing_the_separator() -> None:
    assert cli.format_changed([], fmt="newline") == ""
    with pytest.raises(HistoryError):
        cli.format_changed(["content/bad\nname.md"], fmt="newline")
    assert cli.format_changed(["content/bad\nname.md"], fmt="nul") == "content/bad\nname.md\0"


def test_lints_lists_every_rule() -> None:
    result = CliRunner().invoke(cli.app, ["lints"])

    assert result.exit_code == cli.EXIT_OK
    assert "requires-exists" in result.output
    assert "preamble-order" in result.output


def test_configure_logging_rejects_unknown_levels() -> None:
    with pytest.raises(typer.BadParameter):
        cli.configure_logging("chatty")
    cli.configure_logging(None, environ={"PROPSITE_LOG_LEVEL": "debug"})
    assert logging.getLogger().level == logging.DEBUG
    cli.configure_logging("warning")
