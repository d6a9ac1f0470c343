from __future__ import annotations

from pathlib import Path, PurePosixPath

import pytest

from propsite.errors import HistoryError
from propsite.history import GitHistory
from propsite.model import Status
from tests.repo_helpers import FakeGit, proposal_text


def test_previous_status_reads_committed_preamble(tmp_path: Path) -> None:
    git = FakeGit({"content/00001.md": proposal_text(1, status="Last Call")})
    history = GitHistory(tmp_path, run_fn=git)

    assert history.previous_status(PurePosixPath("content/00001.md")) is Status.LAST_CALL
    assert history.previous_status(PurePosixPath("content/00002.md")) is None
    assert git.calls[1] == ["git", "show", "HEAD:content/00001.md"]


def test_without_history_every_proposal_is_new(tmp_path: Path) -> None:
    git = FakeGit()
    history = GitHistory(tmp_path, run_fn=git)

    assert history.previous_status(PurePosixPath("content/00001.md")) is None
    assert history.previous_status(PurePosixPath("content/00002.md")) is None
    assert [call[1] for call in git.calls] == ["rev-parse"]


def test_missing_git_binary_counts_as_no_history(tmp_path: Path) -> None:
    def missing(args, **kwargs):
        raise FileNotFoundError("git")

    assert GitHistory(tmp_path, run_fn=missing).previous_text(PurePosixPath("content/00001.md")) is None


def test_changed_files_since_merge_base(tmp_path: Path) -> None:
    git = FakeGit(diff=["content/00002.md", "content/00001.md"])

    changed = GitHistory(tmp_path, run_fn=git).changed_files(upstream="origin/master", pathspec=("content",))

    assert changed == ("content/00001.md", "content/00002.md")
    assert git.calls[0] == ["git", "merge-base", "HEAD", "origin/master"]
    assert git.calls[1][-3:] == ["abc123", "--", "content"]


def test_changed_files_lists_everything_without_upstream(tmp_path: Path) -> None:
    git = FakeGit(tracked=["content/00001.md"])

    assert GitHistory(tmp_path, run_fn=git).changed_files(upstream=None) == ("content/00001.md",)
    assert git.calls[0][:3] == ["git", "ls-files", "-z"]


def test_unrelated_upstream_is_a_history_error(tmp_path: Path) -> None:
    git = FakeGit(merge_base=None)

    with pytest.raises(HistoryError, match="no merge base"):
        GitHistory(tmp_path, run_fn=git).changed_files(upstream="origin/master")


def test_last_modified_is_the_commit_time_in_utc(tmp_path: Path) -> None:
    git = FakeGit(commit_times={"content/00001.md": 1_700_000_000})
    history = GitHistory(tmp_path, run_fn=git)

    assert history.last_modified(PurePosixPath("content/00001.md")) == "2023-11-14T22:13:20+00:00"
    assert history.last_modified(PurePosixPath("content/00002.md")) is None
    assert git.calls[1] == ["git", "log", "-1", "--format=%ct", "HEAD", "--", "content/00001.md"]


def test_last_modified_without_history(tmp_path: Path) -> None:
    assert GitHistory(tmp_path, run_fn=FakeGit()).last_modified(PurePosixPath("content/00001.md")) is None
