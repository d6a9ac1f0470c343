"""Read-only access to version-control history through the ``git`` CLI."""

from __future__ import annotations

import logging
import subprocess
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Callable, Sequence

from propsite.errors import HistoryError
from propsite.model import Status
from propsite.preamble import read_status

logger = logging.getLogger(__name__)

RunFn = Callable[..., "subprocess.CompletedProcess[str]"]


class GitHistory:
    """Previous committed statuses and changed-file listings.

    Outside a git work tree every query answers as if the repository had no
    history: every proposal counts as newly introduced.
    """

    def __init__(
        self,
        root: Path,
        *,
        revision: str = "HEAD",
        run_fn: RunFn = subprocess.run,
    ):
        self.root = root
        self.revision = revision
        self._run = run_fn
        self._available: bool | None = None

    def _git(self, args: Sequence[str]) -> "subprocess.CompletedProcess[str] | None":
        try:
            return self._run(
                ["git", *args],
                cwd=str(self.root),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            logger.debug("git unavailable: %s", exc)
            return None

    @property
    def available(self) -> bool:
        if self._available is None:
            completed = self._git(["rev-parse", "--verify", "--quiet", f"{self.revision}^{{commit}}"])
            self._available = completed is not None and completed.returncode == 0
            if not self._available:
                logger.debug("no git history at `%s` for `%s`", self.root, self.revision)
        return self._available

    def previous_text(self, path: PurePosixPath) -> str | None:
        if not self.available:
            return None
        completed = self._git(["show", f"{self.revision}:{path.as_posix()}"])
        if completed is None or completed.returncode != 0:
            return None
        return completed.stdout

    def previous_status(self, path: PurePosixPath) -> Status | None:
        text = self.previous_text(path)
        if text is None:
            return None
        return read_status(text)

    def last_modified(self, path: PurePosixPath) -> str | None:
        """Commit time of the last change to ``path`` as an RFC 3339 UTC timestamp."""
        if not self.available:
            return None
        completed = self._git(["log", "-1", "--format=%ct", self.revision, "--", path.as_posix()])
        if completed is None or completed.returncode != 0:
            return None
        stamp = completed.stdout.strip()
        if not stamp:
            return None
        try:
            seconds = int(stamp)
        except ValueError:
            logger.warning("ignoring unexpected commit time `%s` for `%s`", stamp, path)
            return None
        return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()

    def merge_base(self, upstream: str) -> str | None:
        completed = self._git(["merge-base", self.revision, upstream])
        if completed is None or completed.returncode != 0:
            return None
        return completed.stdout.strip() or None

    def changed_files(
        self,
        *,
        upstream: str | None,
        pathspec: Sequence[str] = (),
    ) -> tuple[str, ...]:
        """Repo-relative paths changed since the merge base with ``upstream``.

        Without an upstream every tracked path is listed.
        """
        if upstream is None:
            completed = self._git(["ls-files", "-z", "--", *pathspec])
        else:
            base = self.merge_base(upstream)
            if base is None:
                raise HistoryError(f"no merge base between `{self.revision}` and `{upstream}`")
            completed = self._git(["diff", "-z", "--name-only", "--diff-filter=d", base, "--", *pathspec])
        if completed is None or completed.returncode != 0:
            detail = completed.stderr.strip() if completed is not None and completed.stderr else "git failed"
            raise HistoryError(detail)
        return tuple(sorted(item for item in completed.stdout.split("\0") if item))
