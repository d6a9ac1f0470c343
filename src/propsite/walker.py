"""Discovery of proposal files under a repository's content directory.

Recognised layouts (relative to the repository root)::

    content/00001.md
    content/00001/index.md      (with an optional content/00001/assets/ tree)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Iterator

from propsite.errors import DiscoveryError

logger = logging.getLogger(__name__)

INDEX_NAME = "index.md"
ASSETS_DIR = "assets"


@dataclass(frozen=True)
class ProposalCandidate:
    number: int
    path: Path
    bundle_dir: Path | None = None
    assets: tuple[str, ...] = ()
    error: str | None = None

    def asset_path(self, rel: str) -> Path:
        base = self.bundle_dir if self.bundle_dir is not None else self.path.parent
        return base / rel


def is_root(path: Path, *, content_dir: str = "content") -> bool:
    return (path / ".git").exists() and (path / content_dir).is_dir()


def find_root(start: Path, *, content_dir: str = "content") -> Path:
    """Walk up from ``start`` to the first directory holding `.git` and content."""
    try:
        current: Path | None = start.resolve()
    except OSError as exc:
        raise DiscoveryError(f"cannot resolve `{start}`: {exc}", path=start) from exc
    while current is not None:
        if is_root(current, content_dir=content_dir):
            return current
        parent = current.parent
        current = parent if parent != current else None
    raise DiscoveryError(
        f"could not find root directory (containing `.git` and `{content_dir}`)",
        path=start,
    )


def parse_number(name: str) -> int | None:
    if not (name.isascii() and name.isdigit()):
        return None
    value = int(name)
    return value if value > 0 else None


def is_proposal_path(path: PurePath, *, content_dir: str = "content") -> bool:
    """True for ``content/NNNNN.md`` and ``content/NNNNN/index.md``."""
    parts = path.parts
    if len(parts) == 2 and parts[0] == content_dir:
        name = PurePath(parts[1])
        return name.suffix == ".md" and parse_number(name.stem) is not None
    if len(parts) == 3 and parts[0] == content_dir and parts[2] == INDEX_NAME:
        return parse_number(parts[1]) is not None
    return False


def _list_assets(bundle_dir: Path) -> tuple[str, ...]:
    assets_dir = bundle_dir / ASSETS_DIR
    if not assets_dir.is_dir():
        return ()
    found: list[str] = []
    for dirpath, dirnames, filenames in os.walk(assets_dir, onerror=_raise_walk_error, followlinks=True):
        dirnames.sort()
        for filename in filenames:
            full = Path(dirpath) / filename
            found.append(full.relative_to(bundle_dir).as_posix())
    return tuple(sorted(found))


def _raise_walk_error(exc: OSError) -> None:
    raise exc


class RepositoryWalker:
    """Lazy, restartable sequence of proposal candidates.

    Every call to ``iter()`` rescans the content directory, so a walker can be
    reused across runs against a changing tree.
    """

    def __init__(self, root: Path, *, content_dir: str = "content"):
        self.root = root
        self.content_dir = content_dir

    @property
    def content_path(self) -> Path:
        return self.root / self.content_dir

    def __iter__(self) -> Iterator[ProposalCandidate]:
        return self._walk()

    def _entries(self) -> list[os.DirEntry[str]]:
        if not self.root.is_dir():
            raise DiscoveryError(f"repository root `{self.root}` is not accessible", path=self.root)
        try:
            with os.scandir(self.content_path) as scanner:
                return list(scanner)
        except OSError as exc:
            raise DiscoveryError(
                f"could not read content directory `{self.content_path}`: {exc.strerror or exc}",
                path=self.content_path,
            ) from exc

    def _walk(self) -> Iterator[ProposalCandidate]:
        candidates: list[ProposalCandidate] = []
        for entry in self._entries():
            candidate = self._candidate(entry)
            if candidate is not None:
                candidates.append(candidate)
        candidates.sort(key=lambda item: (item.number, item.path.as_posix()))
        logger.debug("discovered %d proposal(s) under `%s`", len(candidates), self.content_path)
        yield from candidates

    def _candidate(self, entry: os.DirEntry[str]) -> ProposalCandidate | None:
        path = Path(entry.path)
        try:
            is_dir = entry.is_dir()
        except OSError as exc:
            number = parse_number(path.stem)
            if number is None:
                return None
            return ProposalCandidate(number=number, path=path, error=str(exc))

        if not is_dir:
            if path.suffix != ".md":
                return None
            number = parse_number(path.stem)
            if number is None:
                logger.debug("skipping non-proposal file `%s`", path)
                return None
            return ProposalCandidate(number=number, path=path)

        number = parse_number(path.name)
        if number is None:
            logger.debug("skipping non-proposal directory `%s`", path)
            return None
        index = path / INDEX_NAME
        try:
            if not index.is_file():
                logger.debug("skipping `%s` (no %s)", path, INDEX_NAME)
                return None
            assets = _list_assets(path)
        except OSError as exc:
            return ProposalCandidate(
                number=number,
                path=index,
                bundle_dir=path,
                error=f"could not read `{exc.filename or path}`: {exc.strerror or exc}",
            )
        return ProposalCandidate(number=number, path=index, bundle_dir=path, assets=assets)
