"""Incremental build cache.

The manifest maps proposal numbers to the fingerprint of the inputs that
produced an artifact and the fingerprint of the files written for it. An
entry is recorded only after its files are durably in place, so an
interrupted run can never leave a manifest that vouches for a missing or
partial artifact.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping

from pydantic import BaseModel, ConfigDict, ValidationError

from propsite.bibliography import BibliographyEntry
from propsite.errors import CacheConsistencyError
from propsite.graph import ReferenceGraph, UpstreamSummary
from propsite.runtime.json_io import dump_json_pretty
from propsite.runtime.stable_encode import stable_compact_bytes

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
MANIFEST_VERSION = 1


class ManifestEntry(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    content_fingerprint: str
    artifact_fingerprint: str
    built_at: str = ""
    files: List[str] = []


class Manifest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: int = MANIFEST_VERSION
    settings: str = ""
    entries: Dict[str, ManifestEntry] = {}


def _frame(digest: "hashlib._Hash", tag: bytes, payload: bytes) -> None:
    digest.update(tag)
    digest.update(len(payload).to_bytes(8, "big"))
    digest.update(payload)


def content_fingerprint(
    raw: bytes,
    *,
    assets: Iterable[tuple[str, bytes]] = (),
    cited: Iterable[BibliographyEntry] = (),
    upstream: Iterable[UpstreamSummary] = (),
    updated: str | None = None,
) -> str:
    """SHA3-256 over everything that can change a proposal's artifact."""
    digest = hashlib.sha3_256()
    _frame(digest, b"source", raw)
    if updated is not None:
        _frame(digest, b"updated", updated.encode("utf-8"))
    for relative, data in sorted(assets, key=lambda item: item[0]):
        _frame(digest, b"asset-path", relative.encode("utf-8"))
        _frame(digest, b"asset-data", data)
    for entry in sorted(cited, key=lambda item: item.id):
        _frame(digest, b"citation", entry.canonical_bytes())
    for summary in sorted(upstream, key=lambda item: item.number):
        _frame(digest, b"upstream", stable_compact_bytes(summary.as_dict()))
    return digest.hexdigest()


def artifact_fingerprint(files: Iterable[tuple[str, bytes]]) -> str:
    digest = hashlib.sha3_256()
    for relative, data in sorted(files, key=lambda item: item[0]):
        _frame(digest, b"file-path", relative.encode("utf-8"))
        _frame(digest, b"file-data", data)
    return digest.hexdigest()


def settings_fingerprint(settings: Mapping[str, object]) -> str:
    payload = {"manifest_version": MANIFEST_VERSION, "settings": dict(settings)}
    return hashlib.sha3_256(stable_compact_bytes(payload)).hexdigest()


def write_artifact(target: Path, data: bytes | str) -> None:
    """Write ``data`` to ``target`` atomically (temp file, fsync, ``os.replace``)."""
    payload = data.encode("utf-8") if isinstance(data, str) else data
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, str(target))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def artifact_matches(content_root: Path, entry: ManifestEntry) -> bool:
    """True when every recorded file exists and hashes to the recorded value."""
    if not entry.files:
        return False
    files: list[tuple[str, bytes]] = []
    for relative in entry.files:
        try:
            files.append((relative, (content_root / relative).read_bytes()))
        except OSError:
            return False
    return artifact_fingerprint(files) == entry.artifact_fingerprint


@dataclass(frozen=True)
class CachePlan:
    reuse: tuple[int, ...] = ()
    rebuild: tuple[int, ...] = ()
    invalidated: tuple[int, ...] = ()


class BuildCache:
    """Owner of the on-disk manifest; entries change only via ``record``."""

    def __init__(self, path: Path, *, settings: str, manifest: Manifest | None = None):
        self.path = path
        self.settings = settings
        self._manifest = manifest if manifest is not None else Manifest(settings=settings)
        self._lock = threading.Lock()

    @classmethod
    def open(cls, path: Path, *, settings: str) -> "BuildCache":
        """Load the manifest; raises ``CacheConsistencyError`` when it is unreadable."""
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return cls(path, settings=settings)
        except OSError as exc:
            raise CacheConsistencyError(f"could not read manifest `{path}`: {exc}") from exc
        try:
            manifest = Manifest.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise CacheConsistencyError(f"manifest `{path}` is corrupt: {exc}") from exc
        if manifest.version != MANIFEST_VERSION or manifest.settings != settings:
            logger.info("build settings changed since the last run; rebuilding everything")
            return cls(path, settings=settings)
        return cls(path, settings=settings, manifest=manifest)

    def __len__(self) -> int:
        return len(self._manifest.entries)

    def entry(self, number: int) -> ManifestEntry | None:
        return self._manifest.entries.get(str(number))

    def numbers(self) -> tuple[int, ...]:
        return tuple(sorted(int(key) for key in self._manifest.entries))

    def plan(
        self,
        fingerprints: Mapping[int, str],
        graph: ReferenceGraph,
        artifact_ok: Callable[[int, ManifestEntry], bool],
    ) -> CachePlan:
        changed: set[int] = set()
        for number, fingerprint in fingerprints.items():
            entry = self.entry(number)
            if entry is None or entry.content_fingerprint != fingerprint or not artifact_ok(number, entry):
                changed.add(number)
        invalidated = (graph.transitive_dependents(changed) & set(fingerprints)) - changed
        rebuild = changed | invalidated
        reuse = set(fingerprints) - rebuild
        return CachePlan(
            reuse=tuple(sorted(reuse)),
            rebuild=tuple(sorted(rebuild)),
            invalidated=tuple(sorted(invalidated)),
        )

    def record(self, number: int, entry: ManifestEntry) -> None:
        with self._lock:
            self._manifest.entries[str(number)] = entry

    def forget(self, number: int) -> None:
        with self._lock:
            self._manifest.entries.pop(str(number), None)

    def retain(self, numbers: Iterable[int]) -> None:
        keep = {str(number) for number in numbers}
        with self._lock:
            for key in [key for key in self._manifest.entries if key not in keep]:
                del self._manifest.entries[key]

    def payload(self) -> dict[str, object]:
        with self._lock:
            return {
                "version": MANIFEST_VERSION,
                "settings": self.settings,
                "entries": {
                    key: entry.model_dump()
                    for key, entry in sorted(self._manifest.entries.items(), key=lambda item: int(item[0]))
                },
            }

    def save(self) -> None:
        write_artifact(self.path, dump_json_pretty(self.payload()) + "\n")
