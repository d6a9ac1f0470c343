"""Drives the pipeline for ``check``, ``build`` and serve preparation.

Parallel stages (parse, lint, fingerprint, transform/write) run on a bounded
thread pool; graph building and cache planning are single-threaded barriers.
Every mutation of the build directory happens under the process lock.
"""

from __future__ import annotations

import concurrent.futures
import hashlib
import json
import logging
import os
import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, Sequence, TypeVar

from propsite.bibliography import (
    BibliographyEntry,
    BibliographyStore,
    CitationStyle,
    CslStyle,
    ResolvedCitations,
    resolve_citations,
)
from propsite.cache import (
    MANIFEST_NAME,
    BuildCache,
    CachePlan,
    ManifestEntry,
    artifact_fingerprint,
    artifact_matches,
    content_fingerprint,
    settings_fingerprint,
    write_artifact,
)
from propsite.config import BuildConfig
from propsite.errors import CacheConsistencyError, CitationError, RendererError, TransformError
from propsite.graph import ReferenceGraph, build_graph, repo_relative
from propsite.history import GitHistory
from propsite.lint import LintEngine, LintSubject
from propsite.lock import LOCK_NAME, ProcessLock
from propsite.model import Diagnostic, DiagnosticReport, ErrorKind, Severity, SourceSpan
from propsite.preamble import ParsedProposal, load_proposal
from propsite.renderer import Renderer, ServeHandoff
from propsite.transform import (
    INDEX_TARGET,
    UrlScheme,
    render_artifact,
    section_index,
    transform,
)
from propsite.walker import RepositoryWalker, is_proposal_path

logger = logging.getLogger(__name__)

SITE_DIR = "site"
OUTPUT_DIR = "output"
TRANSFORM_RULE = "transform-failed"

_T = TypeVar("_T")
_R = TypeVar("_R")


def _utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


@dataclass(frozen=True)
class BuildResult:
    output_dir: Path
    rebuilt: tuple[int, ...] = ()
    reused: tuple[int, ...] = ()
    failed: tuple[int, ...] = ()
    skipped: tuple[int, ...] = ()
    artifacts: tuple[str, ...] = ()
    renderer_invoked: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.failed


@dataclass(frozen=True)
class Analysis:
    parsed: tuple[ParsedProposal, ...]
    subjects: tuple[LintSubject, ...]
    graph: ReferenceGraph
    bibliography: BibliographyStore
    report: DiagnosticReport


@dataclass(frozen=True)
class BuildInputs:
    number: int
    subject: LintSubject
    resolved: ResolvedCitations
    fingerprint: str
    updated: str | None = None
    asset_bytes: tuple[tuple[str, bytes], ...] = ()
    asset_texts: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class _Outcome:
    number: int
    files: tuple[str, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.diagnostics


def _run_parallel(
    executor: concurrent.futures.Executor,
    fn: Callable[[_T], _R],
    items: Sequence[_T],
) -> list[_R]:
    """Map ``fn`` over ``items`` keeping input order; interrupts cancel pending work."""
    futures = [executor.submit(fn, item) for item in items]
    try:
        return [future.result() for future in futures]
    except BaseException:
        for future in futures:
            future.cancel()
        raise


class BuildOrchestrator:
    def __init__(
        self,
        root: Path,
        config: BuildConfig,
        *,
        renderer: Renderer | None = None,
        history: GitHistory | None = None,
        style_factory: Callable[[str], CitationStyle] | None = None,
        now_fn: Callable[[], str] = _utc_now,
    ):
        self.root = root
        self.config = config
        self.renderer = renderer if renderer is not None else Renderer(config.renderer)
        self.history = history if history is not None else GitHistory(root, revision=config.history_revision)
        self._style_factory = style_factory or (lambda name: CslStyle.load(name, root=root))
        self._now = now_fn
        self.engine = LintEngine(config=config.lint)
        self.scheme = UrlScheme(config.site.base_path)

    @property
    def build_path(self) -> Path:
        return self.config.build_path(self.root)

    @property
    def site_path(self) -> Path:
        return self.build_path / SITE_DIR

    @property
    def content_out(self) -> Path:
        return self.site_path / "content"

    @property
    def manifest_path(self) -> Path:
        return self.build_path / MANIFEST_NAME

    def lock(self) -> ProcessLock:
        return ProcessLock(self.build_path / LOCK_NAME, wait=self.config.lock_wait)

    def _executor(self) -> concurrent.futures.ThreadPoolExecutor:
        return concurrent.futures.ThreadPoolExecutor(
            max_workers=self.config.workers,
            thread_name_prefix="propsite",
        )

    def _load_bibliography(self) -> BibliographyStore:
        path = self.config.bibliography_path(self.root)
        try:
            return BibliographyStore.load(path)
        except CitationError as exc:
            if self.config.bibliography.required:
                raise
            logger.warning("ignoring bibliography: %s", exc)
            return BibliographyStore.unavailable(path)

    def _subject(self, parsed: ParsedProposal) -> LintSubject:
        source = repo_relative(parsed.candidate.path, self.root)
        previous = self.history.previous_status(source) if parsed.proposal is not None else None
        return LintSubject(
            parsed=parsed,
            source=source,
            previous_status=previous,
            content_dir=self.config.content_dir,
        )

    def analyze(self, executor: concurrent.futures.Executor) -> Analysis:
        walker = RepositoryWalker(self.root, content_dir=self.config.content_dir)
        candidates = list(walker)
        parsed = _run_parallel(executor, load_proposal, candidates)
        graph = build_graph(parsed, root=self.root, content_dir=self.config.content_dir)
        bibliography = self._load_bibliography()
        subjects = _run_parallel(executor, self._subject, parsed)
        report = self.engine.run(subjects, graph, bibliography, executor=executor)
        logger.info(
            "checked %d proposal(s): %d error(s), %d warning(s)",
            len(parsed),
            report.error_count,
            report.warning_count,
        )
        return Analysis(
            parsed=tuple(parsed),
            subjects=tuple(subjects),
            graph=graph,
            bibliography=bibliography,
            report=report,
        )

    def check(self, *, lock: bool = False) -> DiagnosticReport:
        """Discovery, parse, graph and lint only; writes nothing."""
        if lock:
            with self.lock():
                return self._check()
        return self._check()

    def _check(self) -> DiagnosticReport:
        executor = self._executor()
        try:
            return self.analyze(executor).report
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    def build(self, output_dir: Path | None = None) -> tuple[DiagnosticReport, BuildResult]:
        with self.lock():
            return self._build(output_dir)

    def prepare_serve(
        self,
        output_dir: Path | None = None,
    ) -> tuple[DiagnosticReport, BuildResult, ServeHandoff]:
        report, result = self.build(output_dir)
        handoff = self.renderer.serve_handoff(self.site_path, result.output_dir)
        return report, result, handoff

    def clean(self) -> tuple[str, ...]:
        """Remove everything under the build directory except the lock file."""
        removed: list[str] = []
        if not self.build_path.exists():
            return ()
        with self.lock():
            for entry in sorted(self.build_path.iterdir()):
                if entry.name == LOCK_NAME:
                    continue
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
                removed.append(entry.name)
        logger.info("removed %d entr%s from `%s`", len(removed), "y" if len(removed) == 1 else "ies", self.build_path)
        return tuple(removed)

    def changed(self, *, all_files: bool = False) -> tuple[str, ...]:
        """Changed proposal files; with ``all_files`` every changed path in the repository."""
        if all_files:
            return self.history.changed_files(upstream=self.config.upstream)
        paths = self.history.changed_files(
            upstream=self.config.upstream,
            pathspec=(self.config.content_dir,),
        )
        return tuple(
            path for path in paths if is_proposal_path(PurePosixPath(path), content_dir=self.config.content_dir)
        )

    def _settings(self) -> str:
        settings = dict(self.config.settings_payload())
        style_path = Path(self.config.bibliography.style)
        if style_path.suffix == ".csl":
            target = style_path if style_path.is_absolute() else self.root / style_path
            try:
                settings["style_digest"] = hashlib.sha3_256(target.read_bytes()).hexdigest()
            except OSError:
                settings["style_digest"] = None
        return settings_fingerprint(settings)

    def _open_cache(self) -> BuildCache:
        settings = self._settings()
        try:
            return BuildCache.open(self.manifest_path, settings=settings)
        except CacheConsistencyError as exc:
            logger.warning("%s; rebuilding everything", exc)
            return BuildCache(self.manifest_path, settings=settings)

    def _inputs(self, subject: LintSubject, graph: ReferenceGraph, bibliography: BibliographyStore) -> BuildInputs | _Outcome:
        parsed = subject.parsed
        proposal = parsed.proposal
        if proposal is None:
            return _Outcome(
                number=subject.number,
                diagnostics=(self._failure(subject, "proposal has no usable preamble"),),
            )
        candidate = parsed.candidate
        asset_bytes: list[tuple[str, bytes]] = []
        asset_texts: dict[str, str] = {}
        try:
            for relative in candidate.assets:
                data = candidate.asset_path(relative).read_bytes()
                asset_bytes.append((relative, data))
                if relative.endswith(".md"):
                    asset_texts[relative] = data.decode("utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return _Outcome(
                number=proposal.number,
                diagnostics=(self._failure(subject, f"could not read asset: {exc}"),),
            )
        resolved = resolve_citations(
            parsed.document,
            bibliography,
            path=candidate.path,
            number=candidate.number,
        )
        upstream = [
            summary
            for summary in (graph.summary(number) for number in graph.upstream_of(proposal.number))
            if summary is not None
        ]
        updated = self.history.last_modified(subject.source)
        fingerprint = content_fingerprint(
            parsed.raw,
            assets=asset_bytes,
            cited=resolved.cited_entries(),
            upstream=upstream,
            updated=updated,
        )
        return BuildInputs(
            number=proposal.number,
            subject=subject,
            resolved=resolved,
            fingerprint=fingerprint,
            updated=updated,
            asset_bytes=tuple(asset_bytes),
            asset_texts=asset_texts,
        )

    def _failure(self, subject: LintSubject, message: str) -> Diagnostic:
        return Diagnostic(
            severity=Severity.ERROR,
            rule=TRANSFORM_RULE,
            message=message,
            path=subject.parsed.candidate.path,
            number=subject.number,
            span=SourceSpan(),
            kind=ErrorKind.TRANSFORM,
        )

    def _produce(
        self,
        inputs: BuildInputs,
        *,
        graph: ReferenceGraph,
        style: CitationStyle,
        cache: BuildCache,
    ) -> _Outcome:
        subject = inputs.subject
        try:
            artifact = transform(
                subject.parsed,
                source=subject.source,
                graph=graph,
                scheme=self.scheme,
                site=self.config.site,
                resolved=inputs.resolved,
                style=style,
                content_dir=self.config.content_dir,
                asset_texts=inputs.asset_texts,
                updated=inputs.updated,
            )
        except TransformError as exc:
            cache.forget(inputs.number)
            return _Outcome(number=inputs.number, diagnostics=(self._failure(subject, str(exc)),))
        previous = cache.entry(inputs.number)

        files: list[tuple[str, bytes]] = [(artifact.target, render_artifact(artifact).encode("utf-8"))]
        files.extend((page.target, render_artifact(page).encode("utf-8")) for page in artifact.pages)
        by_relative = dict(inputs.asset_bytes)
        number_prefix = f"{artifact.number}/"
        for copy in artifact.assets:
            files.append((copy.target, by_relative[copy.target[len(number_prefix) :]]))
        try:
            for target, data in files:
                write_artifact(self.content_out / target, data)
        except OSError as exc:
            cache.forget(inputs.number)
            return _Outcome(
                number=inputs.number,
                diagnostics=(self._failure(subject, f"could not write artifact: {exc}"),),
            )
        if previous is not None:
            self._remove_stale(inputs.number, previous.files, keep={target for target, _ in files})
        cache.record(
            inputs.number,
            ManifestEntry(
                content_fingerprint=inputs.fingerprint,
                artifact_fingerprint=artifact_fingerprint(files),
                built_at=self._now(),
                files=[target for target, _ in files],
            ),
        )
        return _Outcome(number=inputs.number, files=tuple(target for target, _ in files))

    def _remove_stale(self, number: int, files: Iterable[str], *, keep: set[str]) -> None:
        """Delete files an earlier build wrote for ``number`` that the new artifact no longer has."""
        bundle = self.content_out / str(number)
        for relative in sorted(set(files) - keep):
            target = self.content_out / relative
            try:
                target.unlink()
            except FileNotFoundError:
                continue
            logger.debug("removed stale file `%s`", relative)
            parent = target.parent
            while parent != bundle and bundle in parent.parents and not any(parent.iterdir()):
                parent.rmdir()
                parent = parent.parent

    def _prepare_site(self) -> None:
        self.content_out.mkdir(parents=True, exist_ok=True)
        write_artifact(self.content_out / INDEX_TARGET, section_index(self.config.site))
        theme = self.config.site.theme
        if theme is not None:
            themes = self.site_path / "themes"
            themes.mkdir(parents=True, exist_ok=True)
            link = themes / theme.name
            if link.is_symlink() or link.exists():
                if link.is_dir() and not link.is_symlink():
                    shutil.rmtree(link)
                else:
                    link.unlink()
            os.symlink(theme.resolve(), link, target_is_directory=True)
        if self.config.renderer.config is None:
            write_artifact(self.site_path / "config.toml", self._site_config())

    def _site_config(self) -> str:
        site = self.config.site
        lines = [
            f"base_url = {json.dumps(site.base_url)}",
            f"title = {json.dumps(site.title)}",
            "compile_sass = false",
            "build_search_index = false",
        ]
        if site.theme is not None:
            lines.append(f"theme = {json.dumps(site.theme.name)}")
        lines.append('taxonomies = [{ name = "status" }, { name = "kind" }, { name = "category" }]')
        return "\n".join(lines) + "\n"

    def _prune(self, stale: Iterable[int]) -> None:
        for number in stale:
            target = self.content_out / str(number)
            if target.is_dir():
                shutil.rmtree(target)
                logger.debug("removed stale output for proposal %d", number)

    def _build(self, output_dir: Path | None) -> tuple[DiagnosticReport, BuildResult]:
        output = output_dir if output_dir is not None else self.build_path / OUTPUT_DIR
        executor = self._executor()
        try:
            analysis = self.analyze(executor)
            graph = analysis.graph
            buildable: list[LintSubject] = []
            skipped: set[int] = set()
            for subject in analysis.subjects:
                proposal = subject.proposal
                if subject.parsed.schema_valid and proposal is not None and graph.proposal(proposal.number) is proposal:
                    buildable.append(subject)
                else:
                    skipped.add(subject.number)
            prepared = _run_parallel(
                executor,
                lambda subject: self._inputs(subject, graph, analysis.bibliography),
                buildable,
            )
            failures = [item for item in prepared if isinstance(item, _Outcome)]
            inputs = [item for item in prepared if isinstance(item, BuildInputs)]

            cache = self._open_cache()
            previous = set(cache.numbers())
            plan: CachePlan = cache.plan(
                {item.number: item.fingerprint for item in inputs},
                graph,
                lambda number, entry: artifact_matches(self.content_out, entry),
            )
            logger.info(
                "%d proposal(s) to rebuild (%d invalidated by dependencies), %d reused",
                len(plan.rebuild),
                len(plan.invalidated),
                len(plan.reuse),
            )
            to_build = [item for item in inputs if item.number in set(plan.rebuild)]
            style = _LazyStyle(self.config.bibliography.style, self._style_factory)

            current = {item.number for item in inputs}
            try:
                self._prepare_site()
                outcomes = _run_parallel(
                    executor,
                    lambda item: self._produce(item, graph=graph, style=style, cache=cache),
                    to_build,
                )
            finally:
                cache.retain(current)
                cache.save()
            self._prune(previous - current)
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        outcomes = [*failures, *outcomes]
        failed = sorted(item.number for item in outcomes if not item.ok)
        rebuilt = sorted(item.number for item in outcomes if item.ok)
        build_report = DiagnosticReport.collect(
            diagnostic for item in outcomes for diagnostic in item.diagnostics
        )
        report = analysis.report.merge(build_report)

        artifacts: list[str] = []
        for number in sorted(current):
            entry = cache.entry(number)
            if entry is not None:
                artifacts.extend(entry.files)

        try:
            self.renderer.build(self.site_path, output, base_url=self.config.site.base_url)
        except RendererError as exc:
            exc.report = report
            raise
        result = BuildResult(
            output_dir=output,
            rebuilt=tuple(rebuilt),
            reused=plan.reuse,
            failed=tuple(failed),
            skipped=tuple(sorted(skipped)),
            artifacts=tuple(artifacts),
            renderer_invoked=True,
        )
        logger.info(
            "build finished: %d rebuilt, %d reused, %d failed, %d skipped",
            len(result.rebuilt),
            len(result.reused),
            len(result.failed),
            len(result.skipped),
        )
        return report, result


class _LazyStyle:
    """Loads the configured style on first use; builds without citations never load it."""

    def __init__(self, name: str, factory: Callable[[str], CitationStyle]):
        self.name = name
        self._factory = factory
        self._style: CitationStyle | None = None
        self._lock = threading.Lock()

    def render(self, entry: BibliographyEntry) -> str:
        with self._lock:
            if self._style is None:
                self._style = self._factory(self.name)
                logger.debug("loaded citation style `%s`", self.name)
            style = self._style
        return style.render(entry)
