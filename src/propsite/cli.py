from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator, Mapping, Optional, Sequence, TypeAlias

import typer

from propsite.config import (
    LOG_LEVEL_ENV,
    BuildConfig,
    env_text,
    merge_overrides,
    resolve_config,
)
from propsite.errors import HistoryError, PropsiteError, RendererError
from propsite.lint import FORMATS, render_report
from propsite.lint.report import describe_rules
from propsite.model import DiagnosticReport
from propsite.orchestrator import BuildOrchestrator, BuildResult
from propsite.runtime.json_io import dump_json_pretty
from propsite.walker import find_root

app = typer.Typer(add_completion=False, help="Lint, cross-reference and render proposal repositories.")

OrchestratorFactory: TypeAlias = Callable[[Path, BuildConfig], BuildOrchestrator]

EXIT_OK = 0
EXIT_DIAGNOSTICS = 1
EXIT_FATAL = 2

CHANGED_FORMATS = ("newline", "nul", "json")

_LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"

logger = logging.getLogger(__name__)

RootOption = typer.Option(None, "--root", "-C", help="Repository root (default: search upwards from cwd).")
ConfigOption = typer.Option(None, "--config", help="Path to propsite.toml.")
FormatOption = typer.Option("text", "--format", help="Report format: text, json or github.")
WorkersOption = typer.Option(None, "--workers", min=1, help="Worker threads for parallel stages.")
LockWaitOption = typer.Option(None, "--lock-wait", min=0.0, help="Seconds to wait for the build lock.")
LogLevelOption = typer.Option(None, "--log-level", help="Logging level (default: $PROPSITE_LOG_LEVEL or INFO).")


def configure_logging(level: str | None, *, environ: Mapping[str, str] | None = None) -> None:
    name = (level or env_text(LOG_LEVEL_ENV, default="INFO", environ=environ) or "INFO").upper()
    numeric = logging.getLevelName(name)
    if not isinstance(numeric, int):
        raise typer.BadParameter(f"unknown log level `{name}`", param_hint="--log-level")
    logging.basicConfig(level=numeric, format=_LOG_FORMAT)
    logging.getLogger().setLevel(numeric)


def _check_format(fmt: str) -> str:
    if fmt not in FORMATS:
        raise typer.BadParameter(
            f"expected one of {', '.join(FORMATS)}",
            param_hint="--format",
        )
    return fmt


def _context_orchestrator_factory(ctx: typer.Context) -> OrchestratorFactory:
    obj = ctx.obj
    if isinstance(obj, Mapping):
        candidate = obj.get("orchestrator_factory")
        if callable(candidate):
            return candidate
    return BuildOrchestrator


@contextmanager
def _fatal_errors() -> Generator[None, None, None]:
    try:
        yield
    except PropsiteError as exc:
        typer.secho(f"error: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=EXIT_FATAL) from exc
    except KeyboardInterrupt as exc:
        typer.secho("interrupted", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=EXIT_FATAL) from exc


def _orchestrator(
    ctx: typer.Context,
    *,
    root: Optional[Path],
    config_path: Optional[Path],
    workers: Optional[int] = None,
    lock_wait: Optional[float] = None,
) -> BuildOrchestrator:
    start = (root or Path.cwd()).resolve()
    config = resolve_config(start, config_path=config_path)
    found = find_root(start, content_dir=config.content_dir)
    if found != start and config_path is None:
        config = resolve_config(found)
    config = merge_overrides(config, workers=workers, lock_wait=lock_wait)
    logger.debug("repository root `%s`", found)
    return _context_orchestrator_factory(ctx)(found, config)


def _emit_report(report: DiagnosticReport, *, fmt: str, root: Path) -> None:
    text = render_report(report, fmt=fmt, root=root)
    if text:
        typer.echo(text)


@contextmanager
def _report_on_renderer_failure(*, fmt: str, root: Path) -> Generator[None, None, None]:
    try:
        yield
    except RendererError as exc:
        if exc.report is not None:
            _emit_report(exc.report, fmt=fmt, root=root)
        raise


def _exit_code(report: DiagnosticReport, result: BuildResult | None = None) -> int:
    if report.failed or (result is not None and not result.succeeded):
        return EXIT_DIAGNOSTICS
    return EXIT_OK


def _echo_result(result: BuildResult) -> None:
    typer.echo(
        f"built {len(result.rebuilt)}, reused {len(result.reused)}, "
        f"failed {len(result.failed)}, skipped {len(result.skipped)} "
        f"-> {result.output_dir}",
        err=True,
    )


@app.command("check")
def check(
    ctx: typer.Context,
    root: Optional[Path] = RootOption,
    config: Optional[Path] = ConfigOption,
    fmt: str = FormatOption,
    workers: Optional[int] = WorkersOption,
    lock_wait: Optional[float] = LockWaitOption,
    lock: bool = typer.Option(False, "--lock/--no-lock", help="Hold the build lock while checking."),
    log_level: Optional[str] = LogLevelOption,
) -> None:
    """Validate every proposal without writing anything."""
    configure_logging(log_level)
    _check_format(fmt)
    with _fatal_errors():
        orchestrator = _orchestrator(ctx, root=root, config_path=config, workers=workers, lock_wait=lock_wait)
        report = orchestrator.check(lock=lock)
    _emit_report(report, fmt=fmt, root=orchestrator.root)
    raise typer.Exit(code=_exit_code(report))


@app.command("build")
def build(
    ctx: typer.Context,
    root: Optional[Path] = RootOption,
    config: Optional[Path] = ConfigOption,
    fmt: str = FormatOption,
    workers: Optional[int] = WorkersOption,
    lock_wait: Optional[float] = LockWaitOption,
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Rendered site directory."),
    log_level: Optional[str] = LogLevelOption,
) -> None:
    """Check, transform changed proposals and render the site."""
    configure_logging(log_level)
    _check_format(fmt)
    with _fatal_errors():
        orchestrator = _orchestrator(ctx, root=root, config_path=config, workers=workers, lock_wait=lock_wait)
        with _report_on_renderer_failure(fmt=fmt, root=orchestrator.root):
            report, result = orchestrator.build(output)
    _emit_report(report, fmt=fmt, root=orchestrator.root)
    if fmt == "text":
        _echo_result(result)
    raise typer.Exit(code=_exit_code(report, result))


@app.command("serve")
def serve(
    ctx: typer.Context,
    root: Optional[Path] = RootOption,
    config: Optional[Path] = ConfigOption,
    fmt: str = FormatOption,
    workers: Optional[int] = WorkersOption,
    lock_wait: Optional[float] = LockWaitOption,
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Rendered site directory."),
    log_level: Optional[str] = LogLevelOption,
) -> None:
    """Build once, then hand the site over to the renderer's preview server."""
    configure_logging(log_level)
    _check_format(fmt)
    with _fatal_errors():
        orchestrator = _orchestrator(ctx, root=root, config_path=config, workers=workers, lock_wait=lock_wait)
        with _report_on_renderer_failure(fmt=fmt, root=orchestrator.root):
            report, result, handoff = orchestrator.prepare_serve(output)
        _emit_report(report, fmt=fmt, root=orchestrator.root)
        if fmt == "text":
            _echo_result(result)
        code = orchestrator.renderer.serve(handoff)
    raise typer.Exit(code=EXIT_FATAL if code else EXIT_OK)


@app.command("clean")
def clean(
    ctx: typer.Context,
    root: Optional[Path] = RootOption,
    config: Optional[Path] = ConfigOption,
    lock_wait: Optional[float] = LockWaitOption,
    log_level: Optional[str] = LogLevelOption,
) -> None:
    """Remove generated content, the manifest and rendered output."""
    configure_logging(log_level)
    with _fatal_errors():
        orchestrator = _orchestrator(ctx, root=root, config_path=config, lock_wait=lock_wait)
        removed = orchestrator.clean()
    for name in removed:
        typer.echo(name)


@app.command("changed")
def changed(
    ctx: typer.Context,
    root: Optional[Path] = RootOption,
    config: Optional[Path] = ConfigOption,
    all_files: bool = typer.Option(False, "--all", "-a", help="List every changed file, not just proposals."),
    fmt: str = typer.Option("newline", "--format", help="Listing format: newline, nul or json."),
    log_level: Optional[str] = LogLevelOption,
) -> None:
    """List proposal files changed since the merge base with the upstream revision."""
    configure_logging(log_level)
    if fmt not in CHANGED_FORMATS:
        raise typer.BadParameter(f"expected one of {', '.join(CHANGED_FORMATS)}", param_hint="--format")
    with _fatal_errors():
        orchestrator = _orchestrator(ctx, root=root, config_path=config)
        paths = orchestrator.changed(all_files=all_files)
        text = format_changed(paths, fmt=fmt)
    typer.echo(text, nl=False)


def format_changed(paths: Sequence[str], *, fmt: str) -> str:
    """Render a changed-file listing; separators inside a path are refused."""
    if fmt == "json":
        return dump_json_pretty(list(paths)) + "\n"
    separator = "\0" if fmt == "nul" else "\n"
    for path in paths:
        if separator in path:
            raise HistoryError(f"changed path {path!r} contains the `{fmt}` separator")
    return "".join(f"{path}{separator}" for path in paths)


@app.command("lints")
def lints() -> None:
    """List every lint rule with its default severity."""
    typer.echo(describe_rules())


def main() -> None:
    app()


__all__ = [
    "EXIT_DIAGNOSTICS",
    "EXIT_FATAL",
    "EXIT_OK",
    "app",
    "configure_logging",
    "main",
]
