"""Reporters for diagnostic reports: plain text, JSON and GitHub annotations."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

from propsite.lint.rules import DEFAULT_RULES, Rule
from propsite.model import Diagnostic, DiagnosticReport, Severity
from propsite.runtime.json_io import dump_json_pretty

FORMATS = ("text", "json", "github")


def display_path(path: Path, root: Path | None) -> str:
    if root is not None:
        try:
            return path.relative_to(root).as_posix()
        except ValueError:
            pass
    return path.as_posix()


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def summary_line(report: DiagnosticReport) -> str:
    return f"{_plural(report.error_count, 'error')}, {_plural(report.warning_count, 'warning')}"


def format_text(report: DiagnosticReport, *, root: Path | None = None) -> str:
    lines: list[str] = []
    for item in report.diagnostics:
        location = f"{display_path(item.path, root)}:{item.span.line}:{item.span.column}"
        lines.append(f"{location}: {item.severity.value}[{item.rule}]: {item.message}")
        if item.help:
            lines.append(f"  = help: {item.help}")
    lines.append(summary_line(report))
    return "\n".join(lines)


def format_json(report: DiagnosticReport, *, root: Path | None = None) -> str:
    diagnostics = []
    for item in report.diagnostics:
        payload = item.as_dict()
        payload["path"] = display_path(item.path, root)
        diagnostics.append(payload)
    document = {
        "diagnostics": diagnostics,
        "errors": report.error_count,
        "warnings": report.warning_count,
    }
    return dump_json_pretty(document)


def escape_data(value: str) -> str:
    return value.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")


def escape_property(value: str) -> str:
    return escape_data(value).replace(":", "%3A").replace(",", "%2C")


def _annotation(item: Diagnostic, *, root: Path | None) -> str:
    command = "error" if item.severity is Severity.ERROR else "warning"
    properties = [
        f"file={escape_property(display_path(item.path, root))}",
        f"line={item.span.line}",
        f"col={item.span.column}",
    ]
    if item.span.end_line is not None:
        properties.append(f"endLine={item.span.end_line}")
    if item.span.end_column is not None:
        properties.append(f"endColumn={item.span.end_column}")
    properties.append(f"title={escape_property(item.rule)}")
    message = item.message if not item.help else f"{item.message}\n{item.help}"
    return f"::{command} {','.join(properties)}::{escape_data(message)}"


def format_github(report: DiagnosticReport, *, root: Path | None = None) -> str:
    lines = [_annotation(item, root=root) for item in report.diagnostics]
    lines.append(summary_line(report))
    return "\n".join(lines)


def render_report(report: DiagnosticReport, *, fmt: str = "text", root: Path | None = None) -> str:
    if fmt == "json":
        return format_json(report, root=root)
    if fmt == "github":
        return format_github(report, root=root)
    if fmt == "text":
        return format_text(report, root=root)
    raise ValueError(f"unknown report format `{fmt}`")


def describe_rules(rules: Iterable[Rule] = DEFAULT_RULES) -> str:
    rows = [(rule.rule_id, rule.default_severity.value, rule.description) for rule in rules]
    width = max((len(row[0]) for row in rows), default=0)
    return "\n".join(f"{rule_id.ljust(width)}  {severity:<7}  {description}" for rule_id, severity, description in rows)
