from __future__ import annotations

import json
from pathlib import Path

import pytest

from propsite.lint.report import (
    describe_rules,
    escape_data,
    escape_property,
    render_report,
    summary_line,
)
from propsite.model import Diagnostic, DiagnosticReport, ErrorKind, Severity, SourceSpan

ROOT = Path("/repo")


def _report() -> DiagnosticReport:
    return DiagnosticReport.collect(
        [
            Diagnostic(
                severity=Severity.WARNING,
                rule="requires-sorted",
                message="`requires` should be sorted",
                path=ROOT / "content/00002.md",
                number=2,
                span=SourceSpan.at(9, 11, length=4),
                help="expected: 1, 3",
            ),
            Diagnostic(
                severity=Severity.ERROR,
                rule="requires-exists",
                message="requires proposal 999, which does not exist",
                path=ROOT / "content/00001.md",
                number=1,
                span=SourceSpan.at(9, 11, length=3),
                kind=ErrorKind.GRAPH,
            ),
        ]
    )


def test_text_report_is_sorted_and_summarised() -> None:
    text = render_report(_report(), fmt="text", root=ROOT)

    assert text.splitlines() == [
        "content/00001.md:9:11: error[requires-exists]: requires proposal 999, which does not exist",
        "content/00002.md:9:11: warning[requires-sorted]: `requires` should be sorted",
        "  = help: expected: 1, 3",
        "1 error, 1 warning",
    ]


def test_json_report_carries_counts_and_kinds() -> None:
    payload = json.loads(render_report(_report(), fmt="json", root=ROOT))

    assert payload["errors"] == 1
    assert payload["warnings"] == 1
    first = payload["diagnostics"][0]
    assert first["path"] == "content/00001.md"
    assert first["kind"] == "graph"
    assert first["end_column"] == 14


def test_github_annotations_escape_values() -> None:
    lines = render_report(_report(), fmt="github", root=ROOT).splitlines()

    assert lines[0] == (
        "::error file=content/00001.md,line=9,col=11,endLine=9,endColumn=14,"
        "title=requires-exists::requires proposal 999, which does not exist"
    )
    assert lines[1].startswith("::warning file=content/00002.md")
    assert escape_data("50%\nnext") == "50%25%0Anext"
    assert escape_property("a:b,c") == "a%3Ab%2Cc"


def test_unknown_format_is_rejected() -> None:
    with pytest.raises(ValueError):
        render_report(DiagnosticReport(), fmt="xml")


def test_summary_and_rule_listing() -> None:
    assert summary_line(DiagnosticReport()) == "0 errors, 0 warnings"
    listing = describe_rules()
    assert "requires-exists" in listing
    assert "warning" in listing
