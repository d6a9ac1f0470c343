"""Lint rules, the engine that runs them, and report formatting."""

from .engine import INTERNAL_ERROR_RULE, LintEngine
from .report import FORMATS, render_report
from .rules import DEFAULT_RULES, LintSubject, Rule

__all__ = [
    "DEFAULT_RULES",
    "FORMATS",
    "INTERNAL_ERROR_RULE",
    "LintEngine",
    "LintSubject",
    "Rule",
    "render_report",
]
