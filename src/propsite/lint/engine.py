from __future__ import annotations

import logging
from concurrent.futures import Executor
from typing import Iterable, Sequence

from propsite.bibliography import BibliographyStore
from propsite.config import LintConfig
from propsite.errors import ConfigError
from propsite.graph import ReferenceGraph
from propsite.lint.rules import DEFAULT_RULES, LintSubject, Rule
from propsite.model import Diagnostic, DiagnosticReport, ErrorKind, Severity, SourceSpan

logger = logging.getLogger(__name__)

INTERNAL_ERROR_RULE = "internal-error"

_DISABLED = None


def _overrides(rules: Sequence[Rule], config: LintConfig) -> dict[str, Severity | None]:
    known = {rule.rule_id for rule in rules}
    resolved: dict[str, Severity | None] = {}
    for level, names in (("allow", config.allow), ("warn", config.warn), ("deny", config.deny)):
        for name in names:
            if name not in known:
                raise ConfigError(f"unknown lint `{name}` in `lint.{level}`")
            severity = {"allow": _DISABLED, "warn": Severity.WARNING, "deny": Severity.ERROR}[level]
            if name in resolved and resolved[name] != severity:
                raise ConfigError(f"lint `{name}` is configured at more than one level")
            resolved[name] = severity
    return resolved


class LintEngine:
    """Runs every rule against every subject and never stops at the first error."""

    def __init__(self, rules: Sequence[Rule] = DEFAULT_RULES, *, config: LintConfig | None = None):
        self.rules = tuple(rules)
        self._overrides = _overrides(self.rules, config or LintConfig())

    def active_rules(self) -> tuple[Rule, ...]:
        return tuple(
            rule
            for rule in self.rules
            if not (rule.rule_id in self._overrides and self._overrides[rule.rule_id] is _DISABLED)
        )

    def severity_for(self, rule: Rule) -> Severity:
        override = self._overrides.get(rule.rule_id, rule.default_severity)
        return override if override is not None else rule.default_severity

    def evaluate(
        self,
        subject: LintSubject,
        graph: ReferenceGraph,
        bibliography: BibliographyStore,
    ) -> list[Diagnostic]:
        diagnostics: list[Diagnostic] = []
        for rule in self.active_rules():
            if rule.needs_proposal and subject.proposal is None:
                continue
            try:
                produced = list(rule.evaluate(subject, graph, bibliography))
            except Exception as exc:
                logger.exception("lint `%s` crashed on `%s`", rule.rule_id, subject.parsed.candidate.path)
                diagnostics.append(
                    Diagnostic(
                        severity=Severity.ERROR,
                        rule=INTERNAL_ERROR_RULE,
                        message=f"lint `{rule.rule_id}` failed: {type(exc).__name__}: {exc}",
                        path=subject.parsed.candidate.path,
                        number=subject.number,
                        span=SourceSpan(),
                        kind=ErrorKind.LINT,
                    )
                )
                continue
            if rule.rule_id in self._overrides:
                severity = self.severity_for(rule)
                produced = [item.with_severity(severity) for item in produced]
            diagnostics.extend(produced)
        return diagnostics

    def run(
        self,
        subjects: Iterable[LintSubject],
        graph: ReferenceGraph,
        bibliography: BibliographyStore,
        *,
        executor: Executor | None = None,
    ) -> DiagnosticReport:
        items = list(subjects)
        if executor is None:
            batches = [self.evaluate(subject, graph, bibliography) for subject in items]
        else:
            futures = [executor.submit(self.evaluate, subject, graph, bibliography) for subject in items]
            batches = [future.result() for future in futures]
        report = DiagnosticReport.collect(item for batch in batches for item in batch)
        logger.debug(
            "linted %d proposal(s): %d error(s), %d warning(s)",
            len(items),
            report.error_count,
            report.warning_count,
        )
        return report
