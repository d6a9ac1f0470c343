from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from propsite.bibliography import BibliographyStore
from propsite.config import LintConfig
from propsite.errors import ConfigError
from propsite.graph import build_graph, repo_relative
from propsite.lint import INTERNAL_ERROR_RULE, LintEngine, LintSubject, Rule
from propsite.lint.rules import rule_ids
from propsite.model import Severity
from propsite.preamble import load_proposal
from propsite.walker import RepositoryWalker
from tests.repo_helpers import proposal_text


class _Boom(Rule):
    rule_id = "boom"
    description = "always crashes"

    def evaluate(self, subject, graph, bibliography):
        raise RuntimeError("kaboom")


def _inputs(repo):
    parsed = [load_proposal(candidate) for candidate in RepositoryWalker(repo.root)]
    graph = build_graph(parsed, root=repo.root)
    subjects = [
        LintSubject(parsed=item, source=repo_relative(item.candidate.path, repo.root)) for item in parsed
    ]
    return subjects, graph, BibliographyStore.unavailable()


def test_allow_warn_and_deny_adjust_severities(repo) -> None:
    text = proposal_text(1, requires=(999,), sections=("Abstract",)).replace(
        "eip: 1\ntitle: Proposal 1", "title: Proposal 1\neip: 1"
    )
    repo.write(1, text)
    subjects, graph, store = _inputs(repo)

    default = LintEngine().run(subjects, graph, store)
    assert {item.rule for item in default.diagnostics} == {"preamble-order", "requires-exists", "required-sections"}

    engine = LintEngine(
        config=LintConfig(allow=("required-sections",), warn=("requires-exists",), deny=("preamble-order",))
    )
    adjusted = engine.run(subjects, graph, store)
    severities = {item.rule: item.severity for item in adjusted.diagnostics}
    assert severities == {"preamble-order": Severity.ERROR, "requires-exists": Severity.WARNING}


def test_unknown_or_conflicting_lint_names_are_config_errors() -> None:
    with pytest.raises(ConfigError, match="unknown lint `nope`"):
        LintEngine(config=LintConfig(deny=("nope",)))
    with pytest.raises(ConfigError, match="more than one level"):
        LintEngine(config=LintConfig(allow=("requires-exists",), deny=("requires-exists",)))


def test_crashing_rule_becomes_internal_error_and_others_still_run(repo) -> None:
    repo.proposal(1, requires=(999,))
    subjects, graph, store = _inputs(repo)
    rules = (_Boom(), *LintEngine().rules)

    report = LintEngine(rules).run(subjects, graph, store)

    assert [item.rule for item in report.diagnostics] == [INTERNAL_ERROR_RULE, "requires-exists"]
    assert "RuntimeError: kaboom" in report.diagnostics[0].message


def test_parallel_run_matches_serial_run(repo) -> None:
    for number in range(1, 30):
        repo.proposal(number, requires=(number + 1,) if number % 3 else (), sections=("Abstract", "Copyright"))
    subjects, graph, store = _inputs(repo)
    engine = LintEngine()

    serial = engine.run(subjects, graph, store)
    with ThreadPoolExecutor(max_workers=8) as executor:
        parallel = engine.run(subjects, graph, store, executor=executor)

    assert serial == parallel
    assert serial.error_count > 0


def test_rule_ids_are_unique() -> None:
    ids = list(rule_ids())
    assert len(ids) == len(set(ids))
    assert "requires-exists" in ids
