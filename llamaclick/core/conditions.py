"""Post-condition expressions evaluated against a page snapshot.

An expression is one or more clauses joined by `` and ``::

    url_contains:/checkout and text_present:Thank you

Supported clauses: ``url_contains``, ``url_is``, ``title_contains``,
``text_present``, ``text_absent``, ``element_present``, ``element_absent``
and ``value_equals:<selector>==<value>``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from llamaclick.browser.selectors import select
from llamaclick.browser.types import PageState
from llamaclick.models import VerificationResult

_AND_RE = re.compile(r"\s+and\s+", re.IGNORECASE)

PREDICATES = frozenset({
    "url_contains",
    "url_is",
    "title_contains",
    "text_present",
    "text_absent",
    "element_present",
    "element_absent",
    "value_equals",
})


class ConditionError(ValueError):
    pass


@dataclass(frozen=True)
class Clause:
    predicate: str
    argument: str


def parse_condition(expression: str) -> tuple[Clause, ...]:
    if not expression or not expression.strip():
        raise ConditionError("empty condition")
    clauses = []
    for part in _AND_RE.split(expression.strip()):
        name, sep, arg = part.partition(":")
        name = name.strip().lower()
        arg = arg.strip()
        if not sep or name not in PREDICATES:
            raise ConditionError(f"unknown predicate in {part!r}")
        if not arg:
            raise ConditionError(f"{name} needs an argument")
        if name == "value_equals" and "==" not in arg:
            raise ConditionError("value_equals needs <selector>==<value>")
        clauses.append(Clause(name, arg))
    return tuple(clauses)


def is_valid(expression: str) -> bool:
    try:
        parse_condition(expression)
    except ConditionError:
        return False
    return True


def _evaluate_clause(clause: Clause, page: PageState) -> VerificationResult:
    arg = clause.argument
    name = clause.predicate

    if name in ("url_contains", "url_is", "title_contains", "text_present", "text_absent"):
        if name == "url_contains":
            holds = arg in page.url
        elif name == "url_is":
            holds = page.url.rstrip("/") == arg.rstrip("/")
        elif name == "title_contains":
            holds = arg.lower() in page.title.lower()
        elif name == "text_present":
            holds = arg.lower() in page.text.lower()
        else:
            holds = arg.lower() not in page.text.lower()
        return VerificationResult.PASS if holds else VerificationResult.FAIL

    if name == "value_equals":
        selector, _, expected = arg.rpartition("==")
        matches = select(page, selector.strip())
        if not matches:
            # Unsupported selector or referenced element missing
            return VerificationResult.INDETERMINATE
        actual = matches[0].value or ""
        return VerificationResult.PASS if actual == expected.strip() else VerificationResult.FAIL

    matches = select(page, arg)
    if matches is None:
        return VerificationResult.INDETERMINATE
    present = bool(matches)
    holds = present if name == "element_present" else not present
    return VerificationResult.PASS if holds else VerificationResult.FAIL


def evaluate(clauses: tuple[Clause, ...], page: PageState) -> VerificationResult:
    results = [_evaluate_clause(c, page) for c in clauses]
    if VerificationResult.FAIL in results:
        return VerificationResult.FAIL
    if VerificationResult.INDETERMINATE in results:
        return VerificationResult.INDETERMINATE
    return VerificationResult.PASS
