"""Post-condition checks for executed steps."""

from __future__ import annotations

from llamaclick.browser.types import PageState
from llamaclick.core.conditions import ConditionError, evaluate, parse_condition
from llamaclick.models import VerificationResult
from llamaclick.planner.models import Step
from llamaclick.utils.logging import get_logger

log = get_logger(__name__)


def verify(step: Step, page: PageState) -> VerificationResult:
    """Evaluate ``step.expect`` against ``page``.

    A step without an expectation passes once it executed. The result depends
    only on the step's expression and the snapshot, so repeated calls on the
    same snapshot agree.
    """
    if not step.expect:
        return VerificationResult.PASS
    try:
        clauses = parse_condition(step.expect)
    except ConditionError as e:
        log.warning("condition_unparseable", step=step.id, expect=step.expect, error=str(e))
        return VerificationResult.INDETERMINATE
    result = evaluate(clauses, page)
    if result is VerificationResult.INDETERMINATE:
        log.info("verification_indeterminate", step=step.id, expect=step.expect, url=page.url)
    return result
