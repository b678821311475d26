"""Condition evaluation for run_if / run_when / skip_when.

Conditions are pure predicates over the run context. Callables are invoked
directly; string expressions are evaluated with simpleeval, never eval/exec.
"""

from __future__ import annotations

import logging
from typing import Any

from simpleeval import simple_eval

from stepwise.engine.context import ContextView, OutcomeStatus, StepOutcome
from stepwise.engine.dag import Condition, RunIf, RunWhen, SkipWhen, StepSpec
from stepwise.engine.errors import ConditionError

logger = logging.getLogger(__name__)


def _safe_eval(expression: str, names: dict[str, Any], functions: dict[str, Any]) -> Any:
    """Safely evaluate an expression using simpleeval.

    Supports comparisons, attribute and item access, len(), basic math and
    and/or/not.
    """
    return simple_eval(expression, names=names, functions={"len": len, **functions})


def _context_functions(context: ContextView) -> dict[str, Any]:
    def _status(name: str) -> str | None:
        outcome = context.get(name)
        return outcome.status.value if outcome else None

    return {
        "status": _status,
        "completed": lambda name: _status(name) == OutcomeStatus.COMPLETED.value,
        "failed": lambda name: _status(name) == OutcomeStatus.FAILED.value,
        "skipped": lambda name: _status(name) == OutcomeStatus.SKIPPED.value,
        "not_run": lambda name: _status(name) == OutcomeStatus.NOT_RUN.value,
    }


def _missing(step_name: str) -> StepOutcome:
    # Predicates always receive an outcome
    return StepOutcome.not_run(f"'{step_name}' has no outcome")


def _check_outcome(predicate: Any, outcome: StepOutcome, context: ContextView) -> bool:
    if callable(predicate):
        return bool(predicate(outcome))
    names = {
        "outcome": outcome,
        "value": outcome.value,
        "status": outcome.status.value,
        "error": str(outcome.error) if outcome.error else None,
        "reason": outcome.reason,
    }
    return bool(_safe_eval(predicate, names, _context_functions(context)))


def _check_expr(expr: Any, context: ContextView) -> bool:
    if callable(expr):
        return bool(expr(context))
    names = {name: context.value(name) for name in context}
    return bool(_safe_eval(expr, names, _context_functions(context)))


def evaluate(condition: Condition | None, context: ContextView) -> bool:
    """Decide whether a step should run.

    ``RunWhen``/``SkipWhen`` predicates receive the named step's outcome as
    is, failed or skipped included; there is no implicit short-circuit.
    Raises ConditionError if the predicate itself raises.
    """
    if condition is None:
        return True
    try:
        if isinstance(condition, RunIf):
            return _check_expr(condition.expr, context)
        if isinstance(condition, (RunWhen, SkipWhen)):
            outcome = context.get(condition.step) or _missing(condition.step)
            result = _check_outcome(condition.predicate, outcome, context)
            return not result if isinstance(condition, SkipWhen) else result
    except Exception as e:
        raise ConditionError(f"Condition evaluation failed: {e}", cause=e) from e
    raise ConditionError(f"Unsupported condition type: {type(condition).__name__}")


def propagates_failure(step: StepSpec) -> bool:
    """True when default failure propagation applies to *step*.

    Any condition opts the step out: its author inspects ancestor outcomes
    explicitly.
    """
    return step.condition is None


def describe(condition: Condition | None) -> str:
    """Short human-readable rendering used in logs and the CLI."""
    if condition is None:
        return "-"

    def _render(value: Any) -> str:
        if isinstance(value, str):
            return value
        return getattr(value, "__name__", "<callable>")

    if isinstance(condition, RunIf):
        return f"run_if({_render(condition.expr)})"
    kind = "run_when" if isinstance(condition, RunWhen) else "skip_when"
    return f"{kind}({condition.step}: {_render(condition.predicate)})"
