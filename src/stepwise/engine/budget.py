"""Budget guards: caller-supplied vetoes for external calls.

The engine never knows why a guard says no. It only asks, right before an
external call would run, and records ``Skipped("budget_exhausted")`` on a
veto.
"""

from __future__ import annotations

import logging
import threading
from typing import Awaitable, Protocol, Union

from stepwise.engine.context import ContextView

logger = logging.getLogger(__name__)


class BudgetGuard(Protocol):
    """Veto consulted before each external call.

    Guards that hold reservations may also define ``release(step_name)``;
    the engine calls it when a guarded call ends without completing.
    """

    def __call__(
        self, step_name: str, context: ContextView
    ) -> Union[bool, Awaitable[bool]]: ...


def allow_all(step_name: str, context: ContextView) -> bool:
    """Default guard: never vetoes."""
    return True


class CostBudget:
    """Guard that tracks estimated spend against a fixed limit.

    ``costs`` maps step names to their estimated cost; unknown steps use
    ``default_cost``. A limit of 0 means no limit. Every approval reserves
    the estimate, so one guard can be shared by concurrent runs. Callers
    settle a reservation with ``record`` (e.g. from an after_all hook or the
    handler itself); the engine drops it with ``release`` when the call
    fails or is cancelled.
    """

    def __init__(
        self,
        limit: float,
        costs: dict[str, float] | None = None,
        default_cost: float = 0.0,
    ) -> None:
        self.limit = limit
        self.costs = dict(costs or {})
        self.default_cost = default_cost
        self._spent = 0.0
        self._reserved: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    @property
    def spent(self) -> float:
        return self._spent

    @property
    def reserved(self) -> float:
        return sum(sum(pending) for pending in self._reserved.values())

    @property
    def remaining(self) -> float | None:
        if self.limit <= 0:
            return None
        return max(self.limit - self._spent - self.reserved, 0.0)

    def estimate(self, step_name: str) -> float:
        return self.costs.get(step_name, self.default_cost)

    def _settle(self, step_name: str) -> float | None:
        pending = self._reserved.get(step_name)
        if not pending:
            return None
        amount = pending.pop(0)
        if not pending:
            del self._reserved[step_name]
        return amount

    def record(self, step_name: str, cost: float) -> None:
        """Replace the oldest reservation for *step_name* with its actual cost."""
        with self._lock:
            self._settle(step_name)
            self._spent += cost

    def release(self, step_name: str) -> None:
        """Drop the oldest reservation for *step_name* without spending it."""
        with self._lock:
            amount = self._settle(step_name)
        if amount is not None:
            logger.debug(f"Released ${amount:.4f} reserved for step '{step_name}'")

    def __call__(self, step_name: str, context: ContextView) -> bool:
        estimated = self.estimate(step_name)
        with self._lock:
            if self.limit > 0:
                projected = self._spent + self.reserved + estimated
                if projected > self.limit:
                    logger.warning(
                        f"Budget exceeded for step '{step_name}': projected "
                        f"${projected:.4f} > limit ${self.limit:.4f}"
                    )
                    return False
            self._reserved.setdefault(step_name, []).append(estimated)
            return True
