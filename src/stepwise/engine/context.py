"""Per-run context: an append-only map of step outcomes."""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, replace
from typing import Any, Iterator

from stepwise.engine.errors import ContextWriteError, StepFailure

# Skip reasons recorded by the executor
REASON_CONDITION = "condition_not_met"
REASON_BUDGET = "budget_exhausted"


class OutcomeStatus(str, enum.Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    NOT_RUN = "not_run"


@dataclass(frozen=True)
class StepOutcome:
    """Terminal result of a step (or a seeded initial input).

    A tagged union: ``value`` is only meaningful for completed outcomes,
    ``reason`` for skipped and not-run outcomes, ``error`` for failures.
    """

    status: OutcomeStatus
    value: Any = None
    reason: str | None = None
    error: BaseException | None = None
    attempts: int = 0
    started_at: float | None = None  # time.monotonic()
    finished_at: float | None = None

    @classmethod
    def completed(cls, value: Any, **kwargs: Any) -> StepOutcome:
        return cls(OutcomeStatus.COMPLETED, value=value, **kwargs)

    @classmethod
    def skipped(cls, reason: str, **kwargs: Any) -> StepOutcome:
        return cls(OutcomeStatus.SKIPPED, reason=reason, **kwargs)

    @classmethod
    def failed(cls, error: BaseException, **kwargs: Any) -> StepOutcome:
        return cls(OutcomeStatus.FAILED, error=error, **kwargs)

    @classmethod
    def not_run(cls, reason: str, **kwargs: Any) -> StepOutcome:
        return cls(OutcomeStatus.NOT_RUN, reason=reason, **kwargs)

    @property
    def is_completed(self) -> bool:
        return self.status is OutcomeStatus.COMPLETED

    @property
    def is_skipped(self) -> bool:
        return self.status is OutcomeStatus.SKIPPED

    @property
    def is_failed(self) -> bool:
        return self.status is OutcomeStatus.FAILED

    @property
    def is_not_run(self) -> bool:
        return self.status is OutcomeStatus.NOT_RUN

    @property
    def is_terminal(self) -> bool:
        return isinstance(self.status, OutcomeStatus)

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return self.finished_at - self.started_at

    def with_timing(self, started_at: float | None, finished_at: float) -> StepOutcome:
        return replace(self, started_at=started_at, finished_at=finished_at)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation (errors rendered as strings)."""
        data: dict[str, Any] = {"status": self.status.value}
        if self.is_completed:
            value = self.value
            if hasattr(value, "to_dict"):
                value = value.to_dict()
            data["value"] = value
        if self.reason is not None:
            data["reason"] = self.reason
        if self.error is not None:
            data["error"] = str(self.error)
            data["error_type"] = type(self.error).__name__
        if self.attempts:
            data["attempts"] = self.attempts
        if self.started_at is not None:
            data["duration_seconds"] = round(self.duration_seconds, 6)
        return data


class CancelToken:
    """Cooperative cancellation signal shared with cancellable handlers.

    Handlers running in worker threads cannot be interrupted, so they are
    expected to poll ``cancelled`` (or call ``raise_if_cancelled``).
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StepFailure("Cancelled")


class Context:
    """Mutable map of name -> StepOutcome scoped to exactly one run.

    Every key is written once. Reads need no lock because a published
    outcome is immutable; the write itself is a compare-and-set under a lock
    so a cancelled attempt racing the executor can never double-write.
    """

    def __init__(
        self,
        initial: dict[str, Any] | None = None,
        private_keys: frozenset[str] | set[str] | tuple[str, ...] = (),
    ) -> None:
        self._outcomes: dict[str, StepOutcome] = {}
        self._lock = threading.Lock()
        self.initial_keys: frozenset[str] = frozenset((initial or {}).keys())
        self.private_keys: frozenset[str] = frozenset(private_keys)
        for key, value in (initial or {}).items():
            self._outcomes[key] = StepOutcome.completed(value)

    # --- Writes ---

    def publish(self, name: str, outcome: StepOutcome) -> bool:
        """Record *outcome* for *name* if nothing was recorded yet.

        Returns True when this call performed the write.
        """
        with self._lock:
            if name in self._outcomes:
                return False
            self._outcomes[name] = outcome
            return True

    def publish_strict(self, name: str, outcome: StepOutcome) -> None:
        if not self.publish(name, outcome):
            raise ContextWriteError(f"Context key '{name}' already written")

    # --- Reads ---

    def get(self, name: str) -> StepOutcome | None:
        return self._outcomes.get(name)

    def value(self, name: str, default: Any = None) -> Any:
        outcome = self._outcomes.get(name)
        if outcome is None or not outcome.is_completed:
            return default
        return outcome.value

    def __contains__(self, name: object) -> bool:
        return name in self._outcomes

    def __len__(self) -> int:
        return len(self._outcomes)

    def names(self) -> list[str]:
        return list(self._outcomes)

    def snapshot(self) -> dict[str, StepOutcome]:
        """Copy of all outcomes recorded so far."""
        with self._lock:
            return dict(self._outcomes)

    def view(self) -> ContextView:
        return ContextView(self)

    # --- Logging helpers ---

    def filtered_for_logging(self) -> dict[str, Any]:
        data = {}
        for name, outcome in self.snapshot().items():
            if name in self.private_keys:
                data[name] = "[FILTERED]"
            elif outcome.is_completed:
                data[name] = outcome.value
            else:
                data[name] = f"<{outcome.status.value}>"
        return data

    def summary(self, max_length: int = 50) -> dict[str, Any]:
        """Short, log-safe rendering of the context."""
        result: dict[str, Any] = {}
        for name, value in self.filtered_for_logging().items():
            if isinstance(value, str) and len(value) > max_length:
                result[name] = value[:max_length] + "..."
            elif isinstance(value, list) and len(value) > 3:
                result[name] = f"[list with {len(value)} items]"
            elif isinstance(value, dict) and len(value) > 3:
                result[name] = f"[dict with {len(value)} keys]"
            else:
                result[name] = value
        return result

    def __repr__(self) -> str:
        return f"<Context keys={','.join(self._outcomes)}>"


class ContextView:
    """Read-only facade over a Context, handed to predicates and guards."""

    __slots__ = ("_context",)

    def __init__(self, context: Context) -> None:
        self._context = context

    def get(self, name: str) -> StepOutcome | None:
        return self._context.get(name)

    def value(self, name: str, default: Any = None) -> Any:
        return self._context.value(name, default)

    def outcomes(self) -> dict[str, StepOutcome]:
        return self._context.snapshot()

    def __getitem__(self, name: str) -> Any:
        if name not in self._context:
            raise KeyError(name)
        return self._context.value(name)

    def __contains__(self, name: object) -> bool:
        return name in self._context

    def __iter__(self) -> Iterator[str]:
        return iter(self._context.names())

    def summary(self) -> dict[str, Any]:
        return self._context.summary()
