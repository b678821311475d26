"""Error taxonomy for workflow definitions and runs."""

from __future__ import annotations


class DefinitionError(Exception):
    """A workflow definition is invalid and can never run.

    Raised before any step executes. ``errors`` holds every problem found,
    not just the first one.
    """

    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class CycleError(DefinitionError):
    """The step dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Cycle detected: {' -> '.join(self.cycle)}")


class UnknownReferenceError(DefinitionError):
    """A step references a name that is neither an input nor a step."""


class DuplicateStepError(DefinitionError):
    """Two steps share the same name."""


class MissingInputError(DefinitionError):
    """A declared initial input was not supplied to the run."""


class StepFailure(Exception):
    """A step handler raised or returned an error."""

    def __init__(
        self,
        message: str,
        step_name: str | None = None,
        attempt: int | None = None,
        cause: BaseException | None = None,
    ):
        self.step_name = step_name
        self.attempt = attempt
        self.cause = cause
        super().__init__(message)


class ConditionError(StepFailure):
    """Evaluating a step condition raised."""


class TimeoutExceeded(StepFailure):
    """An attempt, an external call or the whole run passed its deadline."""

    def __init__(
        self,
        timeout: float,
        scope: str = "attempt",
        step_name: str | None = None,
        attempt: int | None = None,
    ):
        self.timeout = timeout
        self.scope = scope  # "attempt" | "call" | "run"
        target = f"step '{step_name}'" if step_name else "run"
        super().__init__(
            f"{scope} timeout of {timeout:g}s exceeded for {target}",
            step_name=step_name,
            attempt=attempt,
        )


class BudgetDenied(Exception):
    """The budget guard vetoed an external call."""

    def __init__(self, step_name: str):
        self.step_name = step_name
        super().__init__(f"Budget guard denied step '{step_name}'")


class PropagatedFailure(Exception):
    """An ancestor did not complete, so the step was never run."""

    def __init__(self, step_name: str, ancestor: str, ancestor_status: str):
        self.step_name = step_name
        self.ancestor = ancestor
        self.ancestor_status = ancestor_status
        super().__init__(
            f"Step '{step_name}' not run: input '{ancestor}' is {ancestor_status}"
        )


class ContextWriteError(RuntimeError):
    """A context key was written twice."""
