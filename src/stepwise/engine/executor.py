"""Workflow executor - layered parallel execution with retries, timeouts, budget, deadline."""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from stepwise.config import Settings
from stepwise.engine.budget import BudgetGuard, allow_all
from stepwise.engine.conditions import evaluate, propagates_failure
from stepwise.engine.context import (
    REASON_BUDGET,
    REASON_CONDITION,
    CancelToken,
    Context,
    StepOutcome,
)
from stepwise.engine.dag import (
    ExecutionPlan,
    StepKind,
    StepSpec,
    WorkflowDefinition,
    WorkflowHooks,
    build_plan,
)
from stepwise.engine.errors import (
    BudgetDenied,
    ConditionError,
    MissingInputError,
    PropagatedFailure,
    StepFailure,
    TimeoutExceeded,
)
from stepwise.engine.events import EventBus, event_bus

logger = logging.getLogger(__name__)


class RunStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class ValidationResult:
    """Output of a Validate step. ``valid=False`` is data, not a failure."""

    valid: bool
    errors: list[str] = field(default_factory=list)

    def __getitem__(self, key: str) -> Any:
        return getattr(self, key)

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors)}


@dataclass
class WorkflowResult:
    """Final result of a workflow run."""

    run_id: str
    workflow: str
    status: RunStatus
    outcomes: dict[str, StepOutcome]
    started_at: datetime
    finished_at: datetime
    failed_step: str | None = None
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.COMPLETED

    @property
    def outputs(self) -> dict[str, Any]:
        """Values of every completed step (initial inputs excluded)."""
        return {
            name: outcome.value
            for name, outcome in self.outcomes.items()
            if outcome.is_completed
        }

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly rendering for callers that persist results."""
        return {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "failed_step": self.failed_step,
            "error": str(self.error) if self.error is not None else None,
            "outcomes": {name: o.to_dict() for name, o in self.outcomes.items()},
        }


@dataclass
class _RunState:
    """Mutable bookkeeping for a single run."""

    run_id: str
    workflow: WorkflowDefinition
    context: Context
    hooks: WorkflowHooks
    budget_guard: BudgetGuard
    workers: asyncio.Semaphore
    external: asyncio.Semaphore
    tokens: list[CancelToken] = field(default_factory=list)
    started: dict[str, float] = field(default_factory=dict)
    failed_step: str | None = None
    error: BaseException | None = None
    error_notified: bool = False
    cancelled: bool = False

    def new_token(self) -> CancelToken:
        token = CancelToken()
        if self.cancelled:
            token.cancel()
        self.tokens.append(token)
        return token

    def cancel_all(self) -> None:
        self.cancelled = True
        for token in self.tokens:
            token.cancel()


def normalize_validation(output: Any, step_name: str) -> ValidationResult:
    """Coerce a Validate handler's output into a ValidationResult."""
    if isinstance(output, ValidationResult):
        return output
    if isinstance(output, bool):
        return ValidationResult(valid=output)
    if isinstance(output, Mapping) and "valid" in output:
        errors = output.get("errors") or []
        if isinstance(errors, str):
            errors = [errors]
        return ValidationResult(valid=bool(output["valid"]), errors=[str(e) for e in errors])
    raise StepFailure(
        f"Validate step '{step_name}' must return {{valid, errors}}, "
        f"got {type(output).__name__}",
        step_name=step_name,
    )


async def _call_hooks(hooks: list[Callable[..., Any]], name: str, *args: Any) -> None:
    """Run lifecycle hooks; failures are logged, never raised."""
    for hook in hooks:
        try:
            result = hook(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"{name} hook {getattr(hook, '__name__', hook)!r} failed: {e}")


def _release_budget(guard: BudgetGuard, step_name: str) -> None:
    """Hand back whatever *guard* reserved for an external call that did not complete."""
    release = getattr(guard, "release", None)
    if release is None:
        return
    try:
        release(step_name)
    except Exception as e:
        logger.warning(f"Budget guard release failed for step '{step_name}': {e}")


def _is_async(handler: Callable[..., Any]) -> bool:
    if inspect.iscoroutinefunction(handler):
        return True
    call = getattr(handler, "__call__", None)
    func = getattr(handler, "func", None)  # functools.partial
    return inspect.iscoroutinefunction(call) or inspect.iscoroutinefunction(func)


class WorkflowEngine:
    """Runs workflow definitions.

    One engine can serve many concurrent runs; each run gets its own
    Context, worker pool and cancel tokens. Plans are computed once per
    definition and reused.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.events = events or event_bus
        self._plans: dict[int, tuple[WorkflowDefinition, ExecutionPlan]] = {}

    def plan(self, workflow: WorkflowDefinition) -> ExecutionPlan:
        """Validate *workflow* and return its (cached) execution plan."""
        cached = self._plans.get(id(workflow))
        if cached is not None and cached[0] is workflow:
            return cached[1]
        plan = build_plan(workflow)
        self._plans[id(workflow)] = (workflow, plan)
        return plan

    def run_sync(self, workflow: WorkflowDefinition, *args: Any, **kwargs: Any) -> WorkflowResult:
        """Blocking variant of run() for callers without an event loop."""
        return asyncio.run(self.run(workflow, *args, **kwargs))

    async def run(
        self,
        workflow: WorkflowDefinition,
        initial_input: dict[str, Any] | None = None,
        budget_guard: BudgetGuard | None = None,
        hooks: WorkflowHooks | None = None,
        deadline: float | None = None,
        run_id: str | None = None,
    ) -> WorkflowResult:
        """Execute a full workflow run.

        Args:
            workflow: Validated workflow definition.
            initial_input: Values for the definition's declared inputs.
            budget_guard: Veto consulted before every external call.
            hooks: Extra lifecycle hooks, run after the definition's own.
            deadline: Whole-run deadline in seconds (default: settings).
            run_id: Optional run identifier (generated if not provided).

        Raises DefinitionError (before any step runs) for invalid definitions
        or missing inputs. Everything else is reported in the result.
        """
        plan = self.plan(workflow)

        initial = dict(initial_input or {})
        missing = sorted(workflow.inputs - initial.keys())
        if missing:
            raise MissingInputError(
                [f"Missing initial input '{name}'" for name in missing]
            )

        if run_id is None:
            run_id = str(uuid.uuid4())
        if deadline is None and self.settings.run_deadline > 0:
            deadline = self.settings.run_deadline

        state = _RunState(
            run_id=run_id,
            workflow=workflow,
            context=Context(initial, private_keys=workflow.private_keys),
            hooks=workflow.hooks.merged(hooks),
            budget_guard=budget_guard or allow_all,
            workers=asyncio.Semaphore(self.settings.worker_limit),
            external=asyncio.Semaphore(max(self.settings.max_external_concurrency, 1)),
        )
        view = state.context.view()
        started_at = datetime.now(timezone.utc)

        logger.info(
            f"Run {run_id} started: workflow '{workflow.name}' v{workflow.version}, "
            f"{plan.step_count} steps in {len(plan.layers)} layers"
        )
        logger.debug(f"Run {run_id} input: {state.context.summary()}")
        self.events.publish("run.started", {
            "run_id": run_id,
            "workflow": workflow.name,
        })

        await _call_hooks(state.hooks.before_all, "before_all", view)

        timed_out = False
        task = asyncio.create_task(self._run_layers(plan, state))
        try:
            if deadline:
                done, _ = await asyncio.wait({task}, timeout=deadline)
                if not done:
                    timed_out = True
                    state.cancel_all()
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        pass
                else:
                    task.result()
            else:
                await task
        except asyncio.CancelledError:
            # Caller cancelled the run itself
            state.cancel_all()
            task.cancel()
            raise

        if timed_out:
            for name, outcome in self._expire(state, deadline).items():
                await _call_hooks(
                    state.hooks.for_step(name), "on_error", outcome.error, state.context.view()
                )
            status = RunStatus.TIMED_OUT
        elif state.failed_step is not None:
            status = RunStatus.FAILED
        else:
            status = RunStatus.COMPLETED

        await self._notify_error(state)

        result = WorkflowResult(
            run_id=run_id,
            workflow=workflow.name,
            status=status,
            outcomes={
                name: outcome
                for name, outcome in state.context.snapshot().items()
                if name not in state.context.initial_keys
            },
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            failed_step=state.failed_step,
            error=state.error,
        )

        event_type = {
            RunStatus.COMPLETED: "run.completed",
            RunStatus.FAILED: "run.failed",
            RunStatus.TIMED_OUT: "run.timed_out",
        }[status]
        self.events.publish(event_type, {
            "run_id": run_id,
            "workflow": workflow.name,
            "status": status.value,
            "failed_step": state.failed_step,
            "error": str(state.error) if state.error else None,
            "duration_seconds": result.duration_seconds,
        })
        log = logger.info if status is RunStatus.COMPLETED else logger.warning
        log(
            f"Run {run_id} {status.value} in {result.duration_seconds:.3f}s"
            + (f" (first failure: '{state.failed_step}': {state.error})" if state.failed_step else "")
        )

        await _call_hooks(state.hooks.after_all, "after_all", view, result)
        return result

    # --- Scheduling ---

    async def _run_layers(self, plan: ExecutionPlan, state: _RunState) -> None:
        """Run layers strictly in sequence, steps within a layer concurrently."""
        for index, layer in enumerate(plan.layers):
            if state.cancelled:
                return
            logger.debug(f"Run {state.run_id}: layer {index} -> {layer}")
            await asyncio.gather(*(
                self._run_step(state.workflow.get_step(name), state)
                for name in layer
            ))
            await self._notify_error(state)

    async def _run_step(self, step: StepSpec, state: _RunState) -> None:
        async with state.workers:
            try:
                outcome = await self._decide_and_execute(step, state)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Unexpected engine error in step '{step.name}'")
                outcome = StepOutcome.failed(
                    StepFailure(str(e), step_name=step.name, cause=e)
                )
            self._record(
                step,
                outcome.with_timing(state.started.get(step.name), time.monotonic()),
                state,
            )
        if outcome.is_failed:
            await _call_hooks(
                state.hooks.for_step(step.name), "on_error", outcome.error, state.context.view()
            )

    async def _decide_and_execute(self, step: StepSpec, state: _RunState) -> StepOutcome:
        context = state.context
        view = context.view()

        if propagates_failure(step):
            for name in step.inputs:
                ancestor = context.get(name)
                if ancestor is not None and not ancestor.is_completed:
                    error = PropagatedFailure(step.name, name, ancestor.status.value)
                    return StepOutcome.not_run(str(error), error=error)

        try:
            should_run = evaluate(step.condition, view)
        except ConditionError as e:
            e.step_name = step.name
            return StepOutcome.failed(e)
        if not should_run:
            return StepOutcome.skipped(REASON_CONDITION)

        if step.kind is StepKind.EXTERNAL_CALL:
            try:
                allowed = state.budget_guard(step.name, view)
                if inspect.isawaitable(allowed):
                    allowed = await allowed
            except Exception as e:
                return StepOutcome.failed(StepFailure(
                    f"Budget guard raised for step '{step.name}': {e}",
                    step_name=step.name,
                    cause=e,
                ))
            if not allowed:
                logger.warning(f"Step '{step.name}' skipped: budget guard denied it")
                return StepOutcome.skipped(REASON_BUDGET, error=BudgetDenied(step.name))

            try:
                outcome = await self._execute_with_retry(step, state)
            except asyncio.CancelledError:
                _release_budget(state.budget_guard, step.name)
                raise
            if not outcome.is_completed:
                _release_budget(state.budget_guard, step.name)
            return outcome

        return await self._execute_with_retry(step, state)

    # --- Execution ---

    def _timeouts(self, step: StepSpec, workflow: WorkflowDefinition) -> tuple[float, str]:
        """Effective per-attempt timeout and the scope reported if it expires."""
        timeout = step.timeout or workflow.default_timeout or self.settings.default_timeout
        if step.kind is StepKind.EXTERNAL_CALL:
            call_timeout = step.call_timeout or self.settings.external_call_timeout
            # timeout <= 0 means unbounded
            if call_timeout and call_timeout > 0 and (timeout <= 0 or call_timeout < timeout):
                return call_timeout, "call"
        return timeout, "attempt"

    async def _execute_with_retry(self, step: StepSpec, state: _RunState) -> StepOutcome:
        """Execute a step with retry logic and backoff."""
        policy = step.retry or state.workflow.default_retry
        timeout, scope = self._timeouts(step, state.workflow)
        inputs = {name: state.context.value(name) for name in step.inputs}

        state.started[step.name] = time.monotonic()
        self.events.publish("step.started", {
            "run_id": state.run_id,
            "step_name": step.name,
            "kind": step.kind.value,
        })

        attempt = 0
        while True:
            attempt += 1
            try:
                if step.kind is StepKind.EXTERNAL_CALL:
                    async with state.external:
                        output = await self._attempt(step, inputs, timeout, scope, attempt, state)
                else:
                    output = await self._attempt(step, inputs, timeout, scope, attempt, state)
                if step.kind is StepKind.VALIDATE:
                    output = normalize_validation(output, step.name)
                return StepOutcome.completed(output, attempts=attempt)
            except StepFailure as e:
                error: StepFailure = e
            except Exception as e:
                error = StepFailure(
                    f"Step '{step.name}' failed: {e}",
                    step_name=step.name,
                    attempt=attempt,
                    cause=e,
                )

            error.step_name = step.name
            error.attempt = attempt
            if state.cancelled or not policy.should_retry(error, attempt):
                if attempt > 1:
                    logger.warning(
                        f"Step '{step.name}' failed after {attempt} attempts: {error}"
                    )
                return StepOutcome.failed(error, attempts=attempt)

            delay = policy.backoff(attempt)
            logger.info(
                f"Step '{step.name}' attempt {attempt} failed ({error}), "
                f"retrying in {delay}s..."
            )
            self.events.publish("step.retrying", {
                "run_id": state.run_id,
                "step_name": step.name,
                "attempt": attempt,
                "error": str(error),
            })
            if delay > 0:
                await asyncio.sleep(delay)

    async def _attempt(
        self,
        step: StepSpec,
        inputs: dict[str, Any],
        timeout: float,
        scope: str,
        attempt: int,
        state: _RunState,
    ) -> Any:
        """Run the handler once, bounded by *timeout*."""
        token = state.new_token()
        args: tuple[Any, ...] = (dict(inputs), token) if step.cancellable else (dict(inputs),)

        limit = timeout if timeout and timeout > 0 else None
        started = time.monotonic()
        try:
            if _is_async(step.handler):
                call = step.handler(*args)
            else:
                # Blocking handlers must not stall sibling steps
                call = asyncio.to_thread(step.handler, *args)
            result = await asyncio.wait_for(call, limit)
            if inspect.isawaitable(result):
                if limit is not None:
                    limit = max(limit - (time.monotonic() - started), 0.001)
                result = await asyncio.wait_for(result, limit)
        except asyncio.TimeoutError:
            token.cancel()
            raise TimeoutExceeded(timeout, scope, step.name, attempt) from None
        finally:
            state.tokens.remove(token)
        return result

    # --- Bookkeeping ---

    def _record(self, step: StepSpec, outcome: StepOutcome, state: _RunState) -> None:
        if not state.context.publish(step.name, outcome):
            logger.warning(f"Outcome for step '{step.name}' already recorded, dropping")
            return

        data: dict[str, Any] = {
            "run_id": state.run_id,
            "step_name": step.name,
            "kind": step.kind.value,
            "status": outcome.status.value,
            "attempts": outcome.attempts,
            "duration_seconds": outcome.duration_seconds,
        }

        if outcome.is_completed:
            logger.info(
                f"Step '{step.name}' completed in {outcome.duration_seconds:.3f}s "
                f"(attempts={outcome.attempts})"
            )
            self.events.publish("step.completed", data)
        elif outcome.is_skipped:
            logger.info(f"Step '{step.name}' skipped: {outcome.reason}")
            self.events.publish("step.skipped", {**data, "reason": outcome.reason})
        elif outcome.is_not_run:
            logger.info(f"Step '{step.name}' not run: {outcome.reason}")
            self.events.publish("step.not_run", {**data, "reason": outcome.reason})
        else:
            fatal = step.kind is not StepKind.EMIT
            if fatal:
                logger.error(f"Step '{step.name}' failed: {outcome.error}")
                if state.failed_step is None:
                    state.failed_step = step.name
                    state.error = outcome.error
            else:
                logger.warning(f"Emit step '{step.name}' failed (non-fatal): {outcome.error}")
            self.events.publish("step.failed", {
                **data,
                "error": str(outcome.error),
                "fatal": fatal,
            })

    async def _notify_error(self, state: _RunState) -> None:
        """Fire on_error once, for the first fatal failure."""
        if state.error_notified or state.error is None:
            return
        state.error_notified = True
        await _call_hooks(state.hooks.on_error, "on_error", state.error, state.context.view())

    def _expire(self, state: _RunState, deadline: float) -> dict[str, StepOutcome]:
        """Close out every step left without an outcome after the run deadline.

        Returns the failed outcomes of steps that were cut off mid-flight.
        """
        now = time.monotonic()
        expired: dict[str, StepOutcome] = {}
        run_error = TimeoutExceeded(deadline, "run")
        logger.warning(f"Run {state.run_id} exceeded its {deadline:g}s deadline")
        for step in state.workflow.steps:
            if step.name in state.context:
                continue
            if step.name in state.started:
                error = TimeoutExceeded(deadline, "run", step.name)
                outcome = StepOutcome.failed(
                    error, started_at=state.started[step.name], finished_at=now
                )
            else:
                outcome = StepOutcome.not_run("run deadline exceeded", finished_at=now)
            if state.context.publish(step.name, outcome):
                if outcome.is_failed:
                    expired[step.name] = outcome
                self.events.publish(f"step.{outcome.status.value}", {
                    "run_id": state.run_id,
                    "step_name": step.name,
                    "reason": outcome.reason,
                    "error": str(outcome.error) if outcome.error else None,
                })
        if state.error is None:
            state.error = run_error
        return expired


async def run_workflow(
    workflow: WorkflowDefinition,
    initial_input: dict[str, Any] | None = None,
    budget_guard: BudgetGuard | None = None,
    hooks: WorkflowHooks | None = None,
    *,
    settings: Settings | None = None,
    deadline: float | None = None,
) -> WorkflowResult:
    """Run *workflow* once with a fresh engine."""
    engine = WorkflowEngine(settings=settings)
    return await engine.run(
        workflow, initial_input, budget_guard=budget_guard, hooks=hooks, deadline=deadline
    )
