"""Tests for the workflow executor."""

from __future__ import annotations

import asyncio
import random
import threading
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from stepwise.config import Settings
from stepwise.engine.budget import CostBudget
from stepwise.engine.context import REASON_BUDGET, REASON_CONDITION, OutcomeStatus
from stepwise.engine.dag import (
    RetryPolicy,
    StepSpec,
    WorkflowBuilder,
    WorkflowDefinition,
    WorkflowHooks,
)
from stepwise.engine.errors import (
    ConditionError,
    CycleError,
    MissingInputError,
    PropagatedFailure,
    StepFailure,
    TimeoutExceeded,
)
from stepwise.engine.executor import (
    RunStatus,
    ValidationResult,
    WorkflowEngine,
    normalize_validation,
    run_workflow,
)

# --- Helpers ---


def make_counter():
    calls = []

    def handler(inputs):
        calls.append(dict(inputs))
        return len(calls)

    return handler, calls


def failing(message="boom"):
    def handler(inputs):
        raise ValueError(message)

    return handler


async def slow(inputs):
    await asyncio.sleep(10)


def statuses(result):
    return {name: outcome.status for name, outcome in result.outcomes.items()}


# --- Tests: happy path ---


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_linear_chain(self, engine):
        workflow = (
            WorkflowBuilder("linear")
            .input("doc")
            .transform("a", lambda i: i["doc"], inputs=["doc"])
            .transform("b", lambda i: i["a"].upper(), inputs=["a"])
            .build()
        )
        result = await engine.run(workflow, {"doc": "x"})
        assert result.status is RunStatus.COMPLETED
        assert result.succeeded
        assert result.outputs == {"a": "x", "b": "X"}
        assert result.failed_step is None
        assert result.outcomes["b"].attempts == 1

    @pytest.mark.asyncio
    async def test_initial_inputs_not_in_outcomes(self, engine):
        workflow = WorkflowBuilder("w").input("doc").transform("a", lambda i: 1).build()
        result = await engine.run(workflow, {"doc": "x", "extra": 2})
        assert set(result.outcomes) == {"a"}

    @pytest.mark.asyncio
    async def test_handler_receives_only_declared_inputs(self, engine):
        handler, calls = make_counter()
        workflow = (
            WorkflowBuilder("w")
            .input("doc", "user")
            .transform("a", lambda i: "A")
            .transform("b", handler, inputs=["doc", "a"])
            .build()
        )
        await engine.run(workflow, {"doc": "d", "user": "u"})
        assert calls == [{"doc": "d", "a": "A"}]

    @pytest.mark.asyncio
    async def test_async_handlers(self, engine):
        async def fetch(inputs):
            await asyncio.sleep(0)
            return inputs["doc"] * 2

        workflow = (
            WorkflowBuilder("w")
            .input("doc")
            .transform("fetch", fetch, inputs=["doc"])
            .transform("wrap", lambda i: [i["fetch"]], inputs=["fetch"])
            .build()
        )
        result = await engine.run(workflow, {"doc": "ab"})
        assert result.outputs == {"fetch": "abab", "wrap": ["abab"]}

    @pytest.mark.asyncio
    async def test_sync_handler_returning_awaitable(self, engine):
        async def compute():
            return 42

        workflow = WorkflowBuilder("w").transform("a", lambda i: compute()).build()
        result = await engine.run(workflow)
        assert result.outputs["a"] == 42

    def test_run_sync(self, settings):
        workflow = WorkflowBuilder("w").transform("a", lambda i: "done").build()
        result = WorkflowEngine(settings=settings).run_sync(workflow)
        assert result.outputs == {"a": "done"}

    @pytest.mark.asyncio
    async def test_run_workflow_helper(self, settings):
        workflow = WorkflowBuilder("w").transform("a", lambda i: 1).build()
        result = await run_workflow(workflow, settings=settings)
        assert result.succeeded

    @pytest.mark.asyncio
    async def test_result_to_dict(self, engine):
        workflow = WorkflowBuilder("w").transform("a", lambda i: {"k": 1}).build()
        result = await engine.run(workflow, run_id="run-1")
        data = result.to_dict()
        assert data["run_id"] == "run-1"
        assert data["status"] == "completed"
        assert data["outcomes"]["a"]["value"] == {"k": 1}

    @pytest.mark.asyncio
    async def test_plan_cached_per_definition(self, engine):
        workflow = WorkflowBuilder("w").transform("a", lambda i: 1).build()
        assert engine.plan(workflow) is engine.plan(workflow)


# --- Tests: ordering ---


class TestOrdering:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", [1, 2, 3])
    async def test_dependencies_finish_before_dependents_start(self, engine, seed):
        rng = random.Random(seed)
        builder = WorkflowBuilder(f"random-{seed}")
        names = [f"s{i}" for i in range(12)]
        deps_of = {}
        for i, name in enumerate(names):
            deps = rng.sample(names[:i], k=min(i, rng.randint(0, 3)))
            deps_of[name] = deps
            delay = rng.uniform(0, 0.01)

            async def handler(inputs, delay=delay):
                await asyncio.sleep(delay)
                return sorted(inputs)

            builder.transform(name, handler, inputs=deps)

        result = await engine.run(builder.build())
        assert result.status is RunStatus.COMPLETED
        for name, deps in deps_of.items():
            outcome = result.outcomes[name]
            assert outcome.value == sorted(deps)
            for dep in deps:
                assert result.outcomes[dep].finished_at <= outcome.started_at

    @pytest.mark.asyncio
    async def test_siblings_run_concurrently(self, engine):
        active = 0
        peak = 0

        async def handler(inputs):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1

        builder = WorkflowBuilder("w")
        for i in range(4):
            builder.transform(f"s{i}", handler)
        await engine.run(builder.build())
        assert peak == 4

    @pytest.mark.asyncio
    async def test_worker_limit(self, bus):
        engine = WorkflowEngine(
            settings=Settings(_env_file=None, max_workers=2, default_timeout=5.0),
            events=bus,
        )
        active = 0
        peak = 0

        async def handler(inputs):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1

        builder = WorkflowBuilder("w")
        for i in range(5):
            builder.transform(f"s{i}", handler)
        result = await engine.run(builder.build())
        assert result.succeeded
        assert peak == 2

    @pytest.mark.asyncio
    async def test_external_concurrency_limit(self, bus):
        engine = WorkflowEngine(
            settings=Settings(_env_file=None, max_external_concurrency=1, max_workers=8),
            events=bus,
        )
        active = 0
        peak = 0

        async def call(inputs):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return "ok"

        builder = WorkflowBuilder("w")
        for i in range(3):
            builder.external_call(f"call{i}", call)
        result = await engine.run(builder.build())
        assert result.succeeded
        assert peak == 1


# --- Tests: validation and conditions ---


class TestValidationGating:
    @pytest.mark.asyncio
    async def test_invalid_result_skips_followup(self, engine):
        followup, calls = make_counter()
        workflow = (
            WorkflowBuilder("w")
            .input("form")
            .validate("check", lambda i: {"valid": False, "errors": ["missing email"]},
                      inputs=["form"])
            .transform("followup", followup, inputs=["check"],
                       run_when=("check", "value.valid"))
            .build()
        )
        result = await engine.run(workflow, {"form": {}})
        assert result.status is RunStatus.COMPLETED
        check = result.outcomes["check"]
        assert check.is_completed
        assert check.value == ValidationResult(valid=False, errors=["missing email"])
        assert result.outcomes["followup"].status is OutcomeStatus.SKIPPED
        assert result.outcomes["followup"].reason == REASON_CONDITION
        assert calls == []

    @pytest.mark.asyncio
    async def test_valid_result_runs_followup(self, engine):
        workflow = (
            WorkflowBuilder("w")
            .validate("check", lambda i: True)
            .transform("followup", lambda i: "ran",
                       run_when=("check", lambda o: o.value.valid))
            .build()
        )
        result = await engine.run(workflow)
        assert result.outputs["followup"] == "ran"

    @pytest.mark.asyncio
    async def test_malformed_validation_fails(self, engine):
        workflow = WorkflowBuilder("w").validate("check", lambda i: 42).build()
        result = await engine.run(workflow)
        assert result.status is RunStatus.FAILED
        assert isinstance(result.outcomes["check"].error, StepFailure)
        assert result.failed_step == "check"

    @pytest.mark.asyncio
    async def test_skip_when(self, engine):
        workflow = (
            WorkflowBuilder("w")
            .transform("score", lambda i: 0.2)
            .transform("alert", lambda i: "sent", skip_when=("score", "value < 0.5"))
            .build()
        )
        result = await engine.run(workflow)
        assert result.outcomes["alert"].is_skipped

    @pytest.mark.asyncio
    async def test_run_if_expression(self, engine):
        workflow = (
            WorkflowBuilder("w")
            .input("tier")
            .transform("premium", lambda i: "yes", run_if="tier == 'gold'")
            .build()
        )
        result = await engine.run(workflow, {"tier": "gold"})
        assert result.outputs["premium"] == "yes"
        result = await engine.run(workflow, {"tier": "free"})
        assert result.outcomes["premium"].is_skipped

    @pytest.mark.asyncio
    async def test_condition_error_fails_step(self, engine):
        workflow = (
            WorkflowBuilder("w")
            .transform("a", lambda i: 1)
            .transform("b", lambda i: 2, run_when=("a", "value.missing_attr"))
            .build()
        )
        result = await engine.run(workflow)
        outcome = result.outcomes["b"]
        assert outcome.is_failed
        assert isinstance(outcome.error, ConditionError)
        assert outcome.error.step_name == "b"
        assert result.status is RunStatus.FAILED


# --- Tests: retries and timeouts ---


class TestRetriesAndTimeouts:
    @pytest.mark.asyncio
    async def test_timeout_retried_up_to_max_attempts(self, engine):
        attempts = []

        async def stuck(inputs):
            attempts.append(1)
            await asyncio.sleep(10)

        workflow = (
            WorkflowBuilder("w")
            .transform("a", stuck, timeout=0.05, retry=RetryPolicy(max_attempts=3))
            .build()
        )
        result = await engine.run(workflow)
        outcome = result.outcomes["a"]
        assert outcome.is_failed
        assert isinstance(outcome.error, TimeoutExceeded)
        assert outcome.error.scope == "attempt"
        assert outcome.attempts == 3
        assert len(attempts) == 3
        assert result.status is RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_exactly_once_after_retries(self, engine):
        attempts = []

        async def flaky(inputs):
            attempts.append(1)
            if len(attempts) == 1:
                await asyncio.sleep(10)
            if len(attempts) == 2:
                raise ConnectionError("reset")
            return "ok"

        workflow = (
            WorkflowBuilder("w")
            .transform("a", flaky, timeout=0.05, retry=RetryPolicy(max_attempts=3))
            .build()
        )
        result = await engine.run(workflow)
        outcome = result.outcomes["a"]
        assert outcome.is_completed
        assert outcome.value == "ok"
        assert outcome.attempts == 3

    @pytest.mark.asyncio
    async def test_late_thread_result_discarded(self, engine):
        attempts = []

        def blocking(inputs):
            attempts.append(1)
            if len(attempts) == 1:
                time.sleep(0.2)
                return "late"
            return "fresh"

        workflow = (
            WorkflowBuilder("w")
            .transform("a", blocking, timeout=0.05, retry=RetryPolicy(max_attempts=2))
            .build()
        )
        result = await engine.run(workflow)
        await asyncio.sleep(0.3)
        assert result.outcomes["a"].value == "fresh"
        assert result.outcomes["a"].attempts == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_fast(self, engine):
        attempts = []

        def handler(inputs):
            attempts.append(1)
            raise ValueError("bad data")

        policy = RetryPolicy(max_attempts=3, retry_on=(ConnectionError,))
        workflow = WorkflowBuilder("w").transform("a", handler, retry=policy).build()
        result = await engine.run(workflow)
        assert result.outcomes["a"].attempts == 1
        assert len(attempts) == 1
        assert isinstance(result.outcomes["a"].error.cause, ValueError)

    @pytest.mark.asyncio
    async def test_definition_default_retry(self, engine):
        attempts = []

        def handler(inputs):
            attempts.append(1)
            if len(attempts) < 2:
                raise ConnectionError("reset")
            return "ok"

        workflow = WorkflowBuilder("w").retry(2).transform("a", handler).build()
        result = await engine.run(workflow)
        assert result.outputs["a"] == "ok"

    @pytest.mark.asyncio
    async def test_external_call_timeout(self, engine):
        workflow = (
            WorkflowBuilder("w")
            .external_call("score", slow, timeout=5, call_timeout=0.05)
            .build()
        )
        result = await engine.run(workflow)
        error = result.outcomes["score"].error
        assert isinstance(error, TimeoutExceeded)
        assert error.scope == "call"

    @pytest.mark.asyncio
    async def test_non_positive_timeout_means_no_limit(self, bus):
        engine = WorkflowEngine(
            settings=Settings(_env_file=None, default_timeout=0), events=bus
        )

        async def handler(inputs):
            await asyncio.sleep(0.05)
            return "finished"

        workflow = WorkflowBuilder("w").transform("a", handler).build()
        result = await engine.run(workflow)
        assert result.outputs["a"] == "finished"

    @pytest.mark.asyncio
    async def test_call_timeout_applies_when_step_timeout_unlimited(self, bus):
        engine = WorkflowEngine(
            settings=Settings(_env_file=None, default_timeout=0, external_call_timeout=0.05),
            events=bus,
        )

        async def late(inputs):
            await asyncio.sleep(0.5)
            return "late"

        workflow = WorkflowBuilder("w").external_call("score", late).build()
        result = await engine.run(workflow)
        outcome = result.outcomes["score"]
        assert outcome.is_failed
        assert isinstance(outcome.error, TimeoutExceeded)
        assert outcome.error.scope == "call"


# --- Tests: failure propagation ---


class TestFailurePropagation:
    @pytest.mark.asyncio
    async def test_downstream_not_run(self, engine):
        downstream, calls = make_counter()
        workflow = (
            WorkflowBuilder("w")
            .transform("a", failing())
            .transform("b", downstream, inputs=["a"])
            .transform("c", downstream, inputs=["b"])
            .build()
        )
        result = await engine.run(workflow)
        assert statuses(result) == {
            "a": OutcomeStatus.FAILED,
            "b": OutcomeStatus.NOT_RUN,
            "c": OutcomeStatus.NOT_RUN,
        }
        error = result.outcomes["b"].error
        assert isinstance(error, PropagatedFailure)
        assert error.ancestor == "a"
        assert calls == []
        assert result.failed_step == "a"
        assert result.status is RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_run_when_opts_out_of_propagation(self, engine):
        workflow = (
            WorkflowBuilder("w")
            .transform("fetch", failing("down"))
            .transform("fallback", lambda i: "cached", inputs=["fetch"],
                       run_when=("fetch", "status == 'failed'"))
            .build()
        )
        result = await engine.run(workflow)
        assert result.outcomes["fallback"].value == "cached"
        assert result.status is RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_partial_failure(self, engine):
        workflow = (
            WorkflowBuilder("w")
            .transform("left", failing())
            .transform("left_next", lambda i: 1, inputs=["left"])
            .transform("right", lambda i: "r")
            .transform("right_next", lambda i: i["right"] + "!", inputs=["right"])
            .build()
        )
        result = await engine.run(workflow)
        assert result.status is RunStatus.FAILED
        assert result.outputs == {"right": "r", "right_next": "r!"}
        assert result.outcomes["left_next"].is_not_run

    @pytest.mark.asyncio
    async def test_skipped_ancestor_propagates(self, engine):
        workflow = (
            WorkflowBuilder("w")
            .transform("a", lambda i: 1, run_if=lambda ctx: False)
            .transform("b", lambda i: 2, inputs=["a"])
            .build()
        )
        result = await engine.run(workflow)
        assert result.outcomes["a"].is_skipped
        assert result.outcomes["b"].is_not_run
        assert result.status is RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_first_failure_reported(self, engine):
        async def late_fail(inputs):
            await asyncio.sleep(0.02)
            raise ValueError("second")

        workflow = (
            WorkflowBuilder("w")
            .transform("early", failing("first"))
            .transform("late", late_fail)
            .build()
        )
        result = await engine.run(workflow)
        assert result.failed_step == "early"
        assert "first" in str(result.error)

    @pytest.mark.asyncio
    async def test_emit_failure_is_non_fatal(self, engine):
        workflow = (
            WorkflowBuilder("w")
            .transform("score", lambda i: 0.9)
            .emit("notify", failing("webhook down"), inputs=["score"])
            .build()
        )
        result = await engine.run(workflow)
        assert result.outcomes["notify"].is_failed
        assert result.status is RunStatus.COMPLETED
        assert result.failed_step is None


# --- Tests: budget ---


class TestBudget:
    @pytest.mark.asyncio
    async def test_denied_external_call_never_runs(self, engine):
        call, calls = make_counter()
        workflow = (
            WorkflowBuilder("w")
            .external_call("score", call)
            .transform("use", lambda i: i["score"], inputs=["score"])
            .build()
        )
        result = await engine.run(workflow, budget_guard=lambda name, ctx: False)
        outcome = result.outcomes["score"]
        assert outcome.is_skipped
        assert outcome.reason == REASON_BUDGET
        assert calls == []
        assert result.outcomes["use"].is_not_run
        assert result.status is RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_guard_only_consulted_for_external_calls(self, engine):
        asked = []

        def guard(name, ctx):
            asked.append(name)
            return True

        workflow = (
            WorkflowBuilder("w")
            .transform("prep", lambda i: 1)
            .external_call("score", lambda i: 2, inputs=["prep"])
            .build()
        )
        result = await engine.run(workflow, budget_guard=guard)
        assert asked == ["score"]
        assert result.succeeded

    @pytest.mark.asyncio
    async def test_guard_sees_context(self, engine):
        seen = {}

        async def guard(name, ctx):
            seen["prep"] = ctx["prep"]
            return True

        workflow = (
            WorkflowBuilder("w")
            .transform("prep", lambda i: "ready")
            .external_call("score", lambda i: 2, inputs=["prep"])
            .build()
        )
        await engine.run(workflow, budget_guard=guard)
        assert seen == {"prep": "ready"}

    @pytest.mark.asyncio
    async def test_cost_budget_between_siblings(self, engine):
        budget = CostBudget(limit=1.0, costs={"a": 0.6, "b": 0.6})
        workflow = (
            WorkflowBuilder("w")
            .external_call("a", lambda i: "A")
            .external_call("b", lambda i: "B")
            .build()
        )
        result = await engine.run(workflow, budget_guard=budget)
        skipped = [n for n, o in result.outcomes.items() if o.is_skipped]
        assert len(skipped) == 1
        assert result.outcomes[skipped[0]].reason == REASON_BUDGET

    @pytest.mark.asyncio
    async def test_cost_budget_shared_across_runs(self, engine):
        budget = CostBudget(limit=12, costs={"score": 5})
        call, calls = make_counter()
        workflow = WorkflowBuilder("w").external_call("score", call).build()

        results = await asyncio.gather(*(
            engine.run(workflow, budget_guard=budget) for _ in range(3)
        ))
        skipped = [r for r in results if r.outcomes["score"].is_skipped]
        assert len(skipped) == 1
        assert len(calls) == 2
        assert budget.reserved == 10

    @pytest.mark.asyncio
    async def test_failed_call_releases_reservation(self, engine):
        budget = CostBudget(limit=5, costs={"score": 5})
        attempts = []

        def call(inputs):
            attempts.append(1)
            raise ConnectionError("provider down")

        workflow = WorkflowBuilder("w").external_call("score", call).build()
        first = await engine.run(workflow, budget_guard=budget)
        second = await engine.run(workflow, budget_guard=budget)
        assert first.outcomes["score"].is_failed
        assert second.outcomes["score"].is_failed
        assert len(attempts) == 2
        assert budget.reserved == 0

    @pytest.mark.asyncio
    async def test_deadline_releases_reservation(self, engine):
        budget = CostBudget(limit=5, costs={"score": 5})
        workflow = WorkflowBuilder("w").external_call("score", slow, timeout=30).build()
        result = await engine.run(workflow, budget_guard=budget, deadline=0.05)
        assert result.status is RunStatus.TIMED_OUT
        assert budget.reserved == 0

    @pytest.mark.asyncio
    async def test_guard_exception_fails_step(self, engine):
        def guard(name, ctx):
            raise RuntimeError("billing offline")

        workflow = WorkflowBuilder("w").external_call("a", lambda i: 1).build()
        result = await engine.run(workflow, budget_guard=guard)
        assert result.outcomes["a"].is_failed
        assert result.status is RunStatus.FAILED


# --- Tests: run deadline and cancellation ---


class TestRunDeadline:
    @pytest.mark.asyncio
    async def test_deadline_times_out_run(self, engine):
        workflow = (
            WorkflowBuilder("w")
            .transform("fast", lambda i: 1)
            .transform("stuck", slow, inputs=["fast"], timeout=30)
            .transform("after", lambda i: 2, inputs=["stuck"])
            .build()
        )
        started = time.monotonic()
        result = await engine.run(workflow, deadline=0.1)
        assert time.monotonic() - started < 2
        assert result.status is RunStatus.TIMED_OUT
        assert result.outcomes["fast"].is_completed
        stuck = result.outcomes["stuck"]
        assert stuck.is_failed
        assert isinstance(stuck.error, TimeoutExceeded)
        assert stuck.error.scope == "run"
        assert result.outcomes["after"].is_not_run
        assert result.outcomes["after"].reason == "run deadline exceeded"

    @pytest.mark.asyncio
    async def test_deadline_from_settings(self, bus):
        engine = WorkflowEngine(
            settings=Settings(_env_file=None, run_deadline=0.1, default_timeout=30),
            events=bus,
        )
        workflow = WorkflowBuilder("w").transform("stuck", slow).build()
        result = await engine.run(workflow)
        assert result.status is RunStatus.TIMED_OUT

    @pytest.mark.asyncio
    async def test_deadline_cancels_token(self, engine):
        observed = threading.Event()

        def cooperative(inputs, token):
            if token.wait(5):
                observed.set()
                token.raise_if_cancelled()
            return "never"

        workflow = (
            WorkflowBuilder("w")
            .transform("a", cooperative, cancellable=True, timeout=30)
            .build()
        )
        result = await engine.run(workflow, deadline=0.1)
        assert result.status is RunStatus.TIMED_OUT
        assert observed.wait(2)

    @pytest.mark.asyncio
    async def test_attempt_timeout_cancels_token(self, engine):
        tokens = []

        def cooperative(inputs, token):
            tokens.append(token)
            token.wait(1)

        workflow = (
            WorkflowBuilder("w")
            .transform("a", cooperative, cancellable=True, timeout=0.05)
            .build()
        )
        result = await engine.run(workflow)
        assert isinstance(result.outcomes["a"].error, TimeoutExceeded)
        assert tokens[0].cancelled


# --- Tests: definition errors ---


class TestDefinitionErrors:
    @pytest.mark.asyncio
    async def test_missing_input(self, engine):
        handler, calls = make_counter()
        workflow = WorkflowBuilder("w").input("doc").transform("a", handler, inputs=["doc"]).build()
        with pytest.raises(MissingInputError, match="doc"):
            await engine.run(workflow, {})
        assert calls == []

    @pytest.mark.asyncio
    async def test_cycle_rejected_before_execution(self, engine):
        handler, calls = make_counter()
        workflow = WorkflowDefinition(
            name="cyclic",
            steps=(
                StepSpec(name="root", handler=handler),
                StepSpec(name="a", inputs=("b",), handler=handler),
                StepSpec(name="b", inputs=("a",), handler=handler),
            ),
        )
        with pytest.raises(CycleError):
            await engine.run(workflow)
        assert calls == []


# --- Tests: hooks and events ---


class TestHooksAndEvents:
    @pytest.mark.asyncio
    async def test_hooks_called(self, engine):
        seen = []
        workflow = (
            WorkflowBuilder("w")
            .before_all(lambda ctx: seen.append(("before", sorted(ctx))))
            .after_all(lambda ctx, result: seen.append(("after", result.status)))
            .transform("a", lambda i: 1)
            .build()
        )
        await engine.run(workflow)
        assert seen == [("before", []), ("after", RunStatus.COMPLETED)]

    @pytest.mark.asyncio
    async def test_on_error_once(self, engine):
        errors = []

        async def on_error(error, ctx):
            errors.append(error)

        workflow = (
            WorkflowBuilder("w")
            .transform("a", failing("first"))
            .transform("b", failing("second"))
            .transform("c", lambda i: 1, run_when=("a", "True"))
            .build()
        )
        result = await engine.run(workflow, hooks=WorkflowHooks(on_error=[on_error]))
        assert len(errors) == 1
        assert errors[0] is result.error

    @pytest.mark.asyncio
    async def test_caller_hooks_run_after_definition_hooks(self, engine):
        order = []
        definition_hook = MagicMock(side_effect=lambda ctx, result: order.append("definition"))
        caller_hook = MagicMock(side_effect=lambda ctx, result: order.append("caller"))
        on_error = AsyncMock()

        workflow = WorkflowBuilder("w").after_all(definition_hook).transform("a", lambda i: 1).build()
        hooks = WorkflowHooks(after_all=[caller_hook], on_error=[on_error])
        result = await engine.run(workflow, hooks=hooks)

        assert order == ["definition", "caller"]
        caller_hook.assert_called_once()
        assert caller_hook.call_args.args[1] is result
        on_error.assert_not_called()

    @pytest.mark.asyncio
    async def test_on_error_on_run_timeout(self, engine):
        on_error = AsyncMock()
        workflow = WorkflowBuilder("w").on_error(on_error).transform("a", slow, timeout=30).build()
        result = await engine.run(workflow, deadline=0.05)
        assert result.status is RunStatus.TIMED_OUT
        on_error.assert_awaited_once()
        error = on_error.call_args.args[0]
        assert isinstance(error, TimeoutExceeded)

    @pytest.mark.asyncio
    async def test_step_on_error_only_for_that_step(self, engine):
        score_errors = AsyncMock()
        notify_errors = MagicMock()
        workflow = (
            WorkflowBuilder("w")
            .on_error(score_errors, step="score")
            .on_error(notify_errors, step="notify")
            .transform("prep", lambda i: 1)
            .transform("score", failing("model down"), inputs=["prep"])
            .emit("notify", failing("webhook down"))
            .build()
        )
        result = await engine.run(workflow)
        score_errors.assert_awaited_once()
        assert score_errors.call_args.args[0] is result.outcomes["score"].error
        notify_errors.assert_called_once()
        assert "webhook down" in str(notify_errors.call_args.args[0])

    @pytest.mark.asyncio
    async def test_step_on_error_not_called_on_success(self, engine):
        hook = MagicMock()
        workflow = WorkflowBuilder("w").on_error(hook, step="a").transform("a", lambda i: 1).build()
        await engine.run(workflow)
        hook.assert_not_called()

    @pytest.mark.asyncio
    async def test_step_on_error_on_run_deadline(self, engine):
        hook = AsyncMock()
        workflow = (
            WorkflowBuilder("w")
            .on_error(hook, step="stuck")
            .transform("stuck", slow, timeout=30)
            .build()
        )
        await engine.run(workflow, deadline=0.05)
        hook.assert_awaited_once()
        assert hook.call_args.args[0].scope == "run"

    @pytest.mark.asyncio
    async def test_caller_step_hooks_merged(self, engine):
        calls = []
        workflow = (
            WorkflowBuilder("w")
            .on_error(lambda e, ctx: calls.append("definition"), step="a")
            .transform("a", failing())
            .build()
        )
        hooks = WorkflowHooks(step_errors={"a": [lambda e, ctx: calls.append("caller")]})
        await engine.run(workflow, hooks=hooks)
        assert calls == ["definition", "caller"]

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_break_run(self, engine):
        def broken(ctx):
            raise RuntimeError("hook down")

        workflow = WorkflowBuilder("w").before_all(broken).transform("a", lambda i: 1).build()
        result = await engine.run(workflow)
        assert result.succeeded

    @pytest.mark.asyncio
    async def test_events_published(self, engine, bus):
        events = []
        bus.add_listener(events.append)
        attempts = []

        def flaky(inputs):
            attempts.append(1)
            if len(attempts) == 1:
                raise ConnectionError("reset")
            return "ok"

        workflow = (
            WorkflowBuilder("w")
            .transform("a", flaky, retry=RetryPolicy(max_attempts=2))
            .transform("b", lambda i: 1, run_if=lambda ctx: False)
            .build()
        )
        await engine.run(workflow)
        types = [e["type"] for e in events]
        assert types[0] == "run.started"
        assert types[-1] == "run.completed"
        assert "step.retrying" in types
        assert "step.completed" in types
        assert "step.skipped" in types


class TestNormalizeValidation:
    def test_accepts_bool_and_mapping(self):
        assert normalize_validation(True, "s") == ValidationResult(valid=True)
        result = normalize_validation({"valid": False, "errors": "bad"}, "s")
        assert result.errors == ["bad"]
        assert result["valid"] is False

    def test_rejects_other(self):
        with pytest.raises(StepFailure):
            normalize_validation("yes", "s")
