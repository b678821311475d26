"""Workflow definitions, dependency resolution and YAML loading."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Union

import yaml

from stepwise.engine.errors import (
    CycleError,
    DefinitionError,
    DuplicateStepError,
    TimeoutExceeded,
    UnknownReferenceError,
)

# A handler takes the resolved inputs (and a CancelToken when cancellable)
Handler = Callable[..., Any]


class StepKind(str, enum.Enum):
    TRANSFORM = "transform"
    VALIDATE = "validate"
    EXTERNAL_CALL = "external_call"
    EMIT = "emit"


# --- Retry ---


def no_backoff(attempt: int) -> float:
    return 0.0


def fixed_backoff(delay: float) -> Callable[[int], float]:
    """Backoff returning the same *delay* for every attempt."""

    def _backoff(attempt: int) -> float:
        return delay

    return _backoff


def exponential_backoff(
    base: float = 1.0, factor: float = 2.0, cap: float = 60.0
) -> Callable[[int], float]:
    """Backoff of ``base * factor ** (attempt - 1)`` seconds, capped at *cap*."""

    def _backoff(attempt: int) -> float:
        return min(base * factor ** (attempt - 1), cap)

    return _backoff


@dataclass(frozen=True)
class RetryPolicy:
    """How often a step is attempted and how long to wait in between.

    ``backoff(n)`` is the delay after failed attempt *n*. Only exceptions
    matching ``retry_on`` are retried; others fail the step immediately.
    """

    max_attempts: int = 1
    backoff: Callable[[int], float] = no_backoff
    retry_on: tuple[type[BaseException], ...] = (Exception,)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        if isinstance(error, TimeoutExceeded):
            return True
        cause = getattr(error, "cause", None) or error
        return isinstance(error, self.retry_on) or isinstance(cause, self.retry_on)


# --- Conditions ---


@dataclass(frozen=True)
class RunIf:
    """Run when *expr* (callable over a ContextView, or expression string) is true."""

    expr: Callable[[Any], bool] | str


@dataclass(frozen=True)
class RunWhen:
    """Run when *predicate* holds for the outcome of *step*."""

    step: str
    predicate: Callable[[Any], bool] | str


@dataclass(frozen=True)
class SkipWhen:
    """Skip when *predicate* holds for the outcome of *step*."""

    step: str
    predicate: Callable[[Any], bool] | str


Condition = Union[RunIf, RunWhen, SkipWhen]


# --- Definitions ---


@dataclass(frozen=True)
class StepSpec:
    """Definition of a single workflow step."""

    name: str
    kind: StepKind = StepKind.TRANSFORM
    inputs: tuple[str, ...] = ()
    handler: Handler | None = None
    condition: Condition | None = None
    timeout: float | None = None  # None/0 = definition default
    call_timeout: float | None = None  # external calls only
    retry: RetryPolicy | None = None
    cancellable: bool = False
    description: str = ""
    tags: tuple[str, ...] = ()

    @property
    def condition_step(self) -> str | None:
        """Step named by a run_when/skip_when condition, if any."""
        if isinstance(self.condition, (RunWhen, SkipWhen)):
            return self.condition.step
        return None


@dataclass
class WorkflowHooks:
    """Lifecycle callbacks; each may be sync or async.

    ``on_error`` hooks fire once for the run's first fatal failure.
    ``step_errors`` maps a step name to hooks fired whenever that step
    fails, fatal or not.
    """

    before_all: list[Callable[..., Any]] = field(default_factory=list)
    after_all: list[Callable[..., Any]] = field(default_factory=list)
    on_error: list[Callable[..., Any]] = field(default_factory=list)
    step_errors: dict[str, list[Callable[..., Any]]] = field(default_factory=dict)

    def merged(self, other: WorkflowHooks | None) -> WorkflowHooks:
        if other is None:
            return self
        step_errors = {name: list(hooks) for name, hooks in self.step_errors.items()}
        for name, hooks in other.step_errors.items():
            step_errors.setdefault(name, []).extend(hooks)
        return WorkflowHooks(
            before_all=[*self.before_all, *other.before_all],
            after_all=[*self.after_all, *other.after_all],
            on_error=[*self.on_error, *other.on_error],
            step_errors=step_errors,
        )

    def for_step(self, step_name: str) -> list[Callable[..., Any]]:
        return self.step_errors.get(step_name, [])


@dataclass(frozen=True)
class WorkflowDefinition:
    """Immutable, validated workflow: ordered steps plus global settings."""

    name: str
    steps: tuple[StepSpec, ...]
    inputs: frozenset[str] = frozenset()
    version: str = "1"
    description: str = ""
    default_timeout: float | None = None  # None = settings default
    default_retry: RetryPolicy = field(default_factory=RetryPolicy)
    hooks: WorkflowHooks = field(default_factory=WorkflowHooks, compare=False)
    private_keys: frozenset[str] = frozenset()

    def get_step(self, name: str) -> StepSpec:
        """Get a step by its name."""
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(f"Step '{name}' not found in workflow '{self.name}'")

    @property
    def step_names(self) -> list[str]:
        return [s.name for s in self.steps]

    def dependencies(self, step: StepSpec) -> set[str]:
        """Names of steps that must be terminal before *step* starts."""
        names = set(self.step_names)
        deps = {name for name in step.inputs if name in names}
        if step.condition_step in names:
            deps.add(step.condition_step)
        return deps


@dataclass
class ExecutionPlan:
    """Level-order partition of the step DAG."""

    layers: list[list[str]]  # e.g. [["fetch"], ["analyze", "score"], ["notify"]]

    @property
    def step_count(self) -> int:
        return sum(len(layer) for layer in self.layers)


# --- Validation ---


def validate(workflow: WorkflowDefinition, require_handlers: bool = True) -> list[str]:
    """Validate a workflow definition. Returns list of error messages (empty = valid)."""
    errors: list[str] = []

    if not workflow.name:
        errors.append("Workflow name is required")

    if not workflow.steps:
        errors.append("Workflow must have at least one step")

    errors.extend(_duplicate_errors(workflow))
    errors.extend(_reference_errors(workflow))

    for step in workflow.steps:
        if require_handlers and step.handler is None:
            errors.append(f"Step '{step.name}' has no handler")
        if step.retry is not None and step.retry.max_attempts < 1:
            errors.append(f"Step '{step.name}' must allow at least one attempt")
        if step.timeout is not None and step.timeout < 0:
            errors.append(f"Step '{step.name}' has a negative timeout")

    known_steps = set(workflow.step_names)
    for name in workflow.hooks.step_errors:
        if name not in known_steps:
            errors.append(f"on_error hook registered for unknown step '{name}'")

    cycle = find_cycle(list(workflow.steps))
    if cycle:
        errors.append(f"Cycle detected: {' -> '.join(cycle)}")

    return errors


def _duplicate_errors(workflow: WorkflowDefinition) -> list[str]:
    errors: list[str] = []
    seen: set[str] = set()
    for step in workflow.steps:
        if step.name in seen:
            errors.append(f"Duplicate step name: '{step.name}'")
        seen.add(step.name)
        if step.name in workflow.inputs:
            errors.append(f"Step '{step.name}' collides with an initial input name")
    return errors


def _reference_errors(workflow: WorkflowDefinition) -> list[str]:
    errors: list[str] = []
    known = set(workflow.step_names) | set(workflow.inputs)
    step_names = set(workflow.step_names)
    for step in workflow.steps:
        for name in step.inputs:
            if name == step.name:
                errors.append(f"Step '{step.name}' lists itself as an input")
            elif name not in known:
                errors.append(f"Step '{step.name}' references unknown input '{name}'")
        target = step.condition_step
        if target is not None and target not in step_names:
            errors.append(f"Step '{step.name}' has a condition on unknown step '{target}'")
    return errors


def find_cycle(steps: list[StepSpec]) -> list[str] | None:
    """Return the step names of one dependency cycle, or None.

    Depth-first search with recursion-stack coloring. The returned path
    starts and ends with the same step, e.g. ``["a", "b", "c", "a"]``.
    """
    step_names = {s.name for s in steps}
    adj: dict[str, list[str]] = {}
    for s in steps:
        deps = [d for d in s.inputs if d in step_names]
        if s.condition_step in step_names and s.condition_step not in deps:
            deps.append(s.condition_step)
        adj[s.name] = deps

    visited: set[str] = set()
    stack: list[str] = []
    in_stack: set[str] = set()

    def dfs(node: str) -> list[str] | None:
        visited.add(node)
        stack.append(node)
        in_stack.add(node)
        for neighbor in adj.get(node, []):
            if neighbor in in_stack:
                # Edges point at dependencies; reverse to follow data flow
                cycle = stack[stack.index(neighbor):]
                return list(reversed(cycle)) + [cycle[-1]]
            if neighbor not in visited:
                found = dfs(neighbor)
                if found:
                    return found
        stack.pop()
        in_stack.discard(node)
        return None

    for s in steps:
        if s.name not in visited:
            found = dfs(s.name)
            if found:
                return found
    return None


def build_plan(workflow: WorkflowDefinition, require_handlers: bool = True) -> ExecutionPlan:
    """Validate *workflow* and group its steps into concurrently runnable layers.

    Layer 0 holds steps that only read initial inputs; every later layer
    holds steps whose dependencies all live in earlier layers.
    """
    duplicates = _duplicate_errors(workflow)
    if duplicates:
        raise DuplicateStepError(duplicates)

    references = _reference_errors(workflow)
    if references:
        raise UnknownReferenceError(references)

    cycle = find_cycle(list(workflow.steps))
    if cycle:
        raise CycleError(cycle)

    errors = validate(workflow, require_handlers=require_handlers)
    if errors:
        raise DefinitionError(errors)

    in_degree: dict[str, int] = {}
    dependents: dict[str, list[str]] = {s.name: [] for s in workflow.steps}
    for step in workflow.steps:
        deps = workflow.dependencies(step)
        in_degree[step.name] = len(deps)
        for dep in deps:
            dependents[dep].append(step.name)

    layers: list[list[str]] = []
    ready = [name for name, deg in in_degree.items() if deg == 0]

    while ready:
        layer = sorted(ready)
        layers.append(layer)

        next_ready: list[str] = []
        for name in layer:
            for dependent in dependents[name]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    next_ready.append(dependent)
        ready = next_ready

    return ExecutionPlan(layers=layers)


# --- Builder ---


class WorkflowBuilder:
    """Fluent construction of an immutable WorkflowDefinition.

    Example::

        definition = (
            WorkflowBuilder("lead-scoring")
            .input("response")
            .transform("answers", normalize, inputs=["response"])
            .external_call("score", call_model, inputs=["answers"])
            .emit("notify", push_score, inputs=["score"])
            .build()
        )
    """

    def __init__(self, name: str, version: str = "1", description: str = "") -> None:
        self._name = name
        self._version = version
        self._description = description
        self._inputs: list[str] = []
        self._private: set[str] = set()
        self._steps: list[StepSpec] = []
        self._hooks = WorkflowHooks()
        self._timeout: float | None = None
        self._retry = RetryPolicy()

    # --- Global configuration ---

    def input(self, *names: str, private: bool = False) -> WorkflowBuilder:
        """Declare initial-context keys; *private* masks them in logs."""
        self._inputs.extend(n for n in names if n not in self._inputs)
        if private:
            self._private.update(names)
        return self

    def timeout(self, seconds: float) -> WorkflowBuilder:
        self._timeout = seconds
        return self

    def retry(
        self,
        max_attempts: int,
        backoff: Callable[[int], float] = no_backoff,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
    ) -> WorkflowBuilder:
        self._retry = RetryPolicy(max_attempts, backoff, retry_on)
        return self

    def before_all(self, hook: Callable[..., Any]) -> WorkflowBuilder:
        self._hooks.before_all.append(hook)
        return self

    def after_all(self, hook: Callable[..., Any]) -> WorkflowBuilder:
        self._hooks.after_all.append(hook)
        return self

    def on_error(self, hook: Callable[..., Any], step: str | None = None) -> WorkflowBuilder:
        """Register *hook(error, ctx)*; with *step*, only for that step's failures."""
        if step is None:
            self._hooks.on_error.append(hook)
        else:
            self._hooks.step_errors.setdefault(step, []).append(hook)
        return self

    # --- Steps ---

    def step(
        self,
        name: str,
        kind: StepKind | str,
        handler: Handler,
        *,
        inputs: list[str] | tuple[str, ...] = (),
        run_if: Callable[[Any], bool] | str | None = None,
        run_when: tuple[str, Callable[[Any], bool] | str] | None = None,
        skip_when: tuple[str, Callable[[Any], bool] | str] | None = None,
        timeout: float | None = None,
        call_timeout: float | None = None,
        retry: RetryPolicy | None = None,
        cancellable: bool = False,
        description: str = "",
        tags: list[str] | tuple[str, ...] = (),
    ) -> WorkflowBuilder:
        given = [c for c in (run_if, run_when, skip_when) if c is not None]
        if len(given) > 1:
            raise DefinitionError(
                f"Step '{name}' declares more than one condition "
                "(run_if, run_when and skip_when are mutually exclusive)"
            )

        condition: Condition | None = None
        if run_if is not None:
            condition = RunIf(run_if)
        elif run_when is not None:
            condition = RunWhen(*run_when)
        elif skip_when is not None:
            condition = SkipWhen(*skip_when)

        self._steps.append(StepSpec(
            name=name,
            kind=StepKind(kind),
            inputs=tuple(inputs),
            handler=handler,
            condition=condition,
            timeout=timeout,
            call_timeout=call_timeout,
            retry=retry,
            cancellable=cancellable,
            description=description,
            tags=tuple(tags),
        ))
        return self

    def transform(self, name: str, handler: Handler, **options: Any) -> WorkflowBuilder:
        return self.step(name, StepKind.TRANSFORM, handler, **options)

    def validate(self, name: str, handler: Handler, **options: Any) -> WorkflowBuilder:
        return self.step(name, StepKind.VALIDATE, handler, **options)

    def external_call(self, name: str, handler: Handler, **options: Any) -> WorkflowBuilder:
        return self.step(name, StepKind.EXTERNAL_CALL, handler, **options)

    def emit(self, name: str, handler: Handler, **options: Any) -> WorkflowBuilder:
        return self.step(name, StepKind.EMIT, handler, **options)

    def build(self) -> WorkflowDefinition:
        """Freeze and validate the definition (raises DefinitionError)."""
        workflow = WorkflowDefinition(
            name=self._name,
            version=self._version,
            description=self._description,
            steps=tuple(self._steps),
            inputs=frozenset(self._inputs),
            default_timeout=self._timeout,
            default_retry=self._retry,
            hooks=WorkflowHooks(
                before_all=list(self._hooks.before_all),
                after_all=list(self._hooks.after_all),
                on_error=list(self._hooks.on_error),
                step_errors={n: list(h) for n, h in self._hooks.step_errors.items()},
            ),
            private_keys=frozenset(self._private),
        )
        build_plan(workflow)
        return workflow


# --- YAML loading ---


def _parse_retry(data: dict | None) -> RetryPolicy | None:
    """Parse retry configuration from YAML data."""
    if data is None:
        return None
    backoff_name = data.get("backoff", "none")
    if backoff_name == "exponential":
        backoff = exponential_backoff(
            base=data.get("delay", 1.0),
            factor=data.get("factor", 2.0),
            cap=data.get("cap", 60.0),
        )
    elif backoff_name == "fixed":
        backoff = fixed_backoff(data.get("delay", 1.0))
    elif backoff_name == "none":
        backoff = no_backoff
    else:
        raise DefinitionError(f"Unknown backoff '{backoff_name}'")
    return RetryPolicy(max_attempts=data.get("max_attempts", 1), backoff=backoff)


def _parse_condition(step_name: str, data: dict | None) -> Condition | None:
    """Parse a step condition from YAML data."""
    if not data:
        return None
    if len(data) > 1:
        raise DefinitionError(f"Step '{step_name}' declares more than one condition")
    if "run_if" in data:
        return RunIf(str(data["run_if"]))
    for key, cls in (("run_when", RunWhen), ("skip_when", SkipWhen)):
        if key in data:
            spec = data[key] or {}
            if "step" not in spec or "expr" not in spec:
                raise DefinitionError(
                    f"Step '{step_name}': {key} needs both 'step' and 'expr'"
                )
            return cls(step=spec["step"], predicate=str(spec["expr"]))
    raise DefinitionError(f"Step '{step_name}' has unknown condition {sorted(data)}")


def _parse_step(data: dict, handlers: Mapping[str, Handler] | None, index: int = 0) -> StepSpec:
    """Parse a single step definition from YAML data."""
    if not isinstance(data, dict):
        raise DefinitionError(f"Step #{index + 1} must be a mapping, got {type(data).__name__}")
    name = data.get("name")
    if not name:
        raise DefinitionError(f"Step #{index + 1} has no 'name'")
    handler = None
    handler_key = data.get("handler", name)
    if handlers is not None:
        if handler_key not in handlers:
            raise DefinitionError(f"Step '{name}' uses unregistered handler '{handler_key}'")
        handler = handlers[handler_key]

    try:
        kind = StepKind(data.get("kind", "transform"))
    except ValueError:
        raise DefinitionError(
            f"Step '{name}' has unknown kind '{data.get('kind')}'"
        ) from None

    return StepSpec(
        name=name,
        kind=kind,
        inputs=tuple(data.get("inputs", [])),
        handler=handler,
        condition=_parse_condition(name, data.get("condition")),
        timeout=data.get("timeout"),
        call_timeout=data.get("call_timeout"),
        retry=_parse_retry(data.get("retry")),
        cancellable=data.get("cancellable", False),
        description=data.get("description", ""),
        tags=tuple(data.get("tags", [])),
    )


def _from_dict(data: dict, handlers: Mapping[str, Handler] | None) -> WorkflowDefinition:
    if not isinstance(data, dict) or "name" not in data:
        raise DefinitionError("Workflow document must be a mapping with a 'name'")

    steps = data.get("steps") or []
    if not isinstance(steps, list):
        raise DefinitionError("'steps' must be a list of step mappings")

    inputs = data.get("inputs", [])
    private = data.get("private_inputs", [])
    default_retry = _parse_retry(data.get("retry")) or RetryPolicy()

    return WorkflowDefinition(
        name=data["name"],
        version=str(data.get("version", "1")),
        description=data.get("description", ""),
        steps=tuple(_parse_step(s, handlers, i) for i, s in enumerate(steps)),
        inputs=frozenset([*inputs, *private]),
        default_timeout=data.get("default_timeout"),
        default_retry=default_retry,
        private_keys=frozenset(private),
    )


def _load(stream: Any) -> Any:
    try:
        return yaml.safe_load(stream)
    except yaml.YAMLError as e:
        raise DefinitionError(f"Invalid workflow YAML: {e}") from e


def parse_yaml_string(
    yaml_content: str, handlers: Mapping[str, Handler] | None = None
) -> WorkflowDefinition:
    """Parse a workflow from a YAML string.

    Each step's ``handler`` key (default: the step name) is looked up in
    *handlers*. With ``handlers=None`` the definition is loaded without
    handlers, which is enough for validation and planning but not for runs.
    Malformed YAML raises DefinitionError.
    """
    return _from_dict(_load(yaml_content), handlers)


def parse(yaml_path: str | Path, handlers: Mapping[str, Handler] | None = None) -> WorkflowDefinition:
    """Parse a workflow YAML file into a WorkflowDefinition."""
    path = Path(yaml_path)
    with path.open() as f:
        return _from_dict(_load(f), handlers)
