"""Stepwise - dependency-driven step orchestration for AI-assisted workflows."""

__version__ = "0.1.0"

from stepwise.engine.dag import WorkflowBuilder, WorkflowDefinition
from stepwise.engine.executor import WorkflowEngine, WorkflowResult, run_workflow

__all__ = [
    "WorkflowBuilder",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowResult",
    "run_workflow",
    "__version__",
]
