"""codeloop - execution core of an LLM coding agent."""

__version__ = "0.1.0"

from codeloop.agent import Agent, AttemptOutcome
from codeloop.config import Config
from codeloop.logging import configure_logging
from codeloop.runtime_context import LocalWorkspace, NullUI
from codeloop.steps import AgentStep, StepType

__all__ = [
    "Agent",
    "AgentStep",
    "AttemptOutcome",
    "Config",
    "LocalWorkspace",
    "NullUI",
    "StepType",
    "configure_logging",
    "__version__",
]
