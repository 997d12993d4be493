"""Step execution: handlers, action and validation registries."""

from .actions import (
    ActionRegistry,
    DataProcessorRegistry,
    ValidationRegistry,
    idempotency_key,
)
from .executor import StepExecutor, StepOutcome
from .handlers import DEFAULT_HANDLERS, StepContext, StepHandler

__all__ = [
    "ActionRegistry",
    "DataProcessorRegistry",
    "ValidationRegistry",
    "idempotency_key",
    "StepExecutor",
    "StepOutcome",
    "DEFAULT_HANDLERS",
    "StepContext",
    "StepHandler",
]
