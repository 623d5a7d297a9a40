"""Booking job execution: automation step contract and the job executor."""

from .executor import JobExecutor, force_terminal_failure
from .steps import (
    AutomationStep,
    ScriptedAutomationStep,
    StepContext,
    classify_exception,
)

__all__ = [
    "JobExecutor",
    "force_terminal_failure",
    "AutomationStep",
    "ScriptedAutomationStep",
    "StepContext",
    "classify_exception",
]
