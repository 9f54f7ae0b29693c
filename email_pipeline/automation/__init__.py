"""Rule-based automation triggers."""

from email_pipeline.automation.conditions import check_trigger_conditions
from email_pipeline.automation.engine import (
    AutomationEngine,
    ExecutionResult,
    ScheduledRunResult,
    TriggerResult,
)

__all__ = [
    "AutomationEngine",
    "ExecutionResult",
    "ScheduledRunResult",
    "TriggerResult",
    "check_trigger_conditions",
]
