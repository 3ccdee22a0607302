"""foreman: run stored Python and Bash scripts on cron schedules."""

from foreman.controller import SchedulerController
from foreman.errors import (
    ConfigError,
    ExecutionLaunchFailure,
    ForemanError,
    InvalidScheduleExpression,
    NotificationDeliveryFailure,
    ScriptNotFound,
    StoreIOFailure,
)
from foreman.models import Execution, SchedulerState, Script

__all__ = [
    "ConfigError",
    "Execution",
    "ExecutionLaunchFailure",
    "ForemanError",
    "InvalidScheduleExpression",
    "NotificationDeliveryFailure",
    "SchedulerController",
    "SchedulerState",
    "Script",
    "ScriptNotFound",
    "StoreIOFailure",
]
