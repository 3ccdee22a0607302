from __future__ import annotations


class ForemanError(Exception):
    """Base error for foreman."""


class ConfigError(ForemanError):
    """Config validation error."""


class InvalidScheduleExpression(ForemanError):
    """Cron expression does not parse as a 5-field pattern."""


class ScriptNotFound(ForemanError):
    def __init__(self, script_id: str) -> None:
        super().__init__(f'Script "{script_id}" not found.')
        self.script_id = script_id


class StoreIOFailure(ForemanError):
    """A persisted document could not be read or written."""


class ExecutionLaunchFailure(ForemanError):
    """The script's interpreter process could not be started."""


class NotificationDeliveryFailure(ForemanError):
    """A notification could not be delivered."""
