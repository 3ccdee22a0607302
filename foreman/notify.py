"""
Discord webhook notifications.

Settings live in an externally managed JSON file::

    {"discordWebhook": "https://...", "notifications": {"onSuccess": true, "onFailure": true, "onScheduled": false}}

Delivery is best-effort: ``notify`` never raises.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
from urllib import error as urllib_error
from urllib import request as urllib_request

from foreman.errors import NotificationDeliveryFailure

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 5000
KIND_SUCCESS = "success"
KIND_FAILURE = "failure"
KIND_SCHEDULED = "scheduled"
VALID_KINDS = {KIND_SUCCESS, KIND_FAILURE, KIND_SCHEDULED}


@dataclass(frozen=True)
class NotificationSettings:
    webhook: str = ""
    on_success: bool = True
    on_failure: bool = True
    on_scheduled: bool = False

    def allows(self, kind: str) -> bool:
        if kind == KIND_SUCCESS:
            return self.on_success
        if kind == KIND_FAILURE:
            return self.on_failure
        return self.on_scheduled

    @staticmethod
    def from_payload(raw: Dict[str, Any]) -> "NotificationSettings":
        flags = raw.get("notifications") or {}
        return NotificationSettings(
            webhook=str(raw.get("discordWebhook") or "").strip(),
            on_success=bool(flags.get("onSuccess", True)),
            on_failure=bool(flags.get("onFailure", True)),
            on_scheduled=bool(flags.get("onScheduled", False)),
        )


def load_notification_settings(path: Optional[Path]) -> NotificationSettings:
    if path is None or not path.exists():
        return NotificationSettings()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to read notification settings %s: %s", path, exc)
        return NotificationSettings()
    if not isinstance(raw, dict):
        logger.warning("Notification settings %s must be a JSON object; using defaults.", path)
        return NotificationSettings()
    return NotificationSettings.from_payload(raw)


class DiscordNotifier:
    def __init__(self, settings_file: Optional[Path], timeout_ms: int = DEFAULT_TIMEOUT_MS) -> None:
        self.settings_file = settings_file
        self.timeout_ms = timeout_ms

    def notify(self, message: str, kind: str) -> bool:
        """Send ``message`` if settings allow ``kind``; returns whether it was delivered."""
        if kind not in VALID_KINDS:
            logger.warning('Unknown notification kind "%s"; skipping.', kind)
            return False
        settings = load_notification_settings(self.settings_file)
        if not settings.webhook:
            logger.debug("Discord webhook URL not set; skipping notification.")
            return False
        if not settings.allows(kind):
            logger.debug("Skipping %s notification as per settings.", kind)
            return False
        try:
            self._send(settings.webhook, message)
        except NotificationDeliveryFailure as exc:
            logger.warning("%s", exc)
            return False
        except Exception as exc:  # pragma: no cover
            logger.warning("Discord notification unexpected failure: %s", str(exc))
            return False
        logger.info("Discord notification sent (%s).", kind)
        return True

    def _send(self, webhook: str, message: str) -> None:
        body = json.dumps({"content": message}).encode("utf-8")
        req = urllib_request.Request(
            url=webhook,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib_request.urlopen(req, timeout=max(0.1, self.timeout_ms / 1000.0)) as response:
                if not 200 <= response.status < 300:
                    raise NotificationDeliveryFailure(
                        f"Discord notification failed: HTTP {response.status}"
                    )
        except urllib_error.URLError as exc:
            raise NotificationDeliveryFailure(f"Discord notification failed: {exc}") from exc
        except (OSError, ValueError) as exc:
            raise NotificationDeliveryFailure(f"Discord notification failed: {exc}") from exc
