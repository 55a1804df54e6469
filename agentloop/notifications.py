"""Session notifications.

Delivers session outcomes as a macOS notification, a webhook POST and a
marker file, depending on configuration. Delivery failures are logged as
warnings and never raised, so a broken webhook cannot stop a run.
"""

import json
import logging
import platform
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

import httpx

from agentloop.config import NotificationConfig

logger = logging.getLogger(__name__)

NotificationEvent = Literal[
    "complete",
    "max_iterations",
    "max_runtime",
    "fatal_error",
    "verification_failed",
    "session_stopped",
]

EVENT_TITLES: dict[str, str] = {
    "complete": "agentloop - All Tasks Complete",
    "max_iterations": "agentloop - Max Iterations Reached",
    "max_runtime": "agentloop - Max Runtime Reached",
    "fatal_error": "agentloop - Fatal Error",
    "verification_failed": "agentloop - Verification Failed",
    "session_stopped": "agentloop - Session Stopped",
}

EVENT_MESSAGES: dict[str, str] = {
    "complete": "All tasks have been completed successfully!",
    "max_iterations": "Maximum iterations reached. The task list is not yet complete.",
    "max_runtime": "Maximum runtime reached. The task list is not yet complete.",
    "fatal_error": "A fatal error occurred. Check logs for details.",
    "verification_failed": "Verification checks failed.",
    "session_stopped": "The session was stopped and can be resumed.",
}


def event_message(event: NotificationEvent, project_name: str | None = None) -> str:
    prefix = f"[{project_name}] " if project_name else ""
    return prefix + EVENT_MESSAGES[event]


def build_payload(
    event: NotificationEvent,
    project_name: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """JSON payload shared by the webhook and the marker file."""
    payload: dict[str, Any] = {
        "event": event,
        "project": project_name,
        "message": event_message(event, project_name),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if details:
        payload["details"] = details
    return payload


def send_system_notification(
    event: NotificationEvent, project_name: str | None = None
) -> bool:
    """Show a macOS notification. Does nothing on other platforms.

    Returns:
        True if osascript ran successfully
    """
    if platform.system() != "Darwin":
        return False

    title = EVENT_TITLES[event].replace('"', '\\"')
    message = event_message(event, project_name).replace('"', '\\"')
    script = f'display notification "{message}" with title "{title}"'
    try:
        result = subprocess.run(["osascript", "-e", script], check=False, capture_output=True)
    except OSError as e:
        logger.warning(f"System notification failed: {e}")
        return False
    return result.returncode == 0


async def send_webhook_notification(
    webhook_url: str,
    event: NotificationEvent,
    project_name: str | None = None,
    details: dict[str, Any] | None = None,
) -> bool:
    """POST the notification payload to a webhook.

    Uses a 5 second timeout. Failures are logged, not raised.
    """
    payload = build_payload(event, project_name, details)
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.post(webhook_url, json=payload)
            if response.status_code >= 400:
                logger.warning(f"Webhook returned {response.status_code}: {response.text}")
                return False
            return True
    except httpx.TimeoutException:
        logger.warning("Webhook request timed out")
    except httpx.ConnectError:
        logger.warning("Failed to connect to webhook")
    except httpx.HTTPError as e:
        logger.warning(f"Webhook error: {e}")
    return False


def write_marker_file(
    marker_file_path: Path,
    event: NotificationEvent,
    project_name: str | None = None,
    details: dict[str, Any] | None = None,
) -> bool:
    """Write the payload to a file another process can watch for."""
    try:
        payload = build_payload(event, project_name, details)
        marker_file_path.write_text(json.dumps(payload, indent=2))
    except OSError as e:
        logger.warning(f"Failed to write marker file {marker_file_path}: {e}")
        return False
    return True


class NotificationSink:
    """Sends a notification to every configured channel."""

    def __init__(self, config: NotificationConfig | None = None) -> None:
        self.config = config or NotificationConfig()

    async def notify(
        self,
        event: NotificationEvent,
        project_name: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        logger.info(f"Notification: {event_message(event, project_name)}")

        if self.config.system_notification:
            send_system_notification(event, project_name)
        if self.config.webhook_url:
            await send_webhook_notification(self.config.webhook_url, event, project_name, details)
        if self.config.marker_file_path:
            write_marker_file(Path(self.config.marker_file_path), event, project_name, details)
