"""
HOMESERVER Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
Webhook Notifications

Payloads are plain dicts handed to requests as json=..., so messages with
quotes, newlines or non-ASCII text arrive intact.
"""

import os
import socket
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from .index import log_message
from .outcome import NotificationFailed, SEVERITY_CRITICAL, SEVERITY_ERROR

PAYLOAD_FORMATS = ("json", "discord", "slack")

_SEVERITY_PREFIX = {
    SEVERITY_ERROR: "[ERROR] ",
    SEVERITY_CRITICAL: "[CRITICAL] ",
}


def build_payload(message: str, severity: str, payload_format: str = "json",
                  source: Optional[str] = None) -> Dict[str, Any]:
    """
    Build the webhook body for a notification.

    Args:
        message: Human-readable outcome description
        severity: 'info', 'error' or 'critical'
        payload_format: 'json' (structured), 'discord' or 'slack'
        source: Host or component name reported with the message

    Returns:
        dict: Body to be JSON-encoded by the HTTP client
    """
    source = source or socket.gethostname()
    if payload_format == "discord":
        return {"content": f"{_SEVERITY_PREFIX.get(severity, '')}{source}: {message}"}
    if payload_format == "slack":
        return {"text": f"{_SEVERITY_PREFIX.get(severity, '')}{source}: {message}"}
    if payload_format != "json":
        raise ValueError(f"Unknown payload format: {payload_format}")
    return {
        "source": source,
        "severity": severity,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class WebhookNotifier:
    """Deliver outcome messages to a webhook endpoint."""

    def __init__(self, url: str, payload_format: str = "json",
                 headers: Optional[Dict[str, str]] = None, timeout: float = 10,
                 source: Optional[str] = None, session: Optional[requests.Session] = None):
        if payload_format not in PAYLOAD_FORMATS:
            raise ValueError(f"Unknown payload format: {payload_format}")
        self.url = url
        self.payload_format = payload_format
        self.headers = headers or {}
        self.timeout = timeout
        self.source = source
        self.session = session or requests.Session()

    def notify(self, message: str, severity: str) -> None:
        payload = build_payload(message, severity, self.payload_format, self.source)
        try:
            response = self.session.post(self.url, json=payload, headers=self.headers,
                                         timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise NotificationFailed(f"webhook delivery to {self.url} failed: {e}") from e
        log_message(f"Sent {severity} notification to webhook", "DEBUG")


def build_notifier(notification_config: Dict[str, Any],
                   session: Optional[requests.Session] = None) -> Optional[WebhookNotifier]:
    """
    Create a notifier from a 'notifications' configuration block.

    BINUPDATES_WEBHOOK_URL overrides the configured URL. Returns None when no
    URL is configured or notifications are disabled.
    """
    url = os.environ.get("BINUPDATES_WEBHOOK_URL") or notification_config.get("webhook_url")
    if not url or not notification_config.get("enabled", True):
        return None
    return WebhookNotifier(
        url=url,
        payload_format=notification_config.get("payload_format", "json"),
        headers=notification_config.get("headers"),
        timeout=notification_config.get("timeout", 10),
        source=notification_config.get("source"),
        session=session,
    )
