"""
Alert notification channels.

Features:
- Colored console line per alert
- Durable notifications.jsonl entry
- Optional JSON webhook via requests
- Each channel isolated: one failing channel never suppresses another

The webhook post runs on the IO worker so alert processing never waits on
the network.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from ..config import NotificationConfig
from ..constants import Webhook
from ..models import Alert, AlertLevel
from ..storage import NOTIFICATION_LOG, Persistence
from ..utils.error_handling import ErrorCategory, log_notification_error

logger = logging.getLogger(__name__)


class Colors:
    """ANSI colors used for console alerts"""
    BRIGHT_RED = '\033[91m'
    RED = '\033[31m'
    YELLOW = '\033[33m'
    WHITE = '\033[37m'
    RESET = '\033[0m'

    @classmethod
    def for_level(cls, level: AlertLevel) -> str:
        return {
            AlertLevel.EMERGENCY: cls.BRIGHT_RED,
            AlertLevel.CRITICAL: cls.RED,
            AlertLevel.WARNING: cls.YELLOW,
        }.get(level, cls.WHITE)


class NotificationChannel(ABC):
    """Base class for one notification target."""

    name = "channel"

    @abstractmethod
    def send(self, alert: Alert) -> None:
        """Deliver the alert. May raise; the Notifier isolates failures."""


class ConsoleChannel(NotificationChannel):
    name = "console"

    def __init__(self, stream=None):
        self.stream = stream

    def send(self, alert: Alert) -> None:
        color = Colors.for_level(alert.level)
        print(f"{color}[MEMORY ALERT - {alert.level.value.upper()}] {alert.message}{Colors.RESET}",
              file=self.stream)


class LogFileChannel(NotificationChannel):
    name = "file"

    def __init__(self, persistence: Persistence):
        self.persistence = persistence

    def send(self, alert: Alert) -> None:
        self.persistence.append(NOTIFICATION_LOG, {
            'alert': {
                'id': alert.id,
                'type': alert.alert_type.value,
                'level': alert.level.value,
                'message': alert.message,
            },
        })


class WebhookChannel(NotificationChannel):
    """POSTs a JSON payload to a configured URL."""

    name = "webhook"

    def __init__(self, url: str, persistence: Optional[Persistence] = None,
                 timeout: float = Webhook.TIMEOUT):
        self.url = url
        self.persistence = persistence
        self.timeout = timeout

    @staticmethod
    def build_payload(alert: Alert) -> Dict[str, Any]:
        return {
            'timestamp': datetime.now().isoformat(),
            'service': Webhook.SERVICE_NAME,
            'alert': {
                'id': alert.id,
                'type': alert.alert_type.value,
                'level': alert.level.value,
                'message': alert.message,
                'data': alert.data,
            },
        }

    def post(self, payload: Dict[str, Any]) -> None:
        response = requests.post(self.url, json=payload, timeout=self.timeout)
        if response.status_code >= 400:
            raise requests.HTTPError(
                f"Webhook returned {response.status_code}: {response.text[:200]}",
                response=response,
            )
        logger.debug(f"Webhook delivered alert {payload['alert']['id']}")

    def send(self, alert: Alert) -> None:
        payload = self.build_payload(alert)
        if self.persistence is None:
            self.post(payload)
            return
        self.persistence.submit(
            f"webhook {alert.id}",
            lambda: self.post(payload),
            ErrorCategory.NOTIFICATION,
        )


class Notifier:
    """Fans an alert out to every configured channel."""

    def __init__(self, channels: Optional[List[NotificationChannel]] = None):
        self.channels: List[NotificationChannel] = list(channels or [])
        self.failures: Dict[str, int] = {}

    @classmethod
    def from_config(cls, config: NotificationConfig,
                    persistence: Optional[Persistence] = None) -> 'Notifier':
        channels: List[NotificationChannel] = []
        if config.console:
            channels.append(ConsoleChannel())
        if config.log_file and persistence is not None:
            channels.append(LogFileChannel(persistence))
        if config.webhook_url:
            channels.append(WebhookChannel(config.webhook_url, persistence, config.webhook_timeout))
        return cls(channels)

    def add_channel(self, channel: NotificationChannel) -> None:
        self.channels.append(channel)

    def notify(self, alert: Alert) -> List[str]:
        """Send to all channels. Returns the names of channels that accepted it."""
        delivered = []
        for channel in self.channels:
            try:
                channel.send(alert)
                delivered.append(channel.name)
            except Exception as e:
                self.failures[channel.name] = self.failures.get(channel.name, 0) + 1
                log_notification_error(e, f"notify_{channel.name}", alert_id=alert.id)
        return delivered
