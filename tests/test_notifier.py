"""
Tests for alert notification channels.

The webhook is exercised with requests.post patched out.
"""

import io
import os
import sys
from unittest.mock import MagicMock, patch

import pytest
import requests

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from memhealthd.alerts import ConsoleChannel, LogFileChannel, NotificationChannel, Notifier, WebhookChannel
from memhealthd.config import NotificationConfig
from memhealthd.models import Alert, AlertLevel, AlertType
from memhealthd.utils.error_handling import get_error_aggregator

from conftest import START_TIME, read_jsonl


@pytest.fixture
def alert():
    return Alert(
        alert_type=AlertType.HEAP_PRESSURE,
        level=AlertLevel.CRITICAL,
        message="Heap memory pressure: 92.0%",
        timestamp=START_TIME,
        data={'utilization': 0.92},
    )


class FailingChannel(NotificationChannel):
    name = "failing"

    def send(self, alert):
        raise ConnectionError("channel down")


class RecordingChannel(NotificationChannel):
    name = "recording"

    def __init__(self):
        self.sent = []

    def send(self, alert):
        self.sent.append(alert)


class TestConsoleChannel:
    """Tests for console output."""

    def test_prints_level_and_message(self, alert):
        """The console line should name the level and carry the message."""
        stream = io.StringIO()
        ConsoleChannel(stream).send(alert)
        output = stream.getvalue()
        assert "[MEMORY ALERT - CRITICAL]" in output
        assert "Heap memory pressure: 92.0%" in output


class TestLogFileChannel:
    """Tests for the durable notification log."""

    def test_appends_record(self, alert, sync_persistence, temp_dir):
        """Each alert should add one JSONL line."""
        LogFileChannel(sync_persistence).send(alert)
        records = read_jsonl(temp_dir / "alerts" / "notifications.jsonl")
        assert records[0]['alert'] == {
            'id': alert.id,
            'type': 'heap_pressure',
            'level': 'critical',
            'message': alert.message,
        }


class TestWebhookChannel:
    """Tests for the JSON webhook."""

    def test_payload_shape(self, alert):
        """The payload should name the service and carry the alert."""
        payload = WebhookChannel.build_payload(alert)
        assert payload['service'] == "memory-monitor"
        assert payload['alert']['id'] == alert.id
        assert payload['alert']['data'] == {'utilization': 0.92}
        assert 'timestamp' in payload

    @patch('memhealthd.alerts.notifier.requests.post')
    def test_posts_json(self, mock_post, alert):
        """Without an IO worker the post happens inline."""
        mock_post.return_value = MagicMock(status_code=200)
        WebhookChannel("https://hooks.example.com/mem", timeout=3.0).send(alert)

        mock_post.assert_called_once()
        args, kwargs = mock_post.call_args
        assert args[0] == "https://hooks.example.com/mem"
        assert kwargs['timeout'] == 3.0
        assert kwargs['json']['alert']['level'] == 'critical'

    @patch('memhealthd.alerts.notifier.requests.post')
    def test_http_error_raised(self, mock_post, alert):
        """A 4xx/5xx response should surface as an HTTPError."""
        mock_post.return_value = MagicMock(status_code=503, text="unavailable")
        with pytest.raises(requests.HTTPError):
            WebhookChannel("https://hooks.example.com/mem").send(alert)

    @patch('memhealthd.alerts.notifier.requests.post')
    def test_worker_failure_is_logged(self, mock_post, alert, sync_persistence):
        """Through the IO worker, failures are counted and logged, not raised."""
        mock_post.side_effect = requests.ConnectionError("refused")
        channel = WebhookChannel("https://hooks.example.com/mem", sync_persistence)

        channel.send(alert)

        assert sync_persistence.worker.stats['failed'] == 1
        summary = get_error_aggregator().get_error_summary()
        assert summary['by_category'].get('notification') == 1


class TestNotifier:
    """Tests for the channel fan-out."""

    def test_failing_channel_isolated(self, alert):
        """A failing channel should not stop delivery to the next one."""
        recording = RecordingChannel()
        notifier = Notifier([FailingChannel(), recording])

        delivered = notifier.notify(alert)

        assert delivered == ["recording"]
        assert recording.sent == [alert]
        assert notifier.failures == {"failing": 1}

    def test_from_config(self, sync_persistence):
        """Channels should follow the notification settings."""
        config = NotificationConfig(console=False, log_file=True, webhook_url="https://hooks.example.com/x")
        notifier = Notifier.from_config(config, sync_persistence)
        assert [c.name for c in notifier.channels] == ["file", "webhook"]

    def test_from_config_without_storage(self):
        """The log file channel needs a storage root."""
        notifier = Notifier.from_config(NotificationConfig(console=True, log_file=True))
        assert [c.name for c in notifier.channels] == ["console"]
