"""
Test Alert Manager
==================
"""

from datetime import timedelta
from unittest import mock

import psycopg2
import requests

from pollsync.models import Alert
from pollsync.observability import alerts as alerts_module
from pollsync.observability.alerts import AlertManager

WEBHOOK = "https://hooks.slack.com/services/T000/B000/XXXX"


def make_alert(kind="error_threshold", entity="orders", severity="error"):
    return Alert(entity_name=entity, kind=kind, detail="6 consecutive errors (threshold 5)", severity=severity)


class TestDeduplication:

    def test_same_alert_is_sent_once_within_window(self):
        manager = AlertManager(dedup_window_minutes=60)
        assert manager.notify(make_alert()) is not None
        assert manager.notify(make_alert()) is None
        assert len(manager.get_history()) == 1

    def test_different_entities_are_not_duplicates(self):
        manager = AlertManager()
        manager.notify(make_alert(entity="orders"))
        manager.notify(make_alert(entity="leads"))
        assert len(manager.get_history()) == 2
        assert len(manager.get_history(entity_name="leads")) == 1

    def test_critical_alerts_are_never_deduplicated(self):
        manager = AlertManager(dedup_window_minutes=60)
        first = manager.notify(make_alert(kind="fatal_error", severity="critical"))
        second = manager.notify(make_alert(kind="fatal_error", severity="critical"))
        assert first is not None
        assert second == first
        assert len(manager.get_history()) == 2

    def test_alert_is_resent_after_window(self):
        manager = AlertManager(dedup_window_minutes=5)
        key = manager.notify(make_alert())
        manager._last_sent[key] -= timedelta(minutes=6)
        assert manager.notify(make_alert()) == key

    def test_unknown_severity_falls_back_to_warning(self):
        manager = AlertManager()
        manager.send_alert("loud", "title", "message")
        assert manager.get_history()[0]["severity"] == "warning"

    def test_history_is_bounded(self):
        manager = AlertManager(history_size=3)
        for i in range(5):
            manager.send_alert("info", f"alert {i}", "message")
        assert [entry["title"] for entry in manager.get_history()] == ["alert 2", "alert 3", "alert 4"]


class TestSlack:

    def test_posts_to_webhook(self):
        manager = AlertManager(slack_webhook_url=WEBHOOK)
        with mock.patch.object(alerts_module.requests, "post") as post:
            post.return_value.status_code = 200
            manager.notify(make_alert(severity="critical", kind="fatal_error"))

        post.assert_called_once()
        args, kwargs = post.call_args
        assert args[0] == WEBHOOK
        header = kwargs["json"]["attachments"][0]["blocks"][0]["text"]["text"]
        assert "[CRITICAL] fatal_error on orders" in header
        assert kwargs["timeout"] == 10

    def test_webhook_errors_are_swallowed(self):
        manager = AlertManager(slack_webhook_url=WEBHOOK)
        with mock.patch.object(alerts_module.requests, "post", side_effect=requests.ConnectionError("down")):
            assert manager.notify(make_alert()) is not None

    def test_no_webhook_no_request(self):
        manager = AlertManager()
        with mock.patch.object(alerts_module.requests, "post") as post:
            manager.notify(make_alert())
        post.assert_not_called()


class TestPersistence:

    def test_alert_is_inserted(self):
        manager = AlertManager(postgres_config={"host": "localhost", "dbname": "meta"})
        with mock.patch.object(alerts_module.psycopg2, "connect") as connect:
            conn = connect.return_value
            conn.closed = 0
            cursor = conn.cursor.return_value.__enter__.return_value
            manager.notify(make_alert())

        connect.assert_called_once_with(host="localhost", dbname="meta")
        statements = [call.args[0] for call in cursor.execute.call_args_list]
        assert any("CREATE TABLE IF NOT EXISTS pollsync_alerts" in s for s in statements)
        assert any("INSERT INTO pollsync_alerts" in s for s in statements)
        conn.commit.assert_called_once()

    def test_database_errors_are_logged_not_raised(self):
        manager = AlertManager(postgres_config={"host": "localhost"})
        with mock.patch.object(alerts_module.psycopg2, "connect", side_effect=psycopg2.OperationalError("refused")):
            assert manager.notify(make_alert()) is not None
