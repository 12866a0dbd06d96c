"""
Alert Manager
=============

Delivers health alerts raised by the polling engine.

Supports:
- Alert deduplication within a time window
- In-memory alert history
- Slack notifications (incoming webhook)
- PostgreSQL alert storage (optional)

Delivery problems are logged and swallowed: a broken webhook must never stop
the sync loops.
"""

import hashlib
import logging
import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional

import psycopg2
import requests
from psycopg2.extras import Json

from ..models import Alert
from ..utils import utcnow

logger = logging.getLogger(__name__)


class AlertManager:
    """
    Alert sink with deduplication and notification channels.

    Usage:
        alerts = AlertManager(slack_webhook_url="https://hooks.slack.com/...")
        monitor = HealthMonitor(alert_sink=alerts)
    """

    # Alert severity levels
    SEVERITY_LEVELS = {
        "info": 0,
        "warning": 1,
        "error": 2,
        "critical": 3
    }

    TABLE_DDL = """
        CREATE TABLE IF NOT EXISTS pollsync_alerts (
            alert_id SERIAL PRIMARY KEY,
            entity_name TEXT NOT NULL,
            kind TEXT NOT NULL,
            severity TEXT NOT NULL,
            title TEXT NOT NULL,
            message TEXT,
            alert_metadata JSONB,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """

    def __init__(
        self,
        postgres_config: Optional[Dict] = None,
        slack_webhook_url: Optional[str] = None,
        dedup_window_minutes: int = 60,
        history_size: int = 1000
    ):
        """
        Initialize Alert Manager.

        Args:
            postgres_config: psycopg2 connection kwargs; None disables persistence
            slack_webhook_url: Slack incoming webhook URL
            dedup_window_minutes: Window for alert deduplication
            history_size: Alerts kept in memory
        """
        self.postgres_config = postgres_config
        self.slack_webhook_url = slack_webhook_url
        self.dedup_window_minutes = dedup_window_minutes
        self.history_size = history_size

        self._history: List[Dict] = []
        self._last_sent: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._db_conn = None
        self._table_ready = False

    @property
    def db_conn(self):
        """Get database connection."""
        if self._db_conn is None or self._db_conn.closed:
            self._db_conn = psycopg2.connect(**self.postgres_config)
            self._table_ready = False
        return self._db_conn

    def close(self):
        """Close connections."""
        if self._db_conn is not None and not self._db_conn.closed:
            self._db_conn.close()

    def _generate_dedup_key(self, kind: str, entity_name: str, title: str) -> str:
        """Generate deduplication key for an alert."""
        key_string = f"{kind}:{entity_name}:{title}"
        return hashlib.sha256(key_string.encode()).hexdigest()[:32]

    def _is_duplicate(self, dedup_key: str) -> bool:
        """Check if an alert was already sent within the dedup window."""
        sent_at = self._last_sent.get(dedup_key)
        if sent_at is None:
            return False
        return utcnow() - sent_at < timedelta(minutes=self.dedup_window_minutes)

    # =========================================
    # ALERT CREATION
    # =========================================

    def notify(self, alert: Alert) -> Optional[str]:
        """
        Alert sink entry point used by the health monitor.

        Critical alerts (an entity disabled) are raised once per episode by
        the health monitor, so they are never deduplicated.

        Returns:
            Dedup key if the alert was sent, None if deduplicated
        """
        return self.send_alert(
            severity=alert.severity,
            title=f"{alert.kind} on {alert.entity_name}",
            message=alert.detail,
            kind=alert.kind,
            entity_name=alert.entity_name,
            metadata=dict(alert.metadata),
            dedup=alert.severity != "critical"
        )

    def send_alert(
        self,
        severity: str,
        title: str,
        message: str,
        kind: str = "fatal_error",
        entity_name: str = "pollsync",
        metadata: Optional[Dict] = None,
        notify: bool = True,
        dedup: bool = True
    ) -> Optional[str]:
        """
        Create and send an alert.

        Args:
            severity: info, warning, error, critical
            title: Alert title
            message: Alert message/description
            kind: Alert kind
            entity_name: Tracked entity the alert is about
            metadata: Additional context
            notify: Whether to send notifications
            dedup: Whether to check for duplicates

        Returns:
            Dedup key if created, None if deduplicated
        """
        severity = severity.lower()
        if severity not in self.SEVERITY_LEVELS:
            severity = "warning"

        dedup_key = self._generate_dedup_key(kind, entity_name, title)

        with self._lock:
            if dedup and self._is_duplicate(dedup_key):
                logger.debug(f"Alert deduplicated: {title}")
                return None
            created_at = utcnow()
            self._last_sent[dedup_key] = created_at

            alert_metadata = dict(metadata or {})
            alert_metadata["dedup_key"] = dedup_key
            entry = {
                "entity_name": entity_name,
                "kind": kind,
                "severity": severity,
                "title": title,
                "message": message,
                "metadata": alert_metadata,
                "created_at": created_at.isoformat()
            }
            self._history.append(entry)
            del self._history[:-self.history_size]

        logger.warning(f"Alert created [{severity.upper()}]: {title}")

        if self.postgres_config:
            self._persist_alert(entry)

        if notify and self.slack_webhook_url:
            self._send_slack_notification(severity, title, message, kind, entity_name)

        return dedup_key

    def get_history(
        self,
        entity_name: Optional[str] = None,
        kind: Optional[str] = None
    ) -> List[Dict]:
        """Alerts sent so far, oldest first."""
        with self._lock:
            return [
                entry for entry in self._history
                if (entity_name is None or entry["entity_name"] == entity_name)
                and (kind is None or entry["kind"] == kind)
            ]

    def _persist_alert(self, entry: Dict):
        """Persist alert to PostgreSQL."""
        try:
            conn = self.db_conn
            with conn.cursor() as cur:
                if not self._table_ready:
                    cur.execute(self.TABLE_DDL)
                    self._table_ready = True
                cur.execute("""
                    INSERT INTO pollsync_alerts
                    (entity_name, kind, severity, title, message, alert_metadata)
                    VALUES (%s, %s, %s, %s, %s, %s)
                """, (
                    entry["entity_name"], entry["kind"], entry["severity"],
                    entry["title"], entry["message"], Json(entry["metadata"])
                ))
            conn.commit()
        except psycopg2.Error as e:
            logger.error(f"Failed to persist alert: {e}")
            if self._db_conn is not None and not self._db_conn.closed:
                self._db_conn.rollback()

    # =========================================
    # NOTIFICATION CHANNELS
    # =========================================

    def _send_slack_notification(
        self,
        severity: str,
        title: str,
        message: str,
        kind: str,
        entity_name: str
    ):
        """Send notification to Slack."""
        colors = {
            "info": "#36a64f",
            "warning": "#ffcc00",
            "error": "#ff6600",
            "critical": "#ff0000"
        }

        emojis = {
            "info": ":information_source:",
            "warning": ":warning:",
            "error": ":x:",
            "critical": ":rotating_light:"
        }

        payload = {
            "attachments": [{
                "color": colors.get(severity, "#808080"),
                "blocks": [
                    {
                        "type": "header",
                        "text": {
                            "type": "plain_text",
                            "text": f"{emojis.get(severity, '')} [{severity.upper()}] {title}"
                        }
                    },
                    {
                        "type": "section",
                        "text": {
                            "type": "mrkdwn",
                            "text": message
                        }
                    },
                    {
                        "type": "context",
                        "elements": [
                            {
                                "type": "mrkdwn",
                                "text": f"*Entity:* {entity_name} | *Kind:* {kind}"
                            }
                        ]
                    }
                ]
            }]
        }

        try:
            response = requests.post(self.slack_webhook_url, json=payload, timeout=10)
            if response.status_code == 200:
                logger.debug("Slack notification sent")
            else:
                logger.warning(f"Slack notification failed: {response.status_code}")
        except requests.RequestException as e:
            logger.error(f"Slack notification error: {e}")
