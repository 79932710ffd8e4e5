"""
Slack notification service for inventory alerts.
Sends formatted alert messages to Slack via Incoming Webhooks.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx
import structlog

from catalog_sync.models.alerts import Alert, AlertSeverity
from catalog_sync.utils.clock import Clock, utc_now

logger = structlog.get_logger()

SEVERITY_ICONS = {
    AlertSeverity.LOW: ":information_source:",
    AlertSeverity.MEDIUM: ":warning:",
    AlertSeverity.HIGH: ":rotating_light:",
    AlertSeverity.CRITICAL: ":fire:",
}


class SlackNotificationService:
    """Service for sending alert notifications to Slack."""

    def __init__(
        self,
        webhook_url: Optional[str],
        enabled: bool,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = utc_now,
    ):
        """
        Initialize Slack notification service.

        Args:
            webhook_url: Slack incoming webhook URL
            enabled: Whether alerts are sent at all
            transport: Optional httpx transport (tests use httpx.MockTransport)
            clock: Time source for rate limiting
        """
        self.webhook_url = webhook_url
        self.enabled = enabled
        self.transport = transport
        self.clock = clock

        logger.info(
            "SlackNotificationService initialized",
            enabled=self.enabled,
            webhook_url_configured=bool(self.webhook_url),
        )

        # Rate limiting: last alert time per key
        self._rate_limit_cache: Dict[str, datetime] = {}
        self._rate_limit_window = timedelta(minutes=5)

    def _should_send_alert(self, key: str) -> bool:
        """
        Check if alert should be sent based on rate limiting.

        Args:
            key: Rate limit key, "{type}:{sku}"

        Returns:
            True if alert should be sent, False if rate limited
        """
        now = self.clock()
        last_alert = self._rate_limit_cache.get(key)
        if last_alert is None or now - last_alert >= self._rate_limit_window:
            self._rate_limit_cache[key] = now
            return True

        logger.debug("Slack alert rate limited", key=key, last_alert=last_alert.isoformat())
        return False

    def _format_alert(self, alert: Alert) -> Dict[str, Any]:
        """
        Format an alert for Slack.

        Returns:
            Slack message payload
        """
        lines = [
            f"{SEVERITY_ICONS[alert.severity]} *Inventory alert: {alert.type.value}*",
            f"• Severity: `{alert.severity.value}`",
            f"• SKU: `{alert.sku}`",
        ]
        if alert.product_name:
            lines.append(f"• Product: {alert.product_name}")
        lines.append(f"• Message: {alert.message}")
        lines.append(f"• Time: `{alert.created_at.isoformat()}`")

        if alert.details:
            lines.append("")
            for key, value in alert.details.items():
                lines.append(f"• {key}: `{value}`")

        return {"text": "\n".join(lines), "mrkdwn": True}

    async def send_alert(self, alert: Alert) -> bool:
        """
        Send an alert to Slack.

        Returns:
            True if alert sent successfully, False otherwise
        """
        if not self.enabled:
            logger.debug("Slack alerts disabled, skipping notification", alert_id=alert.id)
            return False

        if not self.webhook_url:
            logger.warning("Slack webhook URL not configured, skipping notification")
            return False

        if not self._should_send_alert(f"{alert.type.value}:{alert.sku}"):
            return False

        payload = self._format_alert(alert)

        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self.transport) as client:
                response = await client.post(self.webhook_url, json=payload)
                response.raise_for_status()

            logger.info("Slack alert sent", alert_id=alert.id, severity=alert.severity.value)
            return True

        except httpx.TimeoutException:
            logger.error("Timeout sending Slack alert", alert_id=alert.id)
            return False
        except httpx.HTTPStatusError as e:
            logger.error(
                "Failed to send Slack alert",
                alert_id=alert.id,
                status_code=e.response.status_code,
                response_text=e.response.text,
            )
            return False
        except httpx.HTTPError as e:
            logger.error("Error sending Slack alert", alert_id=alert.id, error=str(e))
            return False
