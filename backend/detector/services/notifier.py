"""Slack-style webhook notifier for alerts."""
import logging
from typing import Optional

import httpx

from ..models import AlertType
from .probe import USER_AGENT

logger = logging.getLogger(__name__)

# Attachment title and color per alert type
ALERT_STYLES = {
    AlertType.POSITIVE.value: ("Ok", "#009700"),
    AlertType.NEGATIVE.value: ("Error", "#970000"),
    AlertType.WARNING.value: ("Warning", "#979700"),
}


def build_payload(alert_type: str, url: Optional[str], message: Optional[str]) -> dict:
    """Build the webhook body for one alert."""
    title, color = ALERT_STYLES[alert_type]
    return {
        "attachments": [
            {
                "text": f"{url}\n{message}\n",
                "color": color,
                "title": title,
            }
        ]
    }


class SlackNotifier:
    """Posts alerts to the webhook configured under slack.url."""

    def __init__(
        self,
        url: Optional[str],
        timeout: float = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def post(self, alert_type: str, url: Optional[str], message: Optional[str]) -> bool:
        """Send one alert. Returns True if the webhook accepted it."""
        if not self.url:
            logger.warning("No Slack url in config under 'slack.url', skipping delivery")
            return False

        payload = build_payload(alert_type, url, message)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.url,
                    json=payload,
                    headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
                )
            if response.status_code < 400:
                logger.info(f"Webhook sent: {alert_type} for {url}")
                return True
            logger.warning(f"Webhook returned {response.status_code}")
            return False
        except httpx.HTTPError as e:
            logger.error(f"Failed to send webhook: {e}")
            return False
