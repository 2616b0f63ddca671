from __future__ import annotations

import os
import time
from typing import Any, Dict, Optional

import httpx

from .logger import get_logger

log = get_logger(__name__)


class SlackNotifier:
    """Posts security alerts to a Slack incoming webhook."""

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 10.0) -> None:
        self.webhook_url = webhook_url or os.getenv("SLACK_WEBHOOK_URL")
        self._client = httpx.Client(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def send_text(self, text: str) -> bool:
        if not self.webhook_url:
            log.debug("Slack webhook not configured; skipping notification")
            return False
        max_attempts = 3
        backoff = 1.0
        for attempt in range(1, max_attempts + 1):
            try:
                resp = self._client.post(self.webhook_url, json={"text": text})
                if resp.status_code == 429 or 500 <= resp.status_code < 600:
                    if attempt < max_attempts:
                        time.sleep(backoff)
                        backoff *= 2
                        continue
                resp.raise_for_status()
                return True
            except httpx.HTTPError as e:
                log.error("Failed to send Slack notification (attempt %d): %s", attempt, e)
                if attempt < max_attempts:
                    time.sleep(backoff)
                    backoff *= 2
                    continue
                return False
        return False

    @staticmethod
    def format_security_alert(event: Dict[str, Any]) -> str:
        risk = int(event.get("risk_score") or 0)
        level = "CRITICAL" if risk >= 90 else "HIGH"
        lines = [
            f":rotating_light: {level} security event {event.get('event_type')} (risk {risk})",
            f"user: {event.get('user_id') or '-'}  ip: {event.get('ip_address') or '-'}",
        ]
        details = event.get("details")
        if details:
            lines.append(f"details: {details}")
        return "\n".join(lines)

    def notify_security_event(self, event: Dict[str, Any]) -> bool:
        return self.send_text(self.format_security_alert(event))

    def close(self) -> None:
        self._client.close()
