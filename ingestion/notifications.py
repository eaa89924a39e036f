"""
Run lifecycle notifications over HTTP webhooks.

- ReportTrigger: run.completed -> report service
- FailureAlert: run.failed -> critical alert for operators

Both are best effort: they run after the run is already terminal, and
delivery failures are logged without touching the run.
"""

from typing import Any, Dict, Optional
import logging

import httpx

from core.config import settings
from core.events import RUN_COMPLETED, RUN_FAILED, EventBus

logger = logging.getLogger(__name__)


class WebhookNotifier:
    """POSTs one JSON body per event to a configured URL and counts outcomes"""

    event: str = ""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._transport = transport
        self.sent = 0
        self.failed = 0

    def register(self, bus: EventBus):
        bus.subscribe(self.event, self.notify)

    def build_body(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {"event": self.event, **payload}

    async def notify(self, payload: Dict[str, Any]) -> bool:
        if not self.webhook_url:
            logger.debug(f"No webhook configured for {self.event}; run {payload.get('run_id')}")
            return False

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.webhook_url, json=self.build_body(payload))
                response.raise_for_status()
        except httpx.HTTPError as e:
            self.failed += 1
            logger.warning(f"{self.event} webhook failed for run {payload.get('run_id')}: {type(e).__name__}: {e}")
            return False

        self.sent += 1
        return True


class ReportTrigger(WebhookNotifier):
    event = RUN_COMPLETED

    def __init__(self, webhook_url: Optional[str] = None, **kwargs):
        super().__init__(webhook_url if webhook_url is not None else settings.REPORT_WEBHOOK_URL, **kwargs)

    async def notify(self, payload: Dict[str, Any]) -> bool:
        delivered = await super().notify(payload)
        if delivered:
            logger.info(f"Report generation requested for run {payload.get('run_id')}")
        return delivered


class FailureAlert(WebhookNotifier):
    """
    Critical alert for a failed run.

    Always logged at CRITICAL; additionally POSTed when ALERT_WEBHOOK_URL is set.
    """

    event = RUN_FAILED

    def __init__(self, webhook_url: Optional[str] = None, **kwargs):
        super().__init__(webhook_url if webhook_url is not None else settings.ALERT_WEBHOOK_URL, **kwargs)

    def build_body(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "event": self.event,
            "severity": "critical",
            "system": "Marketing ETL Orchestrator",
            "message": f"Ingestion run failed during {payload.get('error_stage') or 'unknown stage'}",
            **payload,
        }

    async def notify(self, payload: Dict[str, Any]) -> bool:
        logger.critical(
            f"Ingestion run {payload.get('run_id')} (scope '{payload.get('scope')}') failed during "
            f"{payload.get('error_stage')}: {payload.get('error_message')}"
        )
        return await super().notify(payload)
