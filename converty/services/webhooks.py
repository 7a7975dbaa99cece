"""
Completion webhooks.

When a job with a webhook_url reaches done or failed, its outcome is POSTed
to that URL. Delivery is fire-and-forget: failures are logged and never
affect the job.
"""
import asyncio
from typing import Any, Dict, Optional, Set

import httpx

from converty.utils import metrics
from converty.utils.logger import get_logger
from converty.utils.time import utc_now

logger = get_logger("webhooks")


def build_payload(job) -> Dict[str, Any]:
    error = None
    if job.error_kind:
        error = {"kind": job.error_kind, "message": job.error_message}
    return {
        "job_id": job.id,
        "state": job.state,
        "result_ref": job.result_ref,
        "result_media_type": job.result_media_type,
        "error": error,
        "timestamp": utc_now().isoformat(),
    }


class WebhookNotifier:
    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._timeout = timeout
        self._transport = transport
        self._pending: Set[asyncio.Task] = set()

    def notify(self, job) -> None:
        """Schedule delivery for a terminal job; no-op without a webhook_url"""
        if not job.webhook_url:
            return
        task = asyncio.create_task(self.send(job.webhook_url, build_payload(job)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def send(self, url: str, payload: Dict[str, Any]) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            metrics.inc("webhook.error")
            logger.warning("webhook.failed", extra={
                "job_id": payload.get("job_id"), "url": url, "error": str(exc)[:500],
            })
            return False
        metrics.inc("webhook.success")
        logger.info("webhook.delivered", extra={
            "job_id": payload.get("job_id"), "url": url, "status": response.status_code,
        })
        return True

    async def drain(self) -> None:
        """Wait for in-flight deliveries"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
