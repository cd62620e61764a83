"""Cloudflare Queues producer over the REST API."""

import logging
from typing import Any, Dict, Optional

import httpx

from ..models import QueueConfig
from .backends import QueueBackend
from .models import EnqueueResult, JobDescriptor

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "Queue not configured"


class HttpQueue(QueueBackend):
    """Posts job descriptors to a Cloudflare queue.

    The queue's consumer worker is deployed separately; this class only
    produces messages.
    """

    def __init__(self, config: QueueConfig, client: Optional[httpx.Client] = None):
        self.config = config
        self._client = client or httpx.Client(timeout=config.request_timeout_s)

    @property
    def is_configured(self) -> bool:
        return bool(self.config.account_id and self.config.api_token and self.config.queue_name)

    @property
    def messages_url(self) -> str:
        return (
            f"{self.config.api_base.rstrip('/')}/accounts/{self.config.account_id}"
            f"/queues/{self.config.queue_name}/messages"
        )

    def enqueue(self, descriptor: JobDescriptor) -> EnqueueResult:
        if not self.is_configured:
            return EnqueueResult(accepted=False, reason=NOT_CONFIGURED)

        try:
            response = self._client.post(
                self.messages_url,
                json={"body": descriptor.model_dump(mode="json")},
                headers={"Authorization": f"Bearer {self.config.api_token}"},
                timeout=self.config.request_timeout_s,
            )
        except httpx.HTTPError as e:
            logger.warning("Queue request for %s failed: %s", descriptor.job_key, e)
            return EnqueueResult(accepted=False, reason=f"Queue request failed: {e}")

        if response.status_code >= 400:
            logger.warning("Queue rejected %s: HTTP %d", descriptor.job_key, response.status_code)
            return EnqueueResult(
                accepted=False, reason=f"Queue rejected message: HTTP {response.status_code}"
            )

        try:
            data = response.json()
        except ValueError:
            data = {}
        if data.get("success") is False:
            errors = "; ".join(str(e.get("message", e)) for e in data.get("errors") or [])
            return EnqueueResult(accepted=False, reason=f"Queue rejected message: {errors or 'unknown'}")

        result = data.get("result") or {}
        logger.info("Queued job %s for %s", descriptor.job_id, descriptor.job_key)
        return EnqueueResult(accepted=True, message_id=result.get("id") if isinstance(result, dict) else None)

    def status(self) -> Dict[str, Any]:
        if not self.is_configured:
            return {"healthy": False, "configured": False, "message": NOT_CONFIGURED}
        return {"healthy": True, "configured": True, "message": f"Queue {self.config.queue_name} ready"}

    def close(self) -> None:
        self._client.close()
