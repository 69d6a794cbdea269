"""
Review queue adapters.

InMemoryReviewQueue collects items for tests and the demo API.
WebhookReviewQueue posts items as JSON to a configured URL.
"""

from typing import Any, Dict, List, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import get_settings
from .models import ReviewItem
from .repositories import ReviewQueue

logger = structlog.get_logger()


class InMemoryReviewQueue(ReviewQueue):
    """Review items kept in a list, deduplicated by item id."""

    def __init__(self):
        self.items: List[ReviewItem] = []
        self._seen = set()

    async def notify(self, item: ReviewItem) -> bool:
        if item.id not in self._seen:
            self._seen.add(item.id)
            self.items.append(item)
        return True


class ReviewWebhookError(Exception):
    """The review webhook answered with an error status."""
    def __init__(self, message: str, status_code: int = 0, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class WebhookReviewQueue(ReviewQueue):
    """
    Posts review items to an HTTP endpoint.
    Transport errors and 5xx answers are retried; delivery failures are logged, not raised.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        settings = get_settings()
        self.url = url or settings.review_webhook_url
        self.timeout = timeout or settings.review_webhook_timeout_seconds
        self._client = client

        if not self.url:
            raise ValueError("Review webhook URL is not configured (RECON_REVIEW_WEBHOOK_URL)")

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.TransportError, ReviewWebhookError)),
        reraise=True,
    )
    async def _post(self, payload: Dict[str, Any]) -> None:
        client = await self._get_client()
        response = await client.post(self.url, json=payload)

        if response.status_code >= 500:
            raise ReviewWebhookError(
                f"Review webhook error: {response.status_code}",
                status_code=response.status_code,
                details=response.text,
            )
        response.raise_for_status()

    async def notify(self, item: ReviewItem) -> bool:
        try:
            await self._post(item.to_dict())
        except (httpx.HTTPError, ReviewWebhookError) as e:
            logger.error(
                "Review item not delivered",
                review_id=item.id,
                reason=item.reason.value,
                error=str(e),
            )
            return False

        logger.debug("Review item delivered", review_id=item.id, reason=item.reason.value)
        return True
