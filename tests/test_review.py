"""
Tests for review queue adapters and the audit logger.
"""

import json
import httpx
import pytest

from recon_engine.audit import AuditLogger
from recon_engine.models import AuditAction, ReviewItem, ReviewReason, StageName
from recon_engine.review import InMemoryReviewQueue, WebhookReviewQueue


@pytest.fixture
def review_item():
    return ReviewItem(
        reason=ReviewReason.UNMATCHED_TRANSACTION,
        transaction_id="t1",
        message="No ledger entry for transaction t1",
    )


class TestInMemoryReviewQueue:
    """Deduplication by item id."""

    @pytest.mark.asyncio
    async def test_same_item_is_kept_once(self, review_item):
        queue = InMemoryReviewQueue()

        assert await queue.notify(review_item)
        assert await queue.notify(ReviewItem(reason=ReviewReason.UNMATCHED_TRANSACTION, transaction_id="t1"))

        assert queue.items == [review_item]


class TestWebhookReviewQueue:
    """HTTP delivery through an httpx transport."""

    @pytest.mark.asyncio
    async def test_item_is_posted_as_json(self, review_item):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        queue = WebhookReviewQueue(url="https://review.example/items", client=client)

        delivered = await queue.notify(review_item)
        await queue.close()

        assert delivered is True
        assert received[0]["id"] == review_item.id
        assert received[0]["reason"] == "unmatched_transaction"

    @pytest.mark.asyncio
    async def test_client_error_is_reported_not_raised(self, review_item):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(422, json={"detail": "bad item"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        queue = WebhookReviewQueue(url="https://review.example/items", client=client)

        delivered = await queue.notify(review_item)
        await queue.close()

        assert delivered is False
        assert len(calls) == 1

    def test_missing_url_is_rejected(self, monkeypatch):
        monkeypatch.delenv("RECON_REVIEW_WEBHOOK_URL", raising=False)

        with pytest.raises(ValueError):
            WebhookReviewQueue(url=None)


class TestAuditLogger:
    """In-memory trail and JSON export."""

    def test_filters_and_summary(self):
        audit = AuditLogger("run-1")
        audit.record(AuditAction.BATCH_RECEIVED, "Received batch")
        audit.record(
            AuditAction.STAGE_FAILED, "Stage match failed",
            stage=StageName.MATCH, success=False, error_message="boom",
        )

        assert len(audit.get_entries(action_filter=AuditAction.STAGE_FAILED)) == 1
        assert len(audit.get_entries(success_only=True)) == 1
        summary = audit.summary()
        assert summary["total_entries"] == 2
        assert summary["error_count"] == 1

    def test_export_to_file(self, tmp_path):
        audit = AuditLogger("run-1", reports_dir=tmp_path)
        audit.record(AuditAction.BATCH_RECEIVED, "Received batch", details={"count": 3})

        path = audit.export_to_file()

        data = json.loads(path.read_text(encoding="utf-8"))
        assert path.name == "audit_run-1.json"
        assert data["total_entries"] == 1
        assert data["entries"][0]["action"] == "batch_received"
