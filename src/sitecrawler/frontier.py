from __future__ import annotations
import logging
from typing import TYPE_CHECKING, List

from .config import CrawlLimits
from .db_operations import QUEUE_COMPLETED, CrawlStore, QueueItem
from .parse import normalize_url

if TYPE_CHECKING:
    from .crawl import CrawlContext

logger = logging.getLogger(__name__)


class Frontier:
    """Discovered-but-unprocessed URLs for one job.

    Membership lives only in the ``crawl_queue`` table, so several workers
    racing on the same job see the same frontier.
    """

    def __init__(self, store: CrawlStore, context: "CrawlContext", limits: CrawlLimits | None = None):
        self.store = store
        self.context = context
        self.limits = limits or CrawlLimits()

    def normalize(self, url: str) -> str:
        return normalize_url(url, self.context.base_domain)

    def can_expand(self, depth: int) -> bool:
        """Whether discoveries made by an item at ``depth`` may be enqueued."""
        return depth < self.limits.max_depth

    async def enqueue(self, url: str, depth: int) -> bool:
        """Normalize and insert a pending item; re-discovery is a silent no-op."""
        key = self.normalize(url)
        inserted = await self.store.enqueue_if_absent(self.context.job_id, key, depth)
        if inserted:
            logger.debug("Enqueued %s (depth: %d)", key, depth)
        return inserted

    async def enqueue_many(self, urls: List[str], depth: int) -> int:
        added = 0
        for url in urls:
            if await self.enqueue(url, depth):
                added += 1
        return added

    async def claim_batch(self, n: int) -> List[QueueItem]:
        """Flip up to ``n`` pending items to processing; empty means the frontier is drained."""
        return await self.store.claim_pending(self.context.job_id, n)

    async def mark_completed(self, item: QueueItem) -> None:
        await self.store.set_queue_item_status(item.id, QUEUE_COMPLETED)

    async def mark_failed(self, item: QueueItem) -> None:
        # No requeue; retry_count is left for an external retry policy
        await self.store.mark_queue_item_failed(item.id)

    async def stats(self):
        return await self.store.queue_stats(self.context.job_id)
