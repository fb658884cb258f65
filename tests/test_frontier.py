import dataclasses
import pytest
from src.sitecrawler.config import CrawlLimits
from src.sitecrawler.crawl import CrawlContext
from src.sitecrawler.frontier import Frontier


@pytest.fixture
def context(job_id):
    return CrawlContext.from_seed(job_id, "https://example.com")


class TestFrontier:
    @pytest.mark.asyncio
    async def test_enqueue_normalizes_and_dedups(self, store, context):
        frontier = Frontier(store, context)
        assert await frontier.enqueue("https://WWW.example.com/a/", 1) is True
        assert await frontier.enqueue("https://example.com/a#section", 1) is False
        assert await frontier.enqueue("https://example.com/a", 2) is False
        stats = await frontier.stats()
        assert stats["total"] == 1
        assert await store.get_queue_item(context.job_id, "https://example.com/a") is not None

    @pytest.mark.asyncio
    async def test_enqueue_many(self, store, context):
        frontier = Frontier(store, context)
        added = await frontier.enqueue_many(["https://example.com/x", "https://example.com/x/", "https://example.com/y"], 1)
        assert added == 2

    def test_can_expand(self, store, context):
        frontier = Frontier(store, context, CrawlLimits(max_depth=50))
        assert frontier.can_expand(49)
        assert not frontier.can_expand(50)
        assert not frontier.can_expand(51)

    @pytest.mark.asyncio
    async def test_claim_and_mark(self, store, context):
        frontier = Frontier(store, context)
        await frontier.enqueue("https://example.com/", 0)
        await frontier.enqueue("https://example.com/gone", 1)
        ok, gone = await frontier.claim_batch(10)
        await frontier.mark_completed(ok)
        await frontier.mark_failed(gone)
        assert await frontier.claim_batch(10) == []
        stats = await frontier.stats()
        assert stats["completed"] == 1 and stats["failed"] == 1
        failed = await store.get_queue_item(context.job_id, "https://example.com/gone")
        assert failed.retry_count == 1

    @pytest.mark.asyncio
    async def test_completed_url_not_requeued(self, store, context):
        frontier = Frontier(store, context)
        await frontier.enqueue("https://example.com/", 0)
        (item,) = await frontier.claim_batch(1)
        await frontier.mark_completed(item)
        assert await frontier.enqueue("https://example.com", 3) is False
        assert await frontier.claim_batch(1) == []


class TestCrawlContext:
    def test_from_bare_domain(self):
        context = CrawlContext.from_seed(1, "Example.COM")
        assert context.seed_url == "https://Example.COM"
        assert context.base_domain == "example.com"

    def test_www_seed_keeps_www(self):
        assert CrawlContext.from_seed(1, "https://www.example.com/start").base_domain == "www.example.com"

    def test_frozen(self):
        context = CrawlContext.from_seed(1, "example.com")
        with pytest.raises(dataclasses.FrozenInstanceError):
            context.job_id = 2

    def test_unresolvable_seed(self):
        with pytest.raises(ValueError):
            CrawlContext.from_seed(1, "https://")
