import asyncio
import pytest
from src.sitecrawler.database import DatabaseConfig, DatabasePool
from src.sitecrawler.db_operations import (
    CrawlStore,
    JobNotFoundError,
    to_postgres_placeholders,
)
from src.sitecrawler.parse import ExtractedImage, ExtractedScript


class TestPlaceholders:
    def test_numbering(self):
        assert to_postgres_placeholders("SELECT * FROM t WHERE a = ? AND b = ?") == "SELECT * FROM t WHERE a = $1 AND b = $2"

    def test_no_placeholders(self):
        assert to_postgres_placeholders("SELECT 1") == "SELECT 1"


class TestPool:
    @pytest.mark.asyncio
    async def test_unknown_backend(self):
        with pytest.raises(ValueError):
            await DatabasePool(DatabaseConfig(backend="mysql")).initialize()

    def test_acquire_before_initialize(self, db_config):
        with pytest.raises(RuntimeError):
            DatabasePool(db_config).acquire()


class TestJobs:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store, job_id):
        job = await store.get_job(job_id)
        assert job.domain == "https://example.com"
        assert job.status == "pending"
        assert job.started_at is None
        assert job.total_pages == 0

    @pytest.mark.asyncio
    async def test_missing_job(self, store):
        with pytest.raises(JobNotFoundError):
            await store.get_job(999)
        assert await store.set_job_status(999, "running") is False

    @pytest.mark.asyncio
    async def test_status_timestamps(self, store, job_id):
        assert await store.set_job_status(job_id, "running")
        job = await store.get_job(job_id)
        assert job.status == "running" and job.started_at is not None and job.completed_at is None
        await store.set_job_status(job_id, "completed")
        job = await store.get_job(job_id)
        assert job.status == "completed" and job.completed_at is not None

    @pytest.mark.asyncio
    async def test_invalid_status(self, store, job_id):
        with pytest.raises(ValueError):
            await store.set_job_status(job_id, "paused")

    @pytest.mark.asyncio
    async def test_reset_and_delete(self, store, job_id):
        await store.enqueue_if_absent(job_id, "https://example.com/", 0)
        page_id = await store.upsert_page(job_id, "https://example.com/", {"status_code": 200})
        await store.insert_links([(page_id, job_id, "https://example.com/", "https://example.com/a", "a", 0, 1)])
        await store.insert_image_if_new(job_id, page_id, ExtractedImage(url="https://example.com/a.png"))
        await store.insert_script_if_new(job_id, page_id, ExtractedScript(url="https://example.com/a.js"))
        await store.set_job_status(job_id, "completed")
        await store.recompute_job_stats(job_id)

        await store.reset_job(job_id)
        job = await store.get_job(job_id)
        assert job.status == "pending"
        assert job.total_pages == 0 and job.total_links == 0
        for table in ("pages", "links", "images", "scripts", "crawl_queue"):
            assert await store.count_rows(table, job_id) == 0

        await store.delete_job(job_id)
        with pytest.raises(JobNotFoundError):
            await store.get_job(job_id)

    @pytest.mark.asyncio
    async def test_reset_missing_job(self, store):
        with pytest.raises(JobNotFoundError):
            await store.reset_job(12345)


class TestQueue:
    @pytest.mark.asyncio
    async def test_enqueue_dedup(self, store, job_id):
        assert await store.enqueue_if_absent(job_id, "https://example.com/a", 1) is True
        assert await store.enqueue_if_absent(job_id, "https://example.com/a", 3) is False
        stats = await store.queue_stats(job_id)
        assert stats["total"] == 1 and stats["pending"] == 1
        item = await store.get_queue_item(job_id, "https://example.com/a")
        assert item.depth == 1

    @pytest.mark.asyncio
    async def test_same_url_other_job(self, store, job_id):
        other = await store.create_job("https://example.com")
        assert await store.enqueue_if_absent(job_id, "https://example.com/", 0)
        assert await store.enqueue_if_absent(other, "https://example.com/", 0)

    @pytest.mark.asyncio
    async def test_claim_batch(self, store, job_id):
        for i in range(5):
            await store.enqueue_if_absent(job_id, f"https://example.com/{i}", 0)
        first = await store.claim_pending(job_id, 3)
        assert [item.url for item in first] == [f"https://example.com/{i}" for i in range(3)]
        assert all(item.status == "processing" for item in first)
        second = await store.claim_pending(job_id, 3)
        assert [item.url for item in second] == ["https://example.com/3", "https://example.com/4"]
        assert await store.claim_pending(job_id, 3) == []
        assert (await store.queue_stats(job_id))["processing"] == 5

    @pytest.mark.asyncio
    async def test_concurrent_claims_are_disjoint(self, store, job_id):
        for i in range(30):
            await store.enqueue_if_absent(job_id, f"https://example.com/{i}", 0)
        batches = await asyncio.gather(*(store.claim_pending(job_id, 10) for _ in range(5)))
        ids = [item.id for batch in batches for item in batch]
        assert len(ids) == 30
        assert len(set(ids)) == 30
        assert await store.claim_pending(job_id, 10) == []
        assert (await store.queue_stats(job_id))["processing"] == 30

    @pytest.mark.asyncio
    async def test_claim_zero(self, store, job_id):
        await store.enqueue_if_absent(job_id, "https://example.com/", 0)
        assert await store.claim_pending(job_id, 0) == []

    @pytest.mark.asyncio
    async def test_item_lifecycle(self, store, job_id):
        await store.enqueue_if_absent(job_id, "https://example.com/ok", 0)
        await store.enqueue_if_absent(job_id, "https://example.com/bad", 0)
        ok, bad = await store.claim_pending(job_id, 10)
        await store.set_queue_item_status(ok.id, "completed")
        await store.mark_queue_item_failed(bad.id)
        await store.increment_retry(bad.id)
        stats = await store.queue_stats(job_id)
        assert stats["completed"] == 1 and stats["failed"] == 1 and stats["pending"] == 0
        bad = await store.get_queue_item(job_id, "https://example.com/bad")
        assert bad.status == "failed" and bad.retry_count == 2
        with pytest.raises(ValueError):
            await store.set_queue_item_status(ok.id, "done")

    @pytest.mark.asyncio
    async def test_stats_empty_job(self, store, job_id):
        assert await store.queue_stats(job_id) == {
            "total": 0, "pending": 0, "processing": 0, "completed": 0, "failed": 0,
        }


class TestEntities:
    @pytest.mark.asyncio
    async def test_upsert_page_stable_id(self, store, job_id):
        url = "https://example.com/"
        first = await store.upsert_page(job_id, url, {"title": "One", "status_code": 200})
        second = await store.upsert_page(job_id, url, {"title": "Two", "status_code": 301,
                                                       "redirect_url": "https://example.com/x", "redirect_count": 1})
        assert first == second
        assert await store.count_rows("pages", job_id) == 1

    @pytest.mark.asyncio
    async def test_image_and_script_dedup(self, store, job_id):
        page_id = await store.upsert_page(job_id, "https://example.com/", {"status_code": 200})
        image = ExtractedImage(url="https://x/logo.png", alt_text="Logo", srcset="a 2x", is_responsive=True)
        image_id = await store.insert_image_if_new(job_id, page_id, image)
        assert image_id is not None
        assert await store.insert_image_if_new(job_id, page_id, image) is None
        await store.update_image_metadata(image_id, 200, "image/png", 512, None, 0, 16, 16)

        script = ExtractedScript(url="https://x/app.js", is_async=True)
        script_id = await store.insert_script_if_new(job_id, page_id, script)
        assert script_id is not None
        assert await store.insert_script_if_new(job_id, page_id, script) is None
        await store.update_script_metadata(script_id, 200, "text/javascript", 100, None, 0)

        assert await store.count_rows("images", job_id) == 1
        assert await store.count_rows("scripts", job_id) == 1

    @pytest.mark.asyncio
    async def test_links_appended(self, store, job_id):
        page_id = await store.upsert_page(job_id, "https://example.com/", {"status_code": 200})
        row = (page_id, job_id, "https://example.com/", "https://example.com/a", "A", 0, 1)
        assert await store.insert_links([row, row]) == 2
        assert await store.insert_links([]) == 0
        assert await store.count_rows("links", job_id) == 2

    @pytest.mark.asyncio
    async def test_recompute_stats(self, store, job_id):
        page_id = await store.upsert_page(job_id, "https://example.com/", {"status_code": 200})
        await store.insert_links([(page_id, job_id, "https://example.com/", "https://example.com/a", "A", 0, 1)])
        await store.insert_image_if_new(job_id, page_id, ExtractedImage(url="https://example.com/i.png"))
        await store.enqueue_if_absent(job_id, "https://example.com/broken", 1)
        (item,) = await store.claim_pending(job_id, 1)
        await store.mark_queue_item_failed(item.id)

        stats = await store.recompute_job_stats(job_id)
        assert stats == {"total_pages": 1, "total_links": 1, "total_images": 1,
                         "total_scripts": 0, "failed_urls": 1}

    @pytest.mark.asyncio
    async def test_count_rows_rejects_unknown_table(self, store, job_id):
        with pytest.raises(ValueError):
            await store.count_rows("crawl_jobs; DROP TABLE pages", job_id)


class TestRedirectStats:
    @pytest.mark.asyncio
    async def test_counts(self, store, job_id):
        await store.upsert_page(job_id, "https://example.com/", {"status_code": 200})
        await store.upsert_page(job_id, "https://example.com/p", {"status_code": 301, "redirect_count": 1})
        await store.upsert_page(job_id, "https://example.com/q", {"status_code": 308, "redirect_count": 5})
        await store.upsert_page(job_id, "https://example.com/t", {"status_code": 302, "redirect_count": 2})
        stats = await store.redirect_stats(job_id, 3)
        assert stats == {"total": 3, "permanent": 2, "temporary": 1, "excessive": 1, "threshold": 3}
