from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Union

import httpx

from .config import CONCURRENCY, CrawlLimits, HttpConfig
from .db_operations import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_RUNNING,
    CrawlStore,
    JobNotFoundError,
    QueueItem,
)
from .fetch import Fetcher, FetchFailure, FetchResult, HeadResult
from .frontier import Frontier
from .parse import (
    ExtractedImage,
    ExtractedScript,
    PageExtract,
    base_domain_of,
    classify,
    ensure_scheme,
    extract_page,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CrawlContext:
    """Fixed facts about a crawl, resolved once at job start."""
    job_id: int
    seed_url: str
    base_domain: str

    @classmethod
    def from_seed(cls, job_id: int, seed: str) -> "CrawlContext":
        seed_url = ensure_scheme(seed)
        base_domain = base_domain_of(seed_url)
        if not base_domain:
            raise ValueError(f"Cannot resolve a host from seed {seed!r}")
        return cls(job_id=job_id, seed_url=seed_url, base_domain=base_domain)


async def submit_job(store: CrawlStore, domain: str) -> int:
    """Create a pending job for a domain, adding https:// when no scheme is given."""
    return await store.create_job(ensure_scheme(domain))


def _is_sniffable_image(content_type: str) -> bool:
    ct = (content_type or "").lower()
    return ct.startswith("image/") and "svg" not in ct


class Crawler:
    """Breadth-first crawl of one job, driven batch by batch from the persisted frontier."""

    def __init__(self, context: CrawlContext, store: CrawlStore, fetcher: Fetcher,
                 http_config: HttpConfig | None = None, limits: CrawlLimits | None = None,
                 batch_size: int | None = None):
        self.context = context
        self.store = store
        self.fetcher = fetcher
        self.http_config = http_config or fetcher.cfg
        self.limits = limits or CrawlLimits()
        self.frontier = Frontier(store, context, self.limits)
        self.batch_size = batch_size or self.http_config.max_concurrency or CONCURRENCY
        self._fetch_slots = asyncio.Semaphore(self.http_config.max_concurrency)
        self._asset_slots = asyncio.Semaphore(self.http_config.max_concurrency)

    async def start(self) -> str:
        job_id = self.context.job_id
        if not await self.store.set_job_status(job_id, JOB_RUNNING):
            raise JobNotFoundError(job_id)
        logger.info("Starting crawl job %s for %s (base domain: %s)",
                    job_id, self.context.seed_url, self.context.base_domain)

        await self.frontier.enqueue(self.context.seed_url, 0)

        started = time.time()
        batches = 0
        while True:
            items = await self.frontier.claim_batch(self.batch_size)
            if not items:
                break
            batches += 1
            logger.info("Processing batch %d (%d URLs)", batches, len(items))
            await self.run_batch(items)

        stats = await self.store.recompute_job_stats(job_id)
        await self.store.set_job_status(job_id, JOB_COMPLETED)
        logger.info(
            "Crawl job %s completed in %.1fs: %d pages, %d links, %d images, %d scripts, %d failed URLs",
            job_id, time.time() - started, stats["total_pages"], stats["total_links"],
            stats["total_images"], stats["total_scripts"], stats["failed_urls"],
        )
        return JOB_COMPLETED

    async def run_batch(self, items: List[QueueItem]) -> None:
        """Fetch and handle every item; returns only once all handlers have finished."""
        results = await asyncio.gather(*(self.process_item(item) for item in items), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                # Storage errors are fatal to the job
                raise result

    async def process_item(self, item: QueueItem) -> None:
        async with self._fetch_slots:
            result = await self.fetcher.fetch(item.url)
        if isinstance(result, FetchFailure):
            await self.handle_failure(item, result)
        else:
            await self.handle_success(item, result)

    async def handle_failure(self, item: QueueItem, failure: FetchFailure) -> None:
        logger.info("[%s] %s (depth: %d)", failure.reason, item.url, item.depth)
        await self.frontier.mark_failed(item)

    async def handle_success(self, item: QueueItem, result: FetchResult) -> None:
        logger.info("[%d] %s (depth: %d)", result.initial_status, item.url, item.depth)
        job_id = self.context.job_id

        extract: Optional[PageExtract] = None
        if classify(result.content_type, result.final_url) == "html":
            # Relative hrefs resolve against the requested URL, not the redirect target
            extract = await asyncio.to_thread(extract_page, result.body, item.url, self.context.base_domain)

        page_id = await self.store.upsert_page(job_id, item.url, {
            "title": extract.title if extract else "",
            "meta_description": extract.meta_description if extract else "",
            "status_code": result.initial_status,
            "content_type": result.content_type,
            "redirect_url": result.redirect_url,
            "redirect_count": result.redirect_count,
            "favicon_url": extract.favicon_url if extract else None,
        })

        if extract is not None:
            await self.store.insert_links(
                (page_id, job_id, item.url, link.target_url, link.link_text,
                 int(link.is_nofollow), int(link.is_internal))
                for link in extract.links
            )
            await self._record_assets(page_id, extract)
            added = await self._enqueue_discoveries(item, extract)
            logger.debug("%s: %d links, %d images, %d scripts, %d new URLs",
                         item.url, len(extract.links), len(extract.images), len(extract.scripts), added)

        await self.frontier.mark_completed(item)

    async def _enqueue_discoveries(self, item: QueueItem, extract: PageExtract) -> int:
        if not self.frontier.can_expand(item.depth):
            return 0
        targets = [
            link.target_url for link in extract.links
            if link.is_internal and (self.limits.follow_nofollow or not link.is_nofollow)
        ]
        return await self.frontier.enqueue_many(targets, item.depth + 1)

    async def _record_assets(self, page_id: int, extract: PageExtract) -> None:
        job_id = self.context.job_id
        pending = []
        for image in extract.images:
            image_id = await self.store.insert_image_if_new(job_id, page_id, image)
            if image_id is not None and self.http_config.asset_metadata:
                pending.append(self._fetch_image_metadata(image_id, image))
        for script in extract.scripts:
            script_id = await self.store.insert_script_if_new(job_id, page_id, script)
            if script_id is not None and self.http_config.asset_metadata:
                pending.append(self._fetch_script_metadata(script_id, script))
        if pending:
            results = await asyncio.gather(*pending, return_exceptions=True)
            for result in results:
                if isinstance(result, BaseException):
                    raise result

    async def _head(self, url: str) -> Union[HeadResult, FetchFailure]:
        async with self._asset_slots:
            return await self.fetcher.fetch_head(url)

    async def _fetch_image_metadata(self, image_id: int, image: ExtractedImage) -> None:
        head = await self._head(image.url)
        if isinstance(head, FetchFailure):
            return
        width = height = None
        if self.http_config.sniff_image_dimensions and head.status < 400 and _is_sniffable_image(head.content_type):
            async with self._asset_slots:
                size = await self.fetcher.fetch_image_dimensions(image.url)
            if size:
                width, height = size
        await self.store.update_image_metadata(
            image_id, head.status, head.content_type, head.content_length,
            head.redirect_url, head.redirect_count, width, height,
        )

    async def _fetch_script_metadata(self, script_id: int, script: ExtractedScript) -> None:
        head = await self._head(script.url)
        if isinstance(head, FetchFailure):
            return
        await self.store.update_script_metadata(
            script_id, head.status, head.content_type, head.content_length,
            head.redirect_url, head.redirect_count,
        )


async def run_crawl(job_id: int, seed_url: str, store: CrawlStore,
                    http_config: HttpConfig | None = None, limits: CrawlLimits | None = None,
                    transport: httpx.AsyncBaseTransport | None = None) -> str:
    """Crawl a job to completion and return its terminal status ('completed' or 'failed')."""
    try:
        context = CrawlContext.from_seed(job_id, seed_url)
        async with Fetcher(http_config, transport=transport) as fetcher:
            crawler = Crawler(context, store, fetcher, http_config, limits)
            return await crawler.start()
    except Exception:
        logger.exception("Crawl job %s failed", job_id)
        try:
            await store.set_job_status(job_id, JOB_FAILED)
        except Exception:
            logger.exception("Could not mark crawl job %s as failed", job_id)
        return JOB_FAILED


async def run_worker(job_id: int, store: CrawlStore, http_config: HttpConfig | None = None,
                     limits: CrawlLimits | None = None,
                     transport: httpx.AsyncBaseTransport | None = None) -> str:
    """Background entry point: look up the job's domain and crawl it."""
    try:
        job = await store.get_job(job_id)
    except JobNotFoundError as e:
        logger.error("%s", e)
        return JOB_FAILED
    return await run_crawl(job_id, job.domain, store, http_config, limits, transport)
