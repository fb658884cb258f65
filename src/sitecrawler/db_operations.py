"""
Database operations using the abstraction layer.

``CrawlStore`` is the narrow persistence interface the crawl core talks to:
jobs, the frontier queue, and the entities derived from fetched pages. It
works against SQLite and PostgreSQL; every statement is parameterized.
"""

from __future__ import annotations
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .database import DatabaseConfig, DatabaseConnection, DatabasePool
from .parse import ExtractedImage, ExtractedScript
from .postgresql_schema import get_postgres_schema_statements

logger = logging.getLogger(__name__)

# Job lifecycle
JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_STATUSES = (JOB_PENDING, JOB_RUNNING, JOB_COMPLETED, JOB_FAILED)

# Queue item lifecycle
QUEUE_PENDING = "pending"
QUEUE_PROCESSING = "processing"
QUEUE_COMPLETED = "completed"
QUEUE_FAILED = "failed"
QUEUE_STATUSES = (QUEUE_PENDING, QUEUE_PROCESSING, QUEUE_COMPLETED, QUEUE_FAILED)

# Page columns written by upsert_page
PAGE_FIELDS = (
    "title", "meta_description", "status_code", "content_type",
    "redirect_url", "redirect_count", "favicon_url",
)


SQLITE_CRAWL_SCHEMA = """
CREATE TABLE IF NOT EXISTS crawl_jobs (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  domain TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','running','completed','failed')),
  created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  started_at TIMESTAMP,
  completed_at TIMESTAMP,
  total_pages INTEGER NOT NULL DEFAULT 0,
  total_links INTEGER NOT NULL DEFAULT 0,
  total_images INTEGER NOT NULL DEFAULT 0,
  total_scripts INTEGER NOT NULL DEFAULT 0,
  failed_urls INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS crawl_queue (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  crawl_job_id INTEGER NOT NULL,
  url TEXT NOT NULL,
  depth INTEGER NOT NULL DEFAULT 0,
  status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','processing','completed','failed')),
  retry_count INTEGER NOT NULL DEFAULT 0,
  created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  processed_at TIMESTAMP,
  FOREIGN KEY (crawl_job_id) REFERENCES crawl_jobs (id),
  UNIQUE (crawl_job_id, url)
);
CREATE INDEX IF NOT EXISTS idx_crawl_queue_job_status ON crawl_queue(crawl_job_id, status);

CREATE TABLE IF NOT EXISTS pages (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  crawl_job_id INTEGER NOT NULL,
  url TEXT NOT NULL,
  title TEXT,
  meta_description TEXT,
  status_code INTEGER,
  content_type TEXT,
  redirect_url TEXT,
  redirect_count INTEGER NOT NULL DEFAULT 0,
  favicon_url TEXT,
  crawled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  FOREIGN KEY (crawl_job_id) REFERENCES crawl_jobs (id),
  UNIQUE (crawl_job_id, url)
);

CREATE TABLE IF NOT EXISTS links (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  page_id INTEGER NOT NULL,
  crawl_job_id INTEGER NOT NULL,
  source_url TEXT NOT NULL,
  target_url TEXT NOT NULL,
  link_text TEXT,
  is_nofollow INTEGER NOT NULL DEFAULT 0,
  is_internal INTEGER NOT NULL DEFAULT 0,
  created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  FOREIGN KEY (page_id) REFERENCES pages (id),
  FOREIGN KEY (crawl_job_id) REFERENCES crawl_jobs (id)
);
CREATE INDEX IF NOT EXISTS idx_links_job ON links(crawl_job_id);
CREATE INDEX IF NOT EXISTS idx_links_page ON links(page_id);

CREATE TABLE IF NOT EXISTS images (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  crawl_job_id INTEGER NOT NULL,
  page_id INTEGER,
  url TEXT NOT NULL,
  alt_text TEXT,
  title TEXT,
  width TEXT,
  height TEXT,
  srcset TEXT,
  sizes TEXT,
  loading TEXT,
  is_responsive INTEGER NOT NULL DEFAULT 0,
  status_code INTEGER,
  content_type TEXT,
  file_size INTEGER,
  redirect_url TEXT,
  redirect_count INTEGER NOT NULL DEFAULT 0,
  actual_width INTEGER,
  actual_height INTEGER,
  crawled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  FOREIGN KEY (page_id) REFERENCES pages (id),
  UNIQUE (crawl_job_id, url)
);

CREATE TABLE IF NOT EXISTS scripts (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  crawl_job_id INTEGER NOT NULL,
  page_id INTEGER,
  url TEXT NOT NULL,
  type TEXT,
  is_async INTEGER NOT NULL DEFAULT 0,
  is_defer INTEGER NOT NULL DEFAULT 0,
  is_internal INTEGER NOT NULL DEFAULT 0,
  status_code INTEGER,
  content_type TEXT,
  file_size INTEGER,
  redirect_url TEXT,
  redirect_count INTEGER NOT NULL DEFAULT 0,
  crawled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  FOREIGN KEY (page_id) REFERENCES pages (id),
  UNIQUE (crawl_job_id, url)
);
"""


class JobNotFoundError(LookupError):
    def __init__(self, job_id: int):
        super().__init__(f"Crawl job {job_id} not found")
        self.job_id = job_id


@dataclass
class CrawlJob:
    id: int
    domain: str
    status: str
    started_at: Any = None
    completed_at: Any = None
    total_pages: int = 0
    total_links: int = 0
    total_images: int = 0
    total_scripts: int = 0
    failed_urls: int = 0


@dataclass
class QueueItem:
    id: int
    job_id: int
    url: str
    depth: int
    status: str = QUEUE_PENDING
    retry_count: int = 0


_PLACEHOLDER = re.compile(r"\?")


def to_postgres_placeholders(query: str) -> str:
    """Rewrite SQLite ``?`` placeholders as asyncpg ``$1, $2, ...``."""
    counter = iter(range(1, 10_000))
    return _PLACEHOLDER.sub(lambda _: f"${next(counter)}", query)


def _rowcount(result: Any) -> int:
    """Affected rows from an aiosqlite cursor or an asyncpg status string like 'UPDATE 3'."""
    if isinstance(result, str):
        try:
            return int(result.rsplit(" ", 1)[-1])
        except ValueError:
            return 0
    return getattr(result, "rowcount", 0) or 0


class CrawlStore:
    """Persistence handle for the crawler. Construct once and pass it down.

    Usage::

        async with CrawlStore(config) as store:
            job_id = await store.create_job("https://example.com")
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.pool = DatabasePool(config)

    async def open(self) -> "CrawlStore":
        await self.pool.initialize()
        return self

    async def close(self) -> None:
        await self.pool.close()

    async def __aenter__(self) -> "CrawlStore":
        await self.open()
        await self.init_schema()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ------------------ helpers ------------------

    def _sql(self, query: str) -> str:
        if self.config.is_postgres:
            return to_postgres_placeholders(query)
        return query

    def _connect(self) -> DatabaseConnection:
        return self.pool.acquire()

    async def _execute(self, query: str, *args) -> int:
        async with self._connect() as conn:
            result = await conn.execute(self._sql(query), *args)
            await conn.commit()
            return _rowcount(result)

    async def _returning(self, query: str, *args) -> List[Tuple]:
        """Run a write with a RETURNING clause and commit."""
        async with self._connect() as conn:
            rows = await conn.fetchall(self._sql(query), *args)
            await conn.commit()
            return rows

    async def _fetchone(self, query: str, *args) -> Optional[Tuple]:
        async with self._connect() as conn:
            return await conn.fetchone(self._sql(query), *args)

    async def init_schema(self) -> None:
        """Create tables if they do not exist."""
        async with self._connect() as conn:
            if self.config.is_postgres:
                for statement in get_postgres_schema_statements():
                    await conn.execute(statement)
            else:
                await conn.executescript(SQLITE_CRAWL_SCHEMA)
                await conn.commit()

    # ------------------ jobs ------------------

    async def create_job(self, domain: str) -> int:
        rows = await self._returning(
            "INSERT INTO crawl_jobs (domain, status) VALUES (?, 'pending') RETURNING id",
            domain,
        )
        return int(rows[0][0])

    async def get_job(self, job_id: int) -> CrawlJob:
        row = await self._fetchone(
            """
            SELECT id, domain, status, started_at, completed_at,
                   total_pages, total_links, total_images, total_scripts, failed_urls
            FROM crawl_jobs WHERE id = ?
            """,
            job_id,
        )
        if row is None:
            raise JobNotFoundError(job_id)
        return CrawlJob(*row)

    async def set_job_status(self, job_id: int, status: str) -> bool:
        """Move a job to ``status``; returns False when the job does not exist."""
        if status not in JOB_STATUSES:
            raise ValueError(f"Unknown job status: {status}")
        if status == JOB_RUNNING:
            query = "UPDATE crawl_jobs SET status = ?, started_at = CURRENT_TIMESTAMP, completed_at = NULL WHERE id = ?"
        elif status in (JOB_COMPLETED, JOB_FAILED):
            query = "UPDATE crawl_jobs SET status = ?, completed_at = CURRENT_TIMESTAMP WHERE id = ?"
        else:
            query = "UPDATE crawl_jobs SET status = ? WHERE id = ?"
        return await self._execute(query, status, job_id) > 0

    async def recompute_job_stats(self, job_id: int) -> Dict[str, int]:
        """Refresh the job's aggregate counts from the persisted rows."""
        await self._execute(
            """
            UPDATE crawl_jobs SET
              total_pages = (SELECT COUNT(*) FROM pages WHERE crawl_job_id = ?),
              total_links = (SELECT COUNT(*) FROM links WHERE crawl_job_id = ?),
              total_images = (SELECT COUNT(*) FROM images WHERE crawl_job_id = ?),
              total_scripts = (SELECT COUNT(*) FROM scripts WHERE crawl_job_id = ?),
              failed_urls = (SELECT COUNT(*) FROM crawl_queue WHERE crawl_job_id = ? AND status = 'failed')
            WHERE id = ?
            """,
            job_id, job_id, job_id, job_id, job_id, job_id,
        )
        job = await self.get_job(job_id)
        return {
            "total_pages": job.total_pages,
            "total_links": job.total_links,
            "total_images": job.total_images,
            "total_scripts": job.total_scripts,
            "failed_urls": job.failed_urls,
        }

    async def _delete_job_rows(self, conn: DatabaseConnection, job_id: int) -> None:
        # Children first so foreign keys stay satisfied
        for table in ("crawl_queue", "links", "images", "scripts", "pages"):
            await conn.execute(self._sql(f"DELETE FROM {table} WHERE crawl_job_id = ?"), job_id)

    async def reset_job(self, job_id: int) -> None:
        """Clear all crawl results for a job and put it back to pending (recrawl)."""
        await self.get_job(job_id)
        async with self._connect() as conn:
            await self._delete_job_rows(conn, job_id)
            await conn.execute(
                self._sql(
                    """
                    UPDATE crawl_jobs SET status = 'pending', total_pages = 0, total_links = 0,
                      total_images = 0, total_scripts = 0, failed_urls = 0,
                      started_at = NULL, completed_at = NULL
                    WHERE id = ?
                    """
                ),
                job_id,
            )
            await conn.commit()

    async def delete_job(self, job_id: int) -> None:
        async with self._connect() as conn:
            await self._delete_job_rows(conn, job_id)
            await conn.execute(self._sql("DELETE FROM crawl_jobs WHERE id = ?"), job_id)
            await conn.commit()

    # ------------------ frontier queue ------------------

    async def enqueue_if_absent(self, job_id: int, url: str, depth: int) -> bool:
        """Insert a queue item unless (job, url) already exists. Returns True if inserted."""
        rows = await self._returning(
            """
            INSERT INTO crawl_queue (crawl_job_id, url, depth, status)
            VALUES (?, ?, ?, 'pending')
            ON CONFLICT (crawl_job_id, url) DO NOTHING
            RETURNING id
            """,
            job_id, url, depth,
        )
        return bool(rows)

    async def claim_pending(self, job_id: int, limit: int) -> List[QueueItem]:
        """Atomically flip up to ``limit`` pending items to processing and return them."""
        if limit <= 0:
            return []
        if self.config.is_postgres:
            query = """
            UPDATE crawl_queue SET status = 'processing'
            WHERE id IN (
                SELECT id FROM crawl_queue
                WHERE crawl_job_id = $1 AND status = 'pending'
                ORDER BY id
                LIMIT $2
                FOR UPDATE SKIP LOCKED
            )
            RETURNING id, crawl_job_id, url, depth, status, retry_count
            """
            async with self._connect() as conn:
                rows = await conn.fetchall(query, job_id, limit)
        else:
            # Single statement, so SQLite's write lock makes the claim atomic
            rows = await self._returning(
                """
                UPDATE crawl_queue SET status = 'processing'
                WHERE status = 'pending' AND id IN (
                    SELECT id FROM crawl_queue
                    WHERE crawl_job_id = ? AND status = 'pending'
                    ORDER BY id
                    LIMIT ?
                )
                RETURNING id, crawl_job_id, url, depth, status, retry_count
                """,
                job_id, limit,
            )
        return sorted((QueueItem(*row) for row in rows), key=lambda item: item.id)

    async def set_queue_item_status(self, item_id: int, status: str) -> None:
        if status not in QUEUE_STATUSES:
            raise ValueError(f"Unknown queue status: {status}")
        if status in (QUEUE_COMPLETED, QUEUE_FAILED):
            query = "UPDATE crawl_queue SET status = ?, processed_at = CURRENT_TIMESTAMP WHERE id = ?"
        else:
            query = "UPDATE crawl_queue SET status = ? WHERE id = ?"
        await self._execute(query, status, item_id)

    async def increment_retry(self, item_id: int) -> None:
        await self._execute("UPDATE crawl_queue SET retry_count = retry_count + 1 WHERE id = ?", item_id)

    async def mark_queue_item_failed(self, item_id: int) -> None:
        """Mark failed and bump retry_count in one statement."""
        await self._execute(
            """
            UPDATE crawl_queue
            SET status = 'failed', processed_at = CURRENT_TIMESTAMP, retry_count = retry_count + 1
            WHERE id = ?
            """,
            item_id,
        )

    async def queue_stats(self, job_id: int) -> Dict[str, int]:
        row = await self._fetchone(
            """
            SELECT
              COUNT(*),
              SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END),
              SUM(CASE WHEN status = 'processing' THEN 1 ELSE 0 END),
              SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END),
              SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END)
            FROM crawl_queue WHERE crawl_job_id = ?
            """,
            job_id,
        )
        keys = ("total", "pending", "processing", "completed", "failed")
        return {key: int(value or 0) for key, value in zip(keys, row or ())}

    async def get_queue_item(self, job_id: int, url: str) -> Optional[QueueItem]:
        row = await self._fetchone(
            "SELECT id, crawl_job_id, url, depth, status, retry_count FROM crawl_queue WHERE crawl_job_id = ? AND url = ?",
            job_id, url,
        )
        return QueueItem(*row) if row else None

    # ------------------ pages, links, assets ------------------

    async def upsert_page(self, job_id: int, url: str, fields: Dict[str, Any]) -> int:
        """Insert or update the page row for (job, url); the id is stable across upserts."""
        values = [fields.get(name) for name in PAGE_FIELDS]
        if values[PAGE_FIELDS.index("redirect_count")] is None:
            values[PAGE_FIELDS.index("redirect_count")] = 0
        columns = ", ".join(PAGE_FIELDS)
        placeholders = ", ".join("?" for _ in PAGE_FIELDS)
        updates = ", ".join(f"{name} = excluded.{name}" for name in PAGE_FIELDS)
        rows = await self._returning(
            f"""
            INSERT INTO pages (crawl_job_id, url, {columns})
            VALUES (?, ?, {placeholders})
            ON CONFLICT (crawl_job_id, url) DO UPDATE SET {updates}, crawled_at = CURRENT_TIMESTAMP
            RETURNING id
            """,
            job_id, url, *values,
        )
        return int(rows[0][0])

    async def insert_links(self, rows: Iterable[Tuple[int, int, str, str, str, int, int]]) -> int:
        """Append link rows: (page_id, job_id, source_url, target_url, link_text, is_nofollow, is_internal)."""
        rows = list(rows)
        if not rows:
            return 0
        async with self._connect() as conn:
            await conn.executemany(
                self._sql(
                    """
                    INSERT INTO links (page_id, crawl_job_id, source_url, target_url, link_text, is_nofollow, is_internal)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """
                ),
                rows,
            )
            await conn.commit()
        return len(rows)

    async def insert_image_if_new(self, job_id: int, page_id: int, image: ExtractedImage) -> Optional[int]:
        """Record an image the first time it is seen in a job. Returns its id, or None if already known."""
        rows = await self._returning(
            """
            INSERT INTO images (crawl_job_id, page_id, url, alt_text, title, width, height,
                                srcset, sizes, loading, is_responsive)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (crawl_job_id, url) DO NOTHING
            RETURNING id
            """,
            job_id, page_id, image.url, image.alt_text, image.title, image.width, image.height,
            image.srcset, image.sizes, image.loading, int(image.is_responsive),
        )
        return int(rows[0][0]) if rows else None

    async def insert_script_if_new(self, job_id: int, page_id: int, script: ExtractedScript) -> Optional[int]:
        """Record a script the first time it is seen in a job. Returns its id, or None if already known."""
        rows = await self._returning(
            """
            INSERT INTO scripts (crawl_job_id, page_id, url, type, is_async, is_defer, is_internal)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (crawl_job_id, url) DO NOTHING
            RETURNING id
            """,
            job_id, page_id, script.url, script.type, int(script.is_async),
            int(script.is_defer), int(script.is_internal),
        )
        return int(rows[0][0]) if rows else None

    async def update_image_metadata(self, image_id: int, status_code: Optional[int], content_type: Optional[str],
                                    file_size: Optional[int], redirect_url: Optional[str], redirect_count: int,
                                    actual_width: Optional[int] = None, actual_height: Optional[int] = None) -> None:
        await self._execute(
            """
            UPDATE images SET status_code = ?, content_type = ?, file_size = ?, redirect_url = ?,
              redirect_count = ?, actual_width = ?, actual_height = ?
            WHERE id = ?
            """,
            status_code, content_type, file_size, redirect_url, redirect_count,
            actual_width, actual_height, image_id,
        )

    async def update_script_metadata(self, script_id: int, status_code: Optional[int], content_type: Optional[str],
                                     file_size: Optional[int], redirect_url: Optional[str], redirect_count: int) -> None:
        await self._execute(
            """
            UPDATE scripts SET status_code = ?, content_type = ?, file_size = ?, redirect_url = ?, redirect_count = ?
            WHERE id = ?
            """,
            status_code, content_type, file_size, redirect_url, redirect_count, script_id,
        )

    # ------------------ reporting ------------------

    async def redirect_stats(self, job_id: int, threshold: int) -> Dict[str, int]:
        """Summarize redirected pages: permanent (301/308), temporary (302/303/307), excessive (> threshold hops)."""
        row = await self._fetchone(
            """
            SELECT
              COUNT(*),
              SUM(CASE WHEN status_code IN (301, 308) THEN 1 ELSE 0 END),
              SUM(CASE WHEN status_code IN (302, 303, 307) THEN 1 ELSE 0 END),
              SUM(CASE WHEN redirect_count > ? THEN 1 ELSE 0 END)
            FROM pages WHERE crawl_job_id = ? AND redirect_count > 0
            """,
            threshold, job_id,
        )
        keys = ("total", "permanent", "temporary", "excessive")
        stats = {key: int(value or 0) for key, value in zip(keys, row or ())}
        stats["threshold"] = threshold
        return stats

    async def count_rows(self, table: str, job_id: int) -> int:
        if table not in ("pages", "links", "images", "scripts", "crawl_queue"):
            raise ValueError(f"Unknown table: {table}")
        row = await self._fetchone(f"SELECT COUNT(*) FROM {table} WHERE crawl_job_id = ?", job_id)
        return int(row[0]) if row else 0
