"""
PostgreSQL schema definitions for the crawler database.

This module contains the PostgreSQL equivalent of the SQLite schema,
with PostgreSQL data types and identity columns.
"""

import re
from typing import List


POSTGRES_CRAWL_SCHEMA = """
-- One row per submitted crawl
CREATE TABLE IF NOT EXISTS crawl_jobs (
    id SERIAL PRIMARY KEY,
    domain TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','running','completed','failed')),
    created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
    started_at TIMESTAMP WITH TIME ZONE,
    completed_at TIMESTAMP WITH TIME ZONE,
    total_pages INTEGER NOT NULL DEFAULT 0,
    total_links INTEGER NOT NULL DEFAULT 0,
    total_images INTEGER NOT NULL DEFAULT 0,
    total_scripts INTEGER NOT NULL DEFAULT 0,
    failed_urls INTEGER NOT NULL DEFAULT 0
);

-- Frontier: one row per normalized URL per job
CREATE TABLE IF NOT EXISTS crawl_queue (
    id SERIAL PRIMARY KEY,
    crawl_job_id INTEGER NOT NULL REFERENCES crawl_jobs (id) ON DELETE CASCADE,
    url TEXT NOT NULL,
    depth INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','processing','completed','failed')),
    retry_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
    processed_at TIMESTAMP WITH TIME ZONE,
    UNIQUE (crawl_job_id, url)
);
CREATE INDEX IF NOT EXISTS idx_crawl_queue_job_status ON crawl_queue(crawl_job_id, status);

CREATE TABLE IF NOT EXISTS pages (
    id SERIAL PRIMARY KEY,
    crawl_job_id INTEGER NOT NULL REFERENCES crawl_jobs (id) ON DELETE CASCADE,
    url TEXT NOT NULL,
    title TEXT,
    meta_description TEXT,
    status_code INTEGER,
    content_type TEXT,
    redirect_url TEXT,
    redirect_count INTEGER NOT NULL DEFAULT 0,
    favicon_url TEXT,
    crawled_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (crawl_job_id, url)
);

CREATE TABLE IF NOT EXISTS links (
    id SERIAL PRIMARY KEY,
    page_id INTEGER NOT NULL REFERENCES pages (id) ON DELETE CASCADE,
    crawl_job_id INTEGER NOT NULL REFERENCES crawl_jobs (id) ON DELETE CASCADE,
    source_url TEXT NOT NULL,
    target_url TEXT NOT NULL,
    link_text TEXT,
    is_nofollow INTEGER NOT NULL DEFAULT 0,
    is_internal INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_links_job ON links(crawl_job_id);
CREATE INDEX IF NOT EXISTS idx_links_page ON links(page_id);

CREATE TABLE IF NOT EXISTS images (
    id SERIAL PRIMARY KEY,
    crawl_job_id INTEGER NOT NULL REFERENCES crawl_jobs (id) ON DELETE CASCADE,
    page_id INTEGER REFERENCES pages (id) ON DELETE SET NULL,
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
    file_size BIGINT,
    redirect_url TEXT,
    redirect_count INTEGER NOT NULL DEFAULT 0,
    actual_width INTEGER,
    actual_height INTEGER,
    crawled_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (crawl_job_id, url)
);

CREATE TABLE IF NOT EXISTS scripts (
    id SERIAL PRIMARY KEY,
    crawl_job_id INTEGER NOT NULL REFERENCES crawl_jobs (id) ON DELETE CASCADE,
    page_id INTEGER REFERENCES pages (id) ON DELETE SET NULL,
    url TEXT NOT NULL,
    type TEXT,
    is_async INTEGER NOT NULL DEFAULT 0,
    is_defer INTEGER NOT NULL DEFAULT 0,
    is_internal INTEGER NOT NULL DEFAULT 0,
    status_code INTEGER,
    content_type TEXT,
    file_size BIGINT,
    redirect_url TEXT,
    redirect_count INTEGER NOT NULL DEFAULT 0,
    crawled_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (crawl_job_id, url)
);
"""


def get_postgres_schema_statements() -> List[str]:
    """Get PostgreSQL schema statements as a list."""
    # Remove single-line comments
    schema_clean = re.sub(r'--.*$', '', POSTGRES_CRAWL_SCHEMA, flags=re.MULTILINE)

    statements = []
    for statement in schema_clean.split(';'):
        statement = statement.strip()
        if statement:
            statements.append(statement)
    return statements
