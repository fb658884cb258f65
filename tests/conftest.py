import pytest
import pytest_asyncio
import os
import sys

# Add src to python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from src.sitecrawler.config import HttpConfig, CrawlLimits
from src.sitecrawler.database import DatabaseConfig
from src.sitecrawler.db_operations import CrawlStore

@pytest.fixture
def http_config():
    return HttpConfig(
        user_agent="TestBot/1.0",
        timeout=5,
        max_concurrency=4,
        verify_tls=False,
        enable_http2=False,
    )

@pytest.fixture
def crawl_limits():
    return CrawlLimits(
        max_depth=50,
        follow_nofollow=False,
    )

@pytest.fixture
def db_config(tmp_path):
    return DatabaseConfig(backend="sqlite", sqlite_path=str(tmp_path / "crawl.db"))

@pytest_asyncio.fixture
async def store(db_config):
    async with CrawlStore(db_config) as s:
        yield s

@pytest_asyncio.fixture
async def job_id(store):
    return await store.create_job("https://example.com")
