from __future__ import annotations
import logging
import os
from dataclasses import dataclass

DATA_DIR = os.getenv("SITECRAWLER_DATA", os.path.abspath("./data"))
os.makedirs(DATA_DIR, exist_ok=True)

def _get_env_var(primary: str, fallback: str, default: str = None):
    """Get environment variable, checking primary prefix first, then fallback name.

    Args:
        primary: Primary environment variable name (e.g., SITECRAWLER_CONCURRENCY)
        fallback: Fallback environment variable name (e.g., CONCURRENCY)
        default: Default value if neither is set

    Returns:
        Environment variable value or default
    """
    value = os.getenv(primary)
    if value is not None:
        return value
    value = os.getenv(fallback)
    if value is not None:
        return value
    return default

# Crawl constants
CONCURRENCY = int(_get_env_var("SITECRAWLER_CONCURRENCY", "CONCURRENCY", "10"))
MAX_CRAWL_DEPTH = int(_get_env_var("SITECRAWLER_MAX_CRAWL_DEPTH", "MAX_CRAWL_DEPTH", "50"))
MAX_REDIRECT_THRESHOLD = int(_get_env_var("SITECRAWLER_MAX_REDIRECT_THRESHOLD", "MAX_REDIRECT_THRESHOLD", "3"))

# Database backend configuration
DATABASE_BACKEND = _get_env_var("SITECRAWLER_DB_BACKEND", "DB_BACKEND", "sqlite")  # "sqlite" or "postgresql"
SQLITE_PATH = _get_env_var("SITECRAWLER_SQLITE_PATH", "SQLITE_PATH", os.path.join(DATA_DIR, "sitecrawler.db"))

# PostgreSQL configuration
POSTGRES_HOST = _get_env_var("SITECRAWLER_POSTGRES_HOST", "DB_HOST", "localhost")
POSTGRES_PORT = int(_get_env_var("SITECRAWLER_POSTGRES_PORT", "DB_PORT", "5432"))
POSTGRES_DATABASE = _get_env_var("SITECRAWLER_POSTGRES_DB", "DB_NAME", "sitecrawler")
POSTGRES_USER = _get_env_var("SITECRAWLER_POSTGRES_USER", "DB_USER", "crawler_user")
POSTGRES_PASSWORD = _get_env_var("SITECRAWLER_POSTGRES_PASSWORD", "DB_PASSWORD", "")
POSTGRES_POOL_SIZE = int(_get_env_var("SITECRAWLER_POSTGRES_POOL_SIZE", "DB_POOL_SIZE", "10"))

LOG_LEVEL = _get_env_var("SITECRAWLER_LOG_LEVEL", "LOG_LEVEL", "INFO")

@dataclass
class HttpConfig:
    user_agent: str = os.getenv("SITECRAWLER_UA", "WebCrawler/1.0")
    timeout: float = float(os.getenv("SITECRAWLER_TIMEOUT", "30"))
    max_redirects: int = int(os.getenv("SITECRAWLER_MAX_REDIRECTS", "10"))
    max_concurrency: int = CONCURRENCY
    # Off unless SITECRAWLER_VERIFY_TLS=1
    verify_tls: bool = os.getenv("SITECRAWLER_VERIFY_TLS", "0") == "1"
    enable_http2: bool = os.getenv("SITECRAWLER_HTTP2", "1") == "1"
    # Asset metadata (HEAD requests for newly seen images/scripts)
    asset_metadata: bool = os.getenv("SITECRAWLER_ASSET_METADATA", "1") == "1"
    sniff_image_dimensions: bool = os.getenv("SITECRAWLER_SNIFF_IMAGES", "1") == "1"
    image_sniff_bytes: int = int(os.getenv("SITECRAWLER_IMAGE_SNIFF_BYTES", "32768"))

    def __post_init__(self):
        self.max_concurrency = max(1, int(self.max_concurrency))
        self.max_redirects = max(0, int(self.max_redirects))

@dataclass
class CrawlLimits:
    max_depth: int = MAX_CRAWL_DEPTH
    follow_nofollow: bool = os.getenv("SITECRAWLER_FOLLOW_NOFOLLOW", "0") == "1"
    max_redirect_threshold: int = MAX_REDIRECT_THRESHOLD  # reporting only

def get_database_config(backend: str = None, sqlite_path: str = None) -> 'DatabaseConfig':
    """Get database configuration based on environment variables.

    Reads environment variables directly to support runtime changes (e.g., from command-line args).
    """
    from .database import DatabaseConfig

    backend = backend or _get_env_var("SITECRAWLER_DB_BACKEND", "DB_BACKEND", "sqlite")

    if backend == "postgresql":
        return DatabaseConfig(
            backend="postgresql",
            postgres_host=_get_env_var("SITECRAWLER_POSTGRES_HOST", "DB_HOST", "localhost"),
            postgres_port=int(_get_env_var("SITECRAWLER_POSTGRES_PORT", "DB_PORT", "5432")),
            postgres_database=_get_env_var("SITECRAWLER_POSTGRES_DB", "DB_NAME", "sitecrawler"),
            postgres_user=_get_env_var("SITECRAWLER_POSTGRES_USER", "DB_USER", "crawler_user"),
            postgres_password=_get_env_var("SITECRAWLER_POSTGRES_PASSWORD", "DB_PASSWORD", ""),
            postgres_pool_size=int(_get_env_var("SITECRAWLER_POSTGRES_POOL_SIZE", "DB_POOL_SIZE", "10")),
        )
    return DatabaseConfig(
        backend="sqlite",
        sqlite_path=sqlite_path or _get_env_var("SITECRAWLER_SQLITE_PATH", "SQLITE_PATH", SQLITE_PATH),
    )

def configure_logging(level: str = None) -> None:
    """Install a stream handler on the root logger."""
    level_name = (level or LOG_LEVEL).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
