"""
HTTP fetching with redirect tracking, built on httpx (HTTP/2 and Brotli capable).

Every public coroutine returns a result object; network errors are reported as
``FetchFailure`` values and never propagate to the caller.
"""
from __future__ import annotations
import io
import logging
import ssl
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union
from urllib.parse import urljoin

import httpx
from PIL import Image

from .config import HttpConfig

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = {301, 302, 303, 307, 308}


@dataclass
class RedirectHop:
    url: str
    status: int
    location: str


@dataclass
class FetchResult:
    url: str
    final_url: str
    status: int
    content_type: str
    headers: Dict[str, str]
    body: str
    redirect_chain: List[RedirectHop] = field(default_factory=list)

    @property
    def initial_status(self) -> int:
        """Status of the first response, i.e. the redirect status when one occurred."""
        return self.redirect_chain[0].status if self.redirect_chain else self.status

    @property
    def redirect_count(self) -> int:
        return len(self.redirect_chain)

    @property
    def redirect_url(self) -> Optional[str]:
        return self.final_url if self.redirect_chain else None


@dataclass
class HeadResult:
    url: str
    final_url: str
    status: int
    content_type: str
    content_length: Optional[int]
    redirect_chain: List[RedirectHop] = field(default_factory=list)

    @property
    def redirect_count(self) -> int:
        return len(self.redirect_chain)

    @property
    def redirect_url(self) -> Optional[str]:
        return self.final_url if self.redirect_chain else None


@dataclass
class FetchFailure:
    url: str
    reason: str  # timeout, connect, tls, too_many_redirects, unsupported_scheme, invalid_url, protocol, error
    message: str
    redirect_chain: List[RedirectHop] = field(default_factory=list)


class TooManyRedirects(Exception):
    pass


def _get_default_headers(cfg: HttpConfig) -> Dict[str, str]:
    return {
        "User-Agent": cfg.user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    }


def _is_tls_error(exc: BaseException) -> bool:
    seen = exc
    while seen is not None:
        if isinstance(seen, ssl.SSLError):
            return True
        seen = seen.__cause__ or seen.__context__
    return "ssl" in str(exc).lower() or "certificate" in str(exc).lower()


def classify_error(exc: BaseException) -> str:
    """Map an exception raised while fetching to a failure reason."""
    if isinstance(exc, TooManyRedirects):
        return "too_many_redirects"
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc, httpx.ConnectError):
        return "tls" if _is_tls_error(exc) else "connect"
    if isinstance(exc, httpx.UnsupportedProtocol):
        return "unsupported_scheme"
    if isinstance(exc, httpx.InvalidURL):
        return "invalid_url"
    if isinstance(exc, httpx.RequestError):
        return "tls" if _is_tls_error(exc) else "protocol"
    return "error"


def _parse_content_length(headers: httpx.Headers) -> Optional[int]:
    value = headers.get("content-length")
    if value is None:
        # Range responses report the full size after the slash
        content_range = headers.get("content-range", "")
        if "/" in content_range:
            value = content_range.rsplit("/", 1)[1]
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


class Fetcher:
    """Shared HTTP client for one crawl run.

    Use as an async context manager. ``transport`` lets tests plug in an
    ``httpx.MockTransport``.
    """

    def __init__(self, cfg: HttpConfig | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.cfg = cfg or HttpConfig()
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "Fetcher":
        self._client = httpx.AsyncClient(
            http2=self.cfg.enable_http2 and self.transport is None,
            verify=self.cfg.verify_tls,
            timeout=httpx.Timeout(self.cfg.timeout),
            headers=_get_default_headers(self.cfg),
            follow_redirects=False,  # We handle redirects manually to track them
            limits=httpx.Limits(max_connections=self.cfg.max_concurrency * 2),
            transport=self.transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Fetcher used outside of 'async with'")
        return self._client

    async def _follow(self, method: str, url: str, chain: List[RedirectHop],
                      headers: Dict[str, str] | None = None) -> httpx.Response:
        """Send a request, following redirects manually; returns an open streamed response."""
        current_url = url
        while True:
            request = self.client.build_request(method, current_url, headers=headers)
            response = await self.client.send(request, stream=True)
            location = response.headers.get("location")
            if response.status_code not in REDIRECT_STATUSES or not location:
                return response
            await response.aclose()

            next_url = urljoin(current_url, location)
            chain.append(RedirectHop(url=current_url, status=response.status_code, location=next_url))
            if len(chain) > self.cfg.max_redirects:
                raise TooManyRedirects(f"Exceeded {self.cfg.max_redirects} redirects")
            if response.status_code == 303 and method != "HEAD":
                method = "GET"
            current_url = next_url

    def _failure(self, url: str, exc: BaseException, chain: List[RedirectHop]) -> FetchFailure:
        reason = classify_error(exc)
        logger.warning("Error fetching %s (%s): %s", url, reason, exc)
        return FetchFailure(url=url, reason=reason, message=str(exc) or exc.__class__.__name__,
                            redirect_chain=chain)

    async def fetch(self, url: str) -> Union[FetchResult, FetchFailure]:
        """GET a page, returning status, content type, body and redirect chain."""
        chain: List[RedirectHop] = []
        try:
            response = await self._follow("GET", url, chain)
            try:
                await response.aread()
            finally:
                await response.aclose()
            return FetchResult(
                url=url,
                final_url=str(response.url),
                status=response.status_code,
                content_type=response.headers.get("content-type", ""),
                headers=dict(response.headers),
                body=response.text,
                redirect_chain=chain,
            )
        except Exception as e:
            return self._failure(url, e, chain)

    async def fetch_head(self, url: str) -> Union[HeadResult, FetchFailure]:
        """Asset metadata (status, content type, size) without downloading the body."""
        chain: List[RedirectHop] = []
        try:
            response = await self._follow("HEAD", url, chain)
            await response.aclose()
            if response.status_code in (405, 501):
                # HEAD not supported: read headers from a GET and drop the body
                chain.clear()
                response = await self._follow("GET", url, chain)
                await response.aclose()
            return HeadResult(
                url=url,
                final_url=str(response.url),
                status=response.status_code,
                content_type=response.headers.get("content-type", ""),
                content_length=_parse_content_length(response.headers),
                redirect_chain=chain,
            )
        except Exception as e:
            return self._failure(url, e, chain)

    async def fetch_image_dimensions(self, url: str) -> Optional[Tuple[int, int]]:
        """Read the first bytes of an image with a range request and sniff its pixel size."""
        limit = self.cfg.image_sniff_bytes
        chain: List[RedirectHop] = []
        data = bytearray()
        try:
            response = await self._follow("GET", url, chain, headers={"Range": f"bytes=0-{limit - 1}"})
            try:
                if response.status_code >= 400:
                    return None
                # Servers that ignore Range send the whole file; stop once we have enough
                async for chunk in response.aiter_bytes():
                    data.extend(chunk)
                    if len(data) >= limit:
                        break
            finally:
                await response.aclose()
        except Exception as e:
            logger.debug("Could not sniff image %s: %s", url, e)
            return None

        try:
            with Image.open(io.BytesIO(bytes(data[:limit]))) as image:
                return image.size
        except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
            logger.debug("Could not read image header for %s: %s", url, e)
            return None
