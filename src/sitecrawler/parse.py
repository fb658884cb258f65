from __future__ import annotations
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({
    ".png", ".jpg", ".jpeg", ".svg", ".ico", ".gif", ".webp", ".bmp", ".tiff", ".tif", ".avif",
})
SCRIPT_EXTENSIONS = frozenset({".js", ".mjs", ".jsx"})

# ------------------ URL helpers ------------------

def ensure_scheme(domain: str) -> str:
    """Prefix a bare domain with https:// the way job submission does."""
    domain = (domain or "").strip()
    if not re.match(r"^https?://", domain, flags=re.IGNORECASE):
        domain = "https://" + domain
    return domain

def base_domain_of(url: str) -> str:
    """Case-folded host of a URL, or '' when it has none."""
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""

def normalize_url(url: str, base_domain: str) -> str:
    """
    Canonicalize a URL into the key used for frontier deduplication.

    - Drops the fragment
    - Lowercases the host
    - Adds or removes a leading ``www.`` so the host matches the base domain's form
    - Strips trailing slashes from the path unless the path is ``/``
    - Leaves scheme, port and query string alone

    Input that cannot be parsed is returned unchanged.
    """
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return url

    netloc = ""
    if parts.netloc:
        host = (parts.hostname or "").lower()
        base = (base_domain or "").lower()
        base_has_www = base.startswith("www.")
        url_has_www = host.startswith("www.")
        if ":" in host:
            host = f"[{host}]"  # IPv6 literal
        elif base_has_www and not url_has_www:
            host = "www." + host
        elif url_has_www and not base_has_www:
            host = host[4:]
        netloc = f"{host}:{port}" if port is not None else host

    path = parts.path
    if path and path != "/":
        path = path.rstrip("/") or "/"
    if netloc and not path:
        path = "/"

    return urlunsplit((parts.scheme, netloc, path, parts.query, ""))

def make_absolute_url(href: str, base: str) -> str:
    """Resolve href against the page URL; absolute URLs pass through unchanged."""
    href = href.strip()
    try:
        parts = urlsplit(href)
        if parts.scheme and (parts.netloc or parts.scheme not in ("http", "https")):
            return href
        return urljoin(base, href)
    except ValueError:
        return href

def is_internal_url(url: str, base_domain: str) -> bool:
    """Exact host match against the base domain; subdomains are external."""
    host = base_domain_of(url)
    return bool(host) and host == (base_domain or "").lower()

def url_extension(url: str) -> str:
    try:
        path = urlsplit(url).path
    except ValueError:
        return ""
    return os.path.splitext(path.lower())[1]

def is_asset_url(url: str) -> bool:
    ext = url_extension(url)
    return ext in IMAGE_EXTENSIONS or ext in SCRIPT_EXTENSIONS

# ------------------ classification ------------------

def is_html(content_type: str | None) -> bool:
    ct = (content_type or "").lower()
    return "text/html" in ct or "application/xhtml+xml" in ct

def classify(content_type: str | None, url: str) -> str:
    """Return 'html', 'image', 'script' or 'other'."""
    ct = (content_type or "").lower()
    if is_html(ct):
        return "html"
    if ct.startswith("image/"):
        return "image"
    if "javascript" in ct or "ecmascript" in ct:
        return "script"
    # fallback on extension
    ext = url_extension(url)
    if ext in IMAGE_EXTENSIONS:
        return "image"
    if ext in SCRIPT_EXTENSIONS:
        return "script"
    return "other"

# ------------------ extractors ------------------

@dataclass
class ExtractedLink:
    target_url: str
    link_text: str
    is_nofollow: bool
    is_internal: bool

@dataclass
class ExtractedImage:
    url: str
    alt_text: str | None = None
    title: str | None = None
    width: str | None = None
    height: str | None = None
    srcset: str | None = None
    sizes: str | None = None
    loading: str | None = None
    is_responsive: bool = False

@dataclass
class ExtractedScript:
    url: str
    type: str | None = None
    is_async: bool = False
    is_defer: bool = False
    is_internal: bool = False

@dataclass
class PageExtract:
    title: str = ""
    meta_description: str = ""
    favicon_url: str | None = None
    links: List[ExtractedLink] = field(default_factory=list)
    images: List[ExtractedImage] = field(default_factory=list)
    scripts: List[ExtractedScript] = field(default_factory=list)

def _clean_text(text: str) -> str:
    return " ".join(text.split())

def _attr(tag: Tag, name: str) -> Optional[str]:
    value = tag.get(name)
    if value is None:
        return None
    if isinstance(value, list):
        value = " ".join(value)
    return value.strip()

def _rel_tokens(tag: Tag) -> List[str]:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return [r.lower() for r in rel]

FAVICON_RULES: List[Callable[[List[str]], bool]] = [
    lambda rel: rel == ["icon"],
    lambda rel: rel == ["shortcut", "icon"],
    lambda rel: "apple-touch-icon" in rel,
]

def extract_favicon(soup: BeautifulSoup, page_url: str) -> str:
    link_tags = soup.find_all("link", href=True)
    for matches in FAVICON_RULES:
        for tag in link_tags:
            href = _attr(tag, "href")
            if href and matches(_rel_tokens(tag)):
                return make_absolute_url(href, page_url)
    return urljoin(page_url, "/favicon.ico")

def extract_links(soup: BeautifulSoup, page_url: str, base_domain: str) -> List[ExtractedLink]:
    links = []
    for a in soup.find_all("a"):
        try:
            href = _attr(a, "href")
            if not href or href == "#":
                continue
            target = make_absolute_url(href, page_url)
            if is_asset_url(target):
                continue
            links.append(ExtractedLink(
                target_url=target,
                link_text=_clean_text(a.get_text()),
                is_nofollow="nofollow" in _rel_tokens(a),
                is_internal=is_internal_url(target, base_domain),
            ))
        except Exception as e:
            logger.debug("Skipping anchor on %s: %s", page_url, e)
    return links

def extract_images(soup: BeautifulSoup, page_url: str) -> List[ExtractedImage]:
    images = []
    for img in soup.find_all("img", src=True):
        try:
            src = _attr(img, "src")
            if not src or src.lower().startswith("data:"):
                continue
            srcset = _attr(img, "srcset")
            sizes = _attr(img, "sizes")
            images.append(ExtractedImage(
                url=make_absolute_url(src, page_url),
                alt_text=_attr(img, "alt"),
                title=_attr(img, "title"),
                width=_attr(img, "width"),
                height=_attr(img, "height"),
                srcset=srcset,
                sizes=sizes,
                loading=_attr(img, "loading"),
                is_responsive=bool(srcset) or bool(sizes),
            ))
        except Exception as e:
            logger.debug("Skipping image on %s: %s", page_url, e)
    return images

def extract_scripts(soup: BeautifulSoup, page_url: str, base_domain: str) -> List[ExtractedScript]:
    scripts = []
    for script in soup.find_all("script", src=True):
        try:
            src = _attr(script, "src")
            if not src:
                continue
            url = make_absolute_url(src, page_url)
            scripts.append(ExtractedScript(
                url=url,
                type=_attr(script, "type"),
                is_async=script.has_attr("async"),
                is_defer=script.has_attr("defer"),
                is_internal=is_internal_url(url, base_domain),
            ))
        except Exception as e:
            logger.debug("Skipping script on %s: %s", page_url, e)
    return scripts

def extract_page(html: str, page_url: str, base_domain: str | None = None) -> PageExtract:
    """Parse an HTML document into title, meta description, favicon, links, images and scripts.

    ``base_domain`` decides which links count as internal; it defaults to the page's own host.
    """
    if base_domain is None:
        base_domain = base_domain_of(page_url)
    soup = BeautifulSoup(html or "", "html.parser")

    title_tag = soup.find("title")
    title = _clean_text(title_tag.get_text()) if title_tag else ""

    meta_tag = soup.find("meta", attrs={"name": lambda v: v is not None and v.lower() == "description"})
    meta_description = (_attr(meta_tag, "content") or "") if meta_tag else ""

    return PageExtract(
        title=title,
        meta_description=meta_description,
        favicon_url=extract_favicon(soup, page_url),
        links=extract_links(soup, page_url, base_domain),
        images=extract_images(soup, page_url),
        scripts=extract_scripts(soup, page_url, base_domain),
    )
