"""Website crawler — sitemap or breadth-first link discovery with SSRF protection.

Security requirements:
- SSRF guard: ipaddress module blocks private/loopback/link-local ranges before
  any connection is established.
- Allowed URL schemes: https:// and http:// only.
- Content-Type whitelist: HTML, plain text and XML (sitemaps) only.
- Max response body: 5 MB.
- Timeout: 30 seconds (connect + read).
- Max redirects: 3.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
import warnings
from collections.abc import Callable
from http.client import HTTPResponse

from bs4 import BeautifulSoup, XMLParsedAsHTMLWarning

from docprompt.errors import QuotaExceededError

logger = logging.getLogger(__name__)

_USER_AGENT = "docprompt/0.1 (+https://github.com/docprompt/docprompt)"
_MAX_BYTES = 5 * 1024 * 1024  # 5 MB
_TIMEOUT = 30  # seconds
_MAX_REDIRECTS = 3
_ALLOWED_SCHEMES = {"https", "http"}
_ALLOWED_CONTENT_TYPES = {
    "text/html",
    "text/plain",
    "application/xml",
    "text/xml",
    "application/xhtml+xml",
}
_NON_PAGE_PREFIXES = ("mailto:", "tel:", "javascript:", "data:", "#")

DEFAULT_SITEMAP_LIMIT = 10


class SsrfError(ValueError):
    """Raised when a URL resolves to a private or reserved address."""


# ------------------------------------------------------------------
# URL helpers
# ------------------------------------------------------------------


def to_normalized_url(url: str) -> str:
    """Add a missing ``https://`` scheme and strip trailing slashes."""
    url = url.strip()
    if "://" not in url:
        url = f"https://{url}"
    return url.rstrip("/")


def to_normalized_origin(url: str) -> str:
    parsed = urllib.parse.urlparse(to_normalized_url(url))
    return f"{parsed.scheme}://{parsed.netloc}"


def strip_url(url: str) -> str:
    """Remove query string, fragment and trailing slash from *url*."""
    parsed = urllib.parse.urlparse(url)
    return parsed._replace(query="", fragment="").geturl().rstrip("/")


def is_sitemap_url(url: str) -> bool:
    return urllib.parse.urlparse(url).path.lower().endswith(".xml")


def is_href_from_base_url(base_url: str, href: str) -> bool:
    """True for relative hrefs and absolute hrefs on the same origin as *base_url*."""
    href = href.strip()
    if not href or href.lower().startswith(_NON_PAGE_PREFIXES):
        return False
    parsed = urllib.parse.urlparse(href)
    if not parsed.scheme and not parsed.netloc:
        return True
    if parsed.scheme and parsed.scheme not in _ALLOWED_SCHEMES:
        return False
    if not parsed.scheme:
        # Protocol-relative: //host/path
        parsed = urllib.parse.urlparse(f"https:{href}")
    return parsed.netloc == urllib.parse.urlparse(to_normalized_url(base_url)).netloc


def complete_href_with_base_url(base_url: str, href: str) -> str:
    """Resolve *href* against *base_url*: absolute paths against its origin,
    other relative paths below it."""
    return urllib.parse.urljoin(to_normalized_url(base_url) + "/", href.strip())


def extract_links_from_html(html: str) -> list[str]:
    """Return every ``href`` of an ``<a>`` element in document order."""
    soup = BeautifulSoup(html, "html.parser")
    return [a["href"] for a in soup.find_all("a", href=True)]


def name_from_url(url: str) -> str:
    """Display name for a page: its last path segment without extension."""
    parsed = urllib.parse.urlparse(url)
    segment = parsed.path.rstrip("/").rsplit("/", 1)[-1]
    if not segment:
        return parsed.netloc
    return segment.rsplit(".", 1)[0] if "." in segment else segment


def parse_sitemap(xml: str) -> list[str]:
    """Return the ``<loc>`` URLs of a sitemap document."""
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
        soup = BeautifulSoup(xml, "html.parser")
    return [loc.get_text(strip=True) for loc in soup.find_all("loc") if loc.get_text(strip=True)]


# ------------------------------------------------------------------
# Fetching
# ------------------------------------------------------------------


class PageFetcher:
    """Fetch pages over HTTP(S) with SSRF, size, type and redirect limits.

    SSRF protection is applied *before* any connection is made:
    the hostname is resolved and all resulting IP addresses are checked
    against private/loopback/link-local/reserved ranges via the stdlib
    ``ipaddress`` module. Set ``allow_private=True`` to crawl an intranet
    or a local development server.
    """

    def __init__(self, allow_private: bool = False) -> None:
        self._allow_private = allow_private

    def fetch_page(self, url: str) -> str | None:
        """Return the body of *url* as text, or None when it cannot be fetched."""
        try:
            return self.fetch(url)
        except (ValueError, RuntimeError) as exc:
            logger.warning("Unable to fetch %s: %s", url, exc)
            return None

    def fetch(self, url: str) -> str:
        """Validate and fetch *url*. Raises ValueError / RuntimeError on failure."""
        self._validate_scheme(url)
        if not self._allow_private:
            self._check_ssrf(url)
        body, _ = self._fetch(url)
        return body.decode("utf-8", errors="replace")

    def fetch_sitemap_urls(self, url: str) -> list[str]:
        return parse_sitemap(self.fetch(url))

    @staticmethod
    def _validate_scheme(url: str) -> None:
        parsed = urllib.parse.urlparse(url)
        if parsed.scheme not in _ALLOWED_SCHEMES:
            raise ValueError(
                f"Unsupported URL scheme '{parsed.scheme}'. Only https:// and http:// are allowed."
            )

    @staticmethod
    def _check_ssrf(url: str) -> None:
        """Resolve the hostname and block private/reserved IP ranges.

        Raises SsrfError if any resolved address is private, loopback,
        link-local, or otherwise reserved.
        """
        parsed = urllib.parse.urlparse(url)
        hostname = parsed.hostname
        if not hostname:
            raise ValueError(f"URL has no hostname: {url}")

        try:
            addrinfos = socket.getaddrinfo(hostname, None)
        except socket.gaierror as exc:
            raise ValueError(f"DNS resolution failed for '{hostname}': {exc}") from exc

        for addrinfo in addrinfos:
            addr_str = addrinfo[4][0]
            try:
                ip = ipaddress.ip_address(addr_str)
            except ValueError:
                continue
            if (
                ip.is_private
                or ip.is_loopback
                or ip.is_link_local
                or ip.is_reserved
                or ip.is_multicast
                or ip.is_unspecified
            ):
                raise SsrfError(
                    f"URL resolves to private address ({ip}). "
                    "Access to internal network addresses is not allowed."
                )

    @staticmethod
    def _fetch(url: str) -> tuple[bytes, str]:
        """Fetch *url* with timeout, redirect limit, size cap, and Content-Type check.

        Returns (body_bytes, content_type_without_params).
        """
        request = urllib.request.Request(url, headers={"User-Agent": _USER_AGENT})
        opener = urllib.request.build_opener(_LimitedRedirectHandler(_MAX_REDIRECTS))

        try:
            response: HTTPResponse = opener.open(request, timeout=_TIMEOUT)
        except urllib.error.URLError as exc:
            raise RuntimeError(f"Failed to fetch URL '{url}': {exc}") from exc

        with response:
            raw_ct = response.headers.get("Content-Type", "text/html")
            ct = raw_ct.split(";")[0].strip().lower()
            if ct not in _ALLOWED_CONTENT_TYPES:
                raise ValueError(
                    f"Unsupported Content-Type '{ct}' for URL '{url}'. "
                    f"Accepted: {', '.join(sorted(_ALLOWED_CONTENT_TYPES))}"
                )

            body = response.read(_MAX_BYTES + 1)
        if len(body) > _MAX_BYTES:
            raise ValueError(
                f"Response body exceeds {_MAX_BYTES // (1024 * 1024)} MB limit for URL '{url}'."
            )

        return body, ct


class _LimitedRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Raise an error after more than *max_redirects* redirects."""

    def __init__(self, max_redirects: int) -> None:
        self._max_redirects = max_redirects
        self._count = 0

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        self._count += 1
        if self._count > self._max_redirects:
            raise RuntimeError(
                f"Too many redirects (>{self._max_redirects}) for URL '{req.full_url}'."
            )
        return super().redirect_request(req, fp, code, msg, headers, newurl)


# ------------------------------------------------------------------
# Discovery
# ------------------------------------------------------------------

TrainRound = Callable[[list[str]], list[str]]


class WebsiteCrawler:
    """Discover the pages of a website and hand them to training in rounds.

    A sitemap URL yields a single round with its first ``sitemap_limit``
    entries. Any other URL is crawled breadth-first: each round trains a
    frontier of URLs and returns the HTML it fetched, whose same-origin links
    not yet processed form the next frontier. Crawling stops when a frontier
    is empty, when a round raises, or when *should_stop* returns True.
    """

    def __init__(
        self,
        fetcher: PageFetcher | None = None,
        sitemap_limit: int = DEFAULT_SITEMAP_LIMIT,
    ) -> None:
        self._fetcher = fetcher or PageFetcher()
        self._sitemap_limit = sitemap_limit

    def crawl(
        self,
        base_url: str,
        train_round: TrainRound,
        should_stop: Callable[[], bool] = lambda: False,
    ) -> list[str]:
        """Run discovery from *base_url*. Returns every URL handed to a round."""
        base_url = to_normalized_url(base_url)
        if is_sitemap_url(base_url):
            return self._crawl_sitemap(base_url, train_round)

        root = strip_url(base_url)
        processed: set[str] = set()
        ordered: list[str] = []
        frontier = [root]

        while frontier and not should_stop():
            processed.update(frontier)
            ordered.extend(frontier)
            try:
                contents = train_round(frontier)
            except QuotaExceededError:
                raise
            except Exception as exc:
                logger.error("Crawl of %s stopped: %s", root, exc)
                break

            next_frontier: list[str] = []
            seen = set(processed)
            for html in contents:
                for href in extract_links_from_html(html):
                    if not is_href_from_base_url(root, href):
                        continue
                    url = strip_url(complete_href_with_base_url(root, href))
                    if url not in seen:
                        seen.add(url)
                        next_frontier.append(url)
            frontier = next_frontier

        return ordered

    def _crawl_sitemap(self, url: str, train_round: TrainRound) -> list[str]:
        try:
            urls = self._fetcher.fetch_sitemap_urls(url)[: self._sitemap_limit]
        except (ValueError, RuntimeError) as exc:
            logger.error("Unable to read sitemap %s: %s", url, exc)
            return []
        try:
            train_round(urls)
        except QuotaExceededError:
            raise
        except Exception as exc:
            logger.error("Training from sitemap %s stopped: %s", url, exc)
        return urls
