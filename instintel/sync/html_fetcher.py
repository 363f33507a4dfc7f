"""
HTML Content Fetcher for the contact sync pipeline.

A fetch is an ordered walk over transports: the direct request first, then each
configured proxy, stopping at the first one that returns a 2xx response. There
is no retry or backoff beyond that list, and transports are never tried
concurrently.
"""

from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import quote, unquote, urlparse

import requests

from .config import FetchConfig
from .error_tracker import FetchError
from .logging_manager import get_logger

logger = get_logger(__name__)


def decode_url(url: str) -> str:
    """Decode percent-encoded URLs to make them readable."""
    try:
        return unquote(url)
    except Exception:
        return url


class Transport:
    """One way of retrieving a URL. Raises on any failure."""
    name = "transport"

    def supports(self, url: str) -> bool:
        return True

    def get(self, url: str) -> str:
        raise NotImplementedError


class DirectTransport(Transport):
    """Plain HTTP GET against the target site."""
    name = "direct"

    def __init__(self, session: requests.Session, timeout: int = 30):
        self.session = session
        self.timeout = timeout

    def supports(self, url: str) -> bool:
        return urlparse(url).scheme in ('http', 'https')

    def get(self, url: str) -> str:
        response = self.session.get(url, timeout=self.timeout)
        response.raise_for_status()
        return response.text


class ProxyTransport(DirectTransport):
    """GET through a public pass-through proxy; the target URL is appended URL-encoded."""

    def __init__(self, prefix: str, session: requests.Session, timeout: int = 30):
        super().__init__(session, timeout)
        self.prefix = prefix
        self.name = f"proxy:{urlparse(prefix).netloc}"

    def get(self, url: str) -> str:
        return super().get(f"{self.prefix}{quote(url, safe='')}")


class LocalFileTransport(Transport):
    """Reads `file://` URLs, used for offline runs and fixtures."""
    name = "file"

    def supports(self, url: str) -> bool:
        return url.startswith('file://')

    def get(self, url: str) -> str:
        path = Path(decode_url(url[len('file://'):])).resolve()
        if not path.exists():
            raise FileNotFoundError(f"Local file does not exist: {path}")
        with open(path, 'r', encoding='utf-8') as f:
            return f.read()


class ContentFetcher:
    """Fetches raw HTML for a URL through an ordered list of transports."""

    def __init__(self, config: Optional[FetchConfig] = None, transports: Optional[List[Transport]] = None,
                 session: Optional[requests.Session] = None):
        self.config = config or FetchConfig()
        if transports is None:
            self.session = session or requests.Session()
            self.session.headers.update(self.config.headers)
            transports = self.default_transports()
        self.transports = transports

    def default_transports(self) -> List[Transport]:
        transports: List[Transport] = []
        if self.config.allow_local_files:
            transports.append(LocalFileTransport())
        transports.append(DirectTransport(self.session, self.config.timeout))
        for prefix in self.config.proxy_prefixes:
            transports.append(ProxyTransport(prefix, self.session, self.config.timeout))
        return transports

    def fetch(self, url: str) -> str:
        """
        Retrieve the content at `url`.

        Raises:
            FetchError: every applicable transport failed; `attempts` lists each
            transport name with the error it produced.
        """
        attempts: List[Dict[str, str]] = []
        for transport in self.transports:
            if not transport.supports(url):
                continue
            try:
                logger.info(f"Fetching {url} via {transport.name}")
                content = transport.get(url)
            except Exception as e:
                logger.warning(f"Fetch via {transport.name} failed: {e}", extra={'details': {'url': url}})
                attempts.append({'transport': transport.name, 'error': str(e)})
                continue
            logger.info(f"Successfully fetched {len(content)} characters from {url} via {transport.name}")
            return content

        if not attempts:
            raise FetchError(f"No transport can fetch {url}", url=url)
        raise FetchError(
            f"Failed to fetch {url} after {len(attempts)} attempts: {attempts[-1]['error']}",
            url=url,
            attempts=attempts
        )
