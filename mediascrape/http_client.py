"""HTTP utilities for fetching pages to scan for media."""

from __future__ import annotations

import codecs
import logging

import httpx

from .config import ScraperConfig

LOGGER = logging.getLogger(__name__)

_BINARY_CONTENT_PREFIXES = (
    "image/",
    "video/",
    "audio/",
    "font/",
    "application/octet-stream",
    "application/pdf",
    "application/zip",
)
_SNIFF_BYTES = 1024


class FetchError(RuntimeError):
    """Raised when a page cannot be retrieved (transport failure or non-2xx)."""


class ParseError(RuntimeError):
    """Raised when a response body cannot be treated as text."""


class HttpFetcher:
    """Thread-safe HTTP client with the timeout and identity used for scraping."""

    def __init__(
        self,
        config: ScraperConfig,
        *,
        client: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._client = client or self._build_client()
        self._owns_client = client is None

    def _build_client(self) -> httpx.Client:
        kwargs: dict[str, object] = {
            "timeout": self._config.timeout.request_timeout,
            "headers": {"User-Agent": self._config.user_agent},
            "follow_redirects": True,
        }
        if self._transport:
            kwargs["transport"] = self._transport
        return httpx.Client(**kwargs)

    def fetch_text(self, url: str) -> str:
        try:
            response = self._client.get(url)
        except httpx.HTTPError as exc:
            raise FetchError(f"Request to {url} failed: {exc}") from exc

        if not response.is_success:
            raise FetchError(f"Unexpected status {response.status_code} for {url}")

        content_type = response.headers.get("content-type", "").lower()
        if content_type.startswith(_BINARY_CONTENT_PREFIXES):
            raise ParseError(f"Unsupported content type '{content_type}' for {url}")
        if b"\x00" in response.content[:_SNIFF_BYTES]:
            raise ParseError(f"Binary payload returned for {url}")

        charset = response.charset_encoding
        if charset:
            try:
                codecs.lookup(charset)
            except LookupError as exc:
                raise ParseError(f"Unknown charset '{charset}' for {url}") from exc
        return response.text

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpFetcher":
        return self

    def __exit__(self, *_exc_info) -> None:
        self.close()
