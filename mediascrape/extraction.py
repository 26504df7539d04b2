"""Turn a fetched page into the media references it embeds."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Iterator
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from .config import ScraperConfig
from .http_client import FetchError, HttpFetcher, ParseError

LOGGER = logging.getLogger(__name__)

MIN_SOURCE_LENGTH = 5
# Substring markers for embedded players. Any iframe whose src contains one of
# these is recorded as a video, including the occasional non-player frame.
VIDEO_FRAME_MARKERS = ("youtube.com", "vimeo.com", "player")


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


@dataclass(slots=True, frozen=True)
class MediaReference:
    kind: MediaKind
    url: str
    source_url: str
    alt_text: str | None = None

    def tagged(self, source_url: str) -> "MediaReference":
        if source_url == self.source_url:
            return self
        return replace(self, source_url=source_url)


def is_valid_source(src: str | None) -> bool:
    """Reject empty values, data URIs and junk like ``"."`` or ``"#"``."""
    if not src:
        return False
    if src.startswith("data:"):
        return False
    return len(src) >= MIN_SOURCE_LENGTH


def normalize_url(src: str, base_url: str) -> str:
    try:
        return urljoin(base_url, src)
    except ValueError:
        LOGGER.debug("Keeping unresolvable media URL %r from %s", src, base_url)
        return src


def is_video_frame(src: str) -> bool:
    return any(marker in src for marker in VIDEO_FRAME_MARKERS)


def _attr(tag: Tag, *names: str) -> str:
    for name in names:
        value = tag.get(name)
        if isinstance(value, list):
            value = " ".join(value)
        if value and value.strip():
            return value.strip()
    return ""


def _iter_images(soup: BeautifulSoup) -> Iterator[tuple[MediaKind, str, str | None]]:
    for img in soup.find_all("img"):
        alt = img.get("alt")
        alt_text = alt.strip() if isinstance(alt, str) and alt.strip() else None
        yield MediaKind.IMAGE, _attr(img, "src", "data-src"), alt_text


def _iter_videos(soup: BeautifulSoup) -> Iterator[tuple[MediaKind, str, str | None]]:
    for element in soup.select("video, video source"):
        yield MediaKind.VIDEO, _attr(element, "src"), None


def _iter_frames(soup: BeautifulSoup) -> Iterator[tuple[MediaKind, str, str | None]]:
    for frame in soup.find_all("iframe"):
        src = _attr(frame, "src")
        if src and is_video_frame(src):
            yield MediaKind.VIDEO, src, None


def _build_references(
    page_url: str,
    candidates: Iterable[tuple[MediaKind, str, str | None]],
) -> list[MediaReference]:
    references: list[MediaReference] = []
    for kind, src, alt_text in candidates:
        if not is_valid_source(src):
            continue
        references.append(
            MediaReference(
                kind=kind,
                url=normalize_url(src, page_url),
                source_url=page_url,
                alt_text=alt_text,
            )
        )
    return references


def parse_media(page_url: str, html: str) -> list[MediaReference]:
    """Return images, page videos and player iframes found in ``html``.

    Output order is stable: every image first, then ``<video>``/``<source>``
    elements in document order, then embedded player frames. Broken markup is
    tolerated; the parser recovers whatever elements it can.
    """

    soup = BeautifulSoup(html, "html.parser")
    candidates: list[tuple[MediaKind, str, str | None]] = []
    candidates.extend(_iter_images(soup))
    candidates.extend(_iter_videos(soup))
    candidates.extend(_iter_frames(soup))
    return _build_references(page_url, candidates)


class MediaExtractor:
    """Fetch a page and extract its media references."""

    def __init__(self, config: ScraperConfig, *, fetcher: HttpFetcher | None = None) -> None:
        self._fetcher = fetcher or HttpFetcher(config)
        self._owns_fetcher = fetcher is None

    def extract(self, url: str) -> list[MediaReference]:
        html = self._fetcher.fetch_text(url)
        try:
            return parse_media(url, html)
        except (TypeError, ValueError) as exc:
            raise ParseError(f"Failed to parse {url}: {exc}") from exc

    def close(self) -> None:
        if self._owns_fetcher:
            self._fetcher.close()

    def __enter__(self) -> "MediaExtractor":
        return self

    def __exit__(self, *_exc_info) -> None:
        self.close()


__all__ = [
    "FetchError",
    "MediaExtractor",
    "MediaKind",
    "MediaReference",
    "ParseError",
    "is_valid_source",
    "normalize_url",
    "parse_media",
]
