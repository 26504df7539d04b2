import unittest

import httpx

from mediascrape.config import ScraperConfig
from mediascrape.extraction import (
    MediaExtractor,
    MediaKind,
    MediaReference,
    is_valid_source,
    normalize_url,
    parse_media,
)
from mediascrape.http_client import FetchError, HttpFetcher, ParseError

PAGE_URL = "https://x.test/page"

GALLERY_HTML = """
<html>
  <body>
    <img src="https://cdn.x.test/a.jpg" alt="First">
    <img src="/img/b.png">
    <iframe src="https://vimeo.com/123"></iframe>
  </body>
</html>
"""

MIXED_HTML = """
<html><body>
  <iframe src="https://www.youtube.com/embed/abc"></iframe>
  <video src="/clips/intro.mp4">
    <source src="/clips/intro.webm" type="video/webm">
    <source src="clips/intro.ogv">
  </video>
  <img data-src="/lazy/photo.jpg" alt="  Lazy photo ">
  <img src="" data-src="https://cdn.x.test/fallback.jpg">
  <iframe src="https://ads.x.test/banner.html"></iframe>
  <iframe src="//player.x.test/embed/9"></iframe>
</body></html>
"""

JUNK_HTML = """
<img src="data:image/gif;base64,R0lGODlhAQABAAAAACw=">
<img src=".">
<img src="a.gi">
<img>
<video></video>
<video src="  "></video>
<iframe></iframe>
<img src="https://cdn.x.test/ok.jpg"><div><p>unclosed
"""


class ParseMediaTestCase(unittest.TestCase):
    def test_gallery_page_yields_two_images_and_one_video(self) -> None:
        references = parse_media(PAGE_URL, GALLERY_HTML)

        self.assertEqual(
            references,
            [
                MediaReference(MediaKind.IMAGE, "https://cdn.x.test/a.jpg", PAGE_URL, "First"),
                MediaReference(MediaKind.IMAGE, "https://x.test/img/b.png", PAGE_URL, None),
                MediaReference(MediaKind.VIDEO, "https://vimeo.com/123", PAGE_URL, None),
            ],
        )

    def test_order_is_images_then_videos_then_frames(self) -> None:
        references = parse_media(PAGE_URL, MIXED_HTML)

        self.assertEqual(
            [(ref.kind, ref.url) for ref in references],
            [
                (MediaKind.IMAGE, "https://x.test/lazy/photo.jpg"),
                (MediaKind.IMAGE, "https://cdn.x.test/fallback.jpg"),
                (MediaKind.VIDEO, "https://x.test/clips/intro.mp4"),
                (MediaKind.VIDEO, "https://x.test/clips/intro.webm"),
                (MediaKind.VIDEO, "https://x.test/clips/intro.ogv"),
                (MediaKind.VIDEO, "https://www.youtube.com/embed/abc"),
                (MediaKind.VIDEO, "https://player.x.test/embed/9"),
            ],
        )
        self.assertEqual(references[0].alt_text, "Lazy photo")
        self.assertIsNone(references[1].alt_text)

    def test_youtube_embed_is_emitted_once_with_literal_url(self) -> None:
        html = '<iframe src="https://www.youtube.com/embed/abc"></iframe>'

        references = parse_media(PAGE_URL, html)

        self.assertEqual(len(references), 1)
        self.assertEqual(references[0].kind, MediaKind.VIDEO)
        self.assertEqual(references[0].url, "https://www.youtube.com/embed/abc")

    def test_relative_image_is_resolved_against_page(self) -> None:
        references = parse_media(PAGE_URL, '<img src="/img/a.png">')

        self.assertEqual(references[0].url, "https://x.test/img/a.png")
        self.assertEqual(references[0].source_url, PAGE_URL)

    def test_junk_sources_are_rejected(self) -> None:
        references = parse_media(PAGE_URL, JUNK_HTML)

        self.assertEqual([ref.url for ref in references], ["https://cdn.x.test/ok.jpg"])

    def test_non_player_iframe_is_ignored(self) -> None:
        self.assertEqual(parse_media(PAGE_URL, '<iframe src="https://maps.x.test/embed"></iframe>'), [])

    def test_every_reference_has_known_kind_and_url(self) -> None:
        for html in (GALLERY_HTML, MIXED_HTML, JUNK_HTML, "<<<not html>>>", ""):
            with self.subTest(html=html[:30]):
                for reference in parse_media(PAGE_URL, html):
                    self.assertIn(reference.kind, (MediaKind.IMAGE, MediaKind.VIDEO))
                    self.assertTrue(reference.url)
                    self.assertFalse(reference.url.startswith("data:"))

    def test_tagged_replaces_source_url(self) -> None:
        reference = MediaReference(MediaKind.IMAGE, "https://x.test/a.png", PAGE_URL)

        self.assertIs(reference.tagged(PAGE_URL), reference)
        self.assertEqual(reference.tagged("https://y.test/").source_url, "https://y.test/")


class SourceHelpersTestCase(unittest.TestCase):
    def test_is_valid_source(self) -> None:
        self.assertFalse(is_valid_source(None))
        self.assertFalse(is_valid_source(""))
        self.assertFalse(is_valid_source("data:image/png;base64,AAAA"))
        self.assertFalse(is_valid_source("#top"))
        self.assertTrue(is_valid_source("a.png"))

    def test_normalize_url_passes_through_unresolvable_values(self) -> None:
        self.assertEqual(normalize_url("http://[::1", PAGE_URL), "http://[::1")
        self.assertEqual(normalize_url("../up.png", "https://x.test/a/b/"), "https://x.test/a/up.png")


class MediaExtractorTestCase(unittest.TestCase):
    def _extractor(self, handler) -> MediaExtractor:
        fetcher = HttpFetcher(ScraperConfig(), transport=httpx.MockTransport(handler))
        self.addCleanup(fetcher.close)
        return MediaExtractor(ScraperConfig(), fetcher=fetcher)

    def test_extract_fetches_and_parses_page(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text=GALLERY_HTML, headers={"content-type": "text/html"})

        references = self._extractor(handler).extract(PAGE_URL)

        kinds = [ref.kind for ref in references]
        self.assertEqual(kinds, [MediaKind.IMAGE, MediaKind.IMAGE, MediaKind.VIDEO])

    def test_extract_propagates_fetch_errors(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, text="missing", headers={"content-type": "text/html"})

        with self.assertRaises(FetchError):
            self._extractor(handler).extract(PAGE_URL)

    def test_extract_propagates_parse_errors(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"\x89PNG\r\n", headers={"content-type": "image/png"})

        with self.assertRaises(ParseError):
            self._extractor(handler).extract(PAGE_URL)


if __name__ == "__main__":
    unittest.main()
