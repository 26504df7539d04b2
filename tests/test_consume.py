from __future__ import annotations

import os
import time
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import MagicMock, patch

from sqlalchemy import create_engine, func, select

from models import JOB_COMPLETED, Base, Media, ScrapeJob
from mediascrape import consume
from mediascrape.config import BufferConfig, ScraperConfig, WorkerConfig
from mediascrape.extraction import parse_media
from mediascrape.jobs import SqlJobQueue
from mediascrape.shutdown import ShutdownState

GALLERY_HTML = (
    '<img src="https://cdn.x.test/a.jpg" alt="A"><img src="/b.png">'
    '<iframe src="https://vimeo.com/123"></iframe>'
)


class BuildConfigTestCase(unittest.TestCase):
    def _args(self, *argv: str):
        return consume.build_arg_parser().parse_args(list(argv))

    def test_flags_override_environment_values(self) -> None:
        base = ScraperConfig(db_url="sqlite:///env.db")

        config = consume.build_config(
            self._args("--db-url", "sqlite:///cli.db", "--concurrency", "2", "--batch-size", "10", "--log-level", "debug"),
            base=base,
        )

        self.assertEqual(config.db_url, "sqlite:///cli.db")
        self.assertEqual(config.worker.concurrency, 2)
        self.assertEqual(config.buffer.batch_size, 10)
        self.assertEqual(config.log_level, "DEBUG")
        self.assertEqual(config.buffer.flush_interval, 5.0)

    def test_unset_flags_keep_base_values(self) -> None:
        base = ScraperConfig(db_url="sqlite:///env.db")
        base.worker.concurrency = 6

        config = consume.build_config(self._args(), base=base)

        self.assertEqual(config.db_url, "sqlite:///env.db")
        self.assertEqual(config.worker.concurrency, 6)

    def test_rejects_invalid_values(self) -> None:
        for argv in (
            ("--concurrency", "0"),
            ("--batch-size", "0"),
            ("--flush-interval", "0"),
            ("--request-timeout", "-1"),
        ):
            with self.subTest(argv=argv):
                with self.assertRaises(ValueError):
                    consume.build_config(self._args(*argv), base=ScraperConfig())


class ConsumeMainTestCase(unittest.TestCase):
    @patch("mediascrape.consume.configure_logging")
    @patch("mediascrape.consume.WorkerRuntime")
    def test_main_runs_until_shutdown(self, runtime_cls_mock: MagicMock, configure_logging_mock: MagicMock) -> None:
        runtime = MagicMock()
        runtime.stop.return_value = ShutdownState.CLOSED
        runtime_cls_mock.build.return_value = runtime

        with patch.dict(os.environ, {}, clear=True):
            exit_code = consume.main(["--db-url", "sqlite://", "--concurrency", "3"])

        self.assertEqual(exit_code, 0)
        config = runtime_cls_mock.build.call_args.args[0]
        self.assertEqual(config.db_url, "sqlite://")
        self.assertEqual(config.worker.concurrency, 3)
        configure_logging_mock.assert_called_once_with("INFO")
        runtime.coordinator.install_signal_handlers.assert_called_once_with()
        runtime.start.assert_called_once_with()
        runtime.wait.assert_called_once_with()
        runtime.stop.assert_called_once_with()

    @patch("mediascrape.consume.configure_logging")
    @patch("mediascrape.consume.WorkerRuntime")
    def test_main_stops_runtime_when_wait_fails(self, runtime_cls_mock: MagicMock, _logging: MagicMock) -> None:
        runtime = MagicMock()
        runtime.wait.side_effect = KeyboardInterrupt
        runtime_cls_mock.build.return_value = runtime

        with patch.dict(os.environ, {}, clear=True), self.assertRaises(KeyboardInterrupt):
            consume.main(["--db-url", "sqlite://"])

        runtime.stop.assert_called_once_with()

    def test_main_requires_database_url(self) -> None:
        with patch.dict(os.environ, {}, clear=True), self.assertRaises(SystemExit):
            consume.main([])


class PageExtractor:
    def __init__(self, config) -> None:
        self.closed = False

    def extract(self, url):
        return parse_media(url, GALLERY_HTML)

    def close(self) -> None:
        self.closed = True


class WorkerRuntimeTestCase(unittest.TestCase):
    def test_consumes_queued_job_and_persists_media(self) -> None:
        with TemporaryDirectory() as tmpdir:
            db_url = f"sqlite:///{Path(tmpdir) / 'scrape.db'}"
            queue = SqlJobQueue.from_url(db_url)
            Base.metadata.create_all(queue.engine)
            (job_id,) = queue.enqueue(["https://x.test/gallery"])
            queue.close()

            config = ScraperConfig(
                db_url=db_url,
                buffer=BufferConfig(batch_size=50, flush_interval=60.0),
                worker=WorkerConfig(concurrency=2, poll_interval=0.01, drain_timeout=5.0, stall_timeout=0.0),
            )
            with patch("mediascrape.consume.MediaExtractor", PageExtractor):
                runtime = consume.WorkerRuntime.build(config)

            runtime.start()
            deadline = time.monotonic() + 5.0
            while runtime.worker.stats.completed < 1 and time.monotonic() < deadline:
                time.sleep(0.01)
            state = runtime.stop()

            self.assertEqual(state, ShutdownState.CLOSED)
            self.assertTrue(runtime.extractor.closed)
            self.assertFalse(runtime.worker_thread.is_alive())

            engine = create_engine(db_url)
            try:
                with engine.connect() as conn:
                    rows = conn.execute(select(Media.type, Media.url, Media.source_url).order_by(Media.url)).all()
                    job_status = conn.execute(select(ScrapeJob.status)).scalar_one()
                    job_result = conn.execute(select(ScrapeJob.result)).scalar_one()
                    job_count = conn.execute(select(func.count()).select_from(ScrapeJob)).scalar_one()
            finally:
                engine.dispose()

        self.assertEqual(
            rows,
            [
                ("image", "https://cdn.x.test/a.jpg", "https://x.test/gallery"),
                ("video", "https://vimeo.com/123", "https://x.test/gallery"),
                ("image", "https://x.test/b.png", "https://x.test/gallery"),
            ],
        )
        self.assertEqual(job_status, JOB_COMPLETED)
        self.assertEqual(job_result, {"found": 3})
        self.assertEqual(job_count, 1)
        self.assertTrue(job_id)


if __name__ == "__main__":
    unittest.main()
