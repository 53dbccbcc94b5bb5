from __future__ import annotations

import tempfile
import threading
import time
import unittest
from pathlib import Path

import requests

from checker import (
    CancellationToken,
    CancelledFailure,
    CheckCompleted,
    CheckConfig,
    CheckFailed,
    CheckProgress,
    FatalFailure,
    LinkChecker,
    LinkDiscovered,
    LinkStatus,
    classify_url,
    discover_links,
    extract_pdf_links,
    fingerprint,
    normalize_url,
    resolve_url,
    split_entry_points,
    title_problem,
)
from fake_http import FakeResponse, FakeSession, GatedStep, html, image


SITE = "https://site.test/"
BASE = {
    "entry_points": (SITE,),
    "max_workers": 2,
    "backoff_seconds": 0.0,
    "cancel_grace_seconds": 1.0,
}


def _config(**overrides) -> CheckConfig:
    return CheckConfig(**{**BASE, **overrides})


def _run(session: FakeSession, **overrides) -> list:
    checker = LinkChecker(session_factory=lambda _config: session)
    return list(checker.start(_config(**overrides)))


def _records(events: list) -> dict:
    return {event.record.target_url: event.record for event in events if isinstance(event, LinkDiscovered)}


class UrlHelpersTest(unittest.TestCase):
    def test_normalize_url(self) -> None:
        self.assertEqual(normalize_url("HTTPS://Example.COM:443/a/b/?q=1#frag"), "https://example.com/a/b?q=1")
        self.assertEqual(normalize_url("http://example.com"), "http://example.com/")
        self.assertEqual(normalize_url("http://example.com:8080/"), "http://example.com:8080/")

    def test_resolve_url(self) -> None:
        self.assertEqual(resolve_url("https://a.test/dir/page", "../x"), "https://a.test/x")
        self.assertEqual(resolve_url("https://a.test/", "/p#frag"), "https://a.test/p")
        self.assertIsNone(resolve_url("https://a.test/", "#top"))
        self.assertIsNone(resolve_url("https://a.test/", "   "))

    def test_classify_url(self) -> None:
        self.assertIsNone(classify_url("https://a.test/x"))
        self.assertEqual(classify_url("a.test/x"), "invalid_url")
        self.assertEqual(classify_url("mailto:someone@a.test"), "unsupported_scheme")
        self.assertEqual(classify_url("javascript:void(0)"), "unsupported_scheme")
        self.assertEqual(classify_url("file:///tmp/page.html"), "local_link")
        self.assertEqual(classify_url("https://"), "invalid_url")

    def test_config_from_settings_parses_markers(self) -> None:
        config = CheckConfig.from_settings(
            {"entry_points": "https://a.test/", "page_markers": "https://a.test/Shop/|Basket", "unknown": 1}
        )
        self.assertEqual(config.entry_points, ("https://a.test/",))
        self.assertEqual(config.marker_for("HTTPS://A.TEST/Shop"), "Basket")
        self.assertIsNone(config.marker_for("https://a.test/"))

    def test_split_entry_points(self) -> None:
        self.assertEqual(split_entry_points("a, b\nc  a"), ("a", "b", "c"))
        self.assertEqual(split_entry_points(""), ())

    def test_discover_links_reads_html_and_css(self) -> None:
        body = b"""
        <html><body>
          <a href="/one">1</a><img src="two.png" srcset="three.png 1x, four.png 2x">
          <a href="#top">top</a><video poster="/poster.jpg"></video>
        </body></html>
        """
        links = discover_links("https://a.test/dir/", body, "text/html")
        self.assertEqual(
            links,
            [
                "https://a.test/one",
                "https://a.test/dir/two.png",
                "https://a.test/dir/three.png",
                "https://a.test/dir/four.png",
                "https://a.test/poster.jpg",
            ],
        )
        css = b"body { background: url('/bg.png') } .x { background: url(img/x.gif) }"
        self.assertEqual(
            discover_links("https://a.test/css/site.css", css, "text/css"),
            ["https://a.test/bg.png", "https://a.test/css/img/x.gif"],
        )

    def test_extract_pdf_links(self) -> None:
        pdf = b"%PDF-1.4 << /S /URI /URI (https://a.test/x) >> << /URI(https://a.test/p\\(1\\)) >> /URI (https://a.test/x)"
        self.assertEqual(extract_pdf_links(pdf), ["https://a.test/x", "https://a.test/p(1)"])

    def test_title_problem(self) -> None:
        self.assertEqual(title_problem("404 - Page Not Found"), "page_not_found")
        self.assertEqual(title_problem("Unable to connect"), "page_error")
        self.assertEqual(title_problem("Warning: scheduled maintenance"), "page_warning")
        self.assertIsNone(title_problem("Welcome"))


class LinkCheckerTest(unittest.TestCase):
    def assertTerminal(self, events: list, expected: type) -> None:
        terminal = [event for event in events if isinstance(event, (CheckCompleted, CheckFailed))]
        self.assertEqual(len(terminal), 1)
        self.assertIs(events[-1], terminal[0])
        self.assertIsInstance(events[-1], expected)

    def test_empty_entry_points_complete_immediately(self) -> None:
        session = FakeSession()
        events = _run(session, entry_points=())
        self.assertEqual(len(events), 1)
        self.assertIsInstance(events[0], CheckCompleted)
        self.assertEqual(events[0].summary["checked"], 0)
        self.assertEqual(session.calls, [])

    def test_not_found_is_broken_after_one_attempt(self) -> None:
        session = FakeSession({SITE: [html("Home", "/missing")]})
        events = _run(session)
        self.assertTerminal(events, CheckCompleted)
        record = _records(events)["https://site.test/missing"]
        self.assertEqual(record.status, LinkStatus.BROKEN)
        self.assertEqual(record.detail, "http_404")
        self.assertEqual(record.attempt_count, 1)
        self.assertEqual(record.source_location, SITE)

    def test_transient_failures_are_retried_until_valid(self) -> None:
        session = FakeSession(
            {
                SITE: [html("Home", "/flaky")],
                "https://site.test/flaky": [FakeResponse(503), requests.exceptions.ConnectionError("reset"), image()],
            }
        )
        events = _run(session)
        self.assertTerminal(events, CheckCompleted)
        record = _records(events)["https://site.test/flaky"]
        self.assertEqual(record.status, LinkStatus.VALID)
        self.assertEqual(record.attempt_count, 3)
        self.assertEqual(session.call_count("https://site.test/flaky"), 3)

    def test_exhausted_retries_are_broken_with_last_reason(self) -> None:
        session = FakeSession({SITE: [html("Home", "/down")], "https://site.test/down": [FakeResponse(503)]})
        events = _run(session, max_attempts=2)
        record = _records(events)["https://site.test/down"]
        self.assertEqual(record.status, LinkStatus.BROKEN)
        self.assertEqual(record.detail, "http_503")
        self.assertEqual(record.attempt_count, 2)

    def test_same_target_from_several_sources_is_checked_once(self) -> None:
        session = FakeSession(
            {
                SITE: [html("Home", "/a", "https://SITE.test:443/a#frag", "/a/", "/b")],
                "https://site.test/b": [html("B", "/a", "https://site.test/a?x=1")],
                "https://site.test/a": [image()],
                "https://site.test/a?x=1": [image()],
            }
        )
        events = _run(session, crawl_depth=2)
        self.assertTerminal(events, CheckCompleted)
        records = [event.record for event in events if isinstance(event, LinkDiscovered)]
        targets = [normalize_url(record.target_url) for record in records]
        self.assertEqual(len(targets), len(set(targets)))
        self.assertEqual(targets.count("https://site.test/a"), 1)
        self.assertEqual(session.call_count("https://site.test/a"), 1)
        self.assertIn("https://site.test/a?x=1", targets)

    def test_redirect_to_other_url_is_recorded(self) -> None:
        moved = FakeResponse(200, b"", content_type="image/png", url="https://site.test/new", history=[FakeResponse(301)])
        same = FakeResponse(200, b"", content_type="image/png", url="https://site.test/same/", history=[FakeResponse(301)])
        session = FakeSession(
            {
                SITE: [html("Home", "/old", "/same")],
                "https://site.test/old": [moved],
                "https://site.test/same": [same],
            }
        )
        records = _records(_run(session))
        self.assertEqual(records["https://site.test/old"].status, LinkStatus.REDIRECTED)
        self.assertEqual(records["https://site.test/old"].detail, "https://site.test/new")
        self.assertEqual(records["https://site.test/same"].status, LinkStatus.VALID)

    def test_unprobeable_links_are_skipped(self) -> None:
        session = FakeSession(
            {SITE: [html("Home", "mailto:me@site.test", "javascript:void(0)", "https://other.test/x")]}
        )
        records = _records(_run(session, check_external=False))
        self.assertEqual(records["mailto:me@site.test"].status, LinkStatus.SKIPPED)
        self.assertEqual(records["mailto:me@site.test"].detail, "unsupported_scheme")
        self.assertEqual(records["mailto:me@site.test"].attempt_count, 0)
        self.assertEqual(records["javascript:void(0)"].detail, "unsupported_scheme")
        self.assertEqual(records["https://other.test/x"].detail, "external")
        self.assertEqual(session.call_count("https://other.test/x"), 0)

    def test_error_titles_mark_pages_broken(self) -> None:
        session = FakeSession(
            {
                SITE: [html("Home", "/soft404", "/oops")],
                "https://site.test/soft404": [html("Page Not Found")],
                "https://site.test/oops": [html("Unable to load page")],
            }
        )
        records = _records(_run(session))
        self.assertEqual(records["https://site.test/soft404"].detail, "page_not_found")
        self.assertEqual(records["https://site.test/oops"].detail, "page_error")

        session = FakeSession({SITE: [html("Home", "/soft404")], "https://site.test/soft404": [html("Page Not Found")]})
        records = _records(_run(session, check_titles=False))
        self.assertEqual(records["https://site.test/soft404"].status, LinkStatus.VALID)

    def test_warning_titles_and_missing_markers_mark_pages_broken(self) -> None:
        hours = FakeResponse(200, "<html><head><title>Info</title></head><body>Opening hours</body></html>")
        session = FakeSession(
            {
                SITE: [html("Home", "/notice", "/promo", "/info")],
                "https://site.test/notice": [html("Warning: maintenance tonight")],
                "https://site.test/promo": [html("Promo")],
                "https://site.test/info": [hours],
            }
        )
        markers = (("https://site.test/promo", "Spring sale"), ("https://site.test/info/", "Opening hours"))
        records = _records(_run(session, page_markers=markers))
        self.assertEqual(records["https://site.test/notice"].detail, "page_warning")
        self.assertEqual(records["https://site.test/promo"].status, LinkStatus.BROKEN)
        self.assertEqual(records["https://site.test/promo"].detail, "marker_not_found")
        self.assertEqual(records["https://site.test/info"].status, LinkStatus.VALID)

    def test_html_pages_carry_a_content_fingerprint(self) -> None:
        home = html("Home", "/logo.png")
        session = FakeSession({SITE: [home], "https://site.test/logo.png": [image()]})
        records = _records(_run(session))
        digest, length = fingerprint(home.content)
        self.assertEqual(records[SITE].content_hash, digest)
        self.assertEqual(records[SITE].compressed_length, length)
        self.assertIsNone(records["https://site.test/logo.png"].content_hash)

        session = FakeSession({SITE: [html("Home")]})
        self.assertIsNone(_records(_run(session, track_changes=False))[SITE].content_hash)

    def test_links_on_redirected_entry_host_stay_in_scope(self) -> None:
        landing = html("Home", "/about", "https://site.test/contact")
        landing.url = "https://www.site.test/"
        landing.history = [FakeResponse(301)]
        session = FakeSession(
            {
                SITE: [landing],
                "https://www.site.test/about": [html("About", "/team")],
                "https://site.test/contact": [html("Contact")],
                "https://www.site.test/team": [image()],
            }
        )
        events = _run(session, check_external=False, crawl_depth=2)
        self.assertTerminal(events, CheckCompleted)
        records = _records(events)
        self.assertEqual(records[SITE].status, LinkStatus.REDIRECTED)
        self.assertEqual(records["https://www.site.test/about"].status, LinkStatus.VALID)
        self.assertEqual(records["https://site.test/contact"].status, LinkStatus.VALID)
        self.assertEqual(records["https://www.site.test/team"].status, LinkStatus.VALID)
        self.assertEqual(session.call_count("https://www.site.test/team"), 1)

    def test_zero_crawl_depth_checks_entries_only(self) -> None:
        session = FakeSession({SITE: [html("Home", "/a")], "https://site.test/a": [image()]})
        events = _run(session, crawl_depth=0)
        self.assertTerminal(events, CheckCompleted)
        self.assertEqual(list(_records(events)), [SITE])
        self.assertEqual(session.call_count("https://site.test/a"), 0)

    def test_same_host_only_controls_crawling_of_other_hosts(self) -> None:
        def routes() -> dict:
            return {
                SITE: [html("Home", "https://other.test/page")],
                "https://other.test/page": [html("Other", "/deep")],
                "https://other.test/deep": [image()],
            }

        session = FakeSession(routes())
        records = _records(_run(session, crawl_depth=2, same_host_only=True))
        self.assertEqual(records["https://other.test/page"].status, LinkStatus.VALID)
        self.assertNotIn("https://other.test/deep", records)
        self.assertEqual(session.call_count("https://other.test/deep"), 0)

        session = FakeSession(routes())
        records = _records(_run(session, crawl_depth=2, same_host_only=False))
        self.assertEqual(records["https://other.test/deep"].status, LinkStatus.VALID)
        self.assertEqual(records["https://other.test/deep"].source_location, "https://other.test/page")

    def test_certificate_failure_is_not_retried(self) -> None:
        session = FakeSession({SITE: [html("Home", "/tls")], "https://site.test/tls": [requests.exceptions.SSLError("bad")]})
        record = _records(_run(session))["https://site.test/tls"]
        self.assertEqual(record.detail, "insecure_certificate")
        self.assertEqual(record.attempt_count, 1)

    def test_entry_without_scheme_is_skipped_and_run_fails(self) -> None:
        events = _run(FakeSession(), entry_points=("site.test/page",))
        self.assertTerminal(events, CheckFailed)
        self.assertIsInstance(events[-1].failure, FatalFailure)
        self.assertEqual(_records(events)["site.test/page"].detail, "invalid_url")

    def test_unreachable_entry_points_fail_the_run(self) -> None:
        session = FakeSession({SITE: [requests.exceptions.ConnectTimeout("slow")]})
        events = _run(session, max_attempts=2)
        self.assertTerminal(events, CheckFailed)
        self.assertIsInstance(events[-1].failure, FatalFailure)
        record = _records(events)[SITE]
        self.assertEqual(record.status, LinkStatus.BROKEN)
        self.assertEqual(record.detail, "timeout")

    def test_entry_answering_404_still_completes(self) -> None:
        events = _run(FakeSession())
        self.assertTerminal(events, CheckCompleted)
        self.assertEqual(_records(events)[SITE].detail, "http_404")

    def test_worker_crash_ends_run_as_fatal(self) -> None:
        session = FakeSession({SITE: [html("Home", "/crash")], "https://site.test/crash": [RuntimeError("boom")]})
        events = _run(session)
        self.assertTerminal(events, CheckFailed)
        self.assertIsInstance(events[-1].failure, FatalFailure)
        self.assertIn(SITE, _records(events))

    def test_small_queue_applies_backpressure_without_losing_links(self) -> None:
        links = [f"/img/{idx}.png" for idx in range(30)]
        routes = {SITE: [html("Home", *links)]}
        routes.update({f"https://site.test{link}": [image()] for link in links})
        session = FakeSession(routes)
        events = _run(session, queue_capacity=1, max_workers=1)
        self.assertTerminal(events, CheckCompleted)
        self.assertEqual(len(_records(events)), 31)
        self.assertEqual(events[-1].summary["valid"], 31)
        self.assertEqual(events[-1].summary["queued"], 0)

    def test_progress_counts_follow_records(self) -> None:
        session = FakeSession({SITE: [html("Home", "/missing", "mailto:x@site.test")]})
        events = _run(session)
        progress = [event for event in events if isinstance(event, CheckProgress)]
        self.assertEqual(len(progress), 3)
        self.assertEqual(progress[-1].counts["checked"], 3)
        self.assertEqual(events[-1].summary["broken"], 1)
        self.assertEqual(events[-1].summary["skipped"], 1)

    def test_local_html_and_pdf_entry_points(self) -> None:
        session = FakeSession({"https://site.test/x": [image()], "https://site.test/doc": [image()]})
        with tempfile.TemporaryDirectory() as tmp:
            page = Path(tmp) / "index.html"
            page.write_text('<a href="https://site.test/x">x</a><a href="other.html">o</a>', encoding="utf-8")
            pdf = Path(tmp) / "manual.pdf"
            pdf.write_bytes(b"%PDF-1.4\n1 0 obj << /A << /S /URI /URI (https://site.test/doc) >> >>\nendobj\n")
            events = _run(session, entry_points=(str(page), str(pdf)))

        self.assertTerminal(events, CheckCompleted)
        records = _records(events)
        self.assertEqual(records["https://site.test/x"].status, LinkStatus.VALID)
        self.assertEqual(records["https://site.test/x"].source_location, str(page))
        self.assertEqual(records["https://site.test/doc"].status, LinkStatus.VALID)
        local = [record for url, record in records.items() if url.startswith("file:")]
        self.assertEqual(len(local), 1)
        self.assertEqual(local[0].detail, "local_link")

    def test_cancel_stops_within_grace_and_keeps_records(self) -> None:
        slow = GatedStep()
        self.addCleanup(slow.release)
        session = FakeSession({SITE: [html("Home", "/slow")], "https://site.test/slow": [slow]})
        token = CancellationToken()
        checker = LinkChecker(session_factory=lambda _config: session)
        events: list = []
        consumer = threading.Thread(
            target=lambda: events.extend(checker.start(_config(cancel_grace_seconds=0.2), token)), daemon=True
        )
        consumer.start()
        self.assertTrue(slow.entered.wait(5))

        started = time.monotonic()
        token.cancel()
        consumer.join(5)
        self.assertFalse(consumer.is_alive())
        self.assertLess(time.monotonic() - started, 2.0)
        self.assertTerminal(events, CheckFailed)
        self.assertIsInstance(events[-1].failure, CancelledFailure)
        records = _records(events)
        self.assertIn(SITE, records)
        self.assertNotIn("https://site.test/slow", records)
        self.assertTrue(session.closed)

    def test_cancel_before_start(self) -> None:
        token = CancellationToken()
        token.cancel()
        checker = LinkChecker(session_factory=lambda _config: FakeSession())
        events = list(checker.start(_config(), token))
        self.assertTerminal(events, CheckFailed)
        self.assertIsInstance(events[-1].failure, CancelledFailure)


if __name__ == "__main__":
    unittest.main(verbosity=2)
