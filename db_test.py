from __future__ import annotations

import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import patch

from db import SQLiteStore


class SQLiteStoreTest(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.store = SQLiteStore(Path(self._tmp.name) / "nested" / "history.sqlite3")

    def test_run_history_upserts_by_run_id(self) -> None:
        self.store.add_run_history("r1", "running", "2026-01-01T00:00:00Z", entry_points=["https://a.test/"])
        self.store.add_run_history(
            "r1",
            "completed",
            "2026-01-01T00:00:00Z",
            finished_at="2026-01-01T00:00:05Z",
            summary={"checked": 3, "broken": 1},
        )
        runs = self.store.list_recent_runs()
        self.assertEqual(len(runs), 1)
        self.assertEqual(runs[0]["state"], "completed")
        self.assertEqual(runs[0]["summary"], {"checked": 3, "broken": 1})
        self.assertEqual(runs[0]["entry_points"], ["https://a.test/"])
        self.assertIsNone(self.store.get_run_history("missing"))

    def test_recent_runs_newest_first(self) -> None:
        for idx in range(3):
            self.store.add_run_history(f"r{idx}", "completed", "2026-01-01T00:00:00Z")
        self.assertEqual([item["run_id"] for item in self.store.list_recent_runs(2)], ["r2", "r1"])

    def test_report_index(self) -> None:
        self.store.add_report("r1", "/tmp/a.json", False, {"total": 1})
        self.store.add_report("r2", "/tmp/b.json", True, {"total": 0})
        self.assertEqual(len(self.store.list_reports()), 2)
        only = self.store.list_reports("r2")
        self.assertEqual(len(only), 1)
        self.assertTrue(only[0]["partial"])
        self.assertEqual(self.store.delete_report("/tmp/a.json"), 1)
        self.assertEqual([item["path"] for item in self.store.list_reports()], ["/tmp/b.json"])

    def test_page_states_are_capped_per_url(self) -> None:
        for idx in range(4):
            stored = self.store.add_page_states(
                f"r{idx}",
                [
                    {"url_key": "https://a.test/", "content_hash": f"h{idx}", "compressed_length": idx},
                    {"url_key": "https://b.test/", "content_hash": "same", "compressed_length": 1},
                ],
                keep=3,
            )
            self.assertEqual(stored, 2)
        history = self.store.page_history(["https://a.test/", "https://b.test/", "https://c.test/"])
        self.assertEqual([state["content_hash"] for state in history["https://a.test/"]], ["h1", "h2", "h3"])
        self.assertEqual(len(history["https://b.test/"]), 3)
        self.assertNotIn("https://c.test/", history)

        without_latest = self.store.page_history(["https://a.test/"], exclude_run_id="r3")
        self.assertEqual([state["run_id"] for state in without_latest["https://a.test/"]], ["r1", "r2"])
        self.assertEqual(self.store.add_page_states("r9", []), 0)

    def test_prune_old_data(self) -> None:
        old = time.time() - 7200
        with patch("db.time.time", return_value=old):
            self.store.add_run_history("old", "completed", "2026-01-01T00:00:00Z")
            self.store.add_report("old", "/tmp/old.json", False, {})
        self.store.add_run_history("new", "completed", "2026-01-01T00:00:00Z")
        removed = self.store.prune_old_data(3600)
        self.assertEqual(removed, {"check_runs": 1, "reports": 1})
        self.assertEqual([item["run_id"] for item in self.store.list_recent_runs()], ["new"])


if __name__ == "__main__":
    unittest.main(verbosity=2)
