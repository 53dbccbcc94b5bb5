from __future__ import annotations

import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional


class SQLiteStore:
    """Run history, report index and per-page content states for link checks."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        self._init_db()

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS check_runs (
                    run_id TEXT PRIMARY KEY,
                    state TEXT NOT NULL,
                    reason TEXT,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    entry_points_json TEXT NOT NULL,
                    summary_json TEXT,
                    created_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS reports (
                    path TEXT PRIMARY KEY,
                    run_id TEXT NOT NULL,
                    partial INTEGER NOT NULL,
                    summary_json TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS page_states (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    url_key TEXT NOT NULL,
                    run_id TEXT NOT NULL,
                    content_hash TEXT NOT NULL,
                    compressed_length INTEGER NOT NULL,
                    checked_at TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_check_runs_created ON check_runs(created_at DESC)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_page_states_url ON page_states(url_key, id DESC)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_reports_run_created ON reports(run_id, created_at DESC)")

    def add_run_history(
        self,
        run_id: str,
        state: str,
        started_at: str,
        finished_at: Optional[str] = None,
        reason: Optional[str] = None,
        entry_points: Optional[List[str]] = None,
        summary: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO check_runs(run_id,state,reason,started_at,finished_at,entry_points_json,summary_json,created_at)
                VALUES(?,?,?,?,?,?,?,?)
                ON CONFLICT(run_id) DO UPDATE SET
                    state=excluded.state,
                    reason=excluded.reason,
                    finished_at=excluded.finished_at,
                    summary_json=excluded.summary_json
                """,
                (
                    run_id,
                    state,
                    reason,
                    started_at,
                    finished_at,
                    json.dumps(list(entry_points or [])),
                    json.dumps(summary or {}),
                    int(time.time()),
                ),
            )

    def list_recent_runs(self, limit: int = 12) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT run_id, state, reason, started_at, finished_at, entry_points_json, summary_json, created_at
                FROM check_runs
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (max(1, limit),),
            ).fetchall()
        return [self._decode_run_row(row) for row in rows]

    def get_run_history(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT run_id, state, reason, started_at, finished_at, entry_points_json, summary_json, created_at
                FROM check_runs
                WHERE run_id = ?
                """,
                (run_id,),
            ).fetchone()
        return self._decode_run_row(row) if row is not None else None

    def add_report(self, run_id: str, path: str, partial: bool, summary: Dict[str, Any]) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO reports(path,run_id,partial,summary_json,created_at)
                VALUES(?,?,?,?,?)
                ON CONFLICT(path) DO UPDATE SET
                    run_id=excluded.run_id,
                    partial=excluded.partial,
                    summary_json=excluded.summary_json,
                    created_at=excluded.created_at
                """,
                (path, run_id, 1 if partial else 0, json.dumps(summary), int(time.time())),
            )

    def list_reports(self, run_id: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            if run_id:
                rows = conn.execute(
                    """
                    SELECT path, run_id, partial, summary_json, created_at
                    FROM reports
                    WHERE run_id = ?
                    ORDER BY created_at DESC, path DESC
                    LIMIT ?
                    """,
                    (run_id, max(1, limit)),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT path, run_id, partial, summary_json, created_at
                    FROM reports
                    ORDER BY created_at DESC, path DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()

        out: List[Dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["partial"] = bool(item["partial"])
            item["summary"] = self._decode_json(item.pop("summary_json"), {})
            out.append(item)
        return out

    def delete_report(self, path: str) -> int:
        with self._lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM reports WHERE path = ?", (path,))
            return max(0, int(cur.rowcount or 0))

    def add_page_states(self, run_id: str, states: Iterable[Dict[str, Any]], keep: int = 5) -> int:
        """Store one content state per URL key and trim each URL to its ``keep`` newest states."""
        rows = [
            (
                str(state["url_key"]),
                run_id,
                str(state["content_hash"]),
                int(state["compressed_length"]),
                str(state.get("checked_at") or ""),
                int(time.time()),
            )
            for state in states
        ]
        if not rows:
            return 0
        with self._lock, self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO page_states(url_key,run_id,content_hash,compressed_length,checked_at,created_at)
                VALUES(?,?,?,?,?,?)
                """,
                rows,
            )
            for url_key in {row[0] for row in rows}:
                conn.execute(
                    """
                    DELETE FROM page_states
                    WHERE url_key = ? AND id NOT IN (
                        SELECT id FROM page_states WHERE url_key = ? ORDER BY id DESC LIMIT ?
                    )
                    """,
                    (url_key, url_key, max(1, int(keep))),
                )
        return len(rows)

    def page_history(
        self,
        url_keys: Iterable[str],
        exclude_run_id: Optional[str] = None,
    ) -> Dict[str, List[Dict[str, Any]]]:
        """Stored states per URL key, oldest first."""
        keys = sorted(set(url_keys))
        out: Dict[str, List[Dict[str, Any]]] = {}
        if not keys:
            return out
        with self._connect() as conn:
            for start in range(0, len(keys), 500):
                chunk = keys[start:start + 500]
                marks = ",".join("?" for _ in chunk)
                rows = conn.execute(
                    f"""
                    SELECT url_key, run_id, content_hash, compressed_length, checked_at
                    FROM page_states
                    WHERE url_key IN ({marks}) AND run_id != ?
                    ORDER BY id ASC
                    """,
                    (*chunk, exclude_run_id or ""),
                ).fetchall()
                for row in rows:
                    out.setdefault(row["url_key"], []).append(dict(row))
        return out

    def prune_old_data(self, history_retention_seconds: int) -> Dict[str, int]:
        cutoff = int(time.time()) - max(60, int(history_retention_seconds))
        removed = {"check_runs": 0, "reports": 0}
        with self._lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM check_runs WHERE created_at < ?", (cutoff,))
            removed["check_runs"] = max(0, int(cur.rowcount or 0))
            cur = conn.execute("DELETE FROM reports WHERE created_at < ?", (cutoff,))
            removed["reports"] = max(0, int(cur.rowcount or 0))
        return removed

    def _decode_run_row(self, row: sqlite3.Row) -> Dict[str, Any]:
        item = dict(row)
        item["entry_points"] = self._decode_json(item.pop("entry_points_json"), [])
        item["summary"] = self._decode_json(item.pop("summary_json"), {})
        created_at = int(item.get("created_at") or 0)
        item["age_seconds"] = max(0, int(time.time()) - created_at)
        item["created_local"] = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(created_at)) if created_at else ""
        return item

    @staticmethod
    def _decode_json(raw: Optional[str], default: Any) -> Any:
        try:
            return json.loads(raw or "null") or default
        except json.JSONDecodeError:
            return default
