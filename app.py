from __future__ import annotations

import logging
import os
import time
from dataclasses import replace
from pathlib import Path
from typing import Optional

from flask import Flask, jsonify, request

from checker import CheckConfig, split_entry_points
from db import SQLiteStore
from jobs import AlreadyRunningError, CheckRun, JobController
from report import ReportWriter, generate, load_baseline, publish_run, report_to_dict, resolve_report_dir
from settings import ConfigStore, PersistError, ValidationError
from utils import configure_logging, log_event


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _parse_int(value: Optional[str], default: int, min_value: int, max_value: int) -> int:
    raw = (value or "").strip()
    try:
        parsed = int(raw)
    except ValueError:
        parsed = default
    return max(min_value, min(parsed, max_value))


BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = Path(os.environ.get("LINKCHECK_DATA_DIR", str(BASE_DIR / "data"))).expanduser().resolve()
DATA_DIR.mkdir(parents=True, exist_ok=True)
CONFIG_PATH = DATA_DIR / "linkcheck.json"
DB_PATH = DATA_DIR / "linkcheck.sqlite3"
REQUIRE_LOCAL_MUTATIONS = _parse_bool(os.environ.get("REQUIRE_LOCAL_MUTATIONS"), default=True)
APP_API_TOKEN = (os.environ.get("APP_API_TOKEN") or "").strip()
RUN_RETENTION_SECONDS = int(os.environ.get("RUN_RETENTION_SECONDS", "3600"))
DB_PRUNE_INTERVAL_SECONDS = int(os.environ.get("DB_PRUNE_INTERVAL_SECONDS", "600"))
HISTORY_RETENTION_SECONDS = int(os.environ.get("HISTORY_RETENTION_SECONDS", str(30 * 24 * 3600)))
_LAST_DB_PRUNE_TS = 0.0

logger = logging.getLogger("linkcheck.app")

app = Flask(__name__)
config_store = ConfigStore(CONFIG_PATH)
config_store.load()
history = SQLiteStore(DB_PATH)


def _on_run_finished(run: CheckRun) -> None:
    path = publish_run(run, history, DATA_DIR)
    if path is not None:
        config_store.append_log(f"Report for {run.run_id} written to {path}.")


controller = JobController(config_store, on_finished=_on_run_finished, retention_seconds=RUN_RETENTION_SECONDS)


def _is_local_request() -> bool:
    addr = (request.remote_addr or "").strip()
    return addr in {"127.0.0.1", "::1", "localhost"}


def _security_error(message: str, status: int = 403):
    return jsonify({"ok": False, "error": message}), status


def _payload() -> dict:
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()


def _maybe_prune_db() -> None:
    global _LAST_DB_PRUNE_TS
    now = time.time()
    if (now - _LAST_DB_PRUNE_TS) < max(30, DB_PRUNE_INTERVAL_SECONDS):
        return
    _LAST_DB_PRUNE_TS = now
    try:
        removed = history.prune_old_data(HISTORY_RETENTION_SECONDS)
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.WARNING, "history_prune_failed", error=repr(exc))
        return
    if any(removed.values()):
        log_event(logger, logging.INFO, "history_pruned", **removed)


@app.before_request
def apply_security_guards():
    _maybe_prune_db()
    if app.config.get("TESTING"):
        return None

    if request.method not in {"POST", "PUT", "PATCH", "DELETE"}:
        return None

    if REQUIRE_LOCAL_MUTATIONS and not _is_local_request():
        return _security_error("This app allows write operations from localhost only.", 403)

    if APP_API_TOKEN:
        sent_token = (
            request.headers.get("X-App-Token")
            or request.form.get("app_token")
            or (request.get_json(silent=True) or {}).get("app_token")
            or ""
        ).strip()
        if sent_token != APP_API_TOKEN:
            return _security_error("Invalid app token.", 401)
    return None


@app.get("/")
def index():
    status = controller.current_status()
    return jsonify({"ok": True, "service": "linkcheck", "state": status["state"], "config_saved": config_store.saved})


@app.get("/config")
def config_show():
    include_advanced = _parse_bool(request.args.get("advanced"), default=True)
    properties = [
        prop.to_dict() for prop in config_store.get_properties() if include_advanced or not prop.advanced
    ]
    return jsonify({"ok": True, "saved": config_store.saved, "properties": properties})


@app.post("/config/update")
def config_update():
    data = _payload()
    key = str(data.get("key") or "").strip()
    value = data.get("value")
    if not key:
        return jsonify({"ok": False, "error": "key is required"}), 400
    if value is None:
        return jsonify({"ok": False, "key": key, "error": "value is required"}), 400
    if isinstance(value, bool):
        value = "true" if value else "false"
    try:
        config_store.update_value(key, str(value))
    except ValidationError as exc:
        return jsonify({"ok": False, "key": exc.key, "error": exc.message}), 400
    return jsonify({"ok": True, "key": key, "value": config_store.get_value(key), "saved": config_store.saved})


@app.post("/config/save")
def config_save():
    try:
        config_store.persist()
    except PersistError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 500
    return jsonify({"ok": True, "saved": config_store.saved, "path": str(CONFIG_PATH)})


@app.get("/config/log")
def config_log():
    lines = config_store.log_lines()
    since = _parse_int(request.args.get("since"), 0, 0, len(lines))
    return jsonify({"ok": True, "total": len(lines), "lines": list(lines[since:])})


@app.post("/check/start")
def check_start():
    data = _payload()
    try:
        config = CheckConfig.from_settings(config_store.typed_values())
    except ValidationError as exc:
        return jsonify({"ok": False, "key": exc.key, "error": exc.message}), 400
    override = data.get("entry_points")
    if override:
        config = replace(config, entry_points=split_entry_points(override))
    try:
        run_id = controller.request_run(config)
    except AlreadyRunningError as exc:
        return jsonify({"ok": False, "error": str(exc), "run_id": exc.run_id}), 409
    return jsonify({"ok": True, "run_id": run_id})


@app.post("/check/stop/<run_id>")
def check_stop(run_id: str):
    run = controller.get_run(run_id)
    if run is None:
        return jsonify({"ok": False, "error": "Run not found"}), 404
    cancelled = controller.cancel(run_id)
    return jsonify({"ok": True, "cancelled": cancelled, "status": run.status.value})


@app.get("/check/status")
def check_status():
    return jsonify({"ok": True, **controller.current_status()})


@app.get("/check/result/<run_id>")
def check_result(run_id: str):
    run = controller.get_run(run_id)
    if run is None:
        return jsonify({"ok": False, "error": "Run not found"}), 404
    return jsonify({"ok": True, **run.snapshot(), "entries": [record.to_dict() for record in run.records]})


@app.post("/report/<run_id>")
def report_create(run_id: str):
    run = controller.latest_run() if run_id == "latest" else controller.get_run(run_id)
    if run is None:
        return jsonify({"ok": False, "error": "Run not found"}), 404
    report = generate(run, load_baseline(run, history))
    payload = {"ok": True, "report": report_to_dict(report), "path": None}
    if _parse_bool(str(_payload().get("write", "true")), default=True):
        writer = ReportWriter(resolve_report_dir(run.config.report_dir, DATA_DIR), run.config.keep_reports, history)
        try:
            path = writer.write(report)
        except OSError as exc:
            config_store.append_log(f"Failed to write report for {run.run_id}: {exc}")
            log_event(logger, logging.ERROR, "report_write_failed", run_id=run.run_id, error=repr(exc))
            return jsonify({"ok": False, "error": f"Failed to write report: {exc}"}), 500
        config_store.append_log(f"Report for {run.run_id} written to {path}.")
        payload["path"] = str(path)
    return jsonify(payload)


@app.get("/runs/recent")
def runs_recent():
    limit = _parse_int(request.args.get("limit"), 12, 1, 200)
    return jsonify({"ok": True, "runs": history.list_recent_runs(limit), "reports": history.list_reports(limit=limit)})


@app.get("/diagnostics")
def diagnostics():
    payload = {
        "ok": True,
        "config": {
            "host": os.environ.get("HOST", "127.0.0.1"),
            "port": int(os.environ.get("PORT", "5000")),
            "data_dir": str(DATA_DIR),
            "config_path": str(CONFIG_PATH),
            "config_saved": config_store.saved,
            "require_local_mutations": REQUIRE_LOCAL_MUTATIONS,
            "run_retention_seconds": RUN_RETENTION_SECONDS,
        },
        "runtime": controller.current_status(),
        "storage": {
            "db_path": str(DB_PATH),
            "db_size_bytes": int(DB_PATH.stat().st_size) if DB_PATH.exists() else 0,
            "log_lines": len(config_store.log_lines()),
        },
    }
    return jsonify(payload)


if __name__ == "__main__":
    configure_logging("linkcheck")
    host = os.environ.get("HOST", "127.0.0.1")
    port = int(os.environ.get("PORT", "5000"))
    debug = _parse_bool(os.environ.get("FLASK_DEBUG"), default=False)
    app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)
