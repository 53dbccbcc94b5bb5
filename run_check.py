from __future__ import annotations

import argparse
import os
import shutil
import sys
from pathlib import Path
from typing import List, Optional

from db import SQLiteStore
from jobs import AlreadyRunningError, CheckRun, JobController, RunStatus
from report import publish_run, resolve_report_dir
from settings import ConfigStore, PersistError, ValidationError
from utils import configure_logging


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ALREADY_RUNNING = 2
EXIT_VALIDATION = 3
EXIT_PERSIST = 4
EXIT_CANCELLED = 5

EXIT_BY_STATUS = {
    RunStatus.COMPLETED: EXIT_OK,
    RunStatus.FAILED: EXIT_FAILED,
    RunStatus.CANCELLED: EXIT_CANCELLED,
}


def load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def default_data_dir() -> Path:
    base = Path(__file__).resolve().parent
    return Path(os.environ.get("LINKCHECK_DATA_DIR", str(base / "data"))).expanduser().resolve()


def open_store(data_dir: Path) -> ConfigStore:
    store = ConfigStore(data_dir / "linkcheck.json")
    store.load()
    return store


def print_run(run: CheckRun) -> None:
    print(f"Run {run.run_id}: {run.status.value}" + (f" ({run.reason})" if run.reason else ""))
    counts = ", ".join(f"{key}={value}" for key, value in sorted(run.progress.items()))
    if counts:
        print(f"  {counts}")
    for record in run.records:
        if record.status.value in ("broken", "redirected"):
            print(f"  {record.status.value:<10} {record.target_url} [{record.detail}] <- {record.source_location}")


def cmd_run(args: argparse.Namespace, data_dir: Path) -> int:
    store = open_store(data_dir)
    try:
        if args.entry:
            store.update_value("entry_points", " ".join(args.entry))
        if args.timeout is not None:
            store.update_value("request_timeout", str(args.timeout))
        if args.no_report:
            store.update_value("gen_report", "false")
    except ValidationError as exc:
        print(f"Invalid {exc.key}: {exc.message}", file=sys.stderr)
        return EXIT_VALIDATION

    history = SQLiteStore(data_dir / "linkcheck.sqlite3")
    if args.clean_start:
        report_dir = resolve_report_dir(store.get_value("report_dir"), data_dir)
        if report_dir.is_dir():
            shutil.rmtree(report_dir)
            print(f"Removed previous reports in {report_dir}")

    def _on_finished(run: CheckRun) -> None:
        path = publish_run(run, history, data_dir)
        if path is not None:
            print(f"Report: {path}")

    controller = JobController(store, on_finished=_on_finished)
    try:
        run_id = controller.request_run()
    except AlreadyRunningError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_ALREADY_RUNNING

    try:
        run = controller.wait(run_id)
    except KeyboardInterrupt:
        print("Cancelling...", file=sys.stderr)
        controller.cancel(run_id)
        run = controller.wait(run_id)

    if run is None:
        print(f"Run {run_id} did not finish.", file=sys.stderr)
        return EXIT_FAILED
    print_run(run)
    return EXIT_BY_STATUS.get(run.status, EXIT_FAILED)


def cmd_config_show(args: argparse.Namespace, data_dir: Path) -> int:
    store = open_store(data_dir)
    for prop in store.get_properties():
        if prop.advanced and not args.advanced:
            continue
        print(f"{prop.key:<22} {prop.value!r:<24} {prop.display_type.value:<6} {prop.friendly_name}")
    print(f"saved: {'yes' if store.saved else 'no'} ({store.path})")
    return EXIT_OK


def cmd_config_set(args: argparse.Namespace, data_dir: Path) -> int:
    store = open_store(data_dir)
    try:
        store.update_value(args.key, args.value)
    except ValidationError as exc:
        print(f"Invalid {exc.key}: {exc.message}", file=sys.stderr)
        return EXIT_VALIDATION
    try:
        store.persist()
    except PersistError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_PERSIST
    print(f"{args.key} = {store.get_value(args.key)!r}")
    return EXIT_OK


def cmd_history(args: argparse.Namespace, data_dir: Path) -> int:
    history = SQLiteStore(data_dir / "linkcheck.sqlite3")
    runs = history.list_recent_runs(args.limit)
    if not runs:
        print("No runs recorded yet.")
        return EXIT_OK
    for item in runs:
        summary = item.get("summary") or {}
        print(
            f"{item['created_local']}  {item['run_id'][:12]}  {item['state']:<9}  "
            f"checked={summary.get('checked', 0)} broken={summary.get('broken', 0)}"
        )
    return EXIT_OK


def cmd_serve(args: argparse.Namespace, data_dir: Path) -> int:
    os.environ["LINKCHECK_DATA_DIR"] = str(data_dir)
    from app import app

    app.run(host=args.host, port=args.port, debug=False, use_reloader=False, threaded=True)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Check the links reachable from configured entry points.")
    parser.add_argument("--data-dir", default=None, help="Directory holding config, history and reports")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one link check and wait for it")
    run.add_argument("--entry", action="append", default=[], help="Entry point URL or local file (repeatable)")
    run.add_argument("--no-report", action="store_true", help="Do not write a report after the run")
    run.add_argument("--timeout", type=float, default=None, help="Per-request timeout in seconds")
    run.add_argument("--clean-start", action="store_true", help="Remove previous reports before running")
    run.set_defaults(handler=cmd_run)

    config = sub.add_parser("config", help="Show or change settings")
    config_sub = config.add_subparsers(dest="config_command", required=True)
    show = config_sub.add_parser("show", help="List settings")
    show.add_argument("--advanced", action="store_true", help="Include advanced settings")
    show.set_defaults(handler=cmd_config_show)
    set_ = config_sub.add_parser("set", help="Validate, update and save one setting")
    set_.add_argument("key")
    set_.add_argument("value")
    set_.set_defaults(handler=cmd_config_set)

    hist = sub.add_parser("history", help="List recent runs")
    hist.add_argument("--limit", type=int, default=12)
    hist.set_defaults(handler=cmd_history)

    serve = sub.add_parser("serve", help="Start the HTTP API")
    serve.add_argument("--host", default=os.environ.get("HOST", "127.0.0.1"))
    serve.add_argument("--port", type=int, default=int(os.environ.get("PORT", "5000")))
    serve.set_defaults(handler=cmd_serve)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_env_file(Path(__file__).resolve().parent / ".env")
    args = build_parser().parse_args(argv)
    configure_logging("linkcheck", default_level="WARNING")
    data_dir = Path(args.data_dir).expanduser().resolve() if args.data_dir else default_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)
    return args.handler(args, data_dir)


if __name__ == "__main__":
    raise SystemExit(main())
