from __future__ import annotations

import json
import logging
import math
import re
import threading
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from utils import atomic_write_text, log_event, utc_now_iso


SCHEMA_VERSION = 1
BOOL_LITERALS = ("true", "false")
INT_RE = re.compile(r"-?[0-9]+")
FLOAT_RE = re.compile(r"-?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)")

logger = logging.getLogger("linkcheck.settings")


class ValidationError(ValueError):
    def __init__(self, key: str, message: str) -> None:
        super().__init__(message)
        self.key = key
        self.message = message


class PersistError(RuntimeError):
    pass


class DisplayType(str, Enum):
    STRING = "string"
    NUMBER = "num"
    BOOL = "bool"


@dataclass(frozen=True)
class PropertySpec:
    key: str
    friendly_name: str
    display_type: DisplayType
    default: str
    advanced: bool = False
    number_kind: type = int
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    allow_empty: bool = True
    check: Optional[Callable[[str], Optional[str]]] = None

    def parse(self, raw: str) -> Any:
        """Return the typed value for ``raw`` or raise ValidationError."""
        if not isinstance(raw, str):
            raise ValidationError(self.key, f"{self.friendly_name} must be given as text")

        if self.display_type is DisplayType.BOOL:
            if raw not in BOOL_LITERALS:
                raise ValidationError(self.key, f"{self.friendly_name} must be 'true' or 'false'")
            return raw == "true"

        if self.display_type is DisplayType.NUMBER:
            pattern = INT_RE if self.number_kind is int else FLOAT_RE
            if not pattern.fullmatch(raw):
                kind = "a whole number" if self.number_kind is int else "a number"
                raise ValidationError(self.key, f"{self.friendly_name} must be {kind}")
            value = self.number_kind(raw)
            if isinstance(value, float) and not math.isfinite(value):
                raise ValidationError(self.key, f"{self.friendly_name} must be a finite number")
            if self.minimum is not None and value < self.minimum:
                raise ValidationError(self.key, f"{self.friendly_name} must be at least {self._fmt(self.minimum)}")
            if self.maximum is not None and value > self.maximum:
                raise ValidationError(self.key, f"{self.friendly_name} must be at most {self._fmt(self.maximum)}")
            return value

        if not self.allow_empty and not raw.strip():
            raise ValidationError(self.key, f"{self.friendly_name} cannot be empty")
        if self.check is not None:
            problem = self.check(raw)
            if problem:
                raise ValidationError(self.key, f"{self.friendly_name}: {problem}")
        return raw

    def _fmt(self, bound: float) -> str:
        return str(self.number_kind(bound))


@dataclass(frozen=True)
class ConfigProperty:
    key: str
    friendly_name: str
    value: str
    display_type: DisplayType
    advanced: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "friendly_name": self.friendly_name,
            "value": self.value,
            "display_type": self.display_type.value,
            "advanced": self.advanced,
        }


def parse_page_markers(raw: str) -> Tuple[Tuple[str, str], ...]:
    """Split ``url|marker`` pairs separated by newlines or ``;``."""
    pairs: List[Tuple[str, str]] = []
    for entry in re.split(r"[\n;]", raw or ""):
        if not entry.strip():
            continue
        url, sep, marker = entry.partition("|")
        if not sep:
            raise ValueError(f"expected 'url|marker', got {entry.strip()!r}")
        url, marker = url.strip(), marker.strip()
        if not re.match(r"^https?://[^/\s]+", url, re.IGNORECASE):
            raise ValueError(f"{url!r} is not an http(s) URL")
        if not marker:
            raise ValueError(f"marker for {url} is empty")
        pairs.append((url, marker))
    return tuple(pairs)


def _check_page_markers(raw: str) -> Optional[str]:
    try:
        parse_page_markers(raw)
    except ValueError as exc:
        return str(exc)
    return None


SCHEMA: Tuple[PropertySpec, ...] = (
    PropertySpec("entry_points", "Entry points", DisplayType.STRING, ""),
    PropertySpec("user_agent", "User agent", DisplayType.STRING, "linkcheck/1.0", allow_empty=False),
    PropertySpec("crawl_depth", "Crawl depth", DisplayType.NUMBER, "1", minimum=0, maximum=10),
    PropertySpec("same_host_only", "Crawl same host only", DisplayType.BOOL, "true"),
    PropertySpec("check_external", "Check external links", DisplayType.BOOL, "true"),
    PropertySpec("check_titles", "Detect error pages by title", DisplayType.BOOL, "true", advanced=True),
    PropertySpec("verify_tls", "Verify TLS certificates", DisplayType.BOOL, "true", advanced=True),
    PropertySpec(
        "page_markers", "Required page markers (url|text)", DisplayType.STRING, "",
        advanced=True, check=_check_page_markers,
    ),
    PropertySpec("track_changes", "Track page content between runs", DisplayType.BOOL, "true", advanced=True),
    PropertySpec(
        "page_history_size", "Page states kept per URL", DisplayType.NUMBER, "5",
        advanced=True, minimum=1, maximum=50,
    ),
    PropertySpec("gen_report", "Generate report after run", DisplayType.BOOL, "true"),
    PropertySpec(
        "request_timeout", "Request timeout (seconds)", DisplayType.NUMBER, "15",
        advanced=True, number_kind=float, minimum=0.1, maximum=300,
    ),
    PropertySpec("max_workers", "Worker pool size", DisplayType.NUMBER, "4", advanced=True, minimum=1, maximum=64),
    PropertySpec(
        "queue_capacity", "Work queue capacity", DisplayType.NUMBER, "256",
        advanced=True, minimum=1, maximum=100000,
    ),
    PropertySpec("max_attempts", "Maximum attempts per link", DisplayType.NUMBER, "3", advanced=True, minimum=1, maximum=10),
    PropertySpec(
        "backoff_seconds", "Retry backoff base (seconds)", DisplayType.NUMBER, "0.5",
        advanced=True, number_kind=float, minimum=0, maximum=60,
    ),
    PropertySpec(
        "cancel_grace_seconds", "Cancellation grace period (seconds)", DisplayType.NUMBER, "5",
        advanced=True, number_kind=float, minimum=0, maximum=120,
    ),
    PropertySpec("report_dir", "Report directory", DisplayType.STRING, "reports", advanced=True, allow_empty=False),
    PropertySpec("keep_reports", "Reports to keep", DisplayType.NUMBER, "10", advanced=True, minimum=1, maximum=1000),
)


class ConfigStore:
    """Typed settings with validation, atomic persistence and an append-only audit log.

    Reads are safe from any thread. ``update_value`` and ``persist`` are
    serialized by one lock, so an update never interleaves with a write of
    the durable copy.
    """

    def __init__(self, path: Path, schema: Tuple[PropertySpec, ...] = SCHEMA) -> None:
        self.path = Path(path)
        self._specs: Dict[str, PropertySpec] = {spec.key: spec for spec in schema}
        self._order: List[str] = [spec.key for spec in schema]
        self._properties: Dict[str, ConfigProperty] = {
            spec.key: ConfigProperty(
                key=spec.key,
                friendly_name=spec.friendly_name,
                value=spec.default,
                display_type=spec.display_type,
                advanced=spec.advanced,
            )
            for spec in schema
        }
        self._saved = False
        self._log: List[str] = []
        self._lock = threading.RLock()
        self._listeners: List[Callable[[Dict[str, Any]], None]] = []

    @property
    def saved(self) -> bool:
        with self._lock:
            return self._saved

    def get_properties(self) -> Tuple[ConfigProperty, ...]:
        with self._lock:
            return tuple(self._properties[key] for key in self._order)

    def get_value(self, key: str) -> str:
        with self._lock:
            prop = self._properties.get(key)
            if prop is None:
                raise KeyError(key)
            return prop.value

    def typed_values(self) -> Dict[str, Any]:
        """Snapshot of every setting parsed into its Python type."""
        with self._lock:
            return {key: self._specs[key].parse(self._properties[key].value) for key in self._order}

    def update_value(self, key: str, raw: str) -> None:
        with self._lock:
            spec = self._specs.get(key)
            if spec is None:
                error = ValidationError(key, f"Unknown setting: {key}")
                self._notify({"event": "validation_error", "key": key, "error": error.message})
                raise error
            try:
                spec.parse(raw)
            except ValidationError as exc:
                log_event(logger, logging.INFO, "config_rejected", key=key, error=exc.message)
                self._notify({"event": "validation_error", "key": key, "error": exc.message})
                raise

            old = self._properties[key].value
            self._properties[key] = replace(self._properties[key], value=raw)
            self._set_saved(False)
            self.append_log(f"Updated {key}: {old!r} -> {raw!r}")
            log_event(logger, logging.INFO, "config_updated", key=key)

    def persist(self) -> None:
        with self._lock:
            text = self._serialize()
            try:
                atomic_write_text(self.path, text)
            except OSError as exc:
                log_event(logger, logging.ERROR, "config_persist_failed", path=self.path, error=exc)
                self.append_log(f"Failed to save configuration to {self.path}: {exc}")
                raise PersistError(f"Failed to write config file {self.path}: {exc}") from exc
            self._set_saved(True)
            self.append_log(f"Configuration saved to {self.path}.")

    def load(self) -> None:
        """Read the durable copy, writing defaults when none exists yet."""
        with self._lock:
            self.append_log("Checking configuration.")
            if not self.path.exists():
                try:
                    self.persist()
                except PersistError:
                    self.append_log("No config file found and defaults could not be written; using defaults.")
                    return
                self.append_log(f"No config file found, default config file created here: {self.path}.")
                return

            try:
                payload = json.loads(self.path.read_text(encoding="utf-8"))
                entries = payload["properties"]
                if not isinstance(entries, list):
                    raise ValueError("properties must be a list")
            except (OSError, ValueError, KeyError, TypeError) as exc:
                log_event(logger, logging.WARNING, "config_load_failed", path=self.path, error=exc)
                self.append_log(f"Failed to load config file, using default config: {self.path}.")
                self._set_saved(False)
                return

            clean = True
            for entry in entries:
                if not isinstance(entry, dict):
                    clean = False
                    continue
                key = str(entry.get("key", ""))
                spec = self._specs.get(key)
                if spec is None:
                    clean = False
                    continue
                value = entry.get("value")
                try:
                    spec.parse(value)
                except ValidationError as exc:
                    clean = False
                    self.append_log(f"Ignored stored value for {key}: {exc.message}")
                    continue
                self._properties[key] = replace(self._properties[key], value=value)

            self._set_saved(clean and self._serialize() == self.path.read_text(encoding="utf-8"))
            self.append_log("Configuration loaded successfully.")
            log_event(logger, logging.INFO, "config_loaded", path=self.path, saved=self._saved)

    def append_log(self, line: str) -> None:
        stamped = f"{utc_now_iso()} {line}"
        with self._lock:
            self._log.append(stamped)
        self._notify({"event": "log", "line": stamped})

    def log_lines(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._log)

    def subscribe(self, listener: Callable[[Dict[str, Any]], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def _set_saved(self, saved: bool) -> None:
        if saved == self._saved:
            return
        self._saved = saved
        self._notify({"event": "saved_changed", "saved": saved})

    def _notify(self, payload: Dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(payload)
            except Exception as exc:  # noqa: BLE001
                log_event(logger, logging.WARNING, "config_listener_failed", error=exc)

    def _serialize(self) -> str:
        payload = {
            "version": SCHEMA_VERSION,
            "properties": [
                {
                    "key": prop.key,
                    "value": prop.value,
                    "display_type": prop.display_type.value,
                    "advanced": prop.advanced,
                }
                for prop in (self._properties[key] for key in self._order)
            ],
        }
        return json.dumps(payload, indent=2) + "\n"
