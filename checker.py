from __future__ import annotations

import hashlib
import logging
import queue
import re
import threading
import time
import zlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union
from urllib.parse import urljoin, urlparse, urlunparse

import requests
from bs4 import BeautifulSoup
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from settings import parse_page_markers
from utils import log_event, utc_now_iso


ATTRS_TO_SCAN = ("href", "src", "poster", "data-src", "data-href")
CSS_URL_RE = re.compile(r"url\(([^)]+)\)", re.IGNORECASE)
PDF_URI_RE = re.compile(rb"/URI\s*\(((?:\\.|[^\\)])*)\)", re.DOTALL)
SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*:")
TRANSIENT_STATUSES = frozenset({429, 500, 502, 503, 504})
DEFAULT_PORTS = {"http": 80, "https": 443}
NOT_FOUND_TITLES = ("404", "Not Found")
WARNING_TITLES = ("Warning",)
ERROR_TITLES = ("Error", "Unable to", "Problem")
ENTRY_SOURCE = "entry_points"
POLL_SECONDS = 0.05

logger = logging.getLogger("linkcheck.checker")


class LinkStatus(str, Enum):
    PENDING = "pending"
    VALID = "valid"
    REDIRECTED = "redirected"
    BROKEN = "broken"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class LinkRecord:
    source_location: str
    target_url: str
    status: LinkStatus
    detail: Optional[str] = None
    checked_at: str = ""
    attempt_count: int = 0
    content_hash: Optional[str] = None
    compressed_length: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_location": self.source_location,
            "target_url": self.target_url,
            "status": self.status.value,
            "detail": self.detail,
            "checked_at": self.checked_at,
            "attempt_count": self.attempt_count,
            "content_hash": self.content_hash,
            "compressed_length": self.compressed_length,
        }


class LinkCheckFailure(RuntimeError):
    pass


class TransientFailure(LinkCheckFailure):
    pass


class CancelledFailure(LinkCheckFailure):
    pass


class FatalFailure(LinkCheckFailure):
    pass


@dataclass(frozen=True)
class LinkDiscovered:
    record: LinkRecord


@dataclass(frozen=True)
class CheckProgress:
    counts: Dict[str, int]


@dataclass(frozen=True)
class CheckCompleted:
    summary: Dict[str, int]


@dataclass(frozen=True)
class CheckFailed:
    failure: LinkCheckFailure
    summary: Dict[str, int]


LinkCheckEvent = Union[LinkDiscovered, CheckProgress, CheckCompleted, CheckFailed]


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True when cancellation arrived meanwhile."""
        return self._event.wait(max(0.0, seconds))


@dataclass(frozen=True)
class CheckConfig:
    entry_points: Tuple[str, ...] = ()
    user_agent: str = "linkcheck/1.0"
    crawl_depth: int = 1
    same_host_only: bool = True
    check_external: bool = True
    check_titles: bool = True
    verify_tls: bool = True
    page_markers: Tuple[Tuple[str, str], ...] = ()
    track_changes: bool = True
    page_history_size: int = 5
    request_timeout: float = 15.0
    max_workers: int = 4
    queue_capacity: int = 256
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    cancel_grace_seconds: float = 5.0
    gen_report: bool = True
    report_dir: str = "reports"
    keep_reports: int = 10

    @classmethod
    def from_settings(cls, values: Mapping[str, Any]) -> "CheckConfig":
        known = {name for name in cls.__dataclass_fields__}
        kwargs = {key: value for key, value in values.items() if key in known}
        if "entry_points" in kwargs:
            kwargs["entry_points"] = split_entry_points(kwargs["entry_points"])
        if isinstance(kwargs.get("page_markers"), str):
            kwargs["page_markers"] = parse_page_markers(kwargs["page_markers"])
        return cls(**kwargs)

    def marker_for(self, url: str) -> Optional[str]:
        key = normalize_url(url)
        for marker_url, marker in self.page_markers:
            if normalize_url(marker_url) == key:
                return marker
        return None


def split_entry_points(raw: Union[str, Tuple[str, ...], List[str]]) -> Tuple[str, ...]:
    if isinstance(raw, str):
        items = re.split(r"[\s,]+", raw)
    else:
        items = list(raw)
    return tuple(dict.fromkeys(item.strip() for item in items if item and item.strip()))


def normalize_url(url: str) -> str:
    """Canonical form used as the deduplication key."""
    parsed = urlparse(url.strip())
    scheme = parsed.scheme.lower()
    host = (parsed.hostname or "").lower()
    if ":" in host:
        host = f"[{host}]"
    try:
        port = parsed.port
    except ValueError:
        port = None
    netloc = host
    if parsed.username or parsed.password:
        creds = parsed.username or ""
        if parsed.password:
            creds = f"{creds}:{parsed.password}"
        netloc = f"{creds}@{host}"
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{netloc}:{port}"
    path = parsed.path.rstrip("/") or "/"
    return urlunparse((scheme, netloc, path, parsed.params, parsed.query, ""))


def classify_url(url: str) -> Optional[str]:
    """Return a skip reason for links that cannot be probed over HTTP, else None."""
    candidate = url.strip()
    if not SCHEME_RE.match(candidate):
        return "invalid_url"
    scheme = candidate.split(":", 1)[0].lower()
    if scheme == "file":
        return "local_link"
    if scheme not in ("http", "https"):
        return "unsupported_scheme"
    if not urlparse(candidate).netloc:
        return "invalid_url"
    return None


def dedup_key(url: str) -> str:
    """Key under which a link target is checked at most once per run."""
    return normalize_url(url) if classify_url(url) is None else url.strip()


def resolve_url(base_url: str, value: str) -> Optional[str]:
    candidate = value.strip()
    if not candidate or candidate.startswith("#"):
        return None
    if SCHEME_RE.match(candidate):
        resolved = candidate
    elif base_url:
        resolved = urljoin(base_url, candidate)
    else:
        return candidate
    parsed = urlparse(resolved)
    return urlunparse((parsed.scheme, parsed.netloc, parsed.path, parsed.params, parsed.query, ""))


def discover_links(base_url: str, body: bytes, mime: str) -> List[str]:
    links: List[str] = []

    if "text/html" in mime or "application/xhtml" in mime:
        soup = BeautifulSoup(_decode_text(body), "html.parser")
        for tag in soup.find_all(True):
            for attr in ATTRS_TO_SCAN:
                value = tag.get(attr)
                if not value or not isinstance(value, str):
                    continue
                resolved = resolve_url(base_url, value)
                if resolved:
                    links.append(resolved)

            srcset = tag.get("srcset")
            if srcset:
                for item in srcset.split(","):
                    candidate = item.strip().split(" ")[0]
                    resolved = resolve_url(base_url, candidate) if candidate else None
                    if resolved:
                        links.append(resolved)

    elif "text/css" in mime:
        for match in CSS_URL_RE.findall(_decode_text(body)):
            resolved = resolve_url(base_url, match.strip().strip("\"'"))
            if resolved:
                links.append(resolved)

    elif "application/pdf" in mime:
        links.extend(extract_pdf_links(body))

    return list(dict.fromkeys(links))


def extract_pdf_links(pdf: bytes) -> List[str]:
    """URI actions embedded in a PDF, in document order."""
    links: List[str] = []
    for match in PDF_URI_RE.findall(pdf):
        raw = match.replace(rb"\(", b"(").replace(rb"\)", b")").replace(b"\\\\", b"\\")
        try:
            text = raw.decode("utf-8").strip()
        except UnicodeDecodeError:
            continue
        if text:
            links.append(text)
    return list(dict.fromkeys(links))


def page_title(body: bytes) -> str:
    soup = BeautifulSoup(_decode_text(body), "html.parser")
    if soup.title is None or soup.title.string is None:
        return ""
    return soup.title.string.strip()


def title_problem(title: str) -> Optional[str]:
    if any(marker in title for marker in NOT_FOUND_TITLES):
        return "page_not_found"
    if any(marker in title for marker in WARNING_TITLES):
        return "page_warning"
    if any(marker in title for marker in ERROR_TITLES):
        return "page_error"
    return None


def _decode_text(body: bytes) -> str:
    for encoding in ("utf-8", "latin-1"):
        try:
            return body.decode(encoding)
        except UnicodeDecodeError:
            continue
    return body.decode("utf-8", errors="ignore")


def _mime_for(response: Any, url: str) -> str:
    headers = getattr(response, "headers", None) or {}
    mime = str(headers.get("content-type", "") or "").split(";")[0].strip().lower()
    if not mime and urlparse(url).path.lower().endswith(".pdf"):
        return "application/pdf"
    return mime


def _host_of(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def fingerprint(body: bytes) -> Tuple[str, int]:
    """Content hash and best-compression length of a page body."""
    return hashlib.blake2s(body).hexdigest(), len(zlib.compress(body, 9))


@dataclass(frozen=True)
class _WorkItem:
    source: str
    url: str
    depth: int
    entry_hosts: Tuple[str, ...]
    is_entry: bool = False


@dataclass
class _Outcome:
    item: _WorkItem
    record: Optional[LinkRecord]
    links: List[str] = field(default_factory=list)
    reached: bool = False


@dataclass
class _Crash:
    item: _WorkItem
    error: BaseException


@dataclass
class _Abandoned:
    item: _WorkItem


class LinkChecker:
    """Crawls entry points and validates every distinct link target once per run."""

    def __init__(
        self,
        session_factory: Optional[Callable[[CheckConfig], Any]] = None,
    ) -> None:
        self._session_factory = session_factory or build_session

    def start(self, config: CheckConfig, token: Optional[CancellationToken] = None) -> Iterator[LinkCheckEvent]:
        """Lazily run a check; the returned iterator drives the crawl and can be consumed once."""
        return self._run(config, token or CancellationToken())

    def _run(self, config: CheckConfig, token: CancellationToken) -> Iterator[LinkCheckEvent]:
        counts = {"checked": 0, "valid": 0, "redirected": 0, "broken": 0, "skipped": 0, "queued": 0}
        entries = list(config.entry_points)
        log_event(logger, logging.INFO, "check_started", entry_points=len(entries), workers=config.max_workers)
        if not entries:
            yield CheckCompleted(summary=dict(counts))
            return

        session = self._session_factory(config)
        work: "queue.Queue[_WorkItem]" = queue.Queue(maxsize=max(1, config.queue_capacity))
        results: "queue.Queue[Union[_Outcome, _Crash, _Abandoned]]" = queue.Queue()
        stop = threading.Event()
        visited: set[str] = set()
        pending = 0
        reached_entries = 0
        fatal: Optional[FatalFailure] = None

        workers = [
            threading.Thread(
                target=self._worker_loop,
                args=(session, config, token, work, results, stop),
                name=f"linkcheck-worker-{idx}",
                daemon=True,
            )
            for idx in range(max(1, config.max_workers))
        ]
        for worker in workers:
            worker.start()

        def _record(record: LinkRecord) -> Iterator[LinkCheckEvent]:
            counts["checked"] += 1
            counts[record.status.value] += 1
            yield LinkDiscovered(record=record)
            yield CheckProgress(counts=dict(counts, queued=pending))

        def _admit(item: _WorkItem) -> Iterator[LinkCheckEvent]:
            nonlocal pending
            reason = classify_url(item.url)
            key = dedup_key(item.url)
            if key in visited:
                return
            visited.add(key)
            if (
                reason is None
                and not config.check_external
                and not item.is_entry
                and _host_of(item.url) not in item.entry_hosts
            ):
                reason = "external"
            if reason is not None:
                yield from _record(
                    LinkRecord(item.source, item.url, LinkStatus.SKIPPED, reason, utc_now_iso(), 0)
                )
                return
            while True:
                if token.cancelled:
                    return
                try:
                    work.put(item, timeout=POLL_SECONDS)
                    break
                except queue.Full:
                    continue
            pending += 1

        def _children(outcome: _Outcome) -> List[_WorkItem]:
            parent = outcome.item
            record = outcome.record
            source = record.target_url if record else parent.url
            hosts = parent.entry_hosts
            # An entry that redirects elsewhere brings its final host into scope.
            if parent.is_entry and record is not None and record.status is LinkStatus.REDIRECTED and record.detail:
                final_host = _host_of(record.detail)
                if final_host and final_host not in hosts:
                    hosts = hosts + (final_host,)
            return [
                _WorkItem(source=source, url=link, depth=parent.depth + 1, entry_hosts=hosts)
                for link in outcome.links
            ]

        try:
            seeds: List[_WorkItem] = []
            for entry in entries:
                local = self._load_local_document(entry)
                if local is None:
                    seeds.append(_WorkItem(ENTRY_SOURCE, entry, 0, (_host_of(entry),), is_entry=True))
                    continue
                reached_entries += 1
                for link in local:
                    seeds.append(_WorkItem(entry, link, 1, (_host_of(link),)))

            for seed in seeds:
                yield from _admit(seed)
                if token.cancelled:
                    break

            while pending and not token.cancelled:
                try:
                    message = results.get(timeout=POLL_SECONDS)
                except queue.Empty:
                    continue
                pending -= 1
                if isinstance(message, _Crash):
                    log_event(logger, logging.ERROR, "worker_crashed", url=message.item.url, error=repr(message.error))
                    fatal = FatalFailure(f"Internal error while checking {message.item.url}: {message.error}")
                    break
                if isinstance(message, _Abandoned):
                    continue
                if message.item.is_entry and message.reached:
                    reached_entries += 1
                if message.record is not None:
                    yield from _record(message.record)
                for child in _children(message):
                    yield from _admit(child)
                    if token.cancelled:
                        break

            if token.cancelled or fatal is not None:
                pending -= self._drain(work)
                deadline = time.monotonic() + max(0.0, config.cancel_grace_seconds)
                stop.set()
                while pending > 0 and time.monotonic() < deadline:
                    try:
                        message = results.get(timeout=min(POLL_SECONDS, max(0.0, deadline - time.monotonic())))
                    except queue.Empty:
                        continue
                    pending -= 1
                    if isinstance(message, _Outcome) and message.record is not None:
                        yield from _record(message.record)
                if pending > 0:
                    log_event(logger, logging.WARNING, "check_abandoned_inflight", count=pending)

            summary = dict(counts, queued=0)
            if fatal is not None:
                yield CheckFailed(failure=fatal, summary=summary)
            elif token.cancelled:
                log_event(logger, logging.INFO, "check_cancelled", **summary)
                yield CheckFailed(failure=CancelledFailure("Cancelled by user"), summary=summary)
            elif reached_entries == 0:
                log_event(logger, logging.ERROR, "check_no_reachable_entry_points", entry_points=len(entries))
                yield CheckFailed(failure=FatalFailure("No reachable entry points"), summary=summary)
            else:
                log_event(logger, logging.INFO, "check_completed", **summary)
                yield CheckCompleted(summary=summary)
        finally:
            stop.set()
            close = getattr(session, "close", None)
            if callable(close):
                close()

    def _drain(self, work: "queue.Queue[_WorkItem]") -> int:
        drained = 0
        while True:
            try:
                work.get_nowait()
            except queue.Empty:
                return drained
            drained += 1

    def _worker_loop(
        self,
        session: Any,
        config: CheckConfig,
        token: CancellationToken,
        work: "queue.Queue[_WorkItem]",
        results: "queue.Queue[Union[_Outcome, _Crash, _Abandoned]]",
        stop: threading.Event,
    ) -> None:
        while not stop.is_set():
            try:
                item = work.get(timeout=POLL_SECONDS)
            except queue.Empty:
                continue
            if token.cancelled:
                results.put(_Abandoned(item))
                continue
            try:
                outcome = self._check_item(session, config, token, item)
            except Exception as exc:  # noqa: BLE001
                results.put(_Crash(item, exc))
                continue
            results.put(outcome if outcome is not None else _Abandoned(item))

    def _check_item(
        self,
        session: Any,
        config: CheckConfig,
        token: CancellationToken,
        item: _WorkItem,
    ) -> Optional[_Outcome]:
        attempts = 0
        last_reason = ""
        crawlable = item.depth < config.crawl_depth and (
            not config.same_host_only or _host_of(item.url) in item.entry_hosts
        )

        while attempts < max(1, config.max_attempts):
            if token.cancelled:
                return None
            if attempts > 0:
                delay = config.backoff_seconds * (2 ** (attempts - 1))
                if token.wait(delay):
                    return None
            attempts += 1
            try:
                return self._probe(session, config, item, crawlable, attempts)
            except TransientFailure as exc:
                last_reason = str(exc)
                log_event(logger, logging.DEBUG, "probe_transient", url=item.url, attempt=attempts, reason=last_reason)

        log_event(logger, logging.INFO, "probe_retries_exhausted", url=item.url, attempts=attempts, reason=last_reason)
        record = LinkRecord(item.source, item.url, LinkStatus.BROKEN, last_reason, utc_now_iso(), attempts)
        return _Outcome(item=item, record=record, reached=last_reason.startswith("http_"))

    def _probe(
        self,
        session: Any,
        config: CheckConfig,
        item: _WorkItem,
        crawlable: bool,
        attempt: int,
    ) -> _Outcome:
        def _broken(reason: str, reached: bool = False) -> _Outcome:
            record = LinkRecord(item.source, item.url, LinkStatus.BROKEN, reason, utc_now_iso(), attempt)
            return _Outcome(item=item, record=record, reached=reached)

        try:
            response = session.get(
                item.url,
                timeout=config.request_timeout,
                allow_redirects=True,
                stream=True,
                verify=config.verify_tls,
            )
        except requests.exceptions.SSLError:
            return _broken("insecure_certificate")
        except requests.exceptions.Timeout as exc:
            raise TransientFailure("timeout") from exc
        except requests.exceptions.ConnectionError as exc:
            raise TransientFailure("connection_error") from exc
        except (
            requests.exceptions.InvalidURL,
            requests.exceptions.MissingSchema,
            requests.exceptions.InvalidSchema,
        ):
            return _broken("malformed_url")
        except requests.RequestException as exc:
            return _broken(f"request_error: {exc}")

        try:
            status = int(response.status_code)
            if status in TRANSIENT_STATUSES:
                raise TransientFailure(f"http_{status}")
            if status >= 400:
                return _broken(f"http_{status}", reached=True)

            final_url = str(getattr(response, "url", "") or item.url)
            mime = _mime_for(response, final_url)
            is_html = "text/html" in mime or "application/xhtml" in mime
            marker = config.marker_for(item.url)
            track = config.track_changes and is_html
            wants_body = (
                (crawlable and (is_html or "application/pdf" in mime or "text/css" in mime))
                or (config.check_titles and is_html)
                or track
                or marker is not None
            )
            body = response.content if wants_body else b""

            if config.check_titles and is_html:
                problem = title_problem(page_title(body))
                if problem:
                    return _broken(problem, reached=True)
            if marker is not None and marker not in _decode_text(body):
                return _broken("marker_not_found", reached=True)

            content_hash, compressed_length = fingerprint(body) if track else (None, None)
            links = discover_links(final_url, body, mime) if crawlable and body else []
            if getattr(response, "history", None) and normalize_url(final_url) != normalize_url(item.url):
                link_status, detail = LinkStatus.REDIRECTED, final_url
            else:
                link_status, detail = LinkStatus.VALID, None
            record = LinkRecord(
                item.source,
                item.url,
                link_status,
                detail,
                utc_now_iso(),
                attempt,
                content_hash=content_hash,
                compressed_length=compressed_length,
            )
            return _Outcome(item=item, record=record, links=links, reached=True)
        except requests.RequestException as exc:
            raise TransientFailure("read_error") from exc
        finally:
            close = getattr(response, "close", None)
            if callable(close):
                close()

    def _load_local_document(self, entry: str) -> Optional[List[str]]:
        if SCHEME_RE.match(entry) and not re.match(r"^[A-Za-z]:[\\/]", entry):
            return None
        path = Path(entry).expanduser()
        if not path.is_file():
            return None
        try:
            body = path.read_bytes()
        except OSError as exc:
            log_event(logger, logging.WARNING, "local_document_unreadable", path=path, error=exc)
            return None
        if path.suffix.lower() == ".pdf" or body.startswith(b"%PDF"):
            mime = "application/pdf"
        elif path.suffix.lower() == ".css":
            mime = "text/css"
        else:
            mime = "text/html"
        links = discover_links(path.resolve().as_uri(), body, mime)
        log_event(logger, logging.INFO, "local_document_loaded", path=path, links=len(links))
        return links


def build_session(config: CheckConfig) -> requests.Session:
    session = requests.Session()
    # Attempts are counted by the checker itself, so urllib3 must not retry behind it.
    retry = Retry(total=0, raise_on_status=False)
    pool = max(1, config.max_workers)
    adapter = HTTPAdapter(pool_connections=pool, pool_maxsize=pool, max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers.update({"User-Agent": config.user_agent})
    return session
