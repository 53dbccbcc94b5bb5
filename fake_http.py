"""In-memory stand-ins for ``requests.Session`` used by the test modules."""
from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Sequence, Union


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        body: Union[str, bytes] = b"",
        content_type: str = "text/html; charset=utf-8",
        url: str = "",
        history: Sequence[Any] = (),
    ) -> None:
        self.status_code = status_code
        self.content = body.encode("utf-8") if isinstance(body, str) else body
        self.headers = {"content-type": content_type}
        self.url = url
        self.history = list(history)
        self.closed = False

    def close(self) -> None:
        self.closed = True


def html(title: str, *links: str) -> FakeResponse:
    anchors = "".join(f'<a href="{link}">{link}</a>' for link in links)
    return FakeResponse(200, f"<html><head><title>{title}</title></head><body>{anchors}</body></html>")


def image() -> FakeResponse:
    return FakeResponse(200, b"\x89PNG", content_type="image/png")


class FakeSession:
    """Serves scripted responses per URL.

    Each route maps to a list of steps consumed one per request; the last
    step repeats. A step is a FakeResponse, an exception to raise, or a
    callable taking the URL. Unknown URLs answer 404.
    """

    def __init__(self, routes: Optional[Dict[str, List[Any]]] = None) -> None:
        self.routes: Dict[str, List[Any]] = {url: list(steps) for url, steps in (routes or {}).items()}
        self.calls: List[str] = []
        self.closed = False
        self._lock = threading.Lock()

    def get(self, url: str, **_kwargs: Any) -> FakeResponse:
        with self._lock:
            self.calls.append(url)
            steps = self.routes.get(url)
            if not steps:
                step: Any = FakeResponse(404, "<html><head><title>Gone</title></head></html>")
            elif len(steps) > 1:
                step = steps.pop(0)
            else:
                step = steps[0]
        if isinstance(step, BaseException):
            raise step
        if callable(step) and not isinstance(step, FakeResponse):
            step = step(url)
        if not step.url:
            step.url = url
        return step

    def call_count(self, url: str) -> int:
        with self._lock:
            return self.calls.count(url)

    def close(self) -> None:
        self.closed = True


class GatedStep:
    """A step that blocks its worker until ``release`` is called."""

    def __init__(self, response: Optional[FakeResponse] = None) -> None:
        self.entered = threading.Event()
        self._gate = threading.Event()
        self._response = response or image()

    def __call__(self, url: str) -> FakeResponse:
        self.entered.set()
        self._gate.wait(10)
        return self._response

    def release(self) -> None:
        self._gate.set()
