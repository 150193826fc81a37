"""Console, HTTP error and XHR/fetch capture for a running test page."""

from __future__ import annotations

import itertools
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from playwright.async_api import ConsoleMessage, Page, Request, Response

from runs.models import NetworkRequest, TestError, TestErrorType, utcnow

log = logging.getLogger(__name__)

TRACKED_RESOURCE_TYPES = frozenset({"xhr", "fetch"})


def _content_length(headers: Dict[str, str]) -> Optional[int]:
    raw = headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        log.debug("Ignoring malformed content-length %r", raw)
        return None


class TelemetryRecorder:
    """Attach Playwright page listeners and buffer what they see.

    Nothing is persisted here; the orchestrator drains :attr:`errors` and
    :attr:`network_requests` in bulk when the run finishes.  Listener
    callbacks never raise into Playwright's event dispatch.
    """

    def __init__(self, page: Page, run_id: str) -> None:
        self.page = page
        self.run_id = run_id
        self.errors: List[TestError] = []
        self.network_requests: List[NetworkRequest] = []
        self._pending: Dict[Request, Tuple[NetworkRequest, float]] = {}
        self._ids = itertools.count(1)
        self._listeners: List[Tuple[str, Callable[..., Any]]] = []
        self._started = False

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._register("console", self._on_console)
        self._register("response", self._on_response)
        self._register("request", self._on_request)
        self._register("requestfailed", self._on_request_failed)

    def stop(self) -> None:
        if not self._started:
            return
        for event, handler in self._listeners:
            try:
                self.page.off(event, handler)
            except Exception as exc:
                log.debug("Failed to detach %s listener: %s", event, exc)
        self._listeners.clear()
        self._started = False

    def _register(self, event: str, handler: Callable[..., Any]) -> None:
        def _guarded(*args: Any) -> None:
            try:
                handler(*args)
            except Exception as exc:
                log.debug("Telemetry listener for %s failed: %s", event, exc)

        self.page.on(event, _guarded)
        self._listeners.append((event, _guarded))

    def _page_url(self) -> Optional[str]:
        try:
            return self.page.url
        except Exception:
            return None

    def _on_console(self, message: ConsoleMessage) -> None:
        if message.type != "error":
            return
        self.errors.append(
            TestError(
                test_run_id=self.run_id,
                type=TestErrorType.CONSOLE_ERROR,
                message=message.text,
                url=self._page_url(),
            )
        )

    def _on_response(self, response: Response) -> None:
        request = response.request
        if response.status >= 400:
            self.errors.append(
                TestError(
                    test_run_id=self.run_id,
                    type=TestErrorType.NETWORK_ERROR,
                    message=f"{response.status} {response.status_text}".strip(),
                    url=response.url,
                    context={"method": request.method, "status": response.status},
                )
            )
        tracked = self._pending.pop(request, None)
        if tracked is None:
            return
        entry, started = tracked
        entry.status = response.status
        entry.status_text = response.status_text
        entry.duration = int((time.monotonic() - started) * 1000)
        entry.response_size = _content_length(response.headers)

    def _on_request(self, request: Request) -> None:
        if request.resource_type not in TRACKED_RESOURCE_TYPES:
            return
        body = request.post_data_buffer
        entry = NetworkRequest(
            test_run_id=self.run_id,
            request_id=f"req-{next(self._ids)}",
            method=request.method,
            url=request.url,
            resource_type=request.resource_type,
            timestamp=utcnow(),
            request_size=len(body) if body else None,
        )
        self.network_requests.append(entry)
        self._pending[request] = (entry, time.monotonic())

    def _on_request_failed(self, request: Request) -> None:
        tracked = self._pending.pop(request, None)
        if tracked is None:
            return
        entry, started = tracked
        entry.failed = True
        entry.error_text = request.failure
        entry.duration = int((time.monotonic() - started) * 1000)
