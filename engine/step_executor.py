"""Execute one recorded test step against a live Playwright page."""

from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from playwright.async_api import Page

from runs.models import StepAction, StepResultStatus, TestErrorType, TestStep

from .browser_session import capture_screenshot
from .config import RunConfig
from .locator_resolver import ELEMENT_NOT_FOUND, LocatorResolver, ResolvedLocator

log = logging.getLogger(__name__)

POLL_INTERVAL = 0.1
DEFAULT_WAIT_SECONDS = 1.0

ScreenshotFn = Callable[[Page], Awaitable[str]]


@dataclass(slots=True)
class StepOutcome:
    status: StepResultStatus
    duration_ms: int
    error: Optional[str] = None
    locator_used: Optional[str] = None
    screenshot: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.status is StepResultStatus.PASSED


class StepFailure(Exception):
    """Raised by handlers for a step that cannot complete."""


class AssertionFailure(StepFailure):
    pass


def classify_error(message: Optional[str]) -> TestErrorType:
    """Map a step failure message to the run-level error taxonomy."""

    text = message or ""
    if ELEMENT_NOT_FOUND in text:
        return TestErrorType.ELEMENT_NOT_FOUND
    if "timeout" in text.lower():
        return TestErrorType.TIMEOUT_ERROR
    if "expect" in text:
        return TestErrorType.ASSERTION_ERROR
    return TestErrorType.OTHER


# Keyword order matters: "text contains" must win over "visible", and
# "not visible" must be checked before "visible".
_ASSERTION_KEYWORDS = (
    (("text equals", "text_equals"), "text_equals"),
    (("text contains", "text_contains"), "text_contains"),
    (("not visible", "not_visible", "hidden"), "not_visible"),
    (("visible",), "visible"),
    (("url contains", "url_contains"), "url_contains"),
    (("url equals", "url_equals"), "url_equals"),
    (("title contains", "title_contains"), "title_contains"),
    (("title equals", "title_equals"), "title_equals"),
)


def infer_assertion_type(step: TestStep) -> str:
    """Explicit ``assertionType`` wins; the description keywords are a legacy fallback."""

    if step.locators is not None and step.locators.assertion_type:
        return step.locators.assertion_type.strip().lower()
    description = (step.description or "").lower()
    for keywords, assertion_type in _ASSERTION_KEYWORDS:
        if any(keyword in description for keyword in keywords):
            return assertion_type
    return "visible"


def _pattern(value: str) -> "re.Pattern[str]":
    try:
        return re.compile(value)
    except re.error:
        return re.compile(re.escape(value))


def _parse_seconds(value: Optional[str]) -> float:
    if value is None or not str(value).strip():
        return DEFAULT_WAIT_SECONDS
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        log.debug("Unparseable wait value %r, using %ss", value, DEFAULT_WAIT_SECONDS)
        return DEFAULT_WAIT_SECONDS
    if not math.isfinite(seconds):
        log.debug("Non-finite wait value %r, using %ss", value, DEFAULT_WAIT_SECONDS)
        return DEFAULT_WAIT_SECONDS
    return max(seconds, 0.0)


class StepExecutor:
    """Dispatch a :class:`TestStep` to its handler and time the outcome.

    ``execute`` never raises.  Any failure, including an unknown action, is
    turned into a FAILED :class:`StepOutcome` with a best-effort screenshot.
    """

    def __init__(self, config: Optional[RunConfig] = None, screenshots: Optional[ScreenshotFn] = None) -> None:
        self.config = config or RunConfig()
        self.screenshots = screenshots or capture_screenshot

    async def execute(self, page: Page, step: TestStep) -> StepOutcome:
        started = time.monotonic()
        locator_used: Optional[str] = None
        try:
            action = StepAction.parse(step.action)
            handler = _HANDLERS[action]
            locator_used = await handler(self, page, step)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            log.info("Step %s (%s) failed: %s", step.step_number, step.action, message)
            screenshot = await self._safe_screenshot(page)
            return StepOutcome(
                status=StepResultStatus.FAILED,
                duration_ms=self._elapsed(started),
                error=message,
                locator_used=locator_used,
                screenshot=screenshot,
            )
        screenshot = await self._safe_screenshot(page)
        return StepOutcome(
            status=StepResultStatus.PASSED,
            duration_ms=self._elapsed(started),
            locator_used=locator_used,
            screenshot=screenshot,
        )

    @staticmethod
    def _elapsed(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    async def _safe_screenshot(self, page: Page) -> Optional[str]:
        try:
            return await self.screenshots(page)
        except Exception as exc:
            log.debug("Screenshot capture failed: %s", exc)
            return None

    def _resolver(self, page: Page) -> LocatorResolver:
        return LocatorResolver(page, timeout_ms=self.config.locator_timeout_ms)

    async def _resolve(self, page: Page, step: TestStep, label: str) -> ResolvedLocator:
        if step.locators is None or step.locators.is_empty():
            raise StepFailure(f"{label} action requires locators")
        return await self._resolver(page).resolve(step.locators)

    # ------------------------------------------------------------------
    # browser-level actions
    # ------------------------------------------------------------------
    async def _navigate(self, page: Page, step: TestStep) -> None:
        if not step.value:
            raise StepFailure("Navigate action requires a URL value")
        await page.goto(step.value, wait_until="domcontentloaded", timeout=self.config.navigation_timeout_ms)

    async def _press(self, page: Page, step: TestStep) -> None:
        if not step.value:
            raise StepFailure("Press action requires a key value")
        await page.keyboard.press(step.value)

    async def _wait(self, page: Page, step: TestStep) -> None:
        await asyncio.sleep(_parse_seconds(step.value))

    async def _refresh(self, page: Page, step: TestStep) -> None:
        await page.reload(wait_until="domcontentloaded", timeout=self.config.navigation_timeout_ms)

    async def _go_back(self, page: Page, step: TestStep) -> None:
        await page.go_back(wait_until="domcontentloaded", timeout=self.config.navigation_timeout_ms)

    # ------------------------------------------------------------------
    # element actions
    # ------------------------------------------------------------------
    async def _click(self, page: Page, step: TestStep) -> str:
        resolved = await self._resolve(page, step, "Click")
        await resolved.locator.click()
        return resolved.strategy

    async def _double_click(self, page: Page, step: TestStep) -> str:
        resolved = await self._resolve(page, step, "Double click")
        await resolved.locator.dblclick()
        return resolved.strategy

    async def _fill(self, page: Page, step: TestStep) -> str:
        resolved = await self._resolve(page, step, "Fill")
        await resolved.locator.fill(step.value or "")
        return resolved.strategy

    async def _select(self, page: Page, step: TestStep) -> str:
        resolved = await self._resolve(page, step, "Select")
        await resolved.locator.select_option(step.value or "")
        return resolved.strategy

    async def _hover(self, page: Page, step: TestStep) -> str:
        resolved = await self._resolve(page, step, "Hover")
        await resolved.locator.hover()
        return resolved.strategy

    async def _clear(self, page: Page, step: TestStep) -> str:
        resolved = await self._resolve(page, step, "Clear")
        await resolved.locator.clear()
        return resolved.strategy

    # ------------------------------------------------------------------
    # assertions
    # ------------------------------------------------------------------
    async def _assert(self, page: Page, step: TestStep) -> Optional[str]:
        assertion_type = infer_assertion_type(step)
        expected = step.value or ""
        if assertion_type in ("text_equals", "text_contains"):
            resolved = await self._resolve(page, step, "Text assertion")
            await self._assert_text(resolved, expected, exact=assertion_type == "text_equals")
            return resolved.strategy
        if assertion_type in ("not_visible", "hidden"):
            if step.locators is None or step.locators.is_empty():
                raise StepFailure("Hidden assertion requires locators")
            resolved = await self._resolver(page).first_available(step.locators)
            if resolved is None:
                raise StepFailure("No locator available for hidden assertion")

            async def _hidden() -> bool:
                return not await resolved.locator.is_visible()

            await self._poll(_hidden, f"expect({resolved.strategy}).not_to_be_visible() failed")
            return resolved.strategy
        if assertion_type in ("url_contains", "url_equals"):

            async def _current_url() -> str:
                return page.url

            await self._assert_page_value(_current_url, expected, "url", exact=assertion_type == "url_equals")
            return "url"
        if assertion_type in ("title_contains", "title_equals"):
            await self._assert_page_value(page.title, expected, "title", exact=assertion_type == "title_equals")
            return "title"
        if assertion_type != "visible":
            log.debug("Unknown assertion type %r, checking visibility", assertion_type)
        resolved = await self._resolve(page, step, "Visibility assertion")
        await self._poll(
            resolved.locator.is_visible,
            f"expect({resolved.strategy}).to_be_visible() failed",
        )
        return resolved.strategy

    async def _assert_text(self, resolved: ResolvedLocator, expected: str, *, exact: bool) -> None:
        observed: Dict[str, Any] = {}

        async def _check() -> bool:
            actual = (await resolved.locator.inner_text()).strip()
            observed["value"] = actual
            return actual == expected.strip() if exact else expected in actual

        matcher = "to_have_text" if exact else "to_contain_text"
        await self._poll(
            _check,
            lambda: f"expect({resolved.strategy}).{matcher}({expected!r}) failed, received {observed.get('value')!r}",
        )

    async def _assert_page_value(
        self,
        getter: Callable[[], Awaitable[str]],
        expected: str,
        name: str,
        *,
        exact: bool,
    ) -> None:
        observed: Dict[str, Any] = {}
        pattern = None if exact else _pattern(expected)

        async def _check() -> bool:
            actual = await getter()
            observed["value"] = actual
            return actual == expected if exact else pattern.search(actual or "") is not None

        matcher = f"to_have_{name}"
        await self._poll(
            _check,
            lambda: f"expect(page).{matcher}({expected!r}) failed, received {observed.get('value')!r}",
        )

    async def _poll(self, check: Callable[[], Awaitable[bool]], message) -> None:
        """Retry *check* until it holds or the assertion window closes."""

        deadline = time.monotonic() + self.config.assertion_timeout_ms / 1000
        while True:
            if await check():
                return
            if time.monotonic() >= deadline:
                text = message() if callable(message) else message
                raise AssertionFailure(f"{text} after {self.config.assertion_timeout_ms}ms")
            await asyncio.sleep(POLL_INTERVAL)


Handler = Callable[[StepExecutor, Page, TestStep], Awaitable[Optional[str]]]

_HANDLERS: Dict[StepAction, Handler] = {
    StepAction.NAVIGATE: StepExecutor._navigate,
    StepAction.CLICK: StepExecutor._click,
    StepAction.FILL: StepExecutor._fill,
    StepAction.SELECT: StepExecutor._select,
    StepAction.HOVER: StepExecutor._hover,
    StepAction.PRESS: StepExecutor._press,
    StepAction.ASSERT: StepExecutor._assert,
    StepAction.WAIT: StepExecutor._wait,
    StepAction.REFRESH: StepExecutor._refresh,
    StepAction.GO_BACK: StepExecutor._go_back,
    StepAction.CLEAR: StepExecutor._clear,
    StepAction.DOUBLE_CLICK: StepExecutor._double_click,
}

_missing = set(StepAction) - set(_HANDLERS)
if _missing:
    raise RuntimeError(f"No step handler registered for: {sorted(a.value for a in _missing)}")
del _missing
