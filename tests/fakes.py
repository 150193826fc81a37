"""Hand-written stand-ins for the Playwright objects the engine touches."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from engine.browser_session import BrowserSession


@dataclass
class FakeElement:
    visible: bool = True
    attached: bool = True
    text: str = ""
    value: str = ""
    # number of is_visible() probes after which the element disappears
    hide_after: Optional[int] = None
    probes: int = 0

    def is_visible(self) -> bool:
        self.probes += 1
        if self.hide_after is not None and self.probes > self.hide_after:
            self.visible = False
        return self.attached and self.visible


class FakeLocator:
    def __init__(self, page: "FakePage", key: str) -> None:
        self.page = page
        self.key = key

    @property
    def element(self) -> Optional[FakeElement]:
        return self.page.elements.get(self.key)

    @property
    def first(self) -> "FakeLocator":
        return self

    async def wait_for(self, state: str = "visible", timeout: Optional[float] = None) -> None:
        self.page.attempts.append(self.key)
        element = self.element
        if element is not None and element.attached and element.visible:
            return
        raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {self.key}")

    async def count(self) -> int:
        element = self.element
        return 1 if element is not None and element.attached else 0

    async def is_visible(self) -> bool:
        element = self.element
        return element.is_visible() if element is not None else False

    async def inner_text(self) -> str:
        element = self._require()
        return element.text

    async def click(self) -> None:
        self._record("click")

    async def dblclick(self) -> None:
        self._record("dblclick")

    async def hover(self) -> None:
        self._record("hover")

    async def clear(self) -> None:
        self._require().value = ""
        self._record("clear")

    async def fill(self, value: str) -> None:
        self._require().value = value
        self._record("fill", value)

    async def select_option(self, value: str) -> None:
        self._require().value = value
        self._record("select_option", value)

    def _require(self) -> FakeElement:
        element = self.element
        if element is None:
            raise PlaywrightError(f"element {self.key} is not attached")
        return element

    def _record(self, action: str, *args: Any) -> None:
        self.page.actions.append((self.key, action, *args))
        hook = self.page.action_hooks.get((self.key, action))
        if hook is not None:
            hook()


class FakeKeyboard:
    def __init__(self, page: "FakePage") -> None:
        self.page = page

    async def press(self, key: str) -> None:
        self.page.actions.append(("keyboard", "press", key))


class FakeVideo:
    def __init__(self, path: str) -> None:
        self._path = path

    async def path(self) -> str:
        return self._path


class FakePage:
    """Page whose DOM is a dict of locator keys such as ``testId:go``."""

    def __init__(self, elements: Optional[Dict[str, FakeElement]] = None, *, url: str = "about:blank") -> None:
        self.elements: Dict[str, FakeElement] = dict(elements or {})
        self.url = url
        self.page_title = ""
        self.attempts: List[str] = []
        self.actions: List[Tuple[Any, ...]] = []
        self.navigations: List[str] = []
        self.action_hooks: Dict[Tuple[str, str], Callable[[], None]] = {}
        self.goto_error: Optional[Exception] = None
        self.goto_events: List[Tuple[str, Any]] = []
        self.screenshot_error: Optional[Exception] = None
        self.keyboard = FakeKeyboard(self)
        self.video: Optional[FakeVideo] = None
        self.listeners: Dict[str, List[Callable[..., Any]]] = {}

    # locator factories -------------------------------------------------
    def locator(self, selector: str) -> FakeLocator:
        if selector.startswith("xpath="):
            return FakeLocator(self, "xpath:" + selector[len("xpath="):])
        prefix = '[data-qa-id="'
        if selector.startswith(prefix) and selector.endswith('"]'):
            return FakeLocator(self, "qaId:" + selector[len(prefix):-2])
        return FakeLocator(self, "css:" + selector)

    def get_by_role(self, role: str, name: Optional[str] = None) -> FakeLocator:
        return FakeLocator(self, f"role:{role}:{name}" if name else f"role:{role}")

    def get_by_test_id(self, value: str) -> FakeLocator:
        return FakeLocator(self, "testId:" + value)

    def get_by_label(self, value: str) -> FakeLocator:
        return FakeLocator(self, "label:" + value)

    def get_by_placeholder(self, value: str) -> FakeLocator:
        return FakeLocator(self, "placeholder:" + value)

    def get_by_text(self, value: str) -> FakeLocator:
        return FakeLocator(self, "text:" + value)

    def get_by_alt_text(self, value: str) -> FakeLocator:
        return FakeLocator(self, "altText:" + value)

    def get_by_title(self, value: str) -> FakeLocator:
        return FakeLocator(self, "title:" + value)

    # page-level API ----------------------------------------------------
    async def goto(self, url: str, wait_until: Optional[str] = None, timeout: Optional[float] = None) -> None:
        if self.goto_error is not None:
            raise self.goto_error
        self.navigations.append(url)
        self.url = url
        for event, payload in self.goto_events:
            self.emit(event, payload)

    async def reload(self, **kwargs: Any) -> None:
        self.actions.append(("page", "reload"))

    async def go_back(self, **kwargs: Any) -> None:
        self.actions.append(("page", "go_back"))

    async def title(self) -> str:
        return self.page_title

    async def screenshot(self, type: str = "png", **kwargs: Any) -> bytes:
        if self.screenshot_error is not None:
            raise self.screenshot_error
        return b"\x89PNG-fake"

    # events -------------------------------------------------------------
    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self.listeners.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Callable[..., Any]) -> None:
        self.listeners.get(event, []).remove(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self.listeners.get(event, [])):
            handler(*args)


@dataclass
class FakeConsoleMessage:
    type: str
    text: str


@dataclass(eq=False)
class FakeRequest:
    url: str
    method: str = "GET"
    resource_type: str = "xhr"
    post_data_buffer: Optional[bytes] = None
    failure: Optional[str] = None


@dataclass
class FakeResponse:
    request: FakeRequest
    status: int = 200
    status_text: str = "OK"
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def url(self) -> str:
        return self.request.url


class FakeSessionProvider:
    """Session provider that hands out :class:`FakePage` objects."""

    def __init__(self, page_factory: Optional[Callable[[], FakePage]] = None) -> None:
        self.page_factory = page_factory or FakePage
        self.opened: List[bool] = []
        self.sessions: List[BrowserSession] = []
        self.open_error: Optional[Exception] = None

    async def open(self, *, headless: bool = True) -> BrowserSession:
        self.opened.append(headless)
        if self.open_error is not None:
            raise self.open_error
        session = BrowserSession(self.page_factory())
        self.sessions.append(session)
        return session
