"""Multi-strategy element resolution for recorded locator bundles.

Strategies are tried in a fixed priority order:

 1) qaId (``data-qa-id`` attribute)
 2) ARIA role, optionally with accessible name
 3) test id
 4) label
 5) placeholder
 6) visible text
 7) alt text
 8) title
 9) CSS selector
10) XPath

Each present strategy gets one attempt of ``timeout_ms`` to produce a visible
element.  Role and test-id locators survive DOM refactors, CSS and XPath are
brittle and only used as fallback.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from playwright.async_api import Error as PlaywrightError, Locator, Page

from runs.models import LocatorBundle

log = logging.getLogger(__name__)

DEFAULT_LOCATOR_TIMEOUT = 5000
ELEMENT_NOT_FOUND = "ELEMENT_NOT_FOUND"


class ElementNotFoundError(Exception):
    def __init__(self, attempted: List[str]) -> None:
        self.attempted = list(attempted)
        tried = ", ".join(self.attempted) if self.attempted else "none"
        super().__init__(f"{ELEMENT_NOT_FOUND}: No locator strategy succeeded. Tried: {tried}")


@dataclass(slots=True)
class ResolvedLocator:
    locator: Locator
    strategy: str


def _css_attr_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def build_locator(page: Page, bundle: LocatorBundle, strategy: str) -> Optional[Locator]:
    """Return the Playwright locator for *strategy*, or None if it is absent."""

    value = bundle.get(strategy)
    if value is None:
        return None
    factory = _FACTORIES[strategy]
    return factory(page, value)


def _by_role(page: Page, role) -> Locator:
    if role.name:
        return page.get_by_role(role.role, name=role.name)
    return page.get_by_role(role.role)


_FACTORIES: Dict[str, Callable[[Page, object], Locator]] = {
    "qaId": lambda page, value: page.locator(f'[data-qa-id="{_css_attr_value(value)}"]'),
    "role": _by_role,
    "testId": lambda page, value: page.get_by_test_id(value),
    "label": lambda page, value: page.get_by_label(value),
    "placeholder": lambda page, value: page.get_by_placeholder(value),
    "text": lambda page, value: page.get_by_text(value),
    "altText": lambda page, value: page.get_by_alt_text(value),
    "title": lambda page, value: page.get_by_title(value),
    "css": lambda page, value: page.locator(value),
    "xpath": lambda page, value: page.locator(f"xpath={value}"),
}


class LocatorResolver:
    """Resolve a :class:`LocatorBundle` to a single interactable element."""

    def __init__(self, page: Page, *, timeout_ms: int = DEFAULT_LOCATOR_TIMEOUT) -> None:
        self.page = page
        self.timeout_ms = timeout_ms

    async def resolve(self, bundle: LocatorBundle) -> ResolvedLocator:
        attempted: List[str] = []
        for strategy in bundle.strategies():
            locator = build_locator(self.page, bundle, strategy)
            if locator is None:
                continue
            attempted.append(strategy)
            candidate = locator.first
            try:
                await candidate.wait_for(state="visible", timeout=self.timeout_ms)
            except PlaywrightError as exc:
                log.debug("Locator strategy %s failed: %s", strategy, exc)
                continue
            return ResolvedLocator(locator=candidate, strategy=strategy)
        raise ElementNotFoundError(attempted)

    async def first_available(self, bundle: LocatorBundle) -> Optional[ResolvedLocator]:
        """Presence-only variant used when asserting that an element is hidden.

        No visibility wait is performed.  The first strategy whose locator is
        attached to the DOM wins; when nothing is attached the highest priority
        strategy is returned so the caller can assert against an absent node.
        """

        fallback: Optional[ResolvedLocator] = None
        for strategy in bundle.strategies():
            locator = build_locator(self.page, bundle, strategy)
            if locator is None:
                continue
            candidate = ResolvedLocator(locator=locator.first, strategy=strategy)
            if fallback is None:
                fallback = candidate
            try:
                if await locator.count() > 0:
                    return candidate
            except PlaywrightError as exc:
                log.debug("Presence check for %s failed: %s", strategy, exc)
        return fallback
