"""Shared test fixtures.

Provides an in-memory stand-in for ``BrowserSession`` so the collector and
the session controller can be driven without a browser.
"""

from itertools import count
from datetime import datetime, timedelta

import pytest
from selenium.common.exceptions import (
    ElementClickInterceptedException,
    JavascriptException,
    NoSuchElementException,
    StaleElementReferenceException,
    WebDriverException,
)

from roster_scraper import RestartPolicy, ScraperConfig, Selectors

SELECTORS = Selectors()


class FakeNode:
    """A page element identified by the selector it was found with."""

    def __init__(self, selector, attributes=None, stale=False):
        self.selector = selector
        self.attributes = attributes or {}
        self.stale = stale

    def attribute(self, name):
        if self.stale:
            raise StaleElementReferenceException("element is not attached to the page document")
        return self.attributes.get(name)


class FakeEntry:
    """One rendered row of the member list."""

    def __init__(self, label=None, bot=False, avatar=True, stale=False):
        self.children = {}
        if avatar:
            self.children[SELECTORS.member_avatar] = FakeNode(
                SELECTORS.member_avatar, {"aria-label": label}, stale=stale
            )
        if bot:
            self.children[SELECTORS.bot_tag] = FakeNode(SELECTORS.bot_tag)

    def child(self, selector):
        try:
            return self.children[selector]
        except KeyError:
            raise NoSuchElementException(f"no child matching {selector}") from None


def member(label, bot=False):
    return FakeEntry(label=label, bot=bot)


class FakeSession:
    """Scripted session: each find_all on the member list returns the next frame.

    The last frame repeats once the script runs out.
    """

    def __init__(self, frames=None, fail_find_all_on=None, missing=(), fail_clicks=(),
                 fail_scroll=False, fail_navigate=False, close_error=None, find_all_error=None):
        self.frames = frames or [[]]
        self.fail_find_all_on = fail_find_all_on
        self.find_all_error = find_all_error
        self.missing = set(missing)
        self.fail_clicks = set(fail_clicks)
        self.fail_scroll = fail_scroll
        self.fail_navigate = fail_navigate
        self.close_error = close_error
        self.find_all_calls = 0
        self.navigated = []
        self.typed = []
        self.clicked = []
        self.scripts = []
        self.closed = 0

    def navigate(self, url):
        if self.fail_navigate:
            raise WebDriverException("net::ERR_NAME_NOT_RESOLVED")
        self.navigated.append(url)

    def find_one(self, selector, parent=None):
        if parent is not None:
            return parent.child(selector)
        if selector in self.missing:
            raise NoSuchElementException(f"no element matching {selector}")
        return FakeNode(selector)

    def find_all(self, selector, parent=None):
        index = self.find_all_calls
        self.find_all_calls += 1
        if self.fail_find_all_on is not None and index == self.fail_find_all_on:
            raise self.find_all_error or WebDriverException("invalid session id")
        return list(self.frames[min(index, len(self.frames) - 1)])

    def get_attribute(self, element, name):
        return element.attribute(name)

    def click(self, element):
        if element.selector in self.fail_clicks:
            raise ElementClickInterceptedException("element click intercepted")
        self.clicked.append(element.selector)

    def send_keys(self, element, text):
        self.typed.append((element.selector, text))

    def run_script(self, script, *args):
        if self.fail_scroll:
            raise JavascriptException("Cannot set properties of null")
        self.scripts.append((script, args))

    def close(self):
        self.closed += 1
        if self.close_error is not None:
            raise self.close_error


def make_config(**overrides):
    values = dict(
        email="me@example.com",
        password="hunter2",
        server_name="Guild",
        max_iterations=3,
        scroll_delay=0,
        load_time=0,
        server_load_time=0,
        restart=RestartPolicy(max_attempts=1, backoff=0),
    )
    values.update(overrides)
    return ScraperConfig(**values)


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def clock():
    """A clock that advances one minute per call."""
    start = datetime(2024, 3, 1, 12, 0)
    ticks = count()
    return lambda: start + timedelta(minutes=next(ticks))
