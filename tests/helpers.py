"""Shared test helpers for the collector test suite.

Fixtures are in conftest.py. This module holds the fakes that stand in for
Chrome: tabs, page sessions, a session factory, a virtual clock and a
synthesizer.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional, Sequence

from council_errors import ExtractionError, SynthesisError
from council_models import Tab

TITLE_SCRIPT = "document.title || ''"

CHATGPT_URL = "https://chatgpt.com/c/abc123"
CLAUDE_URL = "https://claude.ai/chat/def456"
PERPLEXITY_URL = "https://www.perplexity.ai/search?q=What+is+the+capital+of+France%3F"
AI_STUDIO_URL = "https://aistudio.google.com/prompts/new_chat"


def make_tab(tab_id: str, url: str, title: str = "", type: str = "page") -> Tab:
    return Tab(id=tab_id, type=type, url=url, title=title)


def engine_tabs(*, ai_studio: bool = True) -> list[Tab]:
    """One page tab per built-in engine, in registry order."""
    tabs = [
        make_tab("t-chatgpt", CHATGPT_URL, "ChatGPT"),
        make_tab("t-claude", CLAUDE_URL, "Claude"),
        make_tab("t-perplexity", PERPLEXITY_URL, "What is the capital of France? - Perplexity"),
    ]
    if ai_studio:
        tabs.append(make_tab("t-aistudio", AI_STUDIO_URL, "Google AI Studio"))
    return tabs


class FakeClock:
    """Virtual monotonic clock; sleep() advances it instead of waiting."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeSession:
    """Stands in for PageSession.

    Each evaluate() of a non-title script returns the next item of values;
    Exception items are raised instead. The last item repeats once the
    sequence is exhausted.
    """

    def __init__(self, values: Sequence, title: str = "") -> None:
        self.values = list(values)
        self.title = title
        self.scripts: list[str] = []
        self.returned: list = []
        self.closed = False
        self._i = 0

    async def evaluate(self, script, return_by_value=True, await_promise=False):
        self.scripts.append(script)
        if script == TITLE_SCRIPT:
            return self.title
        item = self.values[min(self._i, len(self.values) - 1)]
        self._i += 1
        if isinstance(item, Exception):
            raise item
        self.returned.append(item)
        return item


def stable(text: str) -> FakeSession:
    return FakeSession([text])


def always_failing() -> FakeSession:
    return FakeSession([ExtractionError("Page script threw: TypeError")])


def fake_session_factory(sessions: dict):
    """Session factory keyed by tab id. Exception values are raised on open."""
    opened: list[str] = []

    @asynccontextmanager
    async def factory(tab, browser):
        session = sessions.get(tab.id)
        if session is None:
            raise ExtractionError(f"Tab {tab.id} is no longer open")
        if isinstance(session, Exception):
            raise session
        opened.append(tab.id)
        try:
            yield session
        finally:
            session.closed = True

    factory.opened = opened
    return factory


class FakeSynthesizer:
    def __init__(self, text: str = "## Agreement\nAll engines say Paris.",
                 error: Optional[str] = None) -> None:
        self.text = text
        self.error = error
        self.calls: list[tuple] = []

    def run(self, query, files):
        self.calls.append((query, list(files)))
        if self.error:
            raise SynthesisError(self.error)
        return self.text
