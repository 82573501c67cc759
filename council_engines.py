"""Engine and submitter registries.

Each engine is a value object holding the page-side script that reads its
current answer. Extraction scripts must be pure reads: they run under the
polling loop, many times per engine. Activation scripts click a send control
and run exactly once per engine per invocation.

When an engine's UI changes, only its entry here (or in the JSON override
file) needs updating.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Iterable, Optional, Sequence

from council_errors import ConfigError
from council_models import Tab

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineProfile:
    name: str
    slug: str
    url_match: re.Pattern
    extract_script: str

    def matches(self, url: str) -> bool:
        return bool(self.url_match.search(url or ""))


@dataclass(frozen=True)
class SubmitterProfile:
    name: str
    url_match: re.Pattern
    activation_script: str
    awaits_async_result: bool = False

    def matches(self, url: str) -> bool:
        return bool(self.url_match.search(url or ""))


_CHATGPT_EXTRACT = """
(() => {
  const selectors = [
    '[data-message-author-role="assistant"]',
    'article[data-testid^="conversation-turn-"] .markdown',
    '.agent-turn .markdown',
    '[class*="markdown"]',
  ];
  for (const sel of selectors) {
    const els = document.querySelectorAll(sel);
    if (els.length > 0) {
      const last = els[els.length - 1];
      const prose = last.querySelector('.markdown, .prose') || last;
      return prose.innerText.trim();
    }
  }
  return '';
})()
"""

_CLAUDE_EXTRACT = """
(() => {
  const selectors = [
    'div.standard-markdown',
    '[class*="font-claude-response"]',
    '[class*="claude-response"]',
    '[class*="markdown"]',
  ];
  let best = '';
  for (const sel of selectors) {
    for (const el of document.querySelectorAll(sel)) {
      const text = el.innerText.trim();
      if (text.length > best.length) best = text;
    }
  }
  return best.length > 20 ? best : '';
})()
"""

_PERPLEXITY_EXTRACT = """
(() => {
  const selectors = [
    '[dir="auto"] .prose',
    '.relative.default .break-words',
    'article',
  ];
  for (const sel of selectors) {
    const els = document.querySelectorAll(sel);
    if (els.length > 0) {
      const text = els[els.length - 1].innerText.trim();
      if (text.length > 20) return text;
    }
  }
  const main = document.querySelector('main');
  if (main) {
    const text = main.innerText.trim();
    if (text.length > 100) return text;
  }
  return '';
})()
"""

_AI_STUDIO_EXTRACT = """
(() => {
  const nodes = document.querySelectorAll('ms-cmark-node');
  if (nodes.length > 0) {
    const parent = nodes[0].closest('.model-response-text, .chat-turn, [class*="response"]');
    if (parent) {
      const text = parent.innerText.trim();
      if (text.length > 20) return text;
    }
    const joined = [...nodes].map(n => n.innerText.trim()).filter(t => t).join('\\n');
    if (joined.length > 20) return joined;
  }
  for (const sel of ['model-response', '[class*="model-response"]', 'ms-chat-turn-container']) {
    const els = document.querySelectorAll(sel);
    if (els.length > 0) {
      const text = els[els.length - 1].innerText.trim();
      if (text.length > 20) return text;
    }
  }
  return '';
})()
"""

_CHATGPT_SUBMIT = """
(() => {
  const btn = document.querySelector('button[data-testid="send-button"]');
  if (btn && !btn.disabled) { btn.click(); return 'clicked send-button'; }
  return 'no send button found or disabled';
})()
"""

_AI_STUDIO_SUBMIT = """
(() => {
  for (const b of document.querySelectorAll('button')) {
    const text = b.innerText.trim().toLowerCase();
    if (text === 'ok, got it' || text === 'dismiss' || text === 'accept') b.click();
  }
  return new Promise(resolve => {
    setTimeout(() => {
      for (const b of document.querySelectorAll('button')) {
        if (b.innerText.trim().startsWith('Run')) {
          b.click();
          resolve('clicked Run button');
          return;
        }
      }
      resolve('no Run button found');
    }, 500);
  });
})()
"""

_CLAUDE_SUBMIT = """
(() => {
  const btn = document.querySelector('button[aria-label="Send message"]');
  if (btn && !btn.disabled) { btn.click(); return 'clicked send-message'; }
  const fallback = document.querySelector('button[aria-label*="Send"]');
  if (fallback && !fallback.disabled) { fallback.click(); return 'clicked fallback send'; }
  return 'no send button found';
})()
"""

ENGINES: tuple[EngineProfile, ...] = (
    EngineProfile("ChatGPT", "chatgpt", re.compile(r"chatgpt\.com"), _CHATGPT_EXTRACT),
    EngineProfile("Claude", "claude", re.compile(r"claude\.ai"), _CLAUDE_EXTRACT),
    EngineProfile("Perplexity", "perplexity", re.compile(r"perplexity\.ai"), _PERPLEXITY_EXTRACT),
    EngineProfile(
        "Google AI Studio", "google-ai-studio",
        re.compile(r"aistudio\.google\.com"), _AI_STUDIO_EXTRACT,
    ),
)

# Perplexity submits itself when the prompt arrives via URL.
SUBMITTERS: tuple[SubmitterProfile, ...] = (
    SubmitterProfile("ChatGPT", re.compile(r"chatgpt\.com"), _CHATGPT_SUBMIT),
    SubmitterProfile(
        "Google AI Studio", re.compile(r"aistudio\.google\.com"),
        _AI_STUDIO_SUBMIT, awaits_async_result=True,
    ),
    SubmitterProfile("Claude", re.compile(r"claude\.ai"), _CLAUDE_SUBMIT),
)

# Tab whose title carries the query when no tab URL does.
QUERY_TITLE_PATTERN = re.compile(r"perplexity\.ai/search")


def find_tab(tabs: Iterable[Tab], pattern: re.Pattern) -> Optional[Tab]:
    """First page tab whose URL matches the pattern, in listing order."""
    for tab in tabs:
        if tab.is_page and pattern.search(tab.url or ""):
            return tab
    return None


def engine_by_slug(slug: str, engines: Sequence[EngineProfile] = ENGINES) -> Optional[EngineProfile]:
    for engine in engines:
        if engine.slug == slug:
            return engine
    return None


def _compile(pattern: str, where: str) -> re.Pattern:
    try:
        return re.compile(pattern)
    except re.error as e:
        raise ConfigError(f"Invalid url_match for {where}: {e}") from e


def _read_overrides(path: Optional[Path]) -> dict:
    if path is None:
        return {}
    path = Path(path).expanduser()
    if not path.exists():
        logger.warning("Engines file not found at %s, using built-in scripts", path)
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in engines file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Engines file {path} must contain a JSON object")
    return data


def load_engines(path: Optional[Path] = None) -> tuple[EngineProfile, ...]:
    """Built-in engines with per-slug overrides from the engines file applied."""
    overrides = _read_overrides(path).get("engines", {})
    known = {e.slug for e in ENGINES}
    for slug in overrides:
        if slug not in known:
            logger.warning("Ignoring override for unknown engine '%s'", slug)

    engines = []
    for engine in ENGINES:
        entry = overrides.get(engine.slug)
        if not entry:
            engines.append(engine)
            continue
        changes = {}
        if entry.get("extract_script"):
            changes["extract_script"] = entry["extract_script"]
        if entry.get("url_match"):
            changes["url_match"] = _compile(entry["url_match"], engine.slug)
        if entry.get("name"):
            changes["name"] = entry["name"]
        engines.append(replace(engine, **changes))
        logger.debug("Engine '%s' overridden: %s", engine.slug, sorted(changes))
    return tuple(engines)


def load_submitters(path: Optional[Path] = None) -> tuple[SubmitterProfile, ...]:
    """Built-in submitters with overrides keyed by engine name."""
    overrides = _read_overrides(path).get("submitters", {})
    submitters = []
    for sub in SUBMITTERS:
        entry = overrides.get(sub.name)
        if not entry:
            submitters.append(sub)
            continue
        changes = {}
        if entry.get("activation_script"):
            changes["activation_script"] = entry["activation_script"]
        if entry.get("url_match"):
            changes["url_match"] = _compile(entry["url_match"], sub.name)
        if "awaits_async_result" in entry:
            changes["awaits_async_result"] = bool(entry["awaits_async_result"])
        submitters.append(replace(sub, **changes))
    return tuple(submitters)
