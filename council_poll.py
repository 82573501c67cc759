"""Wait for an externally rendered value to stop changing.

None of the engines signal that an answer is finished, so completion is
inferred by reading the rendered text repeatedly until it holds still.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from council_engines import EngineProfile
from council_models import ExtractionResult, ExtractionStatus

logger = logging.getLogger(__name__)

NO_ANSWER = "no answer found"


@dataclass(frozen=True)
class Convergence:
    value: str
    stable: bool
    polls: int


def _log_poll_error(exc: Exception) -> None:
    logger.warning("Poll failed, retrying: %s", exc)


async def converge(
    read: Callable[[], Awaitable[str]],
    *,
    interval: float,
    threshold: int,
    timeout: float,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_error: Callable[[Exception], None] = _log_poll_error,
) -> Convergence:
    """Poll read() until its non-empty result repeats threshold times in a row.

    The first sighting of a value does not count; it takes threshold further
    identical reads to converge. Empty reads reset the count but never
    replace the last seen value. read() errors go to on_error and polling
    continues until the deadline.
    """
    deadline = clock() + timeout
    last_value = ""
    stable_count = 0
    polls = 0

    while clock() < deadline:
        polls += 1
        try:
            value = await read()
        except Exception as e:
            on_error(e)
            value = ""

        if value and value == last_value:
            stable_count += 1
            if stable_count >= threshold:
                return Convergence(value=last_value, stable=True, polls=polls)
        else:
            stable_count = 0
            if value:
                last_value = value

        await sleep(interval)

    return Convergence(value=last_value, stable=False, polls=polls)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)
    return value.strip()


async def extract_stable(
    session,
    engine: EngineProfile,
    *,
    timeout: float,
    interval: float,
    threshold: int,
    url: Optional[str] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> ExtractionResult:
    """Collect one engine's answer from an open page session."""

    async def read() -> str:
        return _as_text(await session.evaluate(engine.extract_script))

    def on_error(exc: Exception) -> None:
        logger.warning("%s: poll failed, retrying: %s", engine.name, exc,
                       extra={"engine": engine.slug})

    started = clock()
    outcome = await converge(
        read,
        interval=interval,
        threshold=threshold,
        timeout=timeout,
        clock=clock,
        sleep=sleep,
        on_error=on_error,
    )
    elapsed = clock() - started

    common = dict(
        engine_name=engine.name,
        engine_slug=engine.slug,
        url=url,
        elapsed_s=elapsed,
        polls=outcome.polls,
    )
    if outcome.stable:
        logger.info("%s: stable after %d polls (%d chars, %.1fs)",
                    engine.name, outcome.polls, len(outcome.value), elapsed,
                    extra={"engine": engine.slug})
        return ExtractionResult(status=ExtractionStatus.OK, text=outcome.value, **common)

    if outcome.value:
        logger.warning("%s: timed out after %.0fs with unstable text (%d chars)",
                       engine.name, timeout, len(outcome.value),
                       extra={"engine": engine.slug})
        return ExtractionResult(
            status=ExtractionStatus.TIMEOUT_PARTIAL, text=outcome.value, **common
        )

    logger.warning("%s: %s within %.0fs", engine.name, NO_ANSWER, timeout,
                   extra={"engine": engine.slug})
    return ExtractionResult(status=ExtractionStatus.FAILED, error=NO_ANSWER, **common)
