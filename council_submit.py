"""Click the send control in every engine tab that has a prefilled prompt."""

from __future__ import annotations

import logging
from typing import Callable, Sequence

from council_config import CollectorConfig
from council_engines import SubmitterProfile, find_tab
from council_errors import ExtractionError
from council_models import SubmitResult, Tab

logger = logging.getLogger(__name__)


async def submit_all(
    tabs: Sequence[Tab],
    submitters: Sequence[SubmitterProfile],
    session_factory: Callable,
    config: CollectorConfig,
) -> list[SubmitResult]:
    """Run each submitter's activation script once, in registry order.

    A failure in one tab is recorded and does not stop the others.
    """
    results: list[SubmitResult] = []
    for sub in submitters:
        tab = find_tab(tabs, sub.url_match)
        if tab is None:
            logger.info("Skip %s: no tab found", sub.name)
            results.append(SubmitResult(engine_name=sub.name, status="no_tab"))
            continue

        try:
            async with session_factory(tab, config.browser) as session:
                value = await session.evaluate(
                    sub.activation_script,
                    await_promise=sub.awaits_async_result,
                )
        except ExtractionError as e:
            logger.warning("%s: submit failed: %s", sub.name, e)
            results.append(SubmitResult(engine_name=sub.name, status="error", detail=str(e)))
            continue
        except Exception as e:
            logger.error("%s: submit failed: %s", sub.name, e, exc_info=True)
            results.append(SubmitResult(
                engine_name=sub.name, status="error", detail=f"{type(e).__name__}: {e}",
            ))
            continue

        detail = value if isinstance(value, str) and value else "done"
        logger.info("%s: %s", sub.name, detail)
        results.append(SubmitResult(engine_name=sub.name, status="ok", detail=detail))
    return results
