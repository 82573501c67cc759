"""Collect answers from AI chat tabs open in a debuggable Chrome.

Pipeline per run:
    discover tabs -> recover query -> per engine (match tab, poll until the
    answer stops changing, write <slug>.md) -> synthesis when at least two
    engines answered -> run log + report hook.

Usage:
    council-collect collect [--timeout N] [--query Q] [--no-synthesis] [--parallel N]
    council-collect submit
    council-collect search [--wait N]
    council-collect tabs | engines | health
    council-collect runs [FOLDER [FILE]]
    council-collect metrics [--json]

Exit codes: 0 success, 1 no engine answered, 2 Chrome unreachable,
3 configuration error.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Sequence
from urllib.parse import parse_qs, urlsplit

import council_cdp
from council_cdp import read_title
from council_config import DEFAULT_CONFIG_PATH, BrowserConfig, CollectorConfig, load_config, validate_config
from council_engines import (
    QUERY_TITLE_PATTERN,
    EngineProfile,
    SubmitterProfile,
    find_tab,
    load_engines,
    load_submitters,
)
from council_errors import ConfigError, ConnectivityError, ExtractionError, SynthesisError
from council_events import COMPLETE, ENGINE_DONE, STARTED, SYNTHESIZING, ProgressBus
from council_logging import setup_logging
from council_metrics import compute_metrics, format_report, load_runs
from council_models import CollectionRun, ExtractionResult, ExtractionStatus, SubmitResult, Tab
from council_poll import extract_stable
from council_store import RunStore, append_run_log
from council_submit import submit_all
from council_synthesis import Synthesizer

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_NO_ANSWERS = 1
EXIT_CONNECTIVITY = 2
EXIT_CONFIG = 3


def _query_param(url: str) -> str:
    try:
        params = parse_qs(urlsplit(url).query)
    except ValueError:
        return ""
    for key in ("q", "prompt"):
        values = params.get(key)
        if values and values[0]:
            return values[0]
    return ""


async def recover_query(
    tabs: Sequence[Tab],
    session_factory: Callable,
    browser: BrowserConfig,
    fallback: str = "[clipboard query]",
) -> str:
    """Best guess at the prompt the tabs were opened with. Never raises.

    Order: a q/prompt URL parameter longer than 10 chars on any page tab,
    then the Perplexity search tab's title, then the fallback placeholder.
    """
    for tab in tabs:
        if not tab.is_page:
            continue
        value = _query_param(tab.url)
        if len(value) > 10:
            return value

    tab = find_tab(tabs, QUERY_TITLE_PATTERN)
    if tab is not None:
        title = ""
        try:
            async with session_factory(tab, browser) as session:
                title = await read_title(session) or ""
        except Exception as e:
            logger.warning("Could not read query from tab title: %s", e)
            title = tab.title or ""
        if " - " in title:
            recovered = " - ".join(title.split(" - ")[:-1]).strip()
            if recovered:
                return recovered
        if len(title) > 5:
            return title.strip()

    return fallback


class CollectionPipeline:
    """One configured collector. Each run() call is an independent collection run."""

    def __init__(
        self,
        config: CollectorConfig,
        engines: Optional[Sequence[EngineProfile]] = None,
        *,
        list_tabs: Optional[Callable[[BrowserConfig], list[Tab]]] = None,
        session_factory: Optional[Callable] = None,
        store: Optional[RunStore] = None,
        synthesizer=None,
        bus: Optional[ProgressBus] = None,
        report_hook: Optional[Callable[[CollectionRun], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.engines = tuple(engines) if engines is not None else load_engines(config.output.engines_path)
        self.list_tabs = list_tabs or council_cdp.list_tabs
        self.session_factory = session_factory or council_cdp.open_session
        self.store = store or RunStore(config.output.output_dir)
        self.synthesizer = synthesizer or Synthesizer(config.synthesis)
        self.bus = bus or ProgressBus()
        self.report_hook = report_hook
        self.clock = clock
        self.sleep = sleep

    async def discover(self) -> list[Tab]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.list_tabs, self.config.browser)

    async def run(self, query: Optional[str] = None) -> CollectionRun:
        """Collect every registered engine once. ConnectivityError aborts before any file is written."""
        tabs = await self.discover()
        logger.info("Found %d tabs", len(tabs))

        if not query:
            query = await recover_query(
                tabs, self.session_factory, self.config.browser,
                fallback=self.config.output.fallback_query,
            )
        logger.info("Query: %s", query[:80])

        started_at = datetime.now(timezone.utc)
        folder_id, run_dir = self.store.create_run(query, started_at)
        run = CollectionRun(query=query, folder_id=folder_id, run_dir=run_dir, started_at=started_at)
        self.store.write_prompt(run_dir, query, started_at)
        self.bus.publish(
            STARTED, query=query, engines=[e.name for e in self.engines], folder_id=folder_id,
        )

        for result in await self._extract_all(run, tabs):
            run.add_result(result)

        await self._synthesize(run)

        run.close()
        self._report(run)
        self.bus.publish(
            COMPLETE,
            folder_id=folder_id,
            results=run.summary()["responses"],
            synthesis=run.synthesis_file,
        )
        return run

    async def search(
        self,
        submitters: Sequence[SubmitterProfile],
        wait: Optional[float] = None,
        query: Optional[str] = None,
    ) -> tuple[list[SubmitResult], CollectionRun]:
        """Click send in every engine tab, give them a head start, then collect."""
        tabs = await self.discover()
        submitted = await submit_all(tabs, submitters, self.session_factory, self.config)
        wait = self.config.polling.submit_wait_seconds if wait is None else wait
        logger.info("Submitted to %d engines, waiting %.0fs before collecting",
                    sum(1 for s in submitted if s.status == "ok"), wait)
        await self.sleep(wait)
        return submitted, await self.run(query)

    async def _extract_all(self, run: CollectionRun, tabs: Sequence[Tab]) -> list[ExtractionResult]:
        limit = self.config.polling.max_parallel
        if limit <= 1:
            return [await self._collect_engine(engine, tabs, run) for engine in self.engines]

        semaphore = asyncio.Semaphore(limit)

        async def bounded(engine: EngineProfile) -> ExtractionResult:
            async with semaphore:
                return await self._collect_engine(engine, tabs, run)

        # gather keeps registry order whatever the completion order
        return list(await asyncio.gather(*(bounded(e) for e in self.engines)))

    async def _collect_engine(
        self, engine: EngineProfile, tabs: Sequence[Tab], run: CollectionRun,
    ) -> ExtractionResult:
        tab = find_tab(tabs, engine.url_match)
        if tab is None:
            logger.info("%s: no matching tab", engine.name, extra={"engine": engine.slug})
            result = ExtractionResult(
                engine_name=engine.name, engine_slug=engine.slug,
                status=ExtractionStatus.NO_TAB, error="no matching tab",
            )
        else:
            logger.info("%s: polling %s", engine.name, tab.url[:80], extra={"engine": engine.slug})
            polling = self.config.polling
            try:
                async with self.session_factory(tab, self.config.browser) as session:
                    result = await extract_stable(
                        session, engine,
                        timeout=polling.timeout_for(engine.slug),
                        interval=polling.poll_interval_seconds,
                        threshold=polling.stable_checks,
                        url=tab.url,
                        clock=self.clock,
                        sleep=self.sleep,
                    )
            except ExtractionError as e:
                logger.error("%s: session failed: %s", engine.name, e, extra={"engine": engine.slug})
                result = ExtractionResult(
                    engine_name=engine.name, engine_slug=engine.slug,
                    status=ExtractionStatus.FAILED, url=tab.url, error=str(e),
                )
            except Exception as e:
                logger.error("%s: unexpected session error: %s", engine.name, e,
                             exc_info=True, extra={"engine": engine.slug})
                result = ExtractionResult(
                    engine_name=engine.name, engine_slug=engine.slug,
                    status=ExtractionStatus.FAILED, url=tab.url,
                    error=f"{type(e).__name__}: {e}",
                )

        try:
            path = self.store.write_engine_result(run.run_dir, result, run.query)
        except OSError as e:
            logger.error("%s: could not save answer: %s", engine.name, e, extra={"engine": engine.slug})
        else:
            result = result.model_copy(update={"file": path.name})
        self.bus.publish(
            ENGINE_DONE, engine=engine.name, status=result.status.value, char_count=result.char_count,
        )
        return result

    async def _synthesize(self, run: CollectionRun) -> None:
        cfg = self.config.synthesis
        answered = [r for r in run.ok_results() if r.file]
        if not cfg.enabled:
            logger.info("Synthesis disabled")
            return
        if len(answered) < cfg.min_successful:
            logger.info("Skipping synthesis: %d of %d engines answered (need %d)",
                        len(answered), len(run.results), cfg.min_successful)
            return

        self.bus.publish(SYNTHESIZING)
        files = [run.run_dir / r.file for r in answered]
        loop = asyncio.get_running_loop()
        try:
            text = await loop.run_in_executor(None, self.synthesizer.run, run.query, files)
        except SynthesisError as e:
            logger.error("Synthesis failed: %s", e)
            run.synthesis_error = str(e)
            return

        try:
            path = self.store.write_synthesis(run.run_dir, run.query, [r.engine_name for r in answered], text)
        except OSError as e:
            logger.error("Could not save synthesis: %s", e)
            run.synthesis_error = f"Could not save synthesis: {e}"
            return
        run.synthesis = text
        run.synthesis_file = path.name
        logger.info("Synthesis saved (%d chars)", len(text))

    def _report(self, run: CollectionRun) -> None:
        append_run_log(run.summary(), self.config.output.run_log_path)
        if self.report_hook is None:
            return
        try:
            self.report_hook(run)
        except Exception:
            logger.warning("Report hook failed for %s", run.folder_id, exc_info=True)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _print_run(run: CollectionRun) -> None:
    print(f"\nRun: {run.run_dir}")
    for r in run.results:
        detail = f"{r.char_count} chars" if r.text else (r.error or "")
        print(f"  {r.status.value:<16} {r.engine_name:<18} {detail}")
    if run.synthesis_file:
        print(f"  synthesis        {run.synthesis_file}")
    elif run.synthesis_error:
        print(f"  synthesis failed: {run.synthesis_error}")
    if not run.successful:
        print("\nNo responses collected from any engine.")


def _print_submitted(results: Sequence[SubmitResult]) -> None:
    for s in results:
        print(f"  {s.engine_name}: {s.status}{' - ' + s.detail if s.detail else ''}")


def _cmd_tabs(config: CollectorConfig, engines: Sequence[EngineProfile]) -> int:
    for tab in council_cdp.list_tabs(config.browser):
        if not tab.is_page:
            continue
        engine = next((e.name for e in engines if e.matches(tab.url)), "-")
        print(f"{engine:<18} {tab.title[:50]:<50} {tab.url[:80]}")
    return EXIT_OK


def _cmd_runs(config: CollectorConfig, folder: Optional[str], name: Optional[str]) -> int:
    store = RunStore(config.output.output_dir)
    try:
        if folder and name:
            print(store.read_file(folder, name))
        elif folder:
            print(json.dumps(store.read_run(folder), indent=2))
        else:
            runs = store.list_runs()
            print(json.dumps({"count": len(runs), "folders": runs}, indent=2))
    except (FileNotFoundError, ValueError) as e:
        logger.error("%s", e)
        return EXIT_CONFIG
    return EXIT_OK


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="council-collect",
        description="Collect and synthesize answers from AI chat tabs in Chrome",
    )
    parser.add_argument("--config", default=None, help=f"Path to config.json (default: {DEFAULT_CONFIG_PATH})")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--json-log", action="store_true", help="Output structured JSON logs")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_collect_options(p: argparse.ArgumentParser) -> None:
        p.add_argument("--timeout", type=float, default=None,
                       help="Timeout in seconds for every engine (replaces per-engine overrides)")
        p.add_argument("--query", default=None, help="Query text (skips recovery from tabs)")
        p.add_argument("--no-synthesis", action="store_true", help="Skip cross-engine synthesis")
        p.add_argument("--parallel", type=int, default=None, help="Engines polled concurrently")

    add_collect_options(sub.add_parser("collect", help="Collect answers from open tabs"))
    sub.add_parser("submit", help="Click send in every engine tab")
    search = sub.add_parser("search", help="Submit, wait, then collect")
    add_collect_options(search)
    search.add_argument("--wait", type=float, default=None, help="Seconds between submit and collect")
    sub.add_parser("tabs", help="List page tabs and the engine each matches")
    sub.add_parser("engines", help="List registered engines")
    sub.add_parser("health", help="Check the Chrome debugging endpoint")
    runs = sub.add_parser("runs", help="List past runs, or show one")
    runs.add_argument("folder", nargs="?")
    runs.add_argument("file", nargs="?")
    metrics = sub.add_parser("metrics", help="Run log analytics")
    metrics.add_argument("--json", action="store_true", help="Output as JSON")
    return parser


def _apply_overrides(config: CollectorConfig, args: argparse.Namespace) -> None:
    if getattr(args, "timeout", None) is not None:
        config.polling.engine_timeout_seconds = args.timeout
        config.polling.engine_timeout_overrides = {}
    if getattr(args, "parallel", None) is not None:
        config.polling.max_parallel = max(1, args.parallel)
    if getattr(args, "no_synthesis", False):
        config.synthesis.enabled = False


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry point."""
    args = _build_parser().parse_args(argv)

    config_result = load_config(args.config or DEFAULT_CONFIG_PATH)
    setup_logging(
        verbose=args.verbose,
        json_log=args.json_log,
        redact_patterns=config_result.data.security.log_redact_patterns if config_result.success else (),
    )
    if not config_result.success:
        logger.error("Config error: %s", config_result.error)
        return EXIT_CONFIG
    config = config_result.data
    _apply_overrides(config, args)

    try:
        engines = load_engines(config.output.engines_path)
        submitters = load_submitters(config.output.engines_path)
    except ConfigError as e:
        logger.error("Config error: %s", e)
        return EXIT_CONFIG

    if args.command == "engines":
        for e in engines:
            print(f"{e.slug:<18} {e.name:<18} {e.url_match.pattern}")
        return EXIT_OK
    if args.command == "health":
        status = council_cdp.check_health(config.browser)
        print(json.dumps({"cdp": f"{config.browser.cdp_host}:{config.browser.cdp_port}", **status}))
        return EXIT_OK if status["connected"] else EXIT_CONNECTIVITY
    if args.command == "runs":
        return _cmd_runs(config, args.folder, args.file)
    if args.command == "metrics":
        m = compute_metrics(load_runs(config.output.run_log_path))
        print(json.dumps(m, indent=2) if args.json else format_report(m))
        return EXIT_OK

    errors, warnings = validate_config(config)
    for w in warnings:
        logger.warning("%s", w)
    if errors:
        for err in errors:
            logger.error("%s", err)
        return EXIT_CONFIG

    try:
        if args.command == "tabs":
            return _cmd_tabs(config, engines)
        pipeline = CollectionPipeline(config, engines)
        if args.command == "submit":
            tabs = council_cdp.list_tabs(config.browser)
            _print_submitted(asyncio.run(
                submit_all(tabs, submitters, pipeline.session_factory, config)
            ))
            return EXIT_OK
        if args.command == "search":
            submitted, run = asyncio.run(pipeline.search(submitters, wait=args.wait, query=args.query))
            _print_submitted(submitted)
        else:
            run = asyncio.run(pipeline.run(args.query))
    except ConnectivityError as e:
        logger.error("%s", e)
        return EXIT_CONNECTIVITY

    _print_run(run)
    return EXIT_OK if run.successful else EXIT_NO_ANSWERS


if __name__ == "__main__":
    sys.exit(main())
