"""Tests for the collection pipeline, query recovery, search and the CLI."""

import asyncio
import json
import logging
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from council_collect import (
    EXIT_CONFIG,
    EXIT_CONNECTIVITY,
    EXIT_NO_ANSWERS,
    EXIT_OK,
    CollectionPipeline,
    _apply_overrides,
    _build_parser,
    main,
    recover_query,
)
from council_config import BrowserConfig
from council_engines import SUBMITTERS
from council_errors import ConnectivityError, ExtractionError
from council_events import COMPLETE, ENGINE_DONE, STARTED, SYNTHESIZING, ProgressBus
from council_models import ExtractionStatus
from council_store import read_run_log
from council_synthesis import Synthesizer
from helpers import (
    CHATGPT_URL,
    FakeSession,
    FakeSynthesizer,
    always_failing,
    engine_tabs,
    fake_session_factory,
    make_tab,
    stable,
)

QUERY = "What is the capital of France?"


def _pipeline(config, clock, sessions, tabs=None, synthesizer=None, **kw) -> CollectionPipeline:
    tabs = engine_tabs() if tabs is None else tabs
    return CollectionPipeline(
        config,
        list_tabs=lambda browser: tabs,
        session_factory=fake_session_factory(sessions),
        synthesizer=synthesizer or FakeSynthesizer(),
        clock=clock.time,
        sleep=clock.sleep,
        **kw,
    )


def _all_stable() -> dict:
    return {
        "t-chatgpt": stable("ChatGPT says Paris."),
        "t-claude": stable("Claude says Paris."),
        "t-perplexity": stable("Perplexity says Paris [1]."),
        "t-aistudio": stable("Gemini says Paris."),
    }


class TestEndToEnd:
    def test_three_answers_one_missing_tab(self, config, clock) -> None:
        synth = FakeSynthesizer()
        sessions = _all_stable()
        pipeline = _pipeline(config, clock, sessions, tabs=engine_tabs(ai_studio=False), synthesizer=synth)

        run = asyncio.run(pipeline.run())

        assert run.query == QUERY
        assert [r.status for r in run.results] == [
            ExtractionStatus.OK, ExtractionStatus.OK, ExtractionStatus.OK, ExtractionStatus.NO_TAB,
        ]
        assert run.successful
        assert sorted(p.name for p in run.run_dir.iterdir()) == [
            "chatgpt.md", "claude.md", "google-ai-studio.md",
            "perplexity.md", "prompt.md", "synthesis.md",
        ]
        assert "*No response collected*" in (run.run_dir / "google-ai-studio.md").read_text(encoding="utf-8")
        assert run.synthesis_file == "synthesis.md"
        assert run.finished_at is not None

        (query, files), = synth.calls
        assert query == QUERY
        assert [f.name for f in files] == ["chatgpt.md", "claude.md", "perplexity.md"]

    def test_every_engine_file_is_recorded(self, config, clock) -> None:
        run = asyncio.run(_pipeline(config, clock, _all_stable()).run(QUERY))
        assert [r.file for r in run.results] == [
            "chatgpt.md", "claude.md", "perplexity.md", "google-ai-studio.md",
        ]

    def test_sessions_are_closed(self, config, clock) -> None:
        sessions = _all_stable()
        asyncio.run(_pipeline(config, clock, sessions).run(QUERY))
        assert all(s.closed for s in sessions.values())

    def test_run_log_summary(self, config, clock) -> None:
        run = asyncio.run(_pipeline(config, clock, _all_stable()).run(QUERY))
        entry, = read_run_log(config.output.run_log_path)
        assert entry["folder_id"] == run.folder_id
        assert entry["successful"] is True
        assert [r["status"] for r in entry["responses"]] == ["ok"] * 4
        assert entry["synthesis_file"] == "synthesis.md"


class TestFailures:
    def test_connectivity_error_creates_nothing(self, config, clock) -> None:
        def refuse(browser):
            raise ConnectivityError("Cannot reach Chrome")

        pipeline = CollectionPipeline(
            config, list_tabs=refuse, session_factory=fake_session_factory({}),
            synthesizer=FakeSynthesizer(), clock=clock.time, sleep=clock.sleep,
        )
        with pytest.raises(ConnectivityError):
            asyncio.run(pipeline.run(QUERY))
        assert not config.output.output_dir.exists()
        assert not config.output.run_log_path.exists()

    def test_engine_throwing_every_poll_is_isolated(self, config, clock) -> None:
        sessions = _all_stable()
        sessions["t-claude"] = always_failing()
        run = asyncio.run(_pipeline(config, clock, sessions).run(QUERY))

        claude = run.results[1]
        assert claude.status == ExtractionStatus.FAILED
        assert claude.error == "no answer found"
        assert [r.status for r in run.results].count(ExtractionStatus.OK) == 3

    def test_session_open_failure_is_failed_for_that_engine(self, config, clock) -> None:
        sessions = _all_stable()
        sessions["t-chatgpt"] = ExtractionError("Cannot attach to tab")
        run = asyncio.run(_pipeline(config, clock, sessions).run(QUERY))

        chatgpt = run.results[0]
        assert chatgpt.status == ExtractionStatus.FAILED
        assert "Cannot attach" in chatgpt.error
        assert chatgpt.url == CHATGPT_URL
        assert (run.run_dir / "chatgpt.md").exists()
        assert run.results[1].ok

    def test_unexpected_poll_error_is_isolated(self, config, clock) -> None:
        sessions = _all_stable()
        sessions["t-chatgpt"] = FakeSession([RuntimeError("websocket dropped")])
        events = []
        bus = ProgressBus()
        bus.subscribe(lambda e: events.append(e.kind))

        run = asyncio.run(_pipeline(config, clock, sessions, bus=bus).run(QUERY))

        assert run.results[0].status == ExtractionStatus.FAILED
        assert [r.status for r in run.results[1:]] == [ExtractionStatus.OK] * 3
        assert events[-1] == COMPLETE
        assert len(read_run_log(config.output.run_log_path)) == 1

    def test_unexpected_session_error_is_failed_for_that_engine(self, config, clock) -> None:
        sessions = _all_stable()
        sessions["t-chatgpt"] = RuntimeError("playwright driver crashed")
        run = asyncio.run(_pipeline(config, clock, sessions).run(QUERY))

        chatgpt = run.results[0]
        assert chatgpt.status == ExtractionStatus.FAILED
        assert chatgpt.error == "RuntimeError: playwright driver crashed"
        assert chatgpt.file == "chatgpt.md"
        assert [r.status for r in run.results[1:]] == [ExtractionStatus.OK] * 3

    def test_unexpected_error_in_parallel_mode_keeps_other_engines(self, config, clock) -> None:
        config.polling.max_parallel = 4
        sessions = _all_stable()
        sessions["t-claude"] = RuntimeError("playwright driver crashed")
        run = asyncio.run(_pipeline(config, clock, sessions).run(QUERY))

        assert [r.status for r in run.results] == [
            ExtractionStatus.OK, ExtractionStatus.FAILED, ExtractionStatus.OK, ExtractionStatus.OK,
        ]

    def test_unwritable_engine_file_is_left_out_of_synthesis(self, config, clock) -> None:
        synth = FakeSynthesizer()
        pipeline = _pipeline(config, clock, _all_stable(), synthesizer=synth)
        real_write = pipeline.store.write_engine_result

        def write(run_dir, result, query):
            if result.engine_slug == "claude":
                raise OSError(28, "No space left on device")
            return real_write(run_dir, result, query)

        pipeline.store.write_engine_result = write
        run = asyncio.run(pipeline.run(QUERY))

        claude = run.results[1]
        assert claude.ok
        assert claude.file is None
        (_, files), = synth.calls
        assert [f.name for f in files] == ["chatgpt.md", "perplexity.md", "google-ai-studio.md"]
        assert run.synthesis_file == "synthesis.md"

    def test_no_answers_still_produces_directory(self, config, clock) -> None:
        run = asyncio.run(_pipeline(config, clock, {}, tabs=[]).run(QUERY))
        assert not run.successful
        assert len(list(run.run_dir.iterdir())) == 5
        assert all(r.status == ExtractionStatus.NO_TAB for r in run.results)


class TestSynthesisGate:
    @pytest.mark.parametrize("ok_count,attempted", [(0, False), (1, False), (2, True), (4, True)])
    def test_attempted_only_with_two_answers(self, config, clock, ok_count, attempted) -> None:
        sessions = _all_stable()
        for tab_id in list(sessions)[ok_count:]:
            sessions[tab_id] = FakeSession([""])
        synth = FakeSynthesizer()
        run = asyncio.run(_pipeline(config, clock, sessions, synthesizer=synth).run(QUERY))

        assert len(run.ok_results()) == ok_count
        assert bool(synth.calls) is attempted
        assert (run.run_dir / "synthesis.md").exists() is attempted

    def test_partial_answers_are_not_attached(self, config, clock) -> None:
        sessions = _all_stable()
        sessions["t-aistudio"] = FakeSession([f"chunk {i}" for i in range(100)])
        synth = FakeSynthesizer()
        run = asyncio.run(_pipeline(config, clock, sessions, synthesizer=synth).run(QUERY))

        assert run.results[3].status == ExtractionStatus.TIMEOUT_PARTIAL
        (_, files), = synth.calls
        assert "google-ai-studio.md" not in [f.name for f in files]

    def test_synthesis_failure_is_reported_not_raised(self, config, clock) -> None:
        synth = FakeSynthesizer(error="claude exited with code 1")
        run = asyncio.run(_pipeline(config, clock, _all_stable(), synthesizer=synth).run(QUERY))

        assert run.synthesis is None
        assert run.synthesis_error == "claude exited with code 1"
        assert not (run.run_dir / "synthesis.md").exists()
        assert run.successful

    def test_unlaunchable_synthesis_command_completes_run(self, config, clock) -> None:
        events = []
        bus = ProgressBus()
        bus.subscribe(lambda e: events.append(e.kind))
        pipeline = _pipeline(config, clock, _all_stable(), synthesizer=Synthesizer(config.synthesis), bus=bus)

        with patch("council_synthesis.subprocess.Popen",
                   side_effect=PermissionError(13, "Permission denied")):
            run = asyncio.run(pipeline.run(QUERY))

        assert run.synthesis is None
        assert "Permission denied" in run.synthesis_error
        assert events[-2:] == [SYNTHESIZING, COMPLETE]
        entry, = read_run_log(config.output.run_log_path)
        assert "Permission denied" in entry["synthesis_error"]

    def test_disabled(self, config, clock) -> None:
        config.synthesis.enabled = False
        synth = FakeSynthesizer()
        asyncio.run(_pipeline(config, clock, _all_stable(), synthesizer=synth).run(QUERY))
        assert synth.calls == []


class TestParallel:
    def test_registry_order_is_kept(self, config, clock) -> None:
        config.polling.max_parallel = 4
        sessions = _all_stable()
        # ChatGPT takes longest, AI Studio is quickest
        sessions["t-chatgpt"] = FakeSession([f"draft {i}" for i in range(10)] + ["final"])
        bus = ProgressBus()
        finished = []
        bus.subscribe(lambda e: finished.append(e.data["engine"]) if e.kind == ENGINE_DONE else None)

        run = asyncio.run(_pipeline(config, clock, sessions, bus=bus).run(QUERY))

        assert [r.engine_slug for r in run.results] == [
            "chatgpt", "claude", "perplexity", "google-ai-studio",
        ]
        assert run.results[0].text == "final"
        assert finished[-1] == "ChatGPT"

    def test_per_engine_timeout_override(self, config, clock) -> None:
        config.polling.engine_timeout_overrides = {"chatgpt": 10}
        sessions = _all_stable()
        sessions["t-chatgpt"] = FakeSession([f"draft {i}" for i in range(100)])
        run = asyncio.run(_pipeline(config, clock, sessions).run(QUERY))
        assert run.results[0].status == ExtractionStatus.TIMEOUT_PARTIAL
        assert run.results[0].polls == 5


class TestEvents:
    def test_event_order(self, config, clock) -> None:
        bus = ProgressBus()
        kinds = []
        bus.subscribe(lambda e: kinds.append(e.kind))
        asyncio.run(_pipeline(config, clock, _all_stable(), bus=bus).run(QUERY))
        assert kinds == [STARTED] + [ENGINE_DONE] * 4 + [SYNTHESIZING, COMPLETE]

    def test_started_payload(self, config, clock) -> None:
        bus = ProgressBus()
        events = []
        bus.subscribe(events.append)
        run = asyncio.run(_pipeline(config, clock, _all_stable(), bus=bus).run(QUERY))
        started = events[0].data
        assert started["query"] == QUERY
        assert started["engines"] == ["ChatGPT", "Claude", "Perplexity", "Google AI Studio"]
        assert started["folder_id"] == run.folder_id
        assert events[-1].data["synthesis"] == "synthesis.md"

    def test_broken_observer_does_not_change_results(self, config, clock) -> None:
        bus = ProgressBus()

        def broken(event):
            raise RuntimeError("dashboard disconnected")

        bus.subscribe(broken)
        run = asyncio.run(_pipeline(config, clock, _all_stable(), bus=bus).run(QUERY))
        assert [r.status for r in run.results] == [ExtractionStatus.OK] * 4
        assert run.synthesis_file == "synthesis.md"

    def test_report_hook_failure_is_logged(self, config, clock, caplog) -> None:
        hook = MagicMock(side_effect=RuntimeError("viewer crashed"))
        with caplog.at_level(logging.WARNING, logger="council_collect"):
            run = asyncio.run(_pipeline(config, clock, _all_stable(), report_hook=hook).run(QUERY))
        hook.assert_called_once_with(run)
        assert "Report hook failed" in caplog.text


class TestRecoverQuery:
    def _recover(self, tabs, sessions=None) -> str:
        return asyncio.run(recover_query(tabs, fake_session_factory(sessions or {}), BrowserConfig()))

    def test_url_parameter_first(self) -> None:
        assert self._recover(engine_tabs()) == QUERY

    def test_prompt_parameter(self) -> None:
        tabs = [make_tab("a", "https://aistudio.google.com/?prompt=Explain+stability+polling")]
        assert self._recover(tabs) == "Explain stability polling"

    def test_short_parameter_ignored(self) -> None:
        tabs = [make_tab("a", "https://chatgpt.com/?q=hi")]
        assert self._recover(tabs) == "[clipboard query]"

    def test_non_page_targets_ignored(self) -> None:
        tabs = [make_tab("w", "https://chatgpt.com/sw.js?q=long+enough+query", type="service_worker")]
        assert self._recover(tabs) == "[clipboard query]"

    def test_perplexity_title_drops_suffix(self) -> None:
        tab = make_tab("p", "https://www.perplexity.ai/search/abc-123")
        sessions = {"p": FakeSession([""], title="Rust vs Go - for CLIs - Perplexity")}
        assert self._recover([tab], sessions) == "Rust vs Go - for CLIs"

    def test_perplexity_whole_title(self) -> None:
        tab = make_tab("p", "https://www.perplexity.ai/search/abc-123")
        sessions = {"p": FakeSession([""], title="Rust vs Go")}
        assert self._recover([tab], sessions) == "Rust vs Go"

    def test_title_read_failure_falls_through(self) -> None:
        tab = make_tab("p", "https://www.perplexity.ai/search/abc-123")
        sessions = {"p": ExtractionError("Tab p is no longer open")}
        assert self._recover([tab], sessions) == "[clipboard query]"

    def test_explicit_query_bypasses_recovery(self, config, clock) -> None:
        run = asyncio.run(_pipeline(config, clock, _all_stable()).run("Explicit question here"))
        assert run.query == "Explicit question here"
        assert run.folder_id.endswith("_explicit-question-here")


class TestSearch:
    def test_submits_waits_then_collects(self, config, clock) -> None:
        sessions = _all_stable()
        pipeline = _pipeline(config, clock, sessions)
        submitted, run = asyncio.run(pipeline.search(SUBMITTERS, wait=5))

        assert [s.engine_name for s in submitted] == ["ChatGPT", "Google AI Studio", "Claude"]
        assert clock.sleeps[0] == 5
        assert run.successful
        chatgpt_scripts = sessions["t-chatgpt"].scripts
        assert chatgpt_scripts[0] == SUBMITTERS[0].activation_script
        assert chatgpt_scripts.count(SUBMITTERS[0].activation_script) == 1


class TestCli:
    @pytest.fixture(autouse=True)
    def _keep_test_logging(self):
        with patch("council_collect.setup_logging"):
            yield

    def _config_file(self, config, tmp_path: Path) -> str:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "output": {
                "output_dir": str(config.output.output_dir),
                "run_log_path": str(config.output.run_log_path),
            },
        }), encoding="utf-8")
        return str(path)

    def test_engines(self, config, tmp_path: Path, capsys) -> None:
        assert main(["--config", self._config_file(config, tmp_path), "engines"]) == EXIT_OK
        out = capsys.readouterr().out
        assert "chatgpt" in out and "google-ai-studio" in out

    def test_timeout_flag_replaces_engine_overrides(self, config) -> None:
        config.polling.engine_timeout_overrides = {"google-ai-studio": 180}
        args = _build_parser().parse_args(["collect", "--timeout", "30", "--parallel", "0"])
        _apply_overrides(config, args)
        assert config.polling.timeout_for("google-ai-studio") == 30
        assert config.polling.timeout_for("chatgpt") == 30
        assert config.polling.max_parallel == 1

    def test_overrides_untouched_without_timeout_flag(self, config) -> None:
        config.polling.engine_timeout_overrides = {"google-ai-studio": 180}
        _apply_overrides(config, _build_parser().parse_args(["collect"]))
        assert config.polling.timeout_for("google-ai-studio") == 180

    def test_bad_config(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text("{broken", encoding="utf-8")
        assert main(["--config", str(path), "engines"]) == EXIT_CONFIG

    def test_collect_connectivity_error(self, config, tmp_path: Path) -> None:
        with patch("council_cdp.list_tabs", side_effect=ConnectivityError("refused")):
            code = main(["--config", self._config_file(config, tmp_path), "collect", "--query", QUERY])
        assert code == EXIT_CONNECTIVITY

    def test_collect_without_answers_exits_1(self, config, tmp_path: Path) -> None:
        with patch("council_cdp.list_tabs", return_value=[]):
            code = main([
                "--config", self._config_file(config, tmp_path),
                "collect", "--query", QUERY, "--no-synthesis",
            ])
        assert code == EXIT_NO_ANSWERS
        assert len(list(config.output.output_dir.iterdir())) == 1

    def test_health(self, config, tmp_path: Path, capsys) -> None:
        with patch("council_cdp.check_health", return_value={"connected": False, "error": "refused"}):
            code = main(["--config", self._config_file(config, tmp_path), "health"])
        assert code == EXIT_CONNECTIVITY
        assert json.loads(capsys.readouterr().out)["connected"] is False

    def test_runs_listing(self, config, tmp_path: Path, clock, capsys) -> None:
        asyncio.run(_pipeline(config, clock, _all_stable()).run(QUERY))
        assert main(["--config", self._config_file(config, tmp_path), "runs"]) == EXIT_OK
        listing = json.loads(capsys.readouterr().out)
        assert listing["count"] == 1
        assert listing["folders"][0]["has_synthesis"] is True

    def test_metrics_json(self, config, tmp_path: Path, clock, capsys) -> None:
        asyncio.run(_pipeline(config, clock, _all_stable()).run(QUERY))
        assert main(["--config", self._config_file(config, tmp_path), "metrics", "--json"]) == EXIT_OK
        metrics = json.loads(capsys.readouterr().out)
        assert metrics["total_runs"] == 1
        assert metrics["by_engine"]["Claude"]["ok"] == 1
