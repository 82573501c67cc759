"""Cross-engine synthesis of the collected answers.

Two backends: the ``claude`` CLI reading the answer files directly (default),
or the Anthropic Messages API with the file contents inlined.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from pathlib import Path
from typing import Sequence

import anthropic

from council_config import SynthesisConfig
from council_errors import SynthesisError

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024

SYNTHESIS_RUBRIC = """You are a research synthesis analyst. You receive the same query answered by multiple AI engines. Your job is to produce a helicopter-view analysis that:

1. **Reconciles** the responses: where do they agree? Where do they diverge?
2. **Fact-checks**: flag any claims that appear unsupported, contradicted across sources, or potentially outdated.
3. **Verifies evidence**: note which responses cite sources vs. make unsupported assertions.
4. **Separates signal from noise**: what is the core, high-confidence answer vs. speculative or filler content?
5. **Identifies gaps**: what important aspects did none of the engines cover?
6. **Architectural/strategic view**: if the query involves implementation, assess the different approaches suggested and their trade-offs.

Output a well-structured markdown document with clear sections. Be concise but thorough. When engines disagree, explain why and which position has stronger evidence."""


def build_prompt(query: str) -> str:
    return (
        f"{SYNTHESIS_RUBRIC}\n\n# Original Query\n{query}\n\n"
        "The individual AI responses are attached as files. "
        "Please produce a cross-LLM synthesis analysis."
    )


def scrubbed_env(prefixes: Sequence[str]) -> dict[str, str]:
    """Copy of os.environ without variables starting with any prefix.

    A nested claude process refuses to start when it sees its parent's
    session variables.
    """
    return {
        k: v for k, v in os.environ.items()
        if not any(k.startswith(p) for p in prefixes)
    }


def _drain_pipe(pipe, chunks: list[str]) -> None:
    """Drain a pipe into a list (for background thread)."""
    try:
        for line in pipe:
            chunks.append(line)
    except (OSError, ValueError) as e:
        logger.debug("stderr pipe closed: %s", e)


def _read_bounded(pipe, limit: int) -> tuple[str, bool]:
    """Read a text pipe to EOF, stopping once more than limit bytes arrive.

    Returns (text, overflow). On overflow the text read so far is discarded.
    """
    chunks: list[str] = []
    size = 0
    while True:
        chunk = pipe.read(_READ_CHUNK)
        if not chunk:
            return "".join(chunks), False
        size += len(chunk.encode("utf-8"))
        if size > limit:
            return "", True
        chunks.append(chunk)


def _kill(proc) -> None:
    try:
        proc.kill()
    except OSError as e:
        logger.debug("kill PID %d failed: %s", proc.pid, e)


class Synthesizer:
    """Runs one synthesis call. Blocking; the pipeline runs it in an executor."""

    def __init__(self, config: SynthesisConfig) -> None:
        self.config = config

    def run(self, query: str, files: Sequence[Path]) -> str:
        if len(files) < 1:
            raise SynthesisError("No answer files to synthesize")
        if self.config.backend == "api":
            return self._run_api(query, files)
        return self._run_cli(query, files)

    def _run_cli(self, query: str, files: Sequence[Path]) -> str:
        cfg = self.config
        args = [
            cfg.command, "-p", build_prompt(query),
            "--output-format", "text",
            *[str(f) for f in files],
        ]
        logger.info("Spawning: %s -p <prompt> --output-format text (%d files)",
                    cfg.command, len(files))
        try:
            proc = subprocess.Popen(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=scrubbed_env(cfg.strip_env_prefixes),
            )
        except FileNotFoundError as e:
            raise SynthesisError(f"'{cfg.command}' CLI not found. Ensure it is on PATH.") from e
        except OSError as e:
            raise SynthesisError(f"Could not start '{cfg.command}': {e}") from e

        timed_out = threading.Event()

        def _on_timeout() -> None:
            timed_out.set()
            logger.warning("Synthesis timed out after %ds, killing PID %d",
                           cfg.timeout_seconds, proc.pid)
            _kill(proc)

        timer = threading.Timer(cfg.timeout_seconds, _on_timeout)
        timer.daemon = True
        timer.start()

        # Drain stderr in background to prevent pipe buffer deadlock
        stderr_chunks: list[str] = []
        stderr_thread = threading.Thread(
            target=_drain_pipe, args=(proc.stderr, stderr_chunks), daemon=True
        )
        stderr_thread.start()

        try:
            output, overflow = _read_bounded(proc.stdout, cfg.max_output_bytes)
        except (OSError, ValueError) as e:
            # Pipe closed under us by the timeout kill
            logger.debug("Synthesis stdout closed: %s", e)
            output, overflow = "", False
        finally:
            timer.cancel()

        if overflow:
            _kill(proc)
        try:
            returncode = proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            _kill(proc)
            returncode = proc.wait()
        stderr_thread.join(timeout=2)

        if timed_out.is_set():
            raise SynthesisError(f"Synthesis timed out after {cfg.timeout_seconds}s")
        if overflow:
            raise SynthesisError(
                f"Synthesis output exceeds {cfg.max_output_bytes} bytes"
            )
        if returncode != 0:
            stderr = "".join(stderr_chunks).strip()[-500:]
            raise SynthesisError(f"{cfg.command} exited with code {returncode}: {stderr}")

        output = output.strip()
        if not output:
            raise SynthesisError("Synthesis produced no output")
        return output

    def _run_api(self, query: str, files: Sequence[Path]) -> str:
        cfg = self.config
        api_key = os.environ.get("ANTHROPIC_API_KEY")
        if not api_key:
            raise SynthesisError("ANTHROPIC_API_KEY not set")

        sections = []
        for f in files:
            path = Path(f)
            try:
                content = path.read_text(encoding="utf-8")
            except OSError as e:
                raise SynthesisError(f"Cannot read {path.name}: {e}") from e
            sections.append(f"## {path.name}\n\n{content}")
        user_message = (
            f"# Original Query\n{query}\n\n# Responses\n\n" + "\n\n".join(sections)
            + "\n\nPlease produce a cross-LLM synthesis analysis."
        )

        client = anthropic.Anthropic(api_key=api_key)
        try:
            response = client.messages.create(
                model=cfg.api_model,
                max_tokens=cfg.api_max_tokens,
                system=SYNTHESIS_RUBRIC,
                messages=[{"role": "user", "content": user_message}],
                timeout=cfg.timeout_seconds,
            )
        except anthropic.APIError as e:
            raise SynthesisError(f"Anthropic API error: {e}") from e

        text = "".join(block.text for block in response.content if block.type == "text").strip()
        if not text:
            raise SynthesisError("Synthesis produced no output")
        return text
