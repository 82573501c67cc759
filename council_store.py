"""Run directories on disk: one folder per collection run, Markdown inside.

Layout of a run folder::

    <output_dir>/<YYYY-MM-DDTHH-MM-SS>_<query-slug>/
        prompt.md
        <engine-slug>.md      one per registered engine
        synthesis.md          only when synthesis succeeded
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from council_models import ExtractionResult, ExtractionStatus

logger = logging.getLogger(__name__)

PROMPT_FILE = "prompt.md"
SYNTHESIS_FILE = "synthesis.md"
NO_RESPONSE = "*No response collected*"
PARTIAL_NOTE = "> [Response may be incomplete - timed out]"


def slugify(text: str, max_len: int = 60) -> str:
    """Short folder-safe slug. Case and punctuation differences collapse."""
    slug = re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-")
    slug = slug[:max_len].rstrip("-")
    return slug or "query"


def _utc(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def _iso(now: datetime) -> str:
    return _utc(now).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def make_folder_id(now: Optional[datetime], query: str) -> str:
    """Timestamp prefix sorts lexically in chronological order."""
    return f"{_utc(now).strftime('%Y-%m-%dT%H-%M-%S')}_{slugify(query)}"


def _write_once(path: Path, content: str) -> Path:
    # "x" mode: a second write of the same file in a run raises FileExistsError
    with open(path, "x", encoding="utf-8") as f:
        f.write(content)
    return path


def _header(title: str, source: str, url: Optional[str], query: str, now: datetime) -> str:
    return (
        f"# {title}\n\n"
        f"**Source:** {source}\n"
        f"**URL:** {url or '(no matching tab)'}\n"
        f"**Date:** {_iso(now)}\n"
        f"**Query:** {query}\n\n"
        f"---\n\n"
    )


class RunStore:
    """Creates run folders under output_dir and reads them back."""

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = Path(output_dir).expanduser()

    def create_run(self, query: str, now: Optional[datetime] = None) -> tuple[str, Path]:
        """Make a fresh run folder. Returns (folder_id, path)."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        base = make_folder_id(now, query)
        folder_id = base
        n = 1
        while True:
            run_dir = self.output_dir / folder_id
            try:
                run_dir.mkdir()
                break
            except FileExistsError:
                n += 1
                folder_id = f"{base}-{n}"
        logger.debug("Created run folder %s", run_dir)
        return folder_id, run_dir

    def write_prompt(self, run_dir: Path, query: str, now: Optional[datetime] = None) -> Path:
        now = _utc(now)
        return _write_once(run_dir / PROMPT_FILE, f"# Query\n\n{query}\n\n**Date:** {_iso(now)}\n")

    def write_engine_result(
        self,
        run_dir: Path,
        result: ExtractionResult,
        query: str,
        now: Optional[datetime] = None,
    ) -> Path:
        """Write <slug>.md for any status; engines without text get a placeholder."""
        now = _utc(now)
        body = result.text if result.text else NO_RESPONSE
        if result.status == ExtractionStatus.TIMEOUT_PARTIAL:
            body = f"{body}\n\n{PARTIAL_NOTE}"
        content = _header(
            f"{result.engine_name} Response", result.engine_name, result.url, query, now
        ) + body
        return _write_once(run_dir / f"{result.engine_slug}.md", content)

    def write_synthesis(
        self,
        run_dir: Path,
        query: str,
        sources: Iterable[str],
        text: str,
        now: Optional[datetime] = None,
    ) -> Path:
        now = _utc(now)
        content = (
            "# Cross-LLM Synthesis\n\n"
            f"**Query:** {query}\n"
            f"**Date:** {_iso(now)}\n"
            f"**Sources:** {', '.join(sources)}\n\n"
            "---\n\n"
            f"{text.strip()}"
        )
        return _write_once(run_dir / SYNTHESIS_FILE, content)

    def list_runs(self) -> list[dict]:
        """Run folders, newest first."""
        if not self.output_dir.is_dir():
            return []
        runs = []
        for entry in self.output_dir.iterdir():
            if not entry.is_dir():
                continue
            files = sorted(p.name for p in entry.iterdir() if p.is_file())
            runs.append({
                "name": entry.name,
                "files": len(files),
                "engines": [
                    f[:-3] for f in files
                    if f.endswith(".md") and f not in (PROMPT_FILE, SYNTHESIS_FILE)
                ],
                "has_prompt": PROMPT_FILE in files,
                "has_synthesis": SYNTHESIS_FILE in files,
            })
        runs.sort(key=lambda r: r["name"], reverse=True)
        return runs

    def _run_dir(self, folder_id: str) -> Path:
        run_dir = (self.output_dir / folder_id).resolve()
        if run_dir.parent != self.output_dir.resolve():
            raise ValueError(f"Invalid run folder: {folder_id!r}")
        if not run_dir.is_dir():
            raise FileNotFoundError(f"Run folder not found: {folder_id}")
        return run_dir

    def read_run(self, folder_id: str) -> dict:
        """Size and modification time of each Markdown file in a run."""
        run_dir = self._run_dir(folder_id)
        files = {}
        for path in sorted(run_dir.glob("*.md")):
            stat = path.stat()
            files[path.name] = {
                "size": stat.st_size,
                "modified": datetime.fromtimestamp(stat.st_mtime, timezone.utc).isoformat(),
            }
        return {"folder": folder_id, "files": files}

    def read_file(self, folder_id: str, name: str) -> str:
        run_dir = self._run_dir(folder_id)
        path = (run_dir / name).resolve()
        if path.parent != run_dir:
            raise ValueError(f"Invalid file name: {name!r}")
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {folder_id}/{name}")
        return path.read_text(encoding="utf-8")


def append_run_log(summary: dict, log_path: Optional[Path]) -> None:
    """Append one JSON line per run. Failures are logged, not raised."""
    if log_path is None:
        return
    try:
        log_path = Path(log_path).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(summary, default=str) + "\n")
    except OSError as e:
        logger.warning("Failed to write run log: %s", e)


def read_run_log(log_path: Optional[Path]) -> list[dict]:
    """All parseable entries from the run log, oldest first."""
    if log_path is None:
        return []
    log_path = Path(log_path).expanduser()
    if not log_path.exists():
        return []
    entries = []
    for line in log_path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(json.loads(line))
        except json.JSONDecodeError:
            logger.debug("Skipping malformed run log line: %s", line[:80])
    return entries
