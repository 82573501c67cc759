"""Analyze the collector's run log.

Reads runs.jsonl and computes aggregate stats: per-engine success ratio,
average answer size and poll time, partial/no-tab frequency, synthesis rate.
"""

from __future__ import annotations

from collections import defaultdict
from pathlib import Path
from typing import Optional

from council_store import read_run_log


def load_runs(log_path: Optional[Path]) -> list[dict]:
    return read_run_log(log_path)


def compute_metrics(runs: list[dict]) -> dict:
    """Compute aggregate metrics from run log entries."""
    if not runs:
        return {"total_runs": 0, "message": "No runs recorded yet."}

    total = len(runs)
    successful = sum(1 for r in runs if r.get("successful"))
    synthesized = sum(1 for r in runs if r.get("synthesis_file"))
    synthesis_errors = sum(1 for r in runs if r.get("synthesis_error"))

    by_engine: dict[str, dict] = defaultdict(lambda: {
        "count": 0, "ok": 0, "timeout_partial": 0, "failed": 0, "no_tab": 0,
        "total_chars": 0, "total_elapsed_s": 0.0,
    })
    for r in runs:
        for resp in r.get("responses", []):
            stats = by_engine[resp.get("engine", "unknown")]
            stats["count"] += 1
            status = resp.get("status", "failed")
            if status in stats:
                stats[status] += 1
            if status == "ok":
                stats["total_chars"] += resp.get("chars", 0) or 0
                stats["total_elapsed_s"] += resp.get("elapsed_s", 0) or 0

    for stats in by_engine.values():
        n, ok = stats["count"], stats["ok"]
        stats["success_ratio"] = round(ok / n, 3) if n else 0
        stats["avg_chars"] = round(stats["total_chars"] / ok) if ok else 0
        stats["avg_elapsed_s"] = round(stats["total_elapsed_s"] / ok, 1) if ok else 0

    return {
        "total_runs": total,
        "successful_runs": successful,
        "success_ratio": round(successful / total, 3),
        "synthesis_rate": round(synthesized / total, 3),
        "synthesis_errors": synthesis_errors,
        "by_engine": dict(by_engine),
    }


def format_report(metrics: dict) -> str:
    """Format metrics as a readable markdown report."""
    if metrics.get("total_runs", 0) == 0:
        return "No collection runs recorded yet."

    lines = [
        "# Collector Metrics",
        "",
        f"**Total runs:** {metrics['total_runs']}",
        f"**Successful runs:** {metrics['success_ratio']:.1%} ({metrics['successful_runs']}/{metrics['total_runs']})",
        f"**Synthesis rate:** {metrics['synthesis_rate']:.1%}",
        f"**Synthesis errors:** {metrics['synthesis_errors']}",
        "",
        "## By Engine",
        "",
        "| Engine | Runs | OK | Partial | Failed | No tab | Avg chars | Avg time |",
        "|--------|------|----|---------|--------|--------|-----------|----------|",
    ]
    for engine, s in metrics.get("by_engine", {}).items():
        lines.append(
            f"| {engine} | {s['count']} | {s['ok']} | {s['timeout_partial']} "
            f"| {s['failed']} | {s['no_tab']} | {s['avg_chars']} | {s['avg_elapsed_s']:.1f}s |"
        )
    return "\n".join(lines)
