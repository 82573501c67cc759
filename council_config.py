"""Configuration for the multi-engine answer collector."""

from __future__ import annotations

import json
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_OUTPUT_DIR = Path.home() / ".council-collector" / "responses"
DEFAULT_RUN_LOG = Path.home() / ".council-collector" / "runs.jsonl"
DEFAULT_CONFIG_PATH = Path.home() / ".council-collector" / "config.json"


@dataclass
class Result(Generic[T]):
    """Type-safe result wrapper for operations that can fail."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: T) -> Result[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str = "UNKNOWN") -> Result[T]:
        return cls(success=False, error=error, error_code=code)


class BrowserConfig(BaseModel):
    """Chrome remote debugging endpoint."""

    cdp_host: str = Field(default="127.0.0.1")
    cdp_port: int = Field(default=9222, ge=1, le=65535)
    list_timeout_seconds: float = Field(
        default=5.0, gt=0,
        description="Connect/read timeout for the /json/list target listing",
    )
    connect_timeout_seconds: float = Field(
        default=15.0, gt=0,
        description="Timeout for attaching a CDP session to one tab",
    )
    eval_timeout_seconds: float = Field(
        default=10.0, gt=0,
        description="Upper bound for a single Runtime.evaluate round trip",
    )

    @property
    def http_endpoint(self) -> str:
        return f"http://{self.cdp_host}:{self.cdp_port}"


class PollingConfig(BaseModel):
    """Stability polling policy for answer extraction."""

    engine_timeout_seconds: float = Field(default=90.0, gt=0)
    poll_interval_seconds: float = Field(default=2.0, ge=0)
    stable_checks: int = Field(
        default=3, ge=1, le=50,
        description="Consecutive unchanged reads required to call an answer complete",
    )
    engine_timeout_overrides: dict[str, float] = Field(
        default_factory=dict,
        description="Per-engine timeout in seconds, keyed by engine slug",
    )
    max_parallel: int = Field(
        default=1, ge=1, le=16,
        description="Engines extracted concurrently (1 = strictly sequential)",
    )
    submit_wait_seconds: float = Field(
        default=5.0, ge=0,
        description="Pause between clicking send and starting collection in search mode",
    )

    def timeout_for(self, slug: str) -> float:
        return self.engine_timeout_overrides.get(slug, self.engine_timeout_seconds)


class SynthesisConfig(BaseModel):
    """Cross-engine synthesis settings."""

    enabled: bool = Field(default=True)
    backend: str = Field(default="cli", pattern="^(cli|api)$")
    command: str = Field(default="claude", description="Executable for the cli backend")
    timeout_seconds: int = Field(default=300, ge=10, le=3600)
    max_output_bytes: int = Field(default=1024 * 1024, ge=1024)
    min_successful: int = Field(default=2, ge=1)
    strip_env_prefixes: list[str] = Field(
        default_factory=lambda: ["CLAUDE"],
        description="Environment variable prefixes removed before spawning the cli backend",
    )
    api_model: str = Field(default="claude-opus-4-6")
    api_max_tokens: int = Field(default=8000, ge=256)


class OutputConfig(BaseModel):
    """Where runs are persisted."""

    output_dir: Path = Field(default=DEFAULT_OUTPUT_DIR)
    run_log_path: Optional[Path] = Field(default=DEFAULT_RUN_LOG)
    engines_path: Optional[Path] = Field(
        default=None,
        description="Optional JSON file overriding engine/submitter scripts",
    )
    fallback_query: str = Field(default="[clipboard query]")


class SecurityConfig(BaseModel):
    """Log redaction settings."""

    log_redact_patterns: list[str] = Field(
        default_factory=lambda: [
            r"sk-ant-[\w-]+",
            r"sk-proj-[\w-]+",
            r"pplx-[\w]+",
        ]
    )


class CollectorConfig(BaseModel):
    """Root configuration model for the collector."""

    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)


def load_config(config_path: str | Path | None) -> Result[CollectorConfig]:
    """Load and validate collector config from a JSON file."""
    if config_path is None:
        return Result.ok(CollectorConfig())

    path = Path(config_path).expanduser()
    if not path.exists():
        logger.info("Config not found at %s, using defaults", path)
        return Result.ok(CollectorConfig())

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        config = CollectorConfig.model_validate(raw)
        return Result.ok(config)
    except json.JSONDecodeError as e:
        return Result.fail(f"Invalid JSON in {path}: {e}", "JSON_ERROR")
    except Exception as e:
        return Result.fail(f"Config validation failed: {e}", "VALIDATION_ERROR")


def validate_config(config: CollectorConfig) -> tuple[list[str], list[str]]:
    """Check the environment for the given config.

    Returns (errors, warnings): errors are fatal for a collection run,
    warnings are informational.
    """
    errors: list[str] = []
    warnings: list[str] = []

    try:
        config.output.output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        errors.append(f"Cannot create output directory {config.output.output_dir}: {e}")

    if config.output.engines_path and not config.output.engines_path.exists():
        warnings.append(
            f"Engines file {config.output.engines_path} not found, using built-in scripts"
        )

    if config.synthesis.enabled:
        if config.synthesis.backend == "cli" and shutil.which(config.synthesis.command) is None:
            warnings.append(
                f"Synthesis command '{config.synthesis.command}' not on PATH, "
                "synthesis will fail and be recorded as an error"
            )
        if config.synthesis.backend == "api":
            if not os.environ.get("ANTHROPIC_API_KEY"):
                warnings.append("ANTHROPIC_API_KEY not set, api synthesis will fail")

    return errors, warnings
