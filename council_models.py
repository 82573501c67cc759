"""Records exchanged between the collector's stages."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Tab(BaseModel):
    """One target reported by the browser's /json/list endpoint."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    type: str = "page"
    url: str = ""
    title: str = ""
    websocket_debugger_url: Optional[str] = Field(default=None, alias="webSocketDebuggerUrl")

    @property
    def is_page(self) -> bool:
        return self.type == "page"


class ExtractionStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    NO_TAB = "no_tab"
    TIMEOUT_PARTIAL = "timeout_partial"


TEXT_BEARING = (ExtractionStatus.OK, ExtractionStatus.TIMEOUT_PARTIAL)


class ExtractionResult(BaseModel):
    """Outcome of collecting one engine's answer in one run."""

    model_config = ConfigDict(frozen=True)

    engine_name: str
    engine_slug: str
    status: ExtractionStatus
    text: Optional[str] = None
    char_count: int = 0
    url: Optional[str] = None
    file: Optional[str] = None
    elapsed_s: float = 0.0
    polls: int = 0
    error: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _derive_char_count(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            data["char_count"] = len(data.get("text") or "")
        return data

    @model_validator(mode="after")
    def _text_only_when_collected(self) -> ExtractionResult:
        if self.text is not None and self.status not in TEXT_BEARING:
            raise ValueError(f"status {self.status.value} cannot carry text")
        if self.text is None and self.status in TEXT_BEARING:
            raise ValueError(f"status {self.status.value} requires text")
        return self

    @property
    def ok(self) -> bool:
        return self.status == ExtractionStatus.OK


class CollectionRun(BaseModel):
    """State of one collection run, owned by the pipeline until it is persisted."""

    query: str
    folder_id: str
    run_dir: Path
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    results: list[ExtractionResult] = Field(default_factory=list)
    synthesis: Optional[str] = None
    synthesis_file: Optional[str] = None
    synthesis_error: Optional[str] = None

    def add_result(self, result: ExtractionResult) -> None:
        self.results.append(result)

    def ok_results(self) -> list[ExtractionResult]:
        return [r for r in self.results if r.ok]

    @property
    def successful(self) -> bool:
        return any(r.ok for r in self.results)

    def close(self) -> None:
        self.finished_at = datetime.now(timezone.utc)

    def summary(self) -> dict:
        """Machine-readable view appended to the run log."""
        return {
            "folder_id": self.folder_id,
            "query": self.query,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "successful": self.successful,
            "responses": [
                {
                    "engine": r.engine_name,
                    "slug": r.engine_slug,
                    "status": r.status.value,
                    "chars": r.char_count,
                    "file": r.file,
                    "url": r.url,
                    "elapsed_s": round(r.elapsed_s, 2),
                    "error": r.error,
                }
                for r in self.results
            ],
            "synthesis_file": self.synthesis_file,
            "synthesis_error": self.synthesis_error,
        }


class SubmitResult(BaseModel):
    """Outcome of clicking one engine's send control."""

    engine_name: str
    status: str  # ok, no_tab, error
    detail: Optional[str] = None
