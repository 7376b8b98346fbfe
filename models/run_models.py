# models/run_models.py
"""Progress snapshots and terminal run values."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from .feedback_models import (
    FallbackResult,
    ItemResult,
    ProcessingMode,
    SuccessResult,
    _utcnow,
)


class RunProgress(BaseModel):
    """Immutable snapshot handed to the progress sink."""

    model_config = ConfigDict(frozen=True)

    current_index: int = Field(..., ge=0)
    total_items: int = Field(..., ge=1)
    current_title: str
    percent: int = Field(..., ge=0, le=100)
    message: str
    is_retrying: bool = False
    retry_count: int = 0
    next_retry_in_ms: int | None = None
    completed_results: tuple[ItemResult, ...] = ()
    failed_item_ids: tuple[str, ...] = ()
    mode: ProcessingMode = ProcessingMode.CHUNKED
    perspective_count: int | None = None
    blending_perspectives: tuple[str, ...] | None = None


class Summary(BaseModel):
    """Run-level overview. Shape is identical for both generation paths."""

    model_config = ConfigDict(frozen=True)

    overall_assessment: str
    strengths: list[str] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    origin: Literal["synthesized", "template"] = "template"


class ProcessingStats(BaseModel):
    """Counts describing how a run went."""

    model_config = ConfigDict(frozen=True)

    total_items: int
    attempted_items: int
    skipped_items: int
    interrupted_items: int = 0
    successful_chunks: int
    rate_limited_chunks: int
    other_failed_chunks: int
    permanently_failed_chunks: int
    total_retry_attempts: int
    processing_type: ProcessingMode
    perspective_count: int = 1
    token_usage: dict[str, int] | None = None


class RunOutcome(BaseModel):
    """Terminal value of a progressive feedback run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    results: list[ItemResult]
    summary: Summary
    timestamp: datetime = Field(default_factory=_utcnow)
    processing_stats: ProcessingStats
    partial: bool = False
    cancelled: bool = False

    @property
    def successes(self) -> list[SuccessResult]:
        return [r for r in self.results if isinstance(r, SuccessResult)]

    @property
    def fallbacks(self) -> list[FallbackResult]:
        return [r for r in self.results if isinstance(r, FallbackResult)]
