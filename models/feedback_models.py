# models/feedback_models.py
"""Input and per-item result models for progressive feedback runs."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessingMode(str, Enum):
    """How the engine asks the provider to treat each work item."""

    SINGLE = "single"
    CHUNKED = "chunked"
    BLENDED = "blended"


class FailureClassification(str, Enum):
    """Why an item ended with a fallback instead of analysis."""

    RATE_LIMITED = "rate_limited"
    CONTENT_TOO_LARGE = "content_too_large"
    BLEND_FAILED = "blend_failed"
    OTHER = "other"


class ResponseShape(str, Enum):
    """Shape of the text requested from the provider."""

    STRUCTURED = "structured"
    FREEFORM = "freeform"
    JSON = "json"


FEEDBACK_CATEGORIES: tuple[str, ...] = ("structure", "dialogue", "pacing", "theme")


class WorkItem(BaseModel):
    """One script section submitted for analysis."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    title: str
    content: str
    participants: tuple[str, ...] = ()
    kind: Literal["scene", "pages", "act", "sequence"] = "scene"
    index: int | None = None

    @field_validator("participants", mode="before")
    @classmethod
    def _dedupe_participants(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            value = [value]
        seen: dict[str, None] = {}
        for name in value:
            name = str(name).strip()
            if name:
                seen.setdefault(name, None)
        return tuple(seen)


class Participant(BaseModel):
    """A character referenced by work items, with free-form notes."""

    model_config = ConfigDict(frozen=True)

    name: str
    notes: tuple[str, ...] = ()


class Perspective(BaseModel):
    """A named analytical voice used to produce feedback."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    tone: str = ""
    priorities: tuple[str, ...] = ()
    mantra: str | None = None
    temperature: float | None = None
    weight: float = Field(1.0, gt=0)


class GenerationDescriptor(BaseModel):
    """Describes what a provider call should produce."""

    model_config = ConfigDict(frozen=True)

    mode: ProcessingMode
    perspectives: tuple[str, ...]
    response_shape: ResponseShape
    temperature: float | None = None


class _ItemResultBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str
    item_title: str
    source: ProcessingMode
    perspectives: tuple[str, ...] = ()
    retry_count: int = 0
    categories: dict[str, str] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)


class SuccessResult(_ItemResultBase):
    """Analysis text produced by the provider for one item."""

    status: Literal["success"] = "success"
    structured: str
    freeform: str


class FallbackResult(_ItemResultBase):
    """Informative placeholder for an item that permanently failed."""

    status: Literal["fallback"] = "fallback"
    placeholder: str
    freeform_placeholder: str = ""
    classification: FailureClassification
    detail: str = ""


ItemResult = Annotated[SuccessResult | FallbackResult, Field(discriminator="status")]
