"""Central package for Marginalia data models."""

from .feedback_models import (
    FEEDBACK_CATEGORIES,
    FailureClassification,
    FallbackResult,
    GenerationDescriptor,
    ItemResult,
    Participant,
    Perspective,
    ProcessingMode,
    ResponseShape,
    SuccessResult,
    WorkItem,
)
from .run_models import ProcessingStats, RunOutcome, RunProgress, Summary

__all__ = [
    "FEEDBACK_CATEGORIES",
    "FailureClassification",
    "FallbackResult",
    "GenerationDescriptor",
    "ItemResult",
    "Participant",
    "Perspective",
    "ProcessingMode",
    "ResponseShape",
    "SuccessResult",
    "WorkItem",
    "ProcessingStats",
    "RunOutcome",
    "RunProgress",
    "Summary",
]
