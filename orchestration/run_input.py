# orchestration/run_input.py
"""Build engine inputs from a YAML or JSON run file.

Expected layout::

    mode: chunked
    perspectives:
      - story-engineer
      - {id: mood-reader, weight: 2}
    participants:
      MAYA: ["Ambitious line cook", "Hides her debt"]
    items:
      - id: s1
        title: "INT. KITCHEN - NIGHT"
        participants: [MAYA]
        content: |
          ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import ValidationError

from models import Participant, Perspective, ProcessingMode, WorkItem
from perspectives import get_perspective
from yaml_parser import load_yaml_file

logger = structlog.get_logger(__name__)


class RunInputError(ValueError):
    """Raised when a run input file cannot be turned into engine inputs."""


@dataclass
class RunInput:
    items: list[WorkItem]
    participants: dict[str, Participant]
    perspectives: list[Perspective]
    mode: ProcessingMode | None = None


def _perspective(entry: Any) -> Perspective:
    if isinstance(entry, str):
        return get_perspective(entry)
    if not isinstance(entry, dict):
        raise RunInputError(f"Perspective entries must be ids or mappings, got {entry!r}")
    if "id" in entry and "name" not in entry:
        overrides = {k: v for k, v in entry.items() if k != "id"}
        base = get_perspective(entry["id"])
        return Perspective(**{**base.model_dump(), **overrides})
    return Perspective(**entry)


def _participants(raw: Any) -> dict[str, Participant]:
    if raw is None:
        return {}
    participants: dict[str, Participant] = {}
    if isinstance(raw, dict):
        for name, value in raw.items():
            if isinstance(value, dict):
                notes = value.get("notes", ())
            else:
                notes = value
            if isinstance(notes, str):
                notes = (notes,)
            participants[str(name)] = Participant(
                name=str(name), notes=tuple(str(n) for n in notes or ())
            )
    elif isinstance(raw, list):
        for entry in raw:
            participant = Participant(**entry)
            participants[participant.name] = participant
    else:
        raise RunInputError("'participants' must be a mapping or a list")
    return participants


def _items(raw: Any) -> list[WorkItem]:
    if not isinstance(raw, list) or not raw:
        raise RunInputError("'items' must be a non-empty list")
    items: list[WorkItem] = []
    for position, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise RunInputError(f"Item {position + 1} must be a mapping")
        data = dict(entry)
        data.setdefault("id", f"section_{position + 1}")
        data.setdefault("title", f"Section {position + 1}")
        data.setdefault("index", position)
        items.append(WorkItem(**data))
    return items


def build_run_input(data: dict[str, Any]) -> RunInput:
    """Validate a parsed run file."""
    try:
        mode = ProcessingMode(data["mode"]) if data.get("mode") else None
        perspective_entries = data.get("perspectives") or []
        if isinstance(perspective_entries, (str, dict)):
            perspective_entries = [perspective_entries]
        return RunInput(
            items=_items(data.get("items")),
            participants=_participants(data.get("participants")),
            perspectives=[_perspective(entry) for entry in perspective_entries],
            mode=mode,
        )
    except (ValidationError, KeyError, TypeError, ValueError) as exc:
        if isinstance(exc, RunInputError):
            raise
        raise RunInputError(f"Invalid run input: {exc}") from exc


def load_run_input(path: str) -> RunInput:
    """Load and validate a run file from ``path``."""
    data = load_yaml_file(path)
    if data is None:
        raise RunInputError(f"Could not read run input from '{path}'")
    run_input = build_run_input(data)
    logger.info(
        "Loaded run input.",
        path=path,
        items=len(run_input.items),
        participants=len(run_input.participants),
        perspectives=[p.id for p in run_input.perspectives],
    )
    return run_input
