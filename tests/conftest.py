# tests/conftest.py
import asyncio
import os
import sys

import pytest

# Ensure repository root is on PYTHONPATH for tests
repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)

# Ensure placeholder secrets do not trigger validators during tests
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("ENABLE_RICH_PROGRESS", "false")

from models import (  # noqa: E402
    GenerationDescriptor,
    Participant,
    Perspective,
    ResponseShape,
    WorkItem,
)

STRUCTURED_TEXT = (
    "## Structure\nSolid turn.\n## Dialogue\nSharp.\n"
    "## Pacing\nBrisk.\n## Theme\nClear.\n## Recommendations\nTrim the opener."
)


class ScriptedProvider:
    """Fake analysis provider.

    ``failures`` maps an item title to exceptions raised, in order, by the
    structured call of successive attempts. ``delays`` maps a title to a
    sleep before answering. ``block`` makes every call hang until cancelled.
    """

    def __init__(
        self,
        failures=None,
        delays=None,
        summary_text=None,
        block=False,
    ):
        self.failures = {title: list(errs) for title, errs in (failures or {}).items()}
        self.delays = dict(delays or {})
        self.summary_text = summary_text
        self.block = block
        self.calls: list[tuple[str, GenerationDescriptor]] = []
        self.request_count = 0
        self.started = asyncio.Event()

    def _title(self, payload: str) -> str:
        for line in payload.splitlines():
            if line.startswith("Section: "):
                return line[len("Section: "):]
        return ""

    async def generate(self, payload, descriptor, cancel_token=None):
        self.calls.append((payload, descriptor))
        self.request_count += 1
        self.started.set()
        if self.block:
            await asyncio.Event().wait()

        if descriptor.response_shape is ResponseShape.JSON:
            if self.summary_text is None:
                raise RuntimeError("summary unavailable")
            return self.summary_text

        title = self._title(payload)
        if title in self.delays:
            await asyncio.sleep(self.delays[title])
        if descriptor.response_shape is ResponseShape.STRUCTURED:
            pending = self.failures.get(title)
            if pending:
                raise pending.pop(0)
            return STRUCTURED_TEXT
        return f"Margin notes for {title}"

    def calls_for(self, shape: ResponseShape) -> list[tuple[str, GenerationDescriptor]]:
        return [call for call in self.calls if call[1].response_shape is shape]


def make_items(count: int, content: str = "INT. DINER - NIGHT\nMAYA waits.") -> list[WorkItem]:
    return [
        WorkItem(
            id=f"s{n}",
            title=f"Scene {n}",
            content=content,
            participants=("MAYA",),
            index=n - 1,
        )
        for n in range(1, count + 1)
    ]


@pytest.fixture
def perspective() -> Perspective:
    return Perspective(
        id="engineer",
        name="The Engineer",
        tone="Blunt",
        priorities=("structure",),
        mantra="Cut what doesn't work.",
    )


@pytest.fixture
def blend() -> list[Perspective]:
    return [
        Perspective(id="a", name="Mentor A", weight=1.0),
        Perspective(id="b", name="Mentor B", weight=3.0),
    ]


@pytest.fixture
def participants() -> dict[str, Participant]:
    return {"MAYA": Participant(name="MAYA", notes=("Line cook", "Owes money"))}
