# core/usage.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field


@dataclass
class TokenUsage:
    """Provider token usage accumulated over a run."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    responses: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def add(self, usage: TokenUsage | dict[str, int] | None) -> None:
        """Accumulate the ``usage`` block of a completion response."""
        if not usage:
            return
        if isinstance(usage, TokenUsage):
            delta = usage.snapshot()
        else:
            delta = {
                key: value
                for key, value in usage.items()
                if isinstance(value, int)
            }
        with self._lock:
            self.prompt_tokens += delta.get("prompt_tokens", 0)
            self.completion_tokens += delta.get("completion_tokens", 0)
            self.total_tokens += delta.get("total_tokens", 0)
            self.responses += 1

    def snapshot(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }

    def since(self, baseline: dict[str, int]) -> dict[str, int] | None:
        """Usage added after ``baseline`` was taken, or ``None`` if nothing was."""
        current = self.snapshot()
        delta = {key: current[key] - baseline.get(key, 0) for key in current}
        if any(delta.values()):
            return delta
        return None
