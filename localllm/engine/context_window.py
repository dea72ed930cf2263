"""Context-window occupancy bookkeeping.

The engine reports context exhaustion only after the fact (decode returns 1),
so every decode is checked against this tracker first.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from .errors import ContextOverflowError


class RejectReason(str, enum.Enum):
    PROMPT_EXCEEDS_CAPACITY = "prompt_exceeds_capacity"
    NO_ROOM_FOR_GENERATION = "no_room_for_generation"


@dataclass(frozen=True)
class Admission:
    admitted: bool
    budget: int
    reason: RejectReason | None = None

    def describe(self, *, prompt_tokens: int, capacity: int) -> str:
        if self.admitted:
            return f"Admitted: budget={self.budget} tokens."
        if self.reason == RejectReason.PROMPT_EXCEEDS_CAPACITY:
            return f"Prompt too long: {prompt_tokens} tokens (context capacity={capacity})."
        return (
            f"Prompt too long: {prompt_tokens} tokens leaves no room for a response "
            f"(context capacity={capacity})."
        )


class ContextWindow:
    """Tracks tokens committed to a fixed-capacity decoding context."""

    def __init__(self, capacity: int, *, safety_margin: int = 10) -> None:
        if capacity <= 0:
            raise ValueError("'capacity' must be > 0.")
        if safety_margin < 0:
            raise ValueError("'safety_margin' must be >= 0.")
        self._capacity = int(capacity)
        self._safety_margin = int(safety_margin)
        self._committed = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def safety_margin(self) -> int:
        return self._safety_margin

    @property
    def committed(self) -> int:
        return self._committed

    @property
    def remaining(self) -> int:
        return self._capacity - self._committed

    def prediction_budget(self, prompt_tokens: int, max_new_tokens: int) -> int:
        """min(max_new_tokens, capacity - prompt - margin); may be <= 0."""
        return min(int(max_new_tokens), self._capacity - int(prompt_tokens) - self._safety_margin)

    def admit(self, prompt_tokens: int, max_new_tokens: int) -> Admission:
        budget = self.prediction_budget(prompt_tokens, max_new_tokens)
        if prompt_tokens >= self._capacity:
            return Admission(False, budget, RejectReason.PROMPT_EXCEEDS_CAPACITY)
        if budget <= 0:
            return Admission(False, budget, RejectReason.NO_ROOM_FOR_GENERATION)
        return Admission(True, budget)

    def fits(self, n_tokens: int) -> bool:
        return n_tokens >= 0 and self._committed + n_tokens <= self._capacity

    def commit(self, n_tokens: int) -> None:
        if not self.fits(n_tokens):
            raise ContextOverflowError(
                committed=self._committed, requested=n_tokens, capacity=self._capacity
            )
        self._committed += n_tokens

    def reset(self) -> None:
        self._committed = 0
