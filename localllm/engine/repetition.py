"""Character-level repetition detection for early stopping.

Small models on constrained hardware fall into loops that re-emit the same
substring forever. The guard runs after each appended fragment and applies
three checks, in order; the first hit wins:

1. Long window: the trailing `long_window` characters are identical to the
   previous step's trailing window `long_max_repeats` times in a row.
2. Short window: same with `short_window` characters and
   `short_max_repeats` (shorter windows recur by chance more often).
3. Phrase: once the response is longer than `phrase_min_response_len`, the
   trailing `phrase_len` characters occur more than
   `phrase_max_occurrences` times in the whole response.

These are heuristics: short legitimate repeats (punctuation runs, tables) can
trigger them. That cost is accepted to bound worst-case generation time.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

KIND_LONG_WINDOW = "long_window"
KIND_SHORT_WINDOW = "short_window"
KIND_PHRASE = "phrase"


@dataclass(frozen=True)
class RepeatHit:
    kind: str
    window: int
    count: int


@dataclass(frozen=True)
class RepetitionGuardConfig:
    """Configuration for repetition early-stop."""

    enabled: bool = True
    long_window: int = 30
    long_max_repeats: int = 2
    short_window: int = 20
    short_max_repeats: int = 3
    phrase_len: int = 15
    phrase_min_response_len: int = 100
    phrase_max_occurrences: int = 4

    def validate(self) -> None:
        if self.long_window <= 0:
            raise ValueError("'repetition.long_window' must be > 0.")
        if self.short_window <= 0:
            raise ValueError("'repetition.short_window' must be > 0.")
        if self.long_max_repeats < 1:
            raise ValueError("'repetition.long_max_repeats' must be >= 1.")
        if self.short_max_repeats < 1:
            raise ValueError("'repetition.short_max_repeats' must be >= 1.")
        if self.phrase_len <= 0:
            raise ValueError("'repetition.phrase_len' must be > 0.")
        if self.phrase_min_response_len < 0:
            raise ValueError("'repetition.phrase_min_response_len' must be >= 0.")
        if self.phrase_max_occurrences < 1:
            raise ValueError("'repetition.phrase_max_occurrences' must be >= 1.")

    def merged(self, override: Any | None) -> "RepetitionGuardConfig":
        """Merge a request-level override (a RepetitionGuardConfig or a dict)."""
        if override is None:
            return self
        if isinstance(override, RepetitionGuardConfig):
            override.validate()
            return override
        if not isinstance(override, dict):
            raise ValueError("'repetition' must be an object.")

        data: dict[str, Any] = dict(override)
        unknown = set(data) - set(self.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown repetition fields: {', '.join(sorted(unknown))}")

        enabled = self.enabled
        if "enabled" in data:
            raw_enabled = data["enabled"]
            if not isinstance(raw_enabled, bool):
                raise ValueError("'repetition.enabled' must be a boolean.")
            enabled = raw_enabled

        def _pick(name: str, min_value: int) -> int:
            if name not in data:
                return getattr(self, name)
            return _coerce_int(data[name], name, min_value=min_value)

        merged = RepetitionGuardConfig(
            enabled=enabled,
            long_window=_pick("long_window", 1),
            long_max_repeats=_pick("long_max_repeats", 1),
            short_window=_pick("short_window", 1),
            short_max_repeats=_pick("short_max_repeats", 1),
            phrase_len=_pick("phrase_len", 1),
            phrase_min_response_len=_pick("phrase_min_response_len", 0),
            phrase_max_occurrences=_pick("phrase_max_occurrences", 1),
        )
        merged.validate()
        return merged


def _coerce_int(value: Any, name: str, *, min_value: int = 1) -> int:
    if isinstance(value, bool):
        raise ValueError(f"'repetition.{name}' must be an integer.")
    try:
        out = int(value)
    except Exception as exc:
        raise ValueError(f"'repetition.{name}' must be an integer.") from exc
    if out < min_value:
        raise ValueError(f"'repetition.{name}' must be >= {min_value}.")
    return out


def count_occurrences(text: str, needle: str) -> int:
    """Count occurrences of `needle` by scanning left to right.

    After a match the scan resumes past the end of the match, so overlapping
    occurrences are counted once.
    """
    if not needle:
        return 0
    count = 0
    pos = text.find(needle)
    while pos != -1:
        count += 1
        pos = text.find(needle, pos + len(needle))
    return count


class _WindowCounter:
    """Run-length counter for one trailing window."""

    def __init__(self, size: int) -> None:
        self.size = size
        self.previous: str | None = None
        self.repeats = 0

    def update(self, response: str) -> int:
        current = response[-self.size :]
        if self.previous is not None and current == self.previous:
            self.repeats += 1
        else:
            self.repeats = 0
        self.previous = current
        return self.repeats

    def reset(self) -> None:
        self.previous = None
        self.repeats = 0


class RepetitionGuard:
    """Per-session repetition state. Not shared across sessions."""

    def __init__(self, config: RepetitionGuardConfig | None = None) -> None:
        self.config = config or RepetitionGuardConfig()
        self.config.validate()
        self._long = _WindowCounter(self.config.long_window)
        self._short = _WindowCounter(self.config.short_window)

    @property
    def long_repeats(self) -> int:
        return self._long.repeats

    @property
    def short_repeats(self) -> int:
        return self._short.repeats

    def check(self, response: str) -> RepeatHit | None:
        """Update state with the current full response; return a hit or None."""
        cfg = self.config
        if not cfg.enabled:
            return None

        long_repeats = self._long.update(response)
        short_repeats = self._short.update(response)

        if long_repeats >= cfg.long_max_repeats:
            return RepeatHit(kind=KIND_LONG_WINDOW, window=cfg.long_window, count=long_repeats)
        if short_repeats >= cfg.short_max_repeats:
            return RepeatHit(kind=KIND_SHORT_WINDOW, window=cfg.short_window, count=short_repeats)

        if len(response) > cfg.phrase_min_response_len:
            phrase = response[-cfg.phrase_len :]
            occurrences = count_occurrences(response, phrase)
            if occurrences > cfg.phrase_max_occurrences:
                return RepeatHit(kind=KIND_PHRASE, window=cfg.phrase_len, count=occurrences)

        return None

    def reset(self) -> None:
        self._long.reset()
        self._short.reset()
