"""Token selection: an ordered chain of logit transforms.

Order is fixed: top-k -> top-p (nucleus) -> temperature -> terminal pick.
Each stage maps a 1-D logits tensor to a 1-D logits tensor; filtered entries
are set to -inf. The terminal stage reduces the tensor to one token id.

After the controller commits a token it must call `SamplerChain.accept()` so
stateful stages can update. None of the built-in stages keep state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

import torch

FINAL_GREEDY = "greedy"
FINAL_DIST = "dist"


@dataclass(frozen=True)
class SamplerConfig:
    """Sampler chain parameters.

    Notes:
    - `final="greedy"` makes the chain deterministic; the filters then only
      matter for what they exclude.
    - `repeat_penalty` is carried for configuration compatibility and is not
      applied by any stage.
    """

    top_k: int = 40
    top_p: float = 0.95
    temperature: float = 0.8
    final: str = FINAL_GREEDY
    seed: int | None = None
    repeat_penalty: float = 1.1

    def validate(self) -> None:
        if self.top_k < 0:
            raise ValueError("'sampler.top_k' must be >= 0 (0 disables).")
        if not (0.0 < self.top_p <= 1.0):
            raise ValueError("'sampler.top_p' must be in (0, 1].")
        if self.temperature < 0:
            raise ValueError("'sampler.temperature' must be >= 0.")
        if self.final not in (FINAL_GREEDY, FINAL_DIST):
            raise ValueError(f"'sampler.final' must be {FINAL_GREEDY!r} or {FINAL_DIST!r}.")
        if self.repeat_penalty <= 0:
            raise ValueError("'sampler.repeat_penalty' must be > 0.")

    def merged(self, override: Any | None) -> "SamplerConfig":
        """Merge a request-level override (a SamplerConfig or a dict of fields)."""
        if override is None:
            return self
        if isinstance(override, SamplerConfig):
            override.validate()
            return override
        if not isinstance(override, dict):
            raise ValueError("'sampler' must be an object.")

        data: dict[str, Any] = dict(override)
        unknown = set(data) - set(self.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown sampler fields: {', '.join(sorted(unknown))}")

        merged = SamplerConfig(
            top_k=self.top_k if "top_k" not in data else _coerce_int(data["top_k"], "top_k"),
            top_p=self.top_p if "top_p" not in data else _coerce_float(data["top_p"], "top_p"),
            temperature=(
                self.temperature
                if "temperature" not in data
                else _coerce_float(data["temperature"], "temperature")
            ),
            final=self.final if "final" not in data else str(data["final"]),
            seed=self.seed if "seed" not in data else data["seed"],
            repeat_penalty=(
                self.repeat_penalty
                if "repeat_penalty" not in data
                else _coerce_float(data["repeat_penalty"], "repeat_penalty")
            ),
        )
        merged.validate()
        return merged


def _coerce_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"'sampler.{name}' must be an integer.")
    try:
        return int(value)
    except Exception as exc:
        raise ValueError(f"'sampler.{name}' must be an integer.") from exc


def _coerce_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"'sampler.{name}' must be a number.")
    try:
        return float(value)
    except Exception as exc:
        raise ValueError(f"'sampler.{name}' must be a number.") from exc


# =============================================================================
# Stages
# =============================================================================


class SamplerStage:
    name = "stage"

    def apply(self, logits: torch.Tensor) -> torch.Tensor:
        return logits

    def accept(self, token: int) -> None:
        pass

    def reset(self) -> None:
        pass


class TopKStage(SamplerStage):
    """Keep the k highest logits."""

    name = "top_k"

    def __init__(self, k: int) -> None:
        self.k = int(k)

    def apply(self, logits: torch.Tensor) -> torch.Tensor:
        if self.k <= 0 or self.k >= logits.shape[-1]:
            return logits
        top = torch.topk(logits, self.k)
        out = torch.full_like(logits, float("-inf"))
        out[top.indices] = top.values
        return out


class TopPStage(SamplerStage):
    """Keep the smallest prefix (by probability) whose cumulative mass >= p."""

    name = "top_p"

    def __init__(self, p: float, *, min_keep: int = 1) -> None:
        self.p = float(p)
        self.min_keep = max(int(min_keep), 1)

    def apply(self, logits: torch.Tensor) -> torch.Tensor:
        if self.p >= 1.0:
            return logits
        sorted_logits, sorted_idx = torch.sort(logits, descending=True)
        probs = torch.softmax(sorted_logits, dim=-1)
        cumulative = torch.cumsum(probs, dim=-1)
        # A token stays if the mass before it has not yet reached p.
        keep = (cumulative - probs) < self.p
        keep[: self.min_keep] = True
        out = torch.full_like(logits, float("-inf"))
        out[sorted_idx[keep]] = sorted_logits[keep]
        return out


class TemperatureStage(SamplerStage):
    name = "temperature"

    def __init__(self, temperature: float) -> None:
        self.temperature = float(temperature)

    def apply(self, logits: torch.Tensor) -> torch.Tensor:
        if self.temperature <= 0 or self.temperature == 1.0:
            return logits
        return logits / self.temperature


class GreedyStage(SamplerStage):
    name = "greedy"

    def pick(self, logits: torch.Tensor) -> int:
        return int(torch.argmax(logits, dim=-1).item())


class DistStage(SamplerStage):
    """Draw from the remaining distribution (seeded when `seed` is set)."""

    name = "dist"

    def __init__(self, seed: int | None = None) -> None:
        self.seed = seed
        self._generator = torch.Generator()
        self.reset()

    def reset(self) -> None:
        if self.seed is None:
            self._generator.seed()
        else:
            self._generator.manual_seed(int(self.seed))

    def pick(self, logits: torch.Tensor) -> int:
        probs = torch.softmax(logits, dim=-1)
        if torch.isnan(probs).any() or torch.isinf(probs).any():
            probs = torch.nan_to_num(probs, nan=0.0, posinf=0.0, neginf=0.0)
            total = probs.sum()
            if total <= 0:
                return int(torch.argmax(logits, dim=-1).item())
            probs = probs / total
        return int(torch.multinomial(probs, 1, generator=self._generator).item())


# =============================================================================
# Chain
# =============================================================================


class SamplerChain:
    """Ordered filter stages followed by a terminal selection stage."""

    def __init__(self, stages: Sequence[SamplerStage], final: GreedyStage | DistStage) -> None:
        self._stages = list(stages)
        self._final = final
        self._accepted = 0

    @classmethod
    def from_config(cls, config: SamplerConfig) -> "SamplerChain":
        config.validate()
        final: GreedyStage | DistStage
        if config.final == FINAL_DIST:
            final = DistStage(seed=config.seed)
        else:
            final = GreedyStage()
        return cls(
            [
                TopKStage(config.top_k),
                TopPStage(config.top_p),
                TemperatureStage(config.temperature),
            ],
            final,
        )

    @property
    def stage_names(self) -> list[str]:
        return [s.name for s in self._stages] + [self._final.name]

    @property
    def accepted_tokens(self) -> int:
        return self._accepted

    def filter(self, logits: torch.Tensor) -> torch.Tensor:
        """Run the filter stages only; returns float32 1-D logits."""
        out = logits.detach().reshape(-1).float()
        for stage in self._stages:
            out = stage.apply(out)
        return out

    def sample(self, logits: torch.Tensor) -> int:
        return self._final.pick(self.filter(logits))

    def accept(self, token: int) -> None:
        for stage in self._stages:
            stage.accept(token)
        self._final.accept(token)
        self._accepted += 1

    def reset(self) -> None:
        for stage in self._stages:
            stage.reset()
        self._final.reset()
        self._accepted = 0
