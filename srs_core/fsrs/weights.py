"""
FSRS Weight Vector

The long-term model is driven by 21 fitted parameters. Externally fit
parameter sets are plain positional lists (w0..w20); WeightVector keeps that
exact order but gives every slot a name so the update equations never index
a raw list.
"""

from __future__ import annotations
from dataclasses import dataclass, fields, astuple
from typing import Iterable
import math

from srs_core.fsrs.constants import Rating


WEIGHT_COUNT = 21


class ConfigurationError(ValueError):
    """Invalid model configuration (e.g. wrong number of weights). Not retryable."""


@dataclass(frozen=True)
class WeightVector:
    """
    Named view over the 21 FSRS weights.

    Field order IS the positional order used by the optimizer output.
    """
    initial_stability_again: float      # w0
    initial_stability_hard: float       # w1
    initial_stability_good: float       # w2
    initial_stability_easy: float       # w3
    initial_difficulty_base: float      # w4
    initial_difficulty_spread: float    # w5
    difficulty_step: float              # w6
    difficulty_mean_reversion: float    # w7
    success_stability_base: float       # w8
    success_stability_decay: float      # w9
    success_retrievability_factor: float  # w10
    failure_stability_base: float       # w11
    failure_difficulty_exponent: float  # w12
    failure_stability_exponent: float   # w13
    failure_retrievability_factor: float  # w14
    hard_interval_modifier: float       # w15
    easy_interval_modifier: float       # w16
    same_day_rating_factor: float       # w17
    same_day_rating_offset: float       # w18
    same_day_stability_decay: float     # w19
    forgetting_curve_decay: float       # w20

    @classmethod
    def from_sequence(cls, values: Iterable[float]) -> "WeightVector":
        """
        Build a WeightVector from a positional list.

        Raises:
            ConfigurationError: unless exactly 21 finite numbers are given
        """
        if values is None:
            raise ConfigurationError("FSRS requires exactly 21 weights, got None")
        try:
            as_floats = [float(v) for v in values]
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"FSRS weights must be numeric: {exc}") from None

        if len(as_floats) != WEIGHT_COUNT:
            raise ConfigurationError(
                f"FSRS requires exactly {WEIGHT_COUNT} weights, got {len(as_floats)}"
            )
        if not all(math.isfinite(v) for v in as_floats):
            raise ConfigurationError("FSRS weights must all be finite numbers")
        if as_floats[20] <= 0:
            raise ConfigurationError("Forgetting curve decay (w20) must be positive")
        return cls(*as_floats)

    def as_list(self) -> list[float]:
        """Positional list, compatible with optimizer input/output."""
        return list(astuple(self))

    def initial_stability(self, rating: Rating) -> float:
        """S0 for a first rating: w0..w3 by rating."""
        return self.as_list()[int(rating) - 1]

    @staticmethod
    def names() -> list[str]:
        return [f.name for f in fields(WeightVector)]


# Library defaults, used until a user's weights are fitted
DEFAULT_WEIGHTS = WeightVector.from_sequence([
    0.4,    # w0: Initial stability for Again
    0.9,    # w1: Initial stability for Hard
    2.3,    # w2: Initial stability for Good
    10.9,   # w3: Initial stability for Easy
    4.93,   # w4: Initial difficulty base
    0.94,   # w5: Initial difficulty spread
    0.86,   # w6: Difficulty step
    0.01,   # w7: Difficulty mean reversion
    1.49,   # w8: Success stability base
    0.14,   # w9: Success stability diminishing returns
    0.94,   # w10: Success stability retrievability factor
    2.18,   # w11: Failure stability base
    0.05,   # w12: Failure stability difficulty factor
    0.34,   # w13: Failure stability preservation
    1.26,   # w14: Failure stability retrievability factor
    0.29,   # w15: Hard interval modifier
    2.61,   # w16: Easy interval modifier
    0.5,    # w17: Same-day rating factor
    0.3,    # w18: Same-day rating offset
    0.8,    # w19: Same-day stability saturation
    9.0,    # w20: Forgetting curve decay
])
