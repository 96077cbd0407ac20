# ═══════════════════════════════════════════════════════════════════════════════
# PART 1: PSEUDO-RANDOM STREAM
# Design: P1 (Dynamical Systems) | Implementation: I2 (Numerics)
# ═══════════════════════════════════════════════════════════════════════════════

"""
P1: "Every synthetic input has to be replayable. Same seed, same calls, same
numbers, on any machine, after any save/load."

I2: "Park-Miller minimal standard: multiplier 16807, modulus 2^31 - 1. Integer
state, no platform float quirks in the recurrence. Box-Muller on top for
gaussians, with u1 kept off zero so log() never blows up."
"""

from __future__ import annotations

import math
from typing import List, MutableSequence, Optional, Sequence, TypeVar

MODULUS = 2147483647          # 2^31 - 1
MULTIPLIER = 16807
_SPAN = MODULUS - 1           # 2^31 - 2, number of distinct states

# Smallest positive value random() can return
_MIN_UNIFORM = 1.0 / _SPAN

T = TypeVar("T")


def normalize_seed(seed: int) -> int:
    """
    Map any integer onto a valid generator state in [1, 2^31 - 2].

    The remainder keeps the sign of the seed (truncated division), and
    non-positive remainders are shifted up by 2^31 - 2.
    """
    seed = int(seed)
    state = abs(seed) % MODULUS
    if seed < 0:
        state = -state
    if state <= 0:
        state += _SPAN
    return state


class PseudoRandomStream:
    """
    Multiplicative linear-congruential generator.

    Determinism is the whole contract: two streams created with the same seed
    and driven by the same call sequence return identical values.
    """

    def __init__(self, seed: int):
        self.seed = seed
        self.state = normalize_seed(seed)

    def random(self) -> float:
        """Advance the state and return a uniform value in [0, 1)."""
        self.state = (self.state * MULTIPLIER) % MODULUS
        return (self.state - 1) / _SPAN

    def random_int(self, low: int, high: int) -> int:
        """Uniform integer in [low, high)."""
        return int(math.floor(self.random() * (high - low))) + low

    def gaussian(self, mean: float = 0.0, std: float = 1.0) -> float:
        """Normal deviate via Box-Muller (consumes two uniform draws)."""
        u1 = max(self.random(), _MIN_UNIFORM)
        u2 = self.random()
        z0 = math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)
        return z0 * std + mean

    def choice(self, items: Sequence[T]) -> Optional[T]:
        if not items:
            return None
        return items[self.random_int(0, len(items))]

    def shuffle(self, items: MutableSequence[T]) -> MutableSequence[T]:
        """In-place Fisher-Yates shuffle. Returns the same sequence."""
        for i in range(len(items) - 1, 0, -1):
            j = self.random_int(0, i + 1)
            items[i], items[j] = items[j], items[i]
        return items

    def reset(self, seed: int) -> None:
        self.seed = seed
        self.state = normalize_seed(seed)

    def sample(self, n: int) -> List[float]:
        """Draw n uniform values (convenience for previews and tests)."""
        return [self.random() for _ in range(n)]
