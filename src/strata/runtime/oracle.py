from __future__ import annotations

import random
import threading
from dataclasses import dataclass

SCALE = 1000


@dataclass(frozen=True, slots=True)
class OracleDraw:
    threshold: int
    passed: bool
    index: int


class RandomnessOracle:
    """Resolves probability thresholds on a 0-1000 scale.

    The draw never comes from a model: layers only compute thresholds and
    the scheduler asks the oracle. A seed makes the outcome sequence
    reproducible; without one the system random source is used.
    """

    def __init__(self, seed: int | None = None) -> None:
        self.seed = seed
        self._rng: random.Random = random.Random(seed) if seed is not None else random.SystemRandom()
        self._lock = threading.Lock()
        self._draws = 0

    @property
    def draws(self) -> int:
        return self._draws

    def draw(self, threshold: int) -> OracleDraw:
        if isinstance(threshold, bool) or not isinstance(threshold, int):
            raise ValueError("threshold must be an int")
        if threshold < 0 or threshold > SCALE:
            raise ValueError(f"threshold must be within [0, {SCALE}]")
        with self._lock:
            value = self._rng.randrange(SCALE)
            self._draws += 1
            index = self._draws
        return OracleDraw(threshold=threshold, passed=value < threshold, index=index)

    def resolve(self, threshold: int) -> bool:
        return self.draw(threshold).passed
