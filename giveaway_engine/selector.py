"""Uniform random winner selection.

Fairness here is a social property, not a security boundary: the generator must be
statistically uniform, it does not need to resist a determined adversary. That is why
a seedable ``random.Random`` is used rather than ``secrets``.
"""

from __future__ import annotations

import random
from typing import Iterable, Optional


class WinnerSelector:
    """Picks one user uniformly from ``pool - excluded``."""

    def __init__(self, seed: Optional[int] = None) -> None:
        self._rng = random.Random(seed)

    def select(self, pool: Iterable[int], excluded: Iterable[int] = ()) -> Optional[int]:
        """Return a winner, or ``None`` when the remaining pool is empty."""
        excluded_set = set(excluded)
        # Sorted so a given seed reproduces the same pick regardless of set ordering.
        population = sorted(set(pool) - excluded_set)
        if not population:
            return None
        return self._rng.choice(population)
