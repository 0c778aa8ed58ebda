# sibflo/diversity_sampler.py
import itertools
import logging
import random
from typing import List, Sequence, Tuple

from sibflo.models import Dimension
from sibflo.prompts import NO_DESIGN_PARAMETERS

logger = logging.getLogger("sibflo_backend")

Combination = Tuple[Tuple[str, str], ...]


def format_combination(combo: Combination) -> str:
    return ", ".join(f"{dim}: {opt}" for dim, opt in combo)


def hamming(a: Combination, b: Combination) -> int:
    return sum(1 for (_, x), (_, y) in zip(a, b) if x != y)


def all_combinations(design_space: Sequence[Dimension]) -> List[Combination]:
    """
    Cartesian product of every dimension's options, in dimension order.
    Dimensions without options are left out.
    """
    axes = [
        [(dim.name, opt.name) for opt in dim.options]
        for dim in design_space if dim.options
    ]
    if not axes:
        return []
    return [tuple(combo) for combo in itertools.product(*axes)]


class DiversitySampler:
    """
    Picks parameter combinations that spread over the design space.

    The first combination is drawn at random (or given); each following one is
    the pool member with the largest summed Hamming distance to everything chosen
    so far, ties going to the earliest in product order. Only the first pick is random.
    """

    def __init__(self, seed: int | None = None, rng: random.Random | None = None):
        self._rng = rng or random.Random(seed)

    def sample(self, design_space: Sequence[Dimension], count: int = 4, first: int | str | None = None) -> List[str]:
        pool = all_combinations(design_space)
        if not pool:
            return [NO_DESIGN_PARAMETERS]
        if count <= 0:
            return []

        first_index = self._first_index(pool, first)
        chosen = [pool.pop(first_index)]

        while pool and len(chosen) < count:
            best_index, best_score = 0, -1
            for i, candidate in enumerate(pool):
                score = sum(hamming(candidate, c) for c in chosen)
                if score > best_score:
                    best_index, best_score = i, score
            chosen.append(pool.pop(best_index))
            logger.debug(f"DiversitySampler: pick {len(chosen)} (distance {best_score}): {format_combination(chosen[-1])}")

        return [format_combination(c) for c in chosen]

    def _first_index(self, pool: List[Combination], first: int | str | None) -> int:
        if first is None:
            return self._rng.randrange(len(pool))
        if isinstance(first, str):
            for i, combo in enumerate(pool):
                if format_combination(combo) == first:
                    return i
            raise ValueError(f"Combination not in design space: {first}")
        if not 0 <= first < len(pool):
            raise ValueError(f"First combination index {first} out of range (0-{len(pool) - 1})")
        return first
