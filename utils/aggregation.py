"""
Ranking helpers for provider stats summaries.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple


def rank_by_weight(
    pairs: Iterable[Tuple[str, int]],
    top_n: Optional[int] = None,
) -> List[Tuple[str, int]]:
    """
    Sum weights per key and sort descending.

    Ties keep the order in which the key was first seen (dicts preserve
    insertion order and ``sorted`` is stable).
    """
    totals: Dict[str, int] = {}
    for key, weight in pairs:
        if not key:
            continue
        totals[key] = totals.get(key, 0) + weight
    ranked = sorted(totals.items(), key=lambda kv: -kv[1])
    return ranked if top_n is None else ranked[:top_n]
