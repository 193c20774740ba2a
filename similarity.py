# -*- coding: utf-8 -*-
"""
String similarity metrics.

All layers take a `SimilarityFn` so the metric can be swapped without touching
the matching code. A metric must be symmetric, bounded to [0, 1] and return 1.0
for identical strings.
"""

from typing import Callable

from rapidfuzz import fuzz


SimilarityFn = Callable[[str, str], float]


def ratio_similarity(a: str, b: str) -> float:
    """Normalized Indel similarity (edit-distance based)."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    return fuzz.ratio(a, b) / 100.0


def token_sort_similarity(a: str, b: str) -> float:
    """Order-independent token similarity ("pick up patrol" == "patrol pick up")."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    return fuzz.token_sort_ratio(a, b) / 100.0


DEFAULT_SIMILARITY: SimilarityFn = ratio_similarity


SIMILARITY_METRICS = {
    'ratio': ratio_similarity,
    'token_sort': token_sort_similarity,
}


def get_similarity(name: str) -> SimilarityFn:
    """Look up a metric by name (raises ValueError for unknown names)."""
    try:
        return SIMILARITY_METRICS[name]
    except KeyError:
        raise ValueError(
            f"Unknown similarity metric: {name}. Available: {list(SIMILARITY_METRICS.keys())}"
        ) from None
