"""Jaro and Jaro-Winkler string similarity."""
from __future__ import annotations

from typing import List

MAX_PREFIX = 4


def jaro(a: str, b: str) -> float:
    """Case-insensitive Jaro similarity in [0, 1].

    Two empty strings score 1.0; exactly one empty string scores 0.0.
    """
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    s1 = a.lower()
    s2 = b.lower()
    len1, len2 = len(s1), len(s2)
    window = max(0, max(len1, len2) // 2 - 1)

    matched1: List[bool] = [False] * len1
    matched2: List[bool] = [False] * len2
    matches = 0
    for i, char in enumerate(s1):
        start = max(0, i - window)
        end = min(i + window + 1, len2)
        for j in range(start, end):
            if matched2[j] or s2[j] != char:
                continue
            matched1[i] = True
            matched2[j] = True
            matches += 1
            break
    if matches == 0:
        return 0.0

    transpositions = 0
    k = 0
    for i in range(len1):
        if not matched1[i]:
            continue
        while not matched2[k]:
            k += 1
        if s1[i] != s2[k]:
            transpositions += 1
        k += 1
    half = transpositions / 2
    return (matches / len1 + matches / len2 + (matches - half) / matches) / 3


def common_prefix(a: str, b: str, limit: int = MAX_PREFIX) -> int:
    length = 0
    for x, y in zip(a[:limit].lower(), b[:limit].lower()):
        if x != y:
            break
        length += 1
    return length


def jaro_winkler(a: str, b: str, prefix_weight: float = 0.1) -> float:
    """Jaro similarity boosted by a shared prefix of up to four characters."""
    score = jaro(a, b)
    return score + common_prefix(a, b) * prefix_weight * (1 - score)
