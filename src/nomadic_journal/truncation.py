"""Deterministic selection of a representative subset of oversized input."""

from __future__ import annotations

from typing import Callable, List, Sequence, TypeVar

from .validators import truncate_to_limit

T = TypeVar("T")


def order_by_date(items: Sequence[T], date_of: Callable[[T], str]) -> List[T]:
    """Stable date order; undated items keep their input position at the front."""
    indexed = list(enumerate(items))
    indexed.sort(key=lambda pair: (date_of(pair[1]) or "", pair[0]))
    return [item for _, item in indexed]


def most_recent(items: Sequence[T], count: int) -> List[T]:
    if count <= 0:
        return []
    return list(items[-count:])


def evenly_sampled(items: Sequence[T], count: int) -> List[T]:
    """``count`` evenly spaced items, always keeping the first and the last."""
    total = len(items)
    if count <= 0:
        return []
    if count >= total:
        return list(items)
    if count == 1:
        return [items[-1]]
    step = (total - 1) / (count - 1)
    indices = sorted({int(round(i * step)) for i in range(count)})
    return [items[i] for i in indices]


STRATEGIES = {
    "most_recent": most_recent,
    "evenly_sampled": evenly_sampled,
}


def select_within_budget(
    items: Sequence[T],
    fits: Callable[[List[T]], bool],
    strategy: str = "most_recent",
) -> List[T]:
    """Largest subset chosen by ``strategy`` for which ``fits`` holds.

    ``items`` must already be in chronological order. Falls back to a single
    item when nothing fits; the caller shortens that one item if needed.
    """
    pick = STRATEGIES[strategy]
    if not items or fits(list(items)):
        return list(items)

    low, high = 1, len(items) - 1
    best = 1
    while low <= high:
        mid = (low + high) // 2
        if fits(pick(items, mid)):
            best = mid
            low = mid + 1
        else:
            high = mid - 1
    return pick(items, best)


def shrink_text(text: str, fits: Callable[[str], bool]) -> str:
    """Longest ellipsis-truncated prefix of ``text`` accepted by ``fits``."""
    if fits(text):
        return text
    low, high = 0, len(text)
    best = truncate_to_limit(text, 0)
    while low <= high:
        mid = (low + high) // 2
        candidate = truncate_to_limit(text, mid)
        if fits(candidate):
            best = candidate
            low = mid + 1
        else:
            high = mid - 1
    return best
