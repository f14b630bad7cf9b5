"""
Swing Pivots

A swing low at index i is confirmed when the ``left`` bars before it and
the ``right`` bars after it are all strictly higher; swing highs mirror
this. Equal neighbours never confirm a pivot.
"""

from enum import Enum
from typing import List, NamedTuple, Optional, Sequence, Tuple


class PivotKind(Enum):
    HIGH = "high"
    LOW = "low"


class SwingPivot(NamedTuple):
    index: int
    value: float
    kind: PivotKind


def _find(values: Sequence[float], left: int, right: int, kind: PivotKind) -> List[SwingPivot]:
    if left < 1 or right < 1:
        raise ValueError(f"Pivot widths must be >= 1, got left={left} right={right}")

    pivots = []
    for i in range(left, len(values) - right):
        v = values[i]
        neighbours = list(values[i - left:i]) + list(values[i + 1:i + right + 1])
        if kind is PivotKind.LOW:
            confirmed = all(n > v for n in neighbours)
        else:
            confirmed = all(n < v for n in neighbours)
        if confirmed:
            pivots.append(SwingPivot(index=i, value=float(v), kind=kind))
    return pivots


def find_swing_lows(values: Sequence[float], left: int = 2, right: int = 2) -> List[SwingPivot]:
    return _find(values, left, right, PivotKind.LOW)


def find_swing_highs(values: Sequence[float], left: int = 2, right: int = 2) -> List[SwingPivot]:
    return _find(values, left, right, PivotKind.HIGH)


def latest_pivot_pair(pivots: Sequence[SwingPivot],
                      min_gap: int) -> Optional[Tuple[SwingPivot, SwingPivot]]:
    """
    Most recent pivot plus the nearest earlier pivot at least ``min_gap`` bars back.

    Returns:
        (prior, recent) or None if no such pair exists
    """
    if len(pivots) < 2:
        return None

    recent = pivots[-1]
    for prior in reversed(pivots[:-1]):
        if recent.index - prior.index >= min_gap:
            return prior, recent
    return None
