"""Wheel spin: weighted segments per risk level."""
from dataclasses import dataclass
from enum import Enum
from fractions import Fraction
from typing import List

from wager_client.errors import InvalidParametersError
from wager_client.games.grid import payout_for


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# (multiplier, weight out of 100). Higher risk moves weight onto 0x and stretches the top prize.
RISK_TABLES = {
    RiskLevel.LOW: (
        (Fraction(0), 25),
        (Fraction(6, 5), 60),
        (Fraction(3, 2), 15),
    ),
    RiskLevel.MEDIUM: (
        (Fraction(0), 50),
        (Fraction(3, 2), 30),
        (Fraction(2), 12),
        (Fraction(7, 2), 8),
    ),
    RiskLevel.HIGH: (
        (Fraction(0), 76),
        (Fraction(2), 12),
        (Fraction(5), 9),
        (Fraction(10), 3),
    ),
}

MIN_SEGMENTS = 4
MAX_SEGMENTS = 100


@dataclass(frozen=True)
class Segment:
    position: int
    multiplier: Fraction
    weight: Fraction


@dataclass(frozen=True)
class SpinResult:
    position: int
    multiplier: Fraction
    payout: int
    threshold: Fraction

    @property
    def won(self) -> bool:
        return self.payout > 0


def _apportion(segment_count: int, table) -> List[int]:
    """Largest-remainder split of segment_count across tiers, every tier at least one slot."""
    total_weight = sum(w for _, w in table)
    counts = [1] * len(table)
    remaining = segment_count - len(table)
    shares = [Fraction(w * remaining, total_weight) for _, w in table]
    for i, share in enumerate(shares):
        counts[i] += int(share)
    leftover = segment_count - sum(counts)
    by_remainder = sorted(range(len(table)), key=lambda i: shares[i] - int(shares[i]), reverse=True)
    for i in by_remainder[:leftover]:
        counts[i] += 1
    return counts


def wheel_segments(segment_count: int, risk_level: RiskLevel) -> List[Segment]:
    if not MIN_SEGMENTS <= segment_count <= MAX_SEGMENTS:
        raise InvalidParametersError(
            f"segment count must be between {MIN_SEGMENTS} and {MAX_SEGMENTS}, got {segment_count}"
        )
    table = RISK_TABLES[RiskLevel(risk_level)]
    counts = _apportion(segment_count, table)
    segments: List[Segment] = []
    for (multiplier, weight), count in zip(table, counts):
        # a tier keeps its probability no matter how many slots it spans
        per_slot = Fraction(weight, count)
        for _ in range(count):
            segments.append(Segment(position=len(segments), multiplier=multiplier, weight=per_slot))
    return segments


def pick_segment(segments: List[Segment], rng) -> Segment:
    total_weight = sum(s.weight for s in segments)
    r = Fraction(rng.random()) * total_weight
    cumulative = Fraction(0)
    for s in segments:
        cumulative += s.weight
        if r < cumulative:
            return s
    return segments[-1]


def spin(segment_count: int, risk_level: RiskLevel, rng, stake: int = 0, threshold=0) -> SpinResult:
    segment = pick_segment(wheel_segments(segment_count, risk_level), rng)
    threshold = Fraction(str(threshold)) if isinstance(threshold, float) else Fraction(threshold)
    won = segment.multiplier > 0 and segment.multiplier >= threshold
    return SpinResult(
        position=segment.position,
        multiplier=segment.multiplier,
        payout=payout_for(stake, segment.multiplier) if won else 0,
        threshold=threshold,
    )
