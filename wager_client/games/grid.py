"""Concealment grid: cells hide a fixed number of mines, each safe reveal raises the multiplier."""
from dataclasses import dataclass, field, replace
from enum import Enum
from fractions import Fraction
from typing import Optional, Tuple

from wager_client.config import TerminalState, settings
from wager_client.errors import InvalidIndexError, InvalidParametersError, NotActiveError

# floor for the multiplier denominator once every safe cell is found
DEGENERATE_DENOMINATOR = Fraction(1, 2)


class RevealOutcome(str, Enum):
    SAFE = "safe"
    MINE_HIT = "mine_hit"
    ALL_CLEAR = "all_clear"


@dataclass(frozen=True)
class GameSession:
    total_cells: int
    concealed_count: int
    concealed_set: frozenset
    stake: int = 0
    revealed: Tuple[int, ...] = ()
    multiplier: Fraction = Fraction(1)
    terminal_state: Optional[TerminalState] = None
    exploded_at: Optional[int] = field(default=None)

    @property
    def revealed_set(self) -> frozenset:
        return frozenset(self.revealed)

    @property
    def safe_cells(self) -> int:
        return self.total_cells - self.concealed_count

    @property
    def visible_concealed(self) -> frozenset:
        """Mine positions are only disclosed once the round is over."""
        return self.concealed_set if self.terminal_state is not None else frozenset()

    @property
    def potential_payout(self) -> int:
        if self.terminal_state is TerminalState.LOST:
            return 0
        return payout_for(self.stake, self.multiplier)


def payout_for(stake: int, multiplier: Fraction) -> int:
    """stake x multiplier, rounded down to the ledger's integer unit."""
    return int(stake * multiplier.numerator // multiplier.denominator)


def multiplier_after(total_cells: int, concealed_count: int, revealed_count: int) -> Fraction:
    if revealed_count == 0:
        return Fraction(1)
    denominator = Fraction(total_cells - concealed_count - revealed_count)
    if denominator <= 0:
        denominator = DEGENERATE_DENOMINATOR
    value = Fraction(total_cells) / denominator
    ceiling = Fraction(settings.multiplier_ceiling)
    return min(value, ceiling)


def sample_without_replacement(population: int, count: int, rng) -> frozenset:
    """Partial Fisher-Yates: the first ``count`` slots end up uniformly chosen."""
    cells = list(range(population))
    for i in range(count):
        j = rng.randrange(i, population)
        cells[i], cells[j] = cells[j], cells[i]
    return frozenset(cells[:count])


def check_parameters(total_cells: int, concealed_count: int) -> None:
    if total_cells < 2:
        raise InvalidParametersError(f"grid needs at least 2 cells, got {total_cells}")
    if not 1 <= concealed_count <= total_cells - 1:
        raise InvalidParametersError(
            f"concealed count must be between 1 and {total_cells - 1}, got {concealed_count}"
        )


def start(total_cells: int, concealed_count: int, rng, stake: int = 0) -> GameSession:
    check_parameters(total_cells, concealed_count)
    return GameSession(
        total_cells=total_cells,
        concealed_count=concealed_count,
        concealed_set=sample_without_replacement(total_cells, concealed_count, rng),
        stake=stake,
    )


def reveal(session: GameSession, index: int) -> Tuple[GameSession, RevealOutcome]:
    if session.terminal_state is not None:
        raise InvalidIndexError(f"round already ended ({session.terminal_state.value})")
    if not 0 <= index < session.total_cells:
        raise InvalidIndexError(f"cell {index} is outside 0..{session.total_cells - 1}")
    if index in session.revealed_set:
        raise InvalidIndexError(f"cell {index} already revealed")

    if index in session.concealed_set:
        lost = replace(session, terminal_state=TerminalState.LOST, exploded_at=index)
        return lost, RevealOutcome.MINE_HIT

    revealed = session.revealed + (index,)
    multiplier = multiplier_after(session.total_cells, session.concealed_count, len(revealed))
    if len(revealed) == session.safe_cells:
        won = replace(session, revealed=revealed, multiplier=multiplier, terminal_state=TerminalState.WON)
        return won, RevealOutcome.ALL_CLEAR
    return replace(session, revealed=revealed, multiplier=multiplier), RevealOutcome.SAFE


def cash_out(session: GameSession) -> Tuple[GameSession, int]:
    if session.terminal_state is not None:
        raise NotActiveError(f"round already ended ({session.terminal_state.value})")
    if not session.revealed:
        raise NotActiveError("reveal at least one cell before cashing out")
    cashed = replace(session, terminal_state=TerminalState.CASHED_OUT)
    return cashed, payout_for(session.stake, session.multiplier)
