"""Win and terminal-state evaluation for a single 3x3 tic-tac-toe board."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

Mark = str  # "X" or "O"
Cell = Optional[Mark]  # None for an empty cell

X: Mark = "X"
O: Mark = "O"
DRAW = "draw"
BOARD_SIZE = 9

WINNING_LINES: Tuple[Tuple[int, int, int], ...] = (
    (0, 1, 2),
    (3, 4, 5),
    (6, 7, 8),
    (0, 3, 6),
    (1, 4, 7),
    (2, 5, 8),
    (0, 4, 8),
    (2, 4, 6),
)


@dataclass(frozen=True)
class Outcome:
    """Result of evaluating a board.

    ``winner`` is the winning mark, ``DRAW`` for a full board without a line,
    or ``None`` while the game is still open. ``line`` holds the first winning
    triple found.
    """

    winner: Optional[str] = None
    line: Optional[Tuple[int, int, int]] = None

    @property
    def finished(self) -> bool:
        return self.winner is not None


def empty_board() -> List[Cell]:
    return [None] * BOARD_SIZE


def other(mark: Mark) -> Mark:
    return O if mark == X else X


def find_winner(cells: Sequence[Cell]) -> Optional[Tuple[Mark, Tuple[int, int, int]]]:
    for a, b, c in WINNING_LINES:
        v = cells[a]
        if v and v == cells[b] == cells[c]:
            return v, (a, b, c)
    return None


def is_full(cells: Sequence[Cell]) -> bool:
    return all(c for c in cells)


def evaluate(cells: Sequence[Cell]) -> Outcome:
    """Return the terminal state of ``cells``."""

    if len(cells) != BOARD_SIZE:
        raise ValueError(f"Board must have {BOARD_SIZE} cells, got {len(cells)}")
    found = find_winner(cells)
    if found:
        mark, line = found
        return Outcome(winner=mark, line=line)
    if is_full(cells):
        return Outcome(winner=DRAW)
    return Outcome()
