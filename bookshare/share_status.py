from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


class ShareStatus(Enum):
    """Lifecycle status of a share, with the server's integer wire values."""

    REQUESTED = 1
    READY = 2
    PICKED_UP = 3
    RETURNED = 4
    HOME_SAFE = 5
    DISPUTED = 6
    DECLINED = 7

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def on_happy_path(self) -> bool:
        return self in HAPPY_PATH

    @property
    def position(self) -> int:
        """Zero-based index on the happy path.

        Disputed and Declined have no position; asking for one raises
        ``ValueError`` instead of silently comparing integer values.
        """
        return happy_path_position(self)

    @classmethod
    def parse(cls, value) -> "ShareStatus":
        if isinstance(value, ShareStatus):
            return value
        try:
            return cls(int(value))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Unknown share status: {value!r}") from exc


class TerminalOutcome(str, Enum):
    """How a share ended up in a terminal state."""

    SUCCESS = "success"
    DISPUTED = "disputed"
    DECLINED = "declined"


HAPPY_PATH: Tuple[ShareStatus, ...] = (
    ShareStatus.REQUESTED,
    ShareStatus.READY,
    ShareStatus.PICKED_UP,
    ShareStatus.RETURNED,
    ShareStatus.HOME_SAFE,
)

TERMINAL_STATUSES: FrozenSet[ShareStatus] = frozenset(
    {ShareStatus.HOME_SAFE, ShareStatus.DISPUTED, ShareStatus.DECLINED}
)

# Statuses from which either party may raise a dispute
DISPUTABLE_STATUSES: FrozenSet[ShareStatus] = frozenset(
    {ShareStatus.REQUESTED, ShareStatus.READY, ShareStatus.PICKED_UP, ShareStatus.RETURNED}
)

TERMINAL_OUTCOMES: Dict[ShareStatus, TerminalOutcome] = {
    ShareStatus.HOME_SAFE: TerminalOutcome.SUCCESS,
    ShareStatus.DISPUTED: TerminalOutcome.DISPUTED,
    ShareStatus.DECLINED: TerminalOutcome.DECLINED,
}

TRANSITIONS: Dict[ShareStatus, FrozenSet[ShareStatus]] = {
    ShareStatus.REQUESTED: frozenset({ShareStatus.READY, ShareStatus.DECLINED, ShareStatus.DISPUTED}),
    ShareStatus.READY: frozenset({ShareStatus.PICKED_UP, ShareStatus.DISPUTED}),
    ShareStatus.PICKED_UP: frozenset({ShareStatus.RETURNED, ShareStatus.DISPUTED}),
    ShareStatus.RETURNED: frozenset({ShareStatus.HOME_SAFE, ShareStatus.DISPUTED}),
    ShareStatus.HOME_SAFE: frozenset(),
    ShareStatus.DISPUTED: frozenset(),
    ShareStatus.DECLINED: frozenset(),
}


def happy_path_position(status: ShareStatus) -> int:
    try:
        return HAPPY_PATH.index(status)
    except ValueError:
        raise ValueError(f"{status.name} is not on the happy path") from None


def terminal_outcome(status: ShareStatus) -> Optional[TerminalOutcome]:
    return TERMINAL_OUTCOMES.get(status)


def is_legal_transition(current: ShareStatus, target: ShareStatus) -> bool:
    return target in TRANSITIONS[current]


def next_status(current: ShareStatus) -> Optional[ShareStatus]:
    """Return the happy-path successor of ``current``, or None at the end or off-path."""
    if not current.on_happy_path:
        return None
    index = happy_path_position(current)
    if index == len(HAPPY_PATH) - 1:
        return None
    return HAPPY_PATH[index + 1]


def sort_key(status: ShareStatus) -> Tuple[int, int]:
    # Happy-path statuses first in lifecycle order, then the off-path ones
    if status.on_happy_path:
        return (0, happy_path_position(status))
    return (1, status.value)
