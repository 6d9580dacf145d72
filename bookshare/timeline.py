"""Timeline derivation for the share detail view.

An active or completed share always renders the full five-step happy path;
progress is carried by the ``completed``/``current`` markers. Declined and
disputed shares render a truncated list ending in a terminal step.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import List, Optional

from bookshare.share import Share
from bookshare.share_status import (
    ShareStatus,
    TerminalOutcome,
    happy_path_position,
)


@dataclass(frozen=True)
class TimelineStep:
    status: ShareStatus
    label: str
    description: str
    action_label: Optional[str] = None
    terminal: Optional[TerminalOutcome] = None
    completed: bool = False
    current: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.terminal is not None


HAPPY_PATH_STEPS = (
    TimelineStep(ShareStatus.REQUESTED, "Requested", "Borrower has requested this book", "Mark as Ready"),
    TimelineStep(ShareStatus.READY, "Ready", "Book is ready for pickup", "Mark as Picked Up"),
    TimelineStep(ShareStatus.PICKED_UP, "Picked Up", "Book has been picked up", "Mark as Returned"),
    TimelineStep(ShareStatus.RETURNED, "Returned", "Book has been returned", "Confirm Home Safe"),
    TimelineStep(
        ShareStatus.HOME_SAFE,
        "Home Safe",
        "Book is safely returned to owner",
        terminal=TerminalOutcome.SUCCESS,
    ),
)

DECLINED_STEP = TimelineStep(
    ShareStatus.DECLINED,
    "Declined",
    "The owner declined this share request",
    terminal=TerminalOutcome.DECLINED,
)

DISPUTED_STEP = TimelineStep(
    ShareStatus.DISPUTED,
    "Disputed",
    "This share is under dispute",
    terminal=TerminalOutcome.DISPUTED,
)


def step_for(status: ShareStatus) -> TimelineStep:
    if status is ShareStatus.DECLINED:
        return DECLINED_STEP
    if status is ShareStatus.DISPUTED:
        return DISPUTED_STEP
    return HAPPY_PATH_STEPS[happy_path_position(status)]


def _terminal_branch(prefix: List[TimelineStep], terminal: TimelineStep) -> List[TimelineStep]:
    steps = [replace(step, completed=True, current=False) for step in prefix]
    steps.append(replace(terminal, completed=False, current=True))
    return steps


def derive_timeline(share: Share) -> List[TimelineStep]:
    """Return the ordered steps to display for ``share``."""
    if share.status is ShareStatus.DECLINED:
        return _terminal_branch([HAPPY_PATH_STEPS[0]], DECLINED_STEP)

    if share.is_disputed or share.status is ShareStatus.DISPUTED:
        # share.status is the status at dispute time. A bare Disputed status
        # carries no position, so only the request step is known to be done.
        if share.status.on_happy_path:
            reached = happy_path_position(share.status)
        else:
            reached = 0
        return _terminal_branch(list(HAPPY_PATH_STEPS[: reached + 1]), DISPUTED_STEP)

    position = happy_path_position(share.status)
    steps = []
    for index, step in enumerate(HAPPY_PATH_STEPS):
        steps.append(replace(step, completed=position > index, current=position == index))
    return steps


def current_step(steps: List[TimelineStep]) -> Optional[TimelineStep]:
    for step in steps:
        if step.current:
            return step
    return None

