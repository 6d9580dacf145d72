from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from bookshare.share import Share
from bookshare.share_status import (
    DISPUTABLE_STATUSES,
    ShareStatus,
    next_status,
)


class Role(str, Enum):
    OWNER = "owner"
    BORROWER = "borrower"


# Who may move a share out of each status along the happy path
ADVANCE_ACTOR: Dict[ShareStatus, Role] = {
    ShareStatus.REQUESTED: Role.OWNER,
    ShareStatus.READY: Role.BORROWER,
    ShareStatus.PICKED_UP: Role.BORROWER,
    ShareStatus.RETURNED: Role.OWNER,
}


def can_advance(status: ShareStatus, is_owner: bool, is_borrower: bool) -> bool:
    actor = ADVANCE_ACTOR.get(status)
    if actor is Role.OWNER:
        return is_owner
    if actor is Role.BORROWER:
        return is_borrower
    return False


def can_decline(status: ShareStatus, is_owner: bool) -> bool:
    return is_owner and status is ShareStatus.REQUESTED


def can_dispute(status: ShareStatus, is_disputed: bool, is_owner: bool, is_borrower: bool) -> bool:
    # HomeSafe is deliberately not disputable
    return (is_owner or is_borrower) and not is_disputed and status in DISPUTABLE_STATUSES


def can_archive(status: ShareStatus, is_disputed: bool = False) -> bool:
    return status.is_terminal or is_disputed


def can_update_return_date(share: Share, is_owner: bool) -> bool:
    return is_owner and not share.is_terminal


def share_roles(share: Share, user_id: Optional[str]) -> Tuple[bool, bool]:
    """Return ``(is_owner, is_borrower)`` for ``user_id`` on ``share``."""
    if not user_id:
        return False, False
    return share.owner_id == user_id, share.borrower == user_id


class ActionKind(str, Enum):
    ADVANCE = "advance"
    DECLINE = "decline"
    DISPUTE = "dispute"
    UPDATE_RETURN_DATE = "update_return_date"
    ARCHIVE = "archive"
    UNARCHIVE = "unarchive"


@dataclass(frozen=True)
class ShareAction:
    kind: ActionKind
    label: str
    target: Optional[ShareStatus] = None


_ADVANCE_LABELS = {
    ShareStatus.REQUESTED: "Mark as Ready",
    ShareStatus.READY: "Mark as Picked Up",
    ShareStatus.PICKED_UP: "Mark as Returned",
    ShareStatus.RETURNED: "Confirm Home Safe",
}


def available_actions(share: Share, user_id: Optional[str], archived: bool = False) -> List[ShareAction]:
    """List what ``user_id`` may do to ``share`` right now."""
    is_owner, is_borrower = share_roles(share, user_id)
    actions: List[ShareAction] = []

    if not share.is_disputed and can_advance(share.status, is_owner, is_borrower):
        target = next_status(share.status)
        if target is not None:
            actions.append(ShareAction(ActionKind.ADVANCE, _ADVANCE_LABELS[share.status], target))
    if not share.is_disputed and can_decline(share.status, is_owner):
        actions.append(ShareAction(ActionKind.DECLINE, "Decline Share", ShareStatus.DECLINED))
    if can_dispute(share.status, share.is_disputed, is_owner, is_borrower):
        actions.append(ShareAction(ActionKind.DISPUTE, "Dispute"))
    if can_update_return_date(share, is_owner):
        actions.append(ShareAction(ActionKind.UPDATE_RETURN_DATE, "Change Return Date"))
    if (is_owner or is_borrower) and can_archive(share.status, share.is_disputed):
        if archived:
            actions.append(ShareAction(ActionKind.UNARCHIVE, "Unarchive"))
        else:
            actions.append(ShareAction(ActionKind.ARCHIVE, "Archive"))
    return actions
