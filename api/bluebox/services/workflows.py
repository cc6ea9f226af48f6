from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

ModerationActionName = Literal["ban", "unban", "tier", "approve", "reject"]

USER_STATUSES = {"pending", "approved", "rejected", "banned"}
USER_TIERS = {"free", "premium"}
APPLICATION_STATUSES = {"pending", "reviewed", "interviewing", "accepted", "rejected"}
CONNECTION_RESPONSES = {"connected", "rejected"}
INTRO_RESPONSES = {"accepted", "rejected"}

# Self-transitions are handled separately and always allowed.
USER_STATUS_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"approved", "rejected", "banned"},
    "approved": {"banned"},
    "rejected": {"approved", "banned"},
    "banned": {"approved"},
}

_ACTION_TARGET_STATUS: dict[str, str] = {
    "ban": "banned",
    "unban": "approved",
    "approve": "approved",
    "reject": "rejected",
}

CONNECTION_WEEK = timedelta(days=7)


class WorkflowError(Exception):
    """Base error for rejected workflow transitions."""


class WorkflowConflictError(WorkflowError):
    """Raised when the current state does not allow the requested transition."""


class WorkflowForbiddenError(WorkflowError):
    """Raised when the actor is not the party allowed to drive the transition."""


class WorkflowValidationError(WorkflowError):
    """Raised when the requested transition carries invalid input."""


@dataclass(slots=True)
class ModerationOutcome:
    from_status: str
    to_status: str
    from_tier: str
    to_tier: str
    records_ban: bool
    lifts_bans: bool

    @property
    def changed(self) -> bool:
        return self.from_status != self.to_status or self.from_tier != self.to_tier


def validate_user_status_transition(*, from_status: str, to_status: str) -> None:
    if to_status not in USER_STATUSES:
        raise WorkflowValidationError(f"unknown user status: {to_status}")
    if to_status == from_status:
        return
    allowed = USER_STATUS_TRANSITIONS.get(from_status)
    if not allowed or to_status not in allowed:
        raise WorkflowConflictError(f"invalid status transition: {from_status} -> {to_status}")


def plan_moderation(
    *,
    action: str,
    current_status: str,
    current_tier: str,
    tier: str | None = None,
    reason: str | None = None,
) -> ModerationOutcome:
    """Resolve an admin action against a user's current status and tier.

    Tier changes never look at status. Every ban call produces a ban record,
    including repeat bans of an already banned user; unban reopens the
    account as approved and lifts any open bans.
    """
    if action == "tier":
        if tier not in USER_TIERS:
            raise WorkflowValidationError("tier must be 'free' or 'premium'")
        return ModerationOutcome(
            from_status=current_status,
            to_status=current_status,
            from_tier=current_tier,
            to_tier=tier,
            records_ban=False,
            lifts_bans=False,
        )

    to_status = _ACTION_TARGET_STATUS.get(action)
    if to_status is None:
        raise WorkflowValidationError(f"unknown moderation action: {action}")

    if action == "ban" and not (reason and reason.strip()):
        raise WorkflowValidationError("ban requires a reason")
    if action == "unban" and current_status not in {"banned", "approved"}:
        raise WorkflowConflictError(f"cannot unban a user in status {current_status}")
    if action == "approve" and current_status == "banned":
        raise WorkflowConflictError("banned users must be unbanned")

    validate_user_status_transition(from_status=current_status, to_status=to_status)

    return ModerationOutcome(
        from_status=current_status,
        to_status=to_status,
        from_tier=current_tier,
        to_tier=current_tier,
        records_ban=action == "ban",
        lifts_bans=action == "unban",
    )


def validate_application_status(status: str) -> None:
    # Hiring users may move an application between any two statuses.
    if status not in APPLICATION_STATUSES:
        raise WorkflowValidationError(f"invalid application status: {status}")


def ensure_pending_response(
    *,
    entity: str,
    current_status: str,
    recipient_id: int,
    actor_user_id: int,
    response: str,
    allowed_responses: set[str],
) -> None:
    """Guard a recipient's accept/reject of a pending request."""
    if response not in allowed_responses:
        choices = "' or '".join(sorted(allowed_responses))
        raise WorkflowValidationError(f"invalid status - must be '{choices}'")
    if recipient_id != actor_user_id:
        raise WorkflowForbiddenError(f"only the recipient can respond to this {entity}")
    if current_status != "pending":
        raise WorkflowConflictError(f"{entity} is no longer pending (status: {current_status})")


def connection_week_window(*, anchor: datetime, now: datetime) -> tuple[datetime, datetime]:
    """Return the [start, end) week containing ``now``, counted from ``anchor``."""
    if now < anchor:
        return anchor, anchor + CONNECTION_WEEK
    weeks = (now - anchor) // CONNECTION_WEEK
    start = anchor + weeks * CONNECTION_WEEK
    return start, start + CONNECTION_WEEK


def days_until(*, now: datetime, moment: datetime) -> int:
    remaining = (moment - now).total_seconds() / 86400
    return max(1, math.ceil(remaining))
