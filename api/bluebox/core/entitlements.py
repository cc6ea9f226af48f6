from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Literal

UserRole = Literal["student", "venture_capitalist", "startup", "admin"]
UserTier = Literal["free", "premium"]

USER_ROLES: tuple[UserRole, ...] = ("student", "venture_capitalist", "startup", "admin")
BUSINESS_ROLES = frozenset({"venture_capitalist", "startup"})


@dataclass(frozen=True, slots=True)
class LimitSet:
    """Numeric limits use ``None`` for unlimited."""

    job_applications: int | None
    weekly_connections: int | None
    visible_jobs: int | None
    job_posts: int | None
    can_request_intro_with_student: bool
    can_request_intro_with_business: bool

    def as_dict(self) -> dict[str, int | bool | None]:
        return asdict(self)


_UNLIMITED = LimitSet(
    job_applications=None,
    weekly_connections=None,
    visible_jobs=None,
    job_posts=None,
    can_request_intro_with_student=True,
    can_request_intro_with_business=True,
)

TIER_LIMITS: dict[UserTier, dict[UserRole, LimitSet]] = {
    "free": {
        "student": LimitSet(
            job_applications=2,
            weekly_connections=4,
            visible_jobs=10,
            job_posts=0,
            can_request_intro_with_student=False,
            can_request_intro_with_business=False,
        ),
        "venture_capitalist": LimitSet(
            job_applications=None,
            weekly_connections=4,
            visible_jobs=None,
            job_posts=None,
            can_request_intro_with_student=True,
            can_request_intro_with_business=False,
        ),
        "startup": LimitSet(
            job_applications=None,
            weekly_connections=4,
            visible_jobs=None,
            job_posts=None,
            can_request_intro_with_student=True,
            can_request_intro_with_business=False,
        ),
        "admin": _UNLIMITED,
    },
    "premium": {
        "student": LimitSet(
            job_applications=None,
            weekly_connections=None,
            visible_jobs=None,
            job_posts=0,
            can_request_intro_with_student=True,
            can_request_intro_with_business=True,
        ),
        "venture_capitalist": _UNLIMITED,
        "startup": _UNLIMITED,
        "admin": _UNLIMITED,
    },
}


def get_limits(role: UserRole, tier: UserTier) -> LimitSet:
    return TIER_LIMITS[tier][role]


def is_within_limit(limit: int | None, used: int) -> bool:
    """True when one more use still fits under ``limit``."""
    if limit is None:
        return True
    return used < limit


def at_least(candidate: LimitSet, baseline: LimitSet) -> bool:
    """True when every field of ``candidate`` grants at least what ``baseline`` does."""
    for field in fields(LimitSet):
        ours = getattr(candidate, field.name)
        theirs = getattr(baseline, field.name)
        if isinstance(ours, bool):
            if theirs and not ours:
                return False
            continue
        if ours is None:
            continue
        if theirs is None or ours < theirs:
            return False
    return True


def intro_allowed(limits: LimitSet, target_role: str) -> bool:
    if target_role in BUSINESS_ROLES:
        return limits.can_request_intro_with_business
    if target_role == "student":
        return limits.can_request_intro_with_student
    # Admin targets are not covered by either flag.
    return False
