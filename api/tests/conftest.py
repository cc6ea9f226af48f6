from __future__ import annotations

import os
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

import bluebox.core.security as security
from bluebox.core.config import get_settings
from bluebox.core.entitlements import LimitSet, intro_allowed, is_within_limit
from bluebox.main import app
from bluebox.services.repository import (
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryLimitError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    get_repository,
)
from bluebox.services.workflows import (
    CONNECTION_RESPONSES,
    INTRO_RESPONSES,
    WorkflowConflictError,
    WorkflowForbiddenError,
    WorkflowValidationError,
    ensure_pending_response,
    plan_moderation,
)

AUTH_HEADERS = {"Authorization": "Bearer token"}
WEBHOOK_SECRET = "whsec_test_secret"


def _user(user_id: int, username: str, role: str, *, status: str = "approved", tier: str = "free") -> dict[str, Any]:
    created_at = datetime.now(timezone.utc) - timedelta(days=30)
    return {
        "id": user_id,
        "username": username,
        "email": f"{username}@example.edu",
        "role": role,
        "tier": tier,
        "status": status,
        "referral_code": None,
        "created_at": created_at,
        "updated_at": created_at,
    }


class FakeMemberRepository:
    """In-memory stand-in that applies the same workflow rules as the Postgres repository."""

    def __init__(self) -> None:
        self.users: dict[int, dict[str, Any]] = {
            row["id"]: row
            for row in [
                _user(1, "root", "admin"),
                _user(2, "alice", "student"),
                _user(3, "bob", "student"),
                _user(4, "carol", "venture_capitalist"),
                _user(5, "dana", "startup"),
                _user(6, "erin", "student"),
                _user(7, "frank", "student"),
                _user(8, "grace", "student"),
                _user(9, "newbie", "student", status="pending"),
                _user(10, "troll", "student", status="banned"),
                _user(11, "nope", "startup", status="rejected"),
            ]
        }
        self.bans: list[dict[str, Any]] = []
        self.events: list[dict[str, Any]] = []
        self.jobs: list[dict[str, Any]] = []
        self.applications: list[dict[str, Any]] = []
        self.connections: list[dict[str, Any]] = []
        self.intros: list[dict[str, Any]] = []
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.list_jobs_calls: list[dict[str, Any]] = []

    async def close(self) -> None:
        return None

    async def get_user_by_email(self, *, email: str) -> dict[str, Any] | None:
        for row in self.users.values():
            if row["email"] == email:
                return dict(row)
        return None

    async def get_user(self, *, user_id: int) -> dict[str, Any]:
        row = self.users.get(user_id)
        if row is None:
            raise RepositoryNotFoundError("user not found")
        return dict(row)

    async def list_users(
        self,
        *,
        search: str | None,
        role: str | None,
        status: str | None,
        limit: int,
        offset: int,
    ) -> dict[str, Any]:
        rows = sorted(self.users.values(), key=lambda row: row["id"], reverse=True)
        if search:
            needle = search.lower()
            rows = [row for row in rows if needle in row["username"] or needle in row["email"]]
        if role:
            rows = [row for row in rows if row["role"] == role]
        if status:
            rows = [row for row in rows if row["status"] == status]
        return {"total": len(rows), "limit": limit, "offset": offset, "users": rows[offset : offset + limit]}

    async def apply_moderation_action(
        self,
        *,
        user_id: int,
        action: str,
        actor_user_id: int,
        reason: str | None = None,
        expires_at: datetime | None = None,
        tier: str | None = None,
    ) -> dict[str, Any]:
        row = self.users.get(user_id)
        if row is None:
            raise RepositoryNotFoundError("user not found")
        try:
            outcome = plan_moderation(
                action=action,
                current_status=row["status"],
                current_tier=row["tier"],
                tier=tier,
                reason=reason,
            )
        except WorkflowValidationError as exc:
            raise RepositoryValidationError(str(exc)) from exc
        except WorkflowConflictError as exc:
            raise RepositoryConflictError(str(exc)) from exc

        now = datetime.now(timezone.utc)
        row["status"] = outcome.to_status
        row["tier"] = outcome.to_tier
        row["updated_at"] = now
        if outcome.records_ban:
            self.bans.append(
                {
                    "id": len(self.bans) + 1,
                    "user_id": user_id,
                    "reason": reason,
                    "banned_by": actor_user_id,
                    "banned_at": now,
                    "expires_at": expires_at,
                    "lifted_at": None,
                    "lifted_by": None,
                }
            )
        if outcome.lifts_bans:
            for ban in self.bans:
                if ban["user_id"] == user_id and ban["lifted_at"] is None:
                    ban["lifted_at"] = now
                    ban["lifted_by"] = actor_user_id
        self.events.append(
            {
                "id": len(self.events) + 1,
                "entity_type": "user",
                "entity_id": user_id,
                "event_type": f"user_{action}",
                "actor_type": "human",
                "actor_id": actor_user_id,
                "payload": {"from_status": outcome.from_status, "to_status": outcome.to_status},
                "created_at": now,
            }
        )
        return dict(row)

    async def list_user_bans(self, *, user_id: int) -> list[dict[str, Any]]:
        if user_id not in self.users:
            raise RepositoryNotFoundError("user not found")
        return [ban for ban in self.bans if ban["user_id"] == user_id]

    async def list_user_events(self, *, user_id: int, limit: int, offset: int) -> list[dict[str, Any]]:
        if user_id not in self.users:
            raise RepositoryNotFoundError("user not found")
        rows = [
            event
            for event in reversed(self.events)
            if event["entity_type"] == "user" and event["entity_id"] == user_id
        ]
        return rows[offset : offset + limit]

    async def create_job(
        self,
        *,
        owner_user_id: int,
        limits: LimitSet,
        title: str,
        description: str,
        location: str,
        job_type: str,
        is_remote: bool,
    ) -> dict[str, Any]:
        posted = sum(1 for job in self.jobs if job["user_id"] == owner_user_id)
        if not is_within_limit(limits.job_posts, posted):
            raise RepositoryLimitError("job posting limit reached for current plan")
        now = datetime.now(timezone.utc)
        job = {
            "id": len(self.jobs) + 1,
            "user_id": owner_user_id,
            "title": title,
            "description": description,
            "location": location,
            "type": job_type,
            "is_remote": is_remote,
            "created_at": now,
            "updated_at": now,
        }
        self.jobs.append(job)
        return dict(job)

    async def list_jobs(self, *, limit: int, offset: int, visible_limit: int | None) -> list[dict[str, Any]]:
        self.list_jobs_calls.append({"limit": limit, "offset": offset, "visible_limit": visible_limit})
        rows = list(reversed(self.jobs))
        if visible_limit is not None:
            rows = rows[:visible_limit]
        return rows[offset : offset + limit]

    async def list_posted_jobs(self, *, owner_user_id: int) -> list[dict[str, Any]]:
        return [dict(job) for job in reversed(self.jobs) if job["user_id"] == owner_user_id]

    async def search_jobs(
        self,
        *,
        search: str | None,
        job_type: str | None,
        is_remote: bool | None,
        limit: int,
        offset: int,
    ) -> dict[str, Any]:
        rows = list(reversed(self.jobs))
        if search:
            needle = search.lower()
            rows = [
                job
                for job in rows
                if any(needle in job[field].lower() for field in ("title", "description", "location"))
            ]
        if job_type is not None:
            rows = [job for job in rows if job["type"] == job_type]
        if is_remote is not None:
            rows = [job for job in rows if job["is_remote"] is is_remote]
        return {"total": len(rows), "limit": limit, "offset": offset, "jobs": rows[offset : offset + limit]}

    async def update_job(
        self,
        *,
        job_id: int,
        actor_user_id: int,
        changes: dict[str, Any],
        as_admin: bool = False,
    ) -> dict[str, Any]:
        if not changes:
            raise RepositoryValidationError("no job fields to update")
        job = self._owned_job(job_id=job_id, actor_user_id=actor_user_id, as_admin=as_admin)
        job.update(changes)
        job["updated_at"] = datetime.now(timezone.utc)
        self._job_event(job_id, "job_updated", actor_user_id, {"changes": changes, "as_admin": as_admin})
        return dict(job)

    async def delete_job(self, *, job_id: int, actor_user_id: int, as_admin: bool = False) -> dict[str, Any]:
        job = self._owned_job(job_id=job_id, actor_user_id=actor_user_id, as_admin=as_admin)
        removed = [row for row in self.applications if row["job_id"] == job_id]
        self.applications = [row for row in self.applications if row["job_id"] != job_id]
        self.jobs.remove(job)
        self._job_event(
            job_id,
            "job_deleted",
            actor_user_id,
            {"title": job["title"], "owner_id": job["user_id"], "applications": len(removed), "as_admin": as_admin},
        )
        return dict(job)

    def _owned_job(self, *, job_id: int, actor_user_id: int, as_admin: bool) -> dict[str, Any]:
        for job in self.jobs:
            if job["id"] == job_id:
                if not as_admin and job["user_id"] != actor_user_id:
                    raise RepositoryNotFoundError("job not found or unauthorized")
                return job
        raise RepositoryNotFoundError("job not found")

    def _job_event(self, job_id: int, event_type: str, actor_user_id: int, payload: dict[str, Any]) -> None:
        self.events.append(
            {
                "id": len(self.events) + 1,
                "entity_type": "job",
                "entity_id": job_id,
                "event_type": event_type,
                "actor_type": "human",
                "actor_id": actor_user_id,
                "payload": payload,
                "created_at": datetime.now(timezone.utc),
            }
        )

    async def apply_to_job(
        self,
        *,
        job_id: int,
        user_id: int,
        limits: LimitSet,
        resume_url: str,
        cover_letter: str | None,
    ) -> dict[str, Any]:
        if not any(job["id"] == job_id for job in self.jobs):
            raise RepositoryNotFoundError("job not found")
        submitted = sum(1 for app_row in self.applications if app_row["user_id"] == user_id)
        if not is_within_limit(limits.job_applications, submitted):
            raise RepositoryLimitError(f"application limit of {limits.job_applications} reached for current plan")
        if any(a["job_id"] == job_id and a["user_id"] == user_id for a in self.applications):
            raise RepositoryConflictError("already applied to this job")
        now = datetime.now(timezone.utc)
        row = {
            "id": len(self.applications) + 1,
            "job_id": job_id,
            "user_id": user_id,
            "status": "pending",
            "resume_url": resume_url,
            "cover_letter": cover_letter,
            "created_at": now,
            "updated_at": now,
        }
        self.applications.append(row)
        return dict(row)

    async def update_application_status(
        self,
        *,
        application_id: int,
        status: str,
        actor_user_id: int,
    ) -> dict[str, Any]:
        owned_jobs = {job["id"] for job in self.jobs if job["user_id"] == actor_user_id}
        for row in self.applications:
            if row["id"] == application_id and row["job_id"] in owned_jobs:
                row["status"] = status
                row["updated_at"] = datetime.now(timezone.utc)
                return dict(row)
        raise RepositoryNotFoundError("application not found or unauthorized")

    async def list_received_applications(
        self,
        *,
        owner_user_id: int,
        status: str | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        owned_jobs = {job["id"] for job in self.jobs if job["user_id"] == owner_user_id}
        rows = [row for row in self.applications if row["job_id"] in owned_jobs]
        if status:
            rows = [row for row in rows if row["status"] == status]
        return rows[offset : offset + limit]

    async def list_user_applications(self, *, user_id: int, limit: int, offset: int) -> list[dict[str, Any]]:
        rows = [row for row in self.applications if row["user_id"] == user_id]
        return rows[offset : offset + limit]

    async def request_connection(self, *, from_user_id: int, to_user_id: int, limits: LimitSet) -> dict[str, Any]:
        if from_user_id == to_user_id:
            raise RepositoryValidationError("cannot connect with yourself")
        sent = sum(1 for row in self.connections if row["from_user_id"] == from_user_id)
        if not is_within_limit(limits.weekly_connections, sent):
            raise RepositoryLimitError(
                f"weekly limit of {limits.weekly_connections} connection requests reached; try again in 3 days",
                rate_limited=True,
            )
        if to_user_id not in self.users:
            raise RepositoryNotFoundError("user not found")
        for row in self.connections:
            if {row["from_user_id"], row["to_user_id"]} == {from_user_id, to_user_id}:
                raise RepositoryConflictError(f"connection already exists (status: {row['type']})")
        now = datetime.now(timezone.utc)
        row = {
            "id": len(self.connections) + 1,
            "from_user_id": from_user_id,
            "to_user_id": to_user_id,
            "type": "pending",
            "created_at": now,
            "updated_at": now,
        }
        self.connections.append(row)
        return dict(row)

    async def respond_to_connection(self, *, connection_id: int, status: str, actor_user_id: int) -> dict[str, Any]:
        for row in self.connections:
            if row["id"] != connection_id:
                continue
            _guard(
                entity="connection request",
                current_status=row["type"],
                recipient_id=row["to_user_id"],
                actor_user_id=actor_user_id,
                response=status,
                allowed_responses=CONNECTION_RESPONSES,
            )
            row["type"] = status
            return dict(row)
        raise RepositoryNotFoundError("connection request not found")

    async def list_pending_connection_requests(self, *, user_id: int) -> list[dict[str, Any]]:
        return [row for row in self.connections if row["to_user_id"] == user_id and row["type"] == "pending"]

    async def get_connection_status(self, *, user_id: int, other_user_id: int) -> str:
        for row in reversed(self.connections):
            if {row["from_user_id"], row["to_user_id"]} == {user_id, other_user_id}:
                return row["type"]
        return "not_connected"

    async def list_member_connections(self, *, user_id: int) -> list[dict[str, Any]]:
        if user_id not in self.users:
            raise RepositoryNotFoundError("user not found")
        members: dict[int, dict[str, Any]] = {}
        for row in self.connections:
            if row["type"] != "connected" or user_id not in (row["from_user_id"], row["to_user_id"]):
                continue
            other_id = row["to_user_id"] if row["from_user_id"] == user_id else row["from_user_id"]
            other = self.users[other_id]
            members[other_id] = {
                "id": other_id,
                "username": other["username"],
                "role": other["role"],
                "connected_at": row["updated_at"],
            }
        return sorted(members.values(), key=lambda member: member["connected_at"], reverse=True)

    async def request_intro(self, *, requester_id: int, target_id: int, limits: LimitSet) -> dict[str, Any]:
        if requester_id == target_id:
            raise RepositoryValidationError("cannot request an intro with yourself")
        target = self.users.get(target_id)
        if target is None:
            raise RepositoryNotFoundError("user not found")
        if not intro_allowed(limits, target["role"]):
            raise RepositoryLimitError("intro requests with this member require a premium plan")
        for row in self.intros:
            if row["status"] == "pending" and {row["requester_id"], row["target_id"]} == {requester_id, target_id}:
                raise RepositoryConflictError("intro request already pending")
        now = datetime.now(timezone.utc)
        row = {
            "id": len(self.intros) + 1,
            "requester_id": requester_id,
            "target_id": target_id,
            "status": "pending",
            "created_at": now,
            "updated_at": now,
        }
        self.intros.append(row)
        return dict(row)

    async def respond_to_intro(self, *, intro_id: int, status: str, actor_user_id: int) -> dict[str, Any]:
        for row in self.intros:
            if row["id"] != intro_id:
                continue
            _guard(
                entity="intro",
                current_status=row["status"],
                recipient_id=row["target_id"],
                actor_user_id=actor_user_id,
                response=status,
                allowed_responses=INTRO_RESPONSES,
            )
            row["status"] = status
            return dict(row)
        raise RepositoryNotFoundError("intro not found")

    async def list_pending_intros(self, *, user_id: int) -> list[dict[str, Any]]:
        return [row for row in self.intros if row["target_id"] == user_id and row["status"] == "pending"]

    async def apply_subscription_update(
        self,
        *,
        customer_id: str,
        subscription_id: str | None,
        status: str,
        price_id: str | None,
        period_start: datetime | None,
        period_end: datetime | None,
        metadata_user_id: int | None,
    ) -> dict[str, Any]:
        existing = self.subscriptions.get(customer_id)
        if existing is None:
            if metadata_user_id is None:
                raise RepositoryValidationError("subscription metadata is missing user_id")
            if metadata_user_id not in self.users:
                raise RepositoryNotFoundError("user not found")
            existing = {"user_id": metadata_user_id}
            self.subscriptions[customer_id] = existing
        existing.update(
            {
                "subscription_id": subscription_id,
                "status": status,
                "price_id": price_id,
                "current_period_end": period_end,
            }
        )
        tier = "premium" if status == "active" else "free"
        self.users[existing["user_id"]]["tier"] = tier
        return {"user_id": existing["user_id"], "tier": tier}

    async def apply_subscription_status(
        self,
        *,
        customer_id: str,
        status: str,
        tier: str,
        period_end: datetime | None = None,
    ) -> dict[str, Any] | None:
        existing = self.subscriptions.get(customer_id)
        if existing is None:
            return None
        existing["status"] = status
        self.users[existing["user_id"]]["tier"] = tier
        return {"user_id": existing["user_id"], "tier": tier}


def _guard(**kwargs: Any) -> None:
    try:
        ensure_pending_response(**kwargs)
    except WorkflowValidationError as exc:
        raise RepositoryValidationError(str(exc)) from exc
    except WorkflowForbiddenError as exc:
        raise RepositoryForbiddenError(str(exc)) from exc
    except WorkflowConflictError as exc:
        raise RepositoryConflictError(str(exc)) from exc


@pytest.fixture
def fake_repo() -> FakeMemberRepository:
    return FakeMemberRepository()


@pytest.fixture
def api_client(fake_repo: FakeMemberRepository) -> Iterator[TestClient]:
    os.environ["BB_SUPABASE_URL"] = "https://example.supabase.co"
    os.environ["BB_SUPABASE_ANON_KEY"] = "anon-key"
    os.environ["BB_STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
    get_settings.cache_clear()

    app.dependency_overrides[get_repository] = lambda: fake_repo

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    os.environ.pop("BB_SUPABASE_URL", None)
    os.environ.pop("BB_SUPABASE_ANON_KEY", None)
    os.environ.pop("BB_STRIPE_WEBHOOK_SECRET", None)
    get_settings.cache_clear()


@pytest.fixture
def login(monkeypatch: pytest.MonkeyPatch) -> Callable[[str], None]:
    """Authenticate subsequent requests as the member with ``username``."""

    def _login(username: str) -> None:
        async def _fake_fetch(**_: Any) -> dict[str, Any]:
            return {"id": f"supabase-{username}", "email": f"{username}@example.edu"}

        monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)

    return _login
