from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from bluebox.core.config import get_settings
from bluebox.core.entitlements import LimitSet, intro_allowed, is_within_limit
from bluebox.services.workflows import (
    CONNECTION_RESPONSES,
    INTRO_RESPONSES,
    USER_STATUSES,
    WorkflowConflictError,
    WorkflowForbiddenError,
    WorkflowValidationError,
    connection_week_window,
    days_until,
    ensure_pending_response,
    plan_moderation,
    validate_application_status,
)

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryForbiddenError(RepositoryError):
    """Raised when an operation is not permitted for the actor."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class RepositoryLimitError(RepositoryError):
    """Raised when an entitlement limit blocks the operation."""

    def __init__(self, message: str, *, rate_limited: bool = False) -> None:
        super().__init__(message)
        self.rate_limited = rate_limited


USER_ROLES = {"student", "venture_capitalist", "startup", "admin"}
ACTIVE_SUBSCRIPTION_STATUS = "active"
JOB_TYPES = {"full_time", "part_time", "internship", "contract"}

# Editable job column -> SQL cast applied to its bound parameter.
JOB_EDITABLE_COLUMNS: dict[str, str] = {
    "title": "",
    "description": "",
    "location": "",
    "type": "::job_type",
    "is_remote": "",
}

_USER_COLUMNS = """
  id,
  username,
  email,
  role::text as role,
  tier::text as tier,
  status::text as status,
  referral_code,
  created_at,
  updated_at
"""

_JOB_COLUMNS = """
  id,
  user_id,
  title,
  description,
  location,
  type::text as type,
  is_remote,
  created_at,
  updated_at
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # --- Users and moderation ---

    async def get_user_by_email(self, *, email: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_USER_COLUMNS}
            from users
            where lower(email) = lower($1)
            """,
            email,
        )
        return self._user_row_to_dict(row) if row else None

    async def get_user(self, *, user_id: int) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await self._fetch_user_row(conn=pool, user_id=user_id)
        if not row:
            raise RepositoryNotFoundError("user not found")
        return self._user_row_to_dict(row)

    async def list_users(
        self,
        *,
        search: str | None,
        role: str | None,
        status: str | None,
        limit: int,
        offset: int,
    ) -> dict[str, Any]:
        if role is not None and role not in USER_ROLES:
            raise RepositoryValidationError(f"unsupported role filter: {role}")
        if status is not None and status not in USER_STATUSES:
            raise RepositoryValidationError(f"unsupported status filter: {status}")

        pattern = f"%{search.strip()}%" if search and search.strip() else None
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_USER_COLUMNS}
            from users
            where ($1::text is null or username ilike $1 or email ilike $1)
              and ($2::text is null or role::text = $2)
              and ($3::text is null or status::text = $3)
            order by created_at desc, id desc
            limit $4
            offset $5
            """,
            pattern,
            role,
            status,
            limit,
            offset,
        )
        total = await pool.fetchval(
            """
            select count(*)
            from users
            where ($1::text is null or username ilike $1 or email ilike $1)
              and ($2::text is null or role::text = $2)
              and ($3::text is null or status::text = $3)
            """,
            pattern,
            role,
            status,
        )
        return {
            "total": int(total or 0),
            "limit": limit,
            "offset": offset,
            "users": [self._user_row_to_dict(row) for row in rows],
        }

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
        pool = await self._get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                existing = await conn.fetchrow(
                    """
                    select
                      id,
                      status::text as status,
                      tier::text as tier
                    from users
                    where id = $1
                    for update
                    """,
                    user_id,
                )
                if not existing:
                    raise RepositoryNotFoundError("user not found")

                try:
                    outcome = plan_moderation(
                        action=action,
                        current_status=str(existing["status"]),
                        current_tier=str(existing["tier"]),
                        tier=tier,
                        reason=reason,
                    )
                except WorkflowValidationError as exc:
                    raise RepositoryValidationError(str(exc)) from exc
                except WorkflowConflictError as exc:
                    raise RepositoryConflictError(str(exc)) from exc

                await conn.execute(
                    """
                    update users
                    set
                      status = $2::user_status,
                      tier = $3::user_tier,
                      updated_at = now()
                    where id = $1
                    """,
                    user_id,
                    outcome.to_status,
                    outcome.to_tier,
                )

                ban_id: int | None = None
                if outcome.records_ban:
                    ban_id = await conn.fetchval(
                        """
                        insert into user_bans (user_id, reason, banned_by, expires_at)
                        values ($1, $2, $3, $4)
                        returning id
                        """,
                        user_id,
                        (reason or "").strip(),
                        actor_user_id,
                        expires_at,
                    )
                lifted = 0
                if outcome.lifts_bans:
                    result = await conn.execute(
                        """
                        update user_bans
                        set lifted_at = now(), lifted_by = $2
                        where user_id = $1
                          and lifted_at is null
                        """,
                        user_id,
                        actor_user_id,
                    )
                    lifted = _affected_rows(result)

                await self._record_moderation_event(
                    conn=conn,
                    entity_type="user",
                    entity_id=user_id,
                    event_type=f"user_{action}",
                    actor_type="human",
                    actor_id=actor_user_id,
                    payload={
                        "from_status": outcome.from_status,
                        "to_status": outcome.to_status,
                        "from_tier": outcome.from_tier,
                        "to_tier": outcome.to_tier,
                        "reason": reason,
                        "ban_id": ban_id,
                        "lifted_bans": lifted,
                    },
                )
                row = await self._fetch_user_row(conn=conn, user_id=user_id)

        logger.info(
            "moderation action applied action=%s user_id=%s actor_id=%s status=%s->%s tier=%s->%s",
            action,
            user_id,
            actor_user_id,
            outcome.from_status,
            outcome.to_status,
            outcome.from_tier,
            outcome.to_tier,
        )
        if not row:
            raise RepositoryNotFoundError("user not found")
        return self._user_row_to_dict(row)

    async def list_user_bans(self, *, user_id: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            exists = await conn.fetchval("select 1 from users where id = $1", user_id)
            if not exists:
                raise RepositoryNotFoundError("user not found")
            rows = await conn.fetch(
                """
                select id, user_id, reason, banned_by, banned_at, expires_at, lifted_at, lifted_by
                from user_bans
                where user_id = $1
                order by banned_at desc, id desc
                """,
                user_id,
            )
        return [self._ban_row_to_dict(row) for row in rows]

    async def list_user_events(self, *, user_id: int, limit: int, offset: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            exists = await conn.fetchval("select 1 from users where id = $1", user_id)
            if not exists:
                raise RepositoryNotFoundError("user not found")
            rows = await conn.fetch(
                """
                select id, entity_type, entity_id, event_type, actor_type, actor_id, payload, created_at
                from moderation_events
                where entity_type = 'user'
                  and entity_id = $1
                order by created_at desc, id desc
                limit $2
                offset $3
                """,
                user_id,
                limit,
                offset,
            )
        return [self._event_row_to_dict(row) for row in rows]

    # --- Jobs and applications ---

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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await self._lock_users(conn=conn, user_ids=[owner_user_id])
                posted = await conn.fetchval("select count(*) from jobs where user_id = $1", owner_user_id)
                if not is_within_limit(limits.job_posts, int(posted or 0)):
                    raise RepositoryLimitError("job posting limit reached for current plan")
                try:
                    row = await conn.fetchrow(
                        """
                        insert into jobs (user_id, title, description, location, type, is_remote)
                        values ($1, $2, $3, $4, $5::job_type, $6)
                        returning
                          id, user_id, title, description, location, type::text as type,
                          is_remote, created_at, updated_at
                        """,
                        owner_user_id,
                        title,
                        description,
                        location,
                        job_type,
                        is_remote,
                    )
                except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
                    raise RepositoryValidationError("invalid job payload") from exc
        return self._job_row_to_dict(row)

    async def list_jobs(self, *, limit: int, offset: int, visible_limit: int | None) -> list[dict[str, Any]]:
        if visible_limit is not None:
            if offset >= visible_limit:
                return []
            limit = min(limit, visible_limit - offset)

        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id, user_id, title, description, location, type::text as type,
              is_remote, created_at, updated_at
            from jobs
            order by created_at desc, id desc
            limit $1
            offset $2
            """,
            limit,
            offset,
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def list_posted_jobs(self, *, owner_user_id: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from jobs
            where user_id = $1
            order by created_at desc, id desc
            """,
            owner_user_id,
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def search_jobs(
        self,
        *,
        search: str | None,
        job_type: str | None,
        is_remote: bool | None,
        limit: int,
        offset: int,
    ) -> dict[str, Any]:
        if job_type is not None and job_type not in JOB_TYPES:
            raise RepositoryValidationError(f"unsupported job type filter: {job_type}")

        where_sql = """
            where ($1::text is null
                   or title ilike '%' || $1 || '%'
                   or description ilike '%' || $1 || '%'
                   or location ilike '%' || $1 || '%')
              and ($2::text is null or type::text = $2)
              and ($3::boolean is null or is_remote = $3)
        """
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            total = await conn.fetchval(f"select count(*) from jobs {where_sql}", search, job_type, is_remote)
            rows = await conn.fetch(
                f"""
                select {_JOB_COLUMNS}
                from jobs
                {where_sql}
                order by created_at desc, id desc
                limit $4
                offset $5
                """,
                search,
                job_type,
                is_remote,
                limit,
                offset,
            )
        return {
            "total": int(total or 0),
            "limit": limit,
            "offset": offset,
            "jobs": [self._job_row_to_dict(row) for row in rows],
        }

    async def update_job(
        self,
        *,
        job_id: int,
        actor_user_id: int,
        changes: dict[str, Any],
        as_admin: bool = False,
    ) -> dict[str, Any]:
        """Apply a partial job edit.

        Owners may only edit their own postings; a non-owner sees the same
        not-found error as for a missing job. ``as_admin`` lifts the owner
        check and the edit is audited as a moderation action.
        """
        unknown = set(changes) - set(JOB_EDITABLE_COLUMNS)
        if unknown:
            raise RepositoryValidationError(f"unsupported job fields: {sorted(unknown)}")
        if not changes:
            raise RepositoryValidationError("no job fields to update")

        columns = [column for column in JOB_EDITABLE_COLUMNS if column in changes]
        assignments = ", ".join(
            f"{column} = ${index}{JOB_EDITABLE_COLUMNS[column]}" for index, column in enumerate(columns, start=2)
        )

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await self._lock_job(conn=conn, job_id=job_id, actor_user_id=actor_user_id, as_admin=as_admin)
                try:
                    row = await conn.fetchrow(
                        f"""
                        update jobs
                        set {assignments}, updated_at = now()
                        where id = $1
                        returning {_JOB_COLUMNS}
                        """,
                        job_id,
                        *(changes[column] for column in columns),
                    )
                except (pg_exc.InvalidTextRepresentationError, pg_exc.NotNullViolationError, asyncpg.DataError) as exc:
                    raise RepositoryValidationError("invalid job payload") from exc

                await self._record_moderation_event(
                    conn=conn,
                    entity_type="job",
                    entity_id=job_id,
                    event_type="job_updated",
                    actor_type="human",
                    actor_id=actor_user_id,
                    payload={"changes": changes, "as_admin": as_admin},
                )

        logger.info("job updated job_id=%s actor_id=%s as_admin=%s", job_id, actor_user_id, as_admin)
        return self._job_row_to_dict(row)

    async def delete_job(self, *, job_id: int, actor_user_id: int, as_admin: bool = False) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await self._lock_job(conn=conn, job_id=job_id, actor_user_id=actor_user_id, as_admin=as_admin)
                result = await conn.execute("delete from job_applications where job_id = $1", job_id)
                removed_applications = _affected_rows(result)
                row = await conn.fetchrow(
                    f"""
                    delete from jobs
                    where id = $1
                    returning {_JOB_COLUMNS}
                    """,
                    job_id,
                )
                await self._record_moderation_event(
                    conn=conn,
                    entity_type="job",
                    entity_id=job_id,
                    event_type="job_deleted",
                    actor_type="human",
                    actor_id=actor_user_id,
                    payload={
                        "title": row["title"],
                        "owner_id": row["user_id"],
                        "applications": removed_applications,
                        "as_admin": as_admin,
                    },
                )

        logger.info(
            "job deleted job_id=%s actor_id=%s as_admin=%s applications=%s",
            job_id,
            actor_user_id,
            as_admin,
            removed_applications,
        )
        return self._job_row_to_dict(row)

    async def apply_to_job(
        self,
        *,
        job_id: int,
        user_id: int,
        limits: LimitSet,
        resume_url: str,
        cover_letter: str | None,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    job_exists = await conn.fetchval("select 1 from jobs where id = $1", job_id)
                    if not job_exists:
                        raise RepositoryNotFoundError("job not found")
                    await self._lock_users(conn=conn, user_ids=[user_id])

                    submitted = await conn.fetchval(
                        "select count(*) from job_applications where user_id = $1",
                        user_id,
                    )
                    if not is_within_limit(limits.job_applications, int(submitted or 0)):
                        raise RepositoryLimitError(
                            "job application limit reached for current plan; upgrade to apply for more jobs"
                        )

                    already_applied = await conn.fetchval(
                        "select 1 from job_applications where job_id = $1 and user_id = $2",
                        job_id,
                        user_id,
                    )
                    if already_applied:
                        raise RepositoryConflictError("already applied to this job")

                    row = await conn.fetchrow(
                        """
                        insert into job_applications (job_id, user_id, status, resume_url, cover_letter)
                        values ($1, $2, 'pending', $3, $4)
                        returning
                          id, job_id, user_id, status::text as status, resume_url, cover_letter,
                          created_at, updated_at
                        """,
                        job_id,
                        user_id,
                        resume_url,
                        cover_letter,
                    )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("already applied to this job") from exc
        return self._application_row_to_dict(row)

    async def update_application_status(
        self,
        *,
        application_id: int,
        status: str,
        actor_user_id: int,
    ) -> dict[str, Any]:
        try:
            validate_application_status(status)
        except WorkflowValidationError as exc:
            raise RepositoryValidationError(str(exc)) from exc

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                existing = await conn.fetchrow(
                    """
                    select
                      ja.id,
                      ja.status::text as status
                    from job_applications ja
                    join jobs j on j.id = ja.job_id
                    where ja.id = $1
                      and j.user_id = $2
                    for update of ja
                    """,
                    application_id,
                    actor_user_id,
                )
                if not existing:
                    raise RepositoryNotFoundError("application not found or unauthorized")

                row = await conn.fetchrow(
                    """
                    update job_applications
                    set status = $2::application_status, updated_at = now()
                    where id = $1
                    returning
                      id, job_id, user_id, status::text as status, resume_url, cover_letter,
                      created_at, updated_at
                    """,
                    application_id,
                    status,
                )
                await self._record_moderation_event(
                    conn=conn,
                    entity_type="job_application",
                    entity_id=application_id,
                    event_type="status_changed",
                    actor_type="human",
                    actor_id=actor_user_id,
                    payload={"from_status": existing["status"], "to_status": status},
                )
        return self._application_row_to_dict(row)

    async def list_received_applications(
        self,
        *,
        owner_user_id: int,
        status: str | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              ja.id, ja.job_id, ja.user_id, ja.status::text as status, ja.resume_url, ja.cover_letter,
              ja.created_at, ja.updated_at
            from job_applications ja
            join jobs j on j.id = ja.job_id
            where j.user_id = $1
              and ($2::text is null or ja.status::text = $2)
            order by ja.created_at desc, ja.id desc
            limit $3
            offset $4
            """,
            owner_user_id,
            status,
            limit,
            offset,
        )
        return [self._application_row_to_dict(row) for row in rows]

    async def list_user_applications(self, *, user_id: int, limit: int, offset: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id, job_id, user_id, status::text as status, resume_url, cover_letter,
              created_at, updated_at
            from job_applications
            where user_id = $1
            order by created_at desc, id desc
            limit $2
            offset $3
            """,
            user_id,
            limit,
            offset,
        )
        return [self._application_row_to_dict(row) for row in rows]

    # --- Network connections ---

    async def request_connection(
        self,
        *,
        from_user_id: int,
        to_user_id: int,
        limits: LimitSet,
    ) -> dict[str, Any]:
        if from_user_id == to_user_id:
            raise RepositoryValidationError("cannot connect with yourself")

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                locked = await self._lock_users(conn=conn, user_ids=[from_user_id, to_user_id])
                requester = locked.get(from_user_id)
                if requester is None:
                    raise RepositoryNotFoundError("user not found")

                if limits.weekly_connections is not None:
                    now = datetime.now(timezone.utc)
                    week_start, week_end = connection_week_window(anchor=requester["created_at"], now=now)
                    sent = await conn.fetchval(
                        """
                        select count(*)
                        from network_connections
                        where from_user_id = $1
                          and created_at >= $2
                        """,
                        from_user_id,
                        week_start,
                    )
                    if not is_within_limit(limits.weekly_connections, int(sent or 0)):
                        remaining = days_until(now=now, moment=week_end)
                        raise RepositoryLimitError(
                            f"weekly limit of {limits.weekly_connections} connection requests reached; "
                            f"try again in {remaining} day{'s' if remaining > 1 else ''}",
                            rate_limited=True,
                        )

                if to_user_id not in locked:
                    raise RepositoryNotFoundError("user not found")

                existing = await conn.fetchval(
                    """
                    select type::text
                    from network_connections
                    where (from_user_id = $1 and to_user_id = $2)
                       or (from_user_id = $2 and to_user_id = $1)
                    limit 1
                    """,
                    from_user_id,
                    to_user_id,
                )
                if existing:
                    raise RepositoryConflictError(f"connection already exists (status: {existing})")

                try:
                    row = await conn.fetchrow(
                        """
                        insert into network_connections (from_user_id, to_user_id, type)
                        values ($1, $2, 'pending')
                        returning id, from_user_id, to_user_id, type::text as type, created_at, updated_at
                        """,
                        from_user_id,
                        to_user_id,
                    )
                except pg_exc.UniqueViolationError as exc:
                    raise RepositoryConflictError("connection already exists") from exc
        return self._connection_row_to_dict(row)

    async def respond_to_connection(
        self,
        *,
        connection_id: int,
        status: str,
        actor_user_id: int,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                existing = await conn.fetchrow(
                    """
                    select id, to_user_id, type::text as type
                    from network_connections
                    where id = $1
                    for update
                    """,
                    connection_id,
                )
                if not existing:
                    raise RepositoryNotFoundError("connection request not found")

                self._guard_pending_response(
                    entity="connection request",
                    current_status=str(existing["type"]),
                    recipient_id=int(existing["to_user_id"]),
                    actor_user_id=actor_user_id,
                    response=status,
                    allowed_responses=CONNECTION_RESPONSES,
                )

                row = await conn.fetchrow(
                    """
                    update network_connections
                    set type = $2::connection_type, updated_at = now()
                    where id = $1
                    returning id, from_user_id, to_user_id, type::text as type, created_at, updated_at
                    """,
                    connection_id,
                    status,
                )
        return self._connection_row_to_dict(row)

    async def list_pending_connection_requests(self, *, user_id: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id, from_user_id, to_user_id, type::text as type, created_at, updated_at
            from network_connections
            where to_user_id = $1
              and type = 'pending'
            order by created_at desc, id desc
            """,
            user_id,
        )
        return [self._connection_row_to_dict(row) for row in rows]

    async def get_connection_status(self, *, user_id: int, other_user_id: int) -> str:
        pool = await self._get_pool()
        value = await pool.fetchval(
            """
            select type::text
            from network_connections
            where (from_user_id = $1 and to_user_id = $2)
               or (from_user_id = $2 and to_user_id = $1)
            order by created_at desc
            limit 1
            """,
            user_id,
            other_user_id,
        )
        return str(value) if value else "not_connected"

    async def list_member_connections(self, *, user_id: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            exists = await conn.fetchval("select 1 from users where id = $1", user_id)
            if not exists:
                raise RepositoryNotFoundError("user not found")
            rows = await conn.fetch(
                """
                select distinct on (u.id)
                  u.id, u.username, u.role::text as role, nc.updated_at as connected_at
                from network_connections nc
                join users u
                  on u.id = case when nc.from_user_id = $1 then nc.to_user_id else nc.from_user_id end
                where (nc.from_user_id = $1 or nc.to_user_id = $1)
                  and nc.type = 'connected'
                order by u.id, nc.updated_at desc
                """,
                user_id,
            )
        members = [
            {
                "id": row["id"],
                "username": row["username"],
                "role": row["role"],
                "connected_at": row["connected_at"],
            }
            for row in rows
        ]
        members.sort(key=lambda member: member["connected_at"], reverse=True)
        return members

    # --- Intros ---

    async def request_intro(self, *, requester_id: int, target_id: int, limits: LimitSet) -> dict[str, Any]:
        if requester_id == target_id:
            raise RepositoryValidationError("cannot request an intro with yourself")

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                locked = await self._lock_users(conn=conn, user_ids=[requester_id, target_id])
                target = locked.get(target_id)
                if requester_id not in locked or target is None:
                    raise RepositoryNotFoundError("user not found")
                if not intro_allowed(limits, str(target["role"])):
                    raise RepositoryLimitError("intro requests with this member require a premium plan")

                pending = await conn.fetchval(
                    """
                    select 1
                    from intros
                    where status = 'pending'
                      and ((requester_id = $1 and target_id = $2) or (requester_id = $2 and target_id = $1))
                    limit 1
                    """,
                    requester_id,
                    target_id,
                )
                if pending:
                    raise RepositoryConflictError("intro request already pending")

                try:
                    row = await conn.fetchrow(
                        """
                        insert into intros (requester_id, target_id, status)
                        values ($1, $2, 'pending')
                        returning id, requester_id, target_id, status::text as status, created_at, updated_at
                        """,
                        requester_id,
                        target_id,
                    )
                except pg_exc.UniqueViolationError as exc:
                    raise RepositoryConflictError("intro request already pending") from exc
        return self._intro_row_to_dict(row)

    async def respond_to_intro(self, *, intro_id: int, status: str, actor_user_id: int) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                existing = await conn.fetchrow(
                    """
                    select id, target_id, status::text as status
                    from intros
                    where id = $1
                    for update
                    """,
                    intro_id,
                )
                if not existing:
                    raise RepositoryNotFoundError("intro not found")

                self._guard_pending_response(
                    entity="intro",
                    current_status=str(existing["status"]),
                    recipient_id=int(existing["target_id"]),
                    actor_user_id=actor_user_id,
                    response=status,
                    allowed_responses=INTRO_RESPONSES,
                )

                row = await conn.fetchrow(
                    """
                    update intros
                    set status = $2::intro_status, updated_at = now()
                    where id = $1
                    returning id, requester_id, target_id, status::text as status, created_at, updated_at
                    """,
                    intro_id,
                    status,
                )
        return self._intro_row_to_dict(row)

    async def list_pending_intros(self, *, user_id: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id, requester_id, target_id, status::text as status, created_at, updated_at
            from intros
            where target_id = $1
              and status = 'pending'
            order by created_at desc, id desc
            """,
            user_id,
        )
        return [self._intro_row_to_dict(row) for row in rows]

    # --- Subscriptions ---

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
        tier = "premium" if status == ACTIVE_SUBSCRIPTION_STATUS else "free"
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                user_id = await conn.fetchval(
                    "select user_id from subscriptions where stripe_customer_id = $1 for update",
                    customer_id,
                )
                if user_id is not None:
                    await conn.execute(
                        """
                        update subscriptions
                        set
                          stripe_subscription_id = coalesce($2, stripe_subscription_id),
                          status = $3,
                          price_id = coalesce($4, price_id),
                          current_period_start = coalesce($5, current_period_start),
                          current_period_end = coalesce($6, current_period_end),
                          updated_at = now()
                        where stripe_customer_id = $1
                        """,
                        customer_id,
                        subscription_id,
                        status,
                        price_id,
                        period_start,
                        period_end,
                    )
                else:
                    if metadata_user_id is None:
                        raise RepositoryValidationError("subscription metadata is missing user_id")
                    user_exists = await conn.fetchval("select 1 from users where id = $1", metadata_user_id)
                    if not user_exists:
                        raise RepositoryNotFoundError("user not found")
                    user_id = metadata_user_id
                    await conn.execute(
                        """
                        insert into subscriptions (
                          user_id,
                          stripe_customer_id,
                          stripe_subscription_id,
                          status,
                          price_id,
                          current_period_start,
                          current_period_end
                        )
                        values ($1, $2, $3, $4, $5, $6, $7)
                        """,
                        user_id,
                        customer_id,
                        subscription_id,
                        status,
                        price_id,
                        period_start,
                        period_end,
                    )

                await self._set_tier_from_billing(
                    conn=conn,
                    user_id=int(user_id),
                    tier=tier,
                    payload={"customer_id": customer_id, "subscription_status": status},
                )
        return {"user_id": int(user_id), "tier": tier}

    async def apply_subscription_status(
        self,
        *,
        customer_id: str,
        status: str,
        tier: str,
        period_end: datetime | None = None,
    ) -> dict[str, Any] | None:
        """Set a known customer's subscription status and tier; unknown customers are ignored."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                user_id = await conn.fetchval(
                    """
                    update subscriptions
                    set
                      status = $2,
                      current_period_end = coalesce($3, current_period_end),
                      updated_at = now()
                    where stripe_customer_id = $1
                    returning user_id
                    """,
                    customer_id,
                    status,
                    period_end,
                )
                if user_id is None:
                    return None
                await self._set_tier_from_billing(
                    conn=conn,
                    user_id=int(user_id),
                    tier=tier,
                    payload={"customer_id": customer_id, "subscription_status": status},
                )
        return {"user_id": int(user_id), "tier": tier}

    async def _set_tier_from_billing(
        self,
        *,
        conn: asyncpg.Connection,
        user_id: int,
        tier: str,
        payload: dict[str, Any],
    ) -> None:
        from_tier = await conn.fetchval("select tier::text from users where id = $1 for update", user_id)
        await conn.execute(
            "update users set tier = $2::user_tier, updated_at = now() where id = $1",
            user_id,
            tier,
        )
        await self._record_moderation_event(
            conn=conn,
            entity_type="user",
            entity_id=user_id,
            event_type="tier_synced",
            actor_type="billing",
            actor_id=None,
            payload={**payload, "from_tier": from_tier, "to_tier": tier},
        )

    # --- Helpers ---

    @staticmethod
    async def _lock_users(*, conn: asyncpg.Connection, user_ids: list[int]) -> dict[int, asyncpg.Record]:
        # Always lock in id order; pair operations in both directions share this path.
        rows = await conn.fetch(
            """
            select id, role::text as role, created_at
            from users
            where id = any($1::int[])
            order by id
            for update
            """,
            sorted(set(user_ids)),
        )
        return {int(row["id"]): row for row in rows}

    @staticmethod
    async def _lock_job(*, conn: asyncpg.Connection, job_id: int, actor_user_id: int, as_admin: bool) -> None:
        owner_id = await conn.fetchval("select user_id from jobs where id = $1 for update", job_id)
        if owner_id is None:
            raise RepositoryNotFoundError("job not found")
        if not as_admin and owner_id != actor_user_id:
            raise RepositoryNotFoundError("job not found or unauthorized")



    @staticmethod
    def _guard_pending_response(
        *,
        entity: str,
        current_status: str,
        recipient_id: int,
        actor_user_id: int,
        response: str,
        allowed_responses: set[str],
    ) -> None:
        try:
            ensure_pending_response(
                entity=entity,
                current_status=current_status,
                recipient_id=recipient_id,
                actor_user_id=actor_user_id,
                response=response,
                allowed_responses=allowed_responses,
            )
        except WorkflowValidationError as exc:
            raise RepositoryValidationError(str(exc)) from exc
        except WorkflowForbiddenError as exc:
            raise RepositoryForbiddenError(str(exc)) from exc
        except WorkflowConflictError as exc:
            raise RepositoryConflictError(str(exc)) from exc

    async def _record_moderation_event(
        self,
        *,
        conn: asyncpg.Connection,
        entity_type: str,
        entity_id: int,
        event_type: str,
        actor_type: str,
        actor_id: int | None,
        payload: dict[str, Any],
    ) -> None:
        await conn.execute(
            """
            insert into moderation_events (
              entity_type,
              entity_id,
              event_type,
              actor_type,
              actor_id,
              payload
            )
            values ($1, $2, $3, $4, $5, $6::jsonb)
            """,
            entity_type,
            entity_id,
            event_type,
            actor_type,
            actor_id,
            json.dumps(payload, default=str),
        )

    async def _fetch_user_row(
        self,
        *,
        conn: asyncpg.Connection | asyncpg.Pool,
        user_id: int,
    ) -> asyncpg.Record | None:
        return await conn.fetchrow(
            f"""
            select {_USER_COLUMNS}
            from users
            where id = $1
            """,
            user_id,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("BB_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _user_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "username": row["username"],
            "email": row["email"],
            "role": row["role"],
            "tier": row["tier"],
            "status": row["status"],
            "referral_code": row["referral_code"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _ban_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "user_id": row["user_id"],
            "reason": row["reason"],
            "banned_by": row["banned_by"],
            "banned_at": row["banned_at"],
            "expires_at": row["expires_at"],
            "lifted_at": row["lifted_at"],
            "lifted_by": row["lifted_by"],
        }

    @staticmethod
    def _event_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        payload = row["payload"]
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError:
                payload = {}
        if not isinstance(payload, dict):
            payload = {}
        return {
            "id": row["id"],
            "entity_type": row["entity_type"],
            "entity_id": row["entity_id"],
            "event_type": row["event_type"],
            "actor_type": row["actor_type"],
            "actor_id": row["actor_id"],
            "payload": payload,
            "created_at": row["created_at"],
        }

    @staticmethod
    def _job_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "user_id": row["user_id"],
            "title": row["title"],
            "description": row["description"],
            "location": row["location"],
            "type": row["type"],
            "is_remote": bool(row["is_remote"]),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _application_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "job_id": row["job_id"],
            "user_id": row["user_id"],
            "status": row["status"],
            "resume_url": row["resume_url"],
            "cover_letter": row["cover_letter"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _connection_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "from_user_id": row["from_user_id"],
            "to_user_id": row["to_user_id"],
            "type": row["type"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _intro_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "requester_id": row["requester_id"],
            "target_id": row["target_id"],
            "status": row["status"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }


def _affected_rows(command_tag: str) -> int:
    # asyncpg returns command tags such as "UPDATE 2".
    try:
        return int(command_tag.rsplit(" ", maxsplit=1)[-1])
    except (ValueError, AttributeError):
        return 0


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
