from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from bluebox.core.auth import Principal
from bluebox.core.security import get_human_principal
from bluebox.schemas.jobs import JobListOut, JobOut, JobType, JobUpdateRequest
from bluebox.schemas.users import (
    ApproveAction,
    BanAction,
    ModerationAction,
    ModerationEventOut,
    RejectAction,
    TierAction,
    UnbanAction,
    UserBanOut,
    UserListOut,
    UserOut,
    UserRole,
    UserStatus,
)
from bluebox.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.get("/users", response_model=UserListOut)
async def list_users(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    search: str | None = Query(default=None, min_length=1),
    role: UserRole | None = Query(default=None),
    user_status: UserStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> UserListOut:
    try:
        principal.require_scopes({"admin:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        page = await repository.list_users(
            search=search,
            role=role,
            status=user_status,
            limit=limit,
            offset=offset,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return UserListOut(**page)


@router.get("/users/{user_id}", response_model=UserOut)
async def get_user(
    user_id: int,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> UserOut:
    try:
        principal.require_scopes({"admin:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.get_user(user_id=user_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return UserOut(**row)


@router.get("/users/{user_id}/bans", response_model=list[UserBanOut])
async def list_user_bans(
    user_id: int,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> list[UserBanOut]:
    try:
        principal.require_scopes({"admin:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_user_bans(user_id=user_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return [UserBanOut(**row) for row in rows]


@router.get("/users/{user_id}/events", response_model=list[ModerationEventOut])
async def list_user_events(
    user_id: int,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[ModerationEventOut]:
    try:
        principal.require_scopes({"admin:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_user_events(user_id=user_id, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return [ModerationEventOut(**row) for row in rows]


@router.post("/users/{user_id}/ban", response_model=UserOut)
async def ban_user(
    user_id: int,
    payload: BanAction,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> UserOut:
    return await _apply_moderation_action(user_id, payload, principal, repository)


@router.post("/users/{user_id}/unban", response_model=UserOut)
async def unban_user(
    user_id: int,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> UserOut:
    return await _apply_moderation_action(user_id, UnbanAction(), principal, repository)


@router.post("/users/{user_id}/tier", response_model=UserOut)
async def set_user_tier(
    user_id: int,
    payload: TierAction,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> UserOut:
    return await _apply_moderation_action(user_id, payload, principal, repository)


@router.post("/users/{user_id}/approve", response_model=UserOut)
async def approve_user(
    user_id: int,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> UserOut:
    return await _apply_moderation_action(user_id, ApproveAction(), principal, repository)


@router.post("/users/{user_id}/reject", response_model=UserOut)
async def reject_user(
    user_id: int,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> UserOut:
    return await _apply_moderation_action(user_id, RejectAction(), principal, repository)


@router.post("/users/{user_id}/actions", response_model=UserOut)
async def apply_user_action(
    user_id: int,
    payload: Annotated[ModerationAction, Body(discriminator="action")],
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> UserOut:
    return await _apply_moderation_action(user_id, payload, principal, repository)


async def _apply_moderation_action(
    user_id: int,
    action: ModerationAction,
    principal: Principal,
    repository,
) -> UserOut:
    try:
        principal.require_scopes({"admin:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.apply_moderation_action(
            user_id=user_id,
            action=action.action,
            actor_user_id=principal.actor_id,
            **_action_arguments(action),
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return UserOut(**row)


def _action_arguments(action: ModerationAction) -> dict[str, Any]:
    if isinstance(action, BanAction):
        return {"reason": action.reason, "expires_at": action.expires_at}
    if isinstance(action, TierAction):
        return {"tier": action.tier}
    return {}


@router.get("/jobs", response_model=JobListOut)
async def list_jobs_for_moderation(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    search: str | None = Query(default=None, min_length=1),
    job_type: JobType | None = Query(default=None, alias="type"),
    is_remote: bool | None = Query(default=None),
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> JobListOut:
    try:
        principal.require_scopes({"admin:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        page = await repository.search_jobs(
            search=search,
            job_type=job_type,
            is_remote=is_remote,
            limit=limit,
            offset=offset,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return JobListOut(**page)


@router.put("/jobs/{job_id}", response_model=JobOut)
async def moderate_job(
    job_id: int,
    payload: JobUpdateRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> JobOut:
    try:
        principal.require_scopes({"admin:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.update_job(
            job_id=job_id,
            actor_user_id=principal.actor_id,
            changes=payload.changes(),
            as_admin=True,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return JobOut(**row)


@router.delete("/jobs/{job_id}", response_model=JobOut)
async def remove_job(
    job_id: int,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> JobOut:
    try:
        principal.require_scopes({"admin:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.delete_job(job_id=job_id, actor_user_id=principal.actor_id, as_admin=True)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return JobOut(**row)
