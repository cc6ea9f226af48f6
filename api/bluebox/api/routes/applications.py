from fastapi import APIRouter, Depends, HTTPException, Query, status

from bluebox.core.security import get_human_principal
from bluebox.schemas.jobs import ApplicationOut, ApplicationStatus, ApplicationStatusRequest
from bluebox.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.get("/received", response_model=list[ApplicationOut])
async def list_received_applications(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    application_status: ApplicationStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[ApplicationOut]:
    try:
        principal.require_scopes({"applications:review"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_received_applications(
            owner_user_id=principal.actor_id,
            status=application_status,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [ApplicationOut(**row) for row in rows]


@router.get("/mine", response_model=list[ApplicationOut])
async def list_my_applications(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[ApplicationOut]:
    try:
        rows = await repository.list_user_applications(user_id=principal.actor_id, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [ApplicationOut(**row) for row in rows]


@router.put("/{application_id}/status", response_model=ApplicationOut)
async def update_application_status(
    application_id: int,
    payload: ApplicationStatusRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ApplicationOut:
    try:
        principal.require_scopes({"applications:review"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.update_application_status(
            application_id=application_id,
            status=payload.status,
            actor_user_id=principal.actor_id,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return ApplicationOut(**row)
