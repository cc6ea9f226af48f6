from fastapi import APIRouter, Depends, HTTPException, status

from bluebox.core.security import get_human_principal
from bluebox.schemas.network import IntroCreateRequest, IntroOut, IntroResponseRequest
from bluebox.services.repository import (
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryLimitError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.post("", response_model=IntroOut, status_code=status.HTTP_201_CREATED)
async def request_intro(
    payload: IntroCreateRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> IntroOut:
    try:
        principal.require_scopes({"intros:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.request_intro(
            requester_id=principal.actor_id,
            target_id=payload.target_id,
            limits=principal.limits,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryLimitError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return IntroOut(**row)


@router.post("/{intro_id}/response", response_model=IntroOut)
async def respond_to_intro(
    intro_id: int,
    payload: IntroResponseRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> IntroOut:
    try:
        principal.require_scopes({"intros:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.respond_to_intro(
            intro_id=intro_id,
            status=payload.status,
            actor_user_id=principal.actor_id,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return IntroOut(**row)


@router.get("/pending", response_model=list[IntroOut])
async def list_pending_intros(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> list[IntroOut]:
    try:
        rows = await repository.list_pending_intros(user_id=principal.actor_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [IntroOut(**row) for row in rows]
