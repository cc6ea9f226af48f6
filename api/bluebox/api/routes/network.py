from fastapi import APIRouter, Depends, HTTPException, status

from bluebox.core.security import get_human_principal
from bluebox.schemas.network import (
    ConnectedMemberOut,
    ConnectionGraphOut,
    ConnectionOut,
    ConnectionResponseRequest,
    ConnectionStatusOut,
)
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


@router.post("/connect/{user_id}", response_model=ConnectionOut, status_code=status.HTTP_201_CREATED)
async def request_connection(
    user_id: int,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ConnectionOut:
    try:
        principal.require_scopes({"network:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.request_connection(
            from_user_id=principal.actor_id,
            to_user_id=user_id,
            limits=principal.limits,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryLimitError as exc:
        code = status.HTTP_429_TOO_MANY_REQUESTS if exc.rate_limited else status.HTTP_403_FORBIDDEN
        raise HTTPException(status_code=code, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return ConnectionOut(**row)


@router.post("/requests/{request_id}/response", response_model=ConnectionOut)
async def respond_to_connection(
    request_id: int,
    payload: ConnectionResponseRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ConnectionOut:
    try:
        principal.require_scopes({"network:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.respond_to_connection(
            connection_id=request_id,
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

    return ConnectionOut(**row)


@router.get("/requests", response_model=list[ConnectionOut])
async def list_connection_requests(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> list[ConnectionOut]:
    try:
        rows = await repository.list_pending_connection_requests(user_id=principal.actor_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [ConnectionOut(**row) for row in rows]


@router.get("/status/{user_id}", response_model=ConnectionStatusOut)
async def get_connection_status(
    user_id: int,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ConnectionStatusOut:
    try:
        value = await repository.get_connection_status(user_id=principal.actor_id, other_user_id=user_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return ConnectionStatusOut(user_id=user_id, status=value)


@router.get("/connections/{user_id}", response_model=ConnectionGraphOut)
async def get_connection_graph(
    user_id: int,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ConnectionGraphOut:
    # Browsing another member's graph is a paid feature.
    if principal.tier != "premium" and principal.role != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="premium subscription required")

    try:
        rows = await repository.list_member_connections(user_id=user_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return ConnectionGraphOut(user_id=user_id, nodes=[ConnectedMemberOut(**row) for row in rows])
