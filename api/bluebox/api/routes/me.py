from fastapi import APIRouter, Depends, HTTPException, status

from bluebox.core.security import get_human_principal
from bluebox.schemas.users import LimitSetOut, UserOut
from bluebox.services.repository import RepositoryNotFoundError, RepositoryUnavailableError, get_repository

router = APIRouter()


@router.get("", response_model=UserOut)
async def get_me(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> UserOut:
    try:
        row = await repository.get_user(user_id=principal.actor_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return UserOut(**row)


@router.get("/limits", response_model=LimitSetOut)
async def get_my_limits(principal=Depends(get_human_principal)) -> LimitSetOut:
    return LimitSetOut(**principal.limits.as_dict())
