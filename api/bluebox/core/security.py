from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from bluebox.core.auth import Principal
from bluebox.core.config import Settings, get_settings
from bluebox.services.repository import RepositoryUnavailableError, get_repository

_MEMBER_SCOPES = {"network:write", "intros:write"}

ROLE_SCOPES: dict[str, set[str]] = {
    "student": _MEMBER_SCOPES | {"applications:write"},
    "venture_capitalist": _MEMBER_SCOPES | {"jobs:write", "applications:review"},
    "startup": _MEMBER_SCOPES | {"jobs:write", "applications:review"},
    "admin": _MEMBER_SCOPES
    | {"applications:write", "jobs:write", "applications:review", "admin:read", "admin:write"},
}

INACTIVE_STATUS_DETAILS = {
    "pending": "account is pending approval",
    "rejected": "account registration was rejected",
    "banned": "account has been banned",
}


async def get_human_principal(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="human auth requires bearer token",
        )

    token = authorization.split(" ", maxsplit=1)[1].strip()
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="empty bearer token")

    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth is not configured",
        )

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    subject = user.get("id")
    email = _resolve_email(user)
    if not isinstance(subject, str) or not subject or email is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")

    try:
        account = await repository.get_user_by_email(email=email)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if not account:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="no account for bearer token")

    account_status = account["status"]
    if account_status in INACTIVE_STATUS_DETAILS:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=INACTIVE_STATUS_DETAILS[account_status])

    role = account["role"]
    return Principal(
        actor_id=account["id"],
        role=role,
        tier=account["tier"],
        status=account_status,
        scopes=set(ROLE_SCOPES.get(role, _MEMBER_SCOPES)),
        subject=subject,
    )


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": supabase_anon_key,
    }
    url = f"{supabase_url.rstrip('/')}/auth/v1/user"

    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification unavailable",
        ) from exc

    if response.status_code in {401, 403}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")
    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification failed",
        )

    return response.json()


def _resolve_email(user: dict[str, Any]) -> str | None:
    email = user.get("email")
    if isinstance(email, str) and email.strip():
        return email.strip().lower()
    return None
