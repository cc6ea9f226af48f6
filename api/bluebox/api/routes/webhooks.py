from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from bluebox.core.config import Settings, get_settings
from bluebox.schemas.billing import WebhookReceiptOut
from bluebox.services.billing import BillingSignatureError, handle_webhook_event, verify_webhook_event
from bluebox.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


@router.post("/stripe", response_model=WebhookReceiptOut)
async def stripe_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> WebhookReceiptOut:
    if not settings.stripe_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stripe webhook secret is not configured",
        )

    payload = await request.body()
    try:
        event = verify_webhook_event(
            payload=payload,
            signature=stripe_signature,
            webhook_secret=settings.stripe_webhook_secret,
            tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        )
    except BillingSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        result = await handle_webhook_event(event, repository)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return WebhookReceiptOut(**result)
