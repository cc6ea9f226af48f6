"""Subscription webhook handling.

The payment provider owns billing; this module only turns its signed
subscription events into tier changes on the local user record.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import stripe

from bluebox.services.repository import (
    ACTIVE_SUBSCRIPTION_STATUS,
    PostgresRepository,
    RepositoryNotFoundError,
    RepositoryValidationError,
)

logger = logging.getLogger(__name__)

SUBSCRIPTION_UPSERT_EVENTS = {"customer.subscription.created", "customer.subscription.updated"}


class BillingSignatureError(Exception):
    """Raised when a webhook payload cannot be authenticated or parsed."""


def verify_webhook_event(
    *,
    payload: bytes,
    signature: str | None,
    webhook_secret: str,
    tolerance_seconds: int,
) -> stripe.Event:
    if not signature:
        raise BillingSignatureError("missing Stripe-Signature header")

    try:
        event = stripe.Webhook.construct_event(payload, signature, webhook_secret, tolerance_seconds)
    except stripe.SignatureVerificationError as exc:
        raise BillingSignatureError("invalid Stripe signature") from exc
    except ValueError as exc:
        # Undecodable or non-json body that still carried a valid signature.
        raise BillingSignatureError("webhook payload is not a Stripe event") from exc

    if "type" not in event:
        raise BillingSignatureError("webhook payload is not a Stripe event")
    return event


async def handle_webhook_event(event: stripe.Event, repository: PostgresRepository) -> dict[str, Any]:
    event_type = str(event["type"])
    obj = _event_object(event)

    result: dict[str, Any] | None
    try:
        if event_type in SUBSCRIPTION_UPSERT_EVENTS:
            result = await _handle_subscription_update(obj, repository)
        elif event_type == "customer.subscription.deleted":
            result = await repository.apply_subscription_status(
                customer_id=_customer_id(obj),
                status="canceled",
                tier="free",
                period_end=_timestamp(obj.get("current_period_end")),
            )
        elif event_type in {"invoice.payment_succeeded", "invoice.payment_failed"}:
            if not obj.get("subscription"):
                return {"event_type": event_type, "handled": False}
            succeeded = event_type == "invoice.payment_succeeded"
            result = await repository.apply_subscription_status(
                customer_id=_customer_id(obj),
                status=ACTIVE_SUBSCRIPTION_STATUS if succeeded else "inactive",
                tier="premium" if succeeded else "free",
            )
        else:
            return {"event_type": event_type, "handled": False}
    except (RepositoryNotFoundError, RepositoryValidationError) as exc:
        logger.warning("stripe webhook not applied event_type=%s error=%s", event_type, exc)
        return {"event_type": event_type, "handled": False}

    if result is None:
        logger.info("stripe webhook for unknown customer ignored event_type=%s", event_type)
        return {"event_type": event_type, "handled": False}

    logger.info(
        "stripe webhook applied event_type=%s user_id=%s tier=%s",
        event_type,
        result["user_id"],
        result["tier"],
    )
    return {"event_type": event_type, "handled": True, **result}


async def _handle_subscription_update(obj: dict[str, Any], repository: PostgresRepository) -> dict[str, Any]:
    items = (obj.get("items") or {}).get("data") or []
    price_id = None
    if items and isinstance(items[0], dict):
        price_id = (items[0].get("price") or {}).get("id")

    return await repository.apply_subscription_update(
        customer_id=_customer_id(obj),
        subscription_id=obj.get("id"),
        status=str(obj.get("status") or "inactive"),
        price_id=price_id,
        period_start=_timestamp(obj.get("current_period_start")),
        period_end=_timestamp(obj.get("current_period_end")),
        metadata_user_id=_metadata_user_id(obj.get("metadata")),
    )


def _customer_id(obj: dict[str, Any]) -> str:
    customer = obj.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    if not isinstance(customer, str) or not customer:
        raise RepositoryValidationError("event is missing customer id")
    return customer


def _metadata_user_id(metadata: Any) -> int | None:
    if not isinstance(metadata, dict):
        return None
    raw = metadata.get("user_id") or metadata.get("userId")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def _timestamp(value: Any) -> datetime | None:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def _event_object(event: stripe.Event) -> dict[str, Any]:
    if "data" not in event or "object" not in event["data"]:
        return {}
    obj = event["data"]["object"]
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return obj if isinstance(obj, dict) else {}
