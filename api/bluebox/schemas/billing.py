from pydantic import BaseModel


class WebhookReceiptOut(BaseModel):
    received: bool = True
    event_type: str
    handled: bool
    user_id: int | None = None
    tier: str | None = None
