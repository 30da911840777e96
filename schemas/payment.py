from pydantic import BaseModel
from typing import Any, Dict, Optional


class WebhookAck(BaseModel):
    status: str = "ok"
    event: str


class PaymentDetailsOut(BaseModel):
    payment_id: str
    status: Optional[str] = None
    amount: Optional[int] = None
    email: Optional[str] = None
    payment: Dict[str, Any]
