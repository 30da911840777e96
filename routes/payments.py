from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session
from typing import Optional

from core.db import get_db
from models.user import User
from routes.auth import require_admin
from schemas.payment import PaymentDetailsOut, WebhookAck
from services import orders as order_service
from services import razorpay


router = APIRouter(prefix="/payments", tags=["payments"])


async def raw_body(request: Request) -> bytes:
    # the signature covers the exact bytes Razorpay sent
    return await request.body()


@router.post("/webhook", response_model=WebhookAck)
def razorpay_webhook(
    body: bytes = Depends(raw_body),
    db: Session = Depends(get_db),
    signature: Optional[str] = Header(default=None, alias="X-Razorpay-Signature"),
):
    event = order_service.confirm_webhook_payment(db, body, signature)
    return WebhookAck(event=event)


@router.get("/{payment_id}", response_model=PaymentDetailsOut)
def get_payment(payment_id: str, admin: User = Depends(require_admin)):
    result = razorpay.fetch_payment(payment_id)
    if not result.success:
        raise HTTPException(status_code=502, detail=result.error)
    return PaymentDetailsOut(
        payment_id=payment_id,
        status=result.get("status"),
        amount=result.get("amount"),
        email=result.get("email"),
        payment=result["payment"],
    )
