"""Webhook endpoints for billing processors."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status

from apiary_api.api.dependencies.billing import get_payment_gateway
from apiary_api.domain.errors import InvalidSignature
from apiary_api.services.billing import PaymentGatewayAdapter

router = APIRouter(prefix="/billing/webhooks", tags=["billing-webhooks"])


@router.post("/stripe", status_code=status.HTTP_202_ACCEPTED)
async def stripe_webhook(
    request: Request,
    gateway: PaymentGatewayAdapter = Depends(get_payment_gateway),
) -> dict[str, str]:
    """Verify the Stripe signature, record the event and apply paid checkouts.

    Only a signature failure is reported as an error; every verified event is
    acknowledged so the processor stops redelivering it.
    """

    payload = await request.body()
    signature = request.headers.get("Stripe-Signature")
    try:
        outcome = await gateway.handle_webhook(payload, signature)
    except InvalidSignature as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    response = {"status": outcome.status, "event_id": outcome.event_id}
    if outcome.duplicate:
        response["delivery"] = "duplicate"
    return response
