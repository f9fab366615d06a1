"""Dependencies wiring the payment gateway adapter for request handlers."""

from __future__ import annotations

from fastapi import Depends, HTTPException, status
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from apiary_api.db.session import get_session
from apiary_api.services.billing import PaymentGatewayAdapter, StripeBillingProvider
from apiary_api.services.documents import CertificateIssuer


async def get_payment_gateway(db: AsyncSession = Depends(get_session)) -> PaymentGatewayAdapter:
    """Build the gateway adapter around the request's database session."""

    try:
        provider = StripeBillingProvider.from_settings()
    except ValueError as exc:
        logger.error("Stripe provider not configured", error=str(exc))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe is not configured") from exc
    if not provider.webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stripe webhook secret not configured",
        )
    return PaymentGatewayAdapter.for_session(db, provider=provider, certificates=CertificateIssuer.from_settings())
