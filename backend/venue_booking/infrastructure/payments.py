from __future__ import annotations

import asyncio
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, Optional

import stripe

from ..domain.errors import PaymentGatewayError
from ..domain.repositories import PaymentIntent

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


class StripePaymentGateway:
    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    async def create_payment_intent(
        self,
        *,
        amount: Decimal,
        currency: str,
        metadata: Mapping[str, str],
    ) -> PaymentIntent:
        if amount <= 0:
            raise PaymentGatewayError("amount must be positive")
        try:
            intent: Any = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                api_key=self.api_key,
                amount=to_minor_units(amount),
                currency=currency,
                metadata=dict(metadata),
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as exc:
            logger.error("stripe payment intent failed: %s", exc)
            raise PaymentGatewayError("payment intent could not be created") from exc
        return PaymentIntent(
            id=intent["id"],
            client_secret=intent.get("client_secret"),
            status=intent["status"],
            amount=amount,
            currency=currency,
            metadata=dict(metadata),
        )

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        try:
            intent: Any = await asyncio.to_thread(
                stripe.PaymentIntent.retrieve,
                payment_intent_id,
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            logger.error("stripe lookup of %s failed: %s", payment_intent_id, exc)
            raise PaymentGatewayError("payment intent could not be retrieved") from exc
        return PaymentIntent(
            id=intent["id"],
            client_secret=intent.get("client_secret"),
            status=intent["status"],
            amount=from_minor_units(intent["amount"]),
            currency=intent["currency"],
            metadata=dict(intent.get("metadata") or {}),
        )

    async def refund(self, payment_intent_id: str, *, idempotency_key: Optional[str] = None) -> str:
        try:
            refund: Any = await asyncio.to_thread(
                stripe.Refund.create,
                api_key=self.api_key,
                payment_intent=payment_intent_id,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            logger.error("stripe refund for %s failed: %s", payment_intent_id, exc)
            raise PaymentGatewayError("refund failed") from exc
        return str(refund["id"])
