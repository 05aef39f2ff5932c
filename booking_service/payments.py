"""Stripe-backed payment holds: authorize, capture, release.

Every provider failure is translated into ``PaymentAuthorizationFailed``
(placing a hold) or ``PaymentOperationFailed`` (capture/release). Provider
states that mean the work is already done come back as a ``HoldOutcome``
instead of an exception so callers can branch on them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum

import stripe

from .config import settings
from .errors import PaymentAuthorizationFailed, PaymentOperationFailed

logger = logging.getLogger("payments")

# One SDK client per timeout
_http_clients: dict[int, stripe.HTTPClient] = {}


class HoldOutcome(Enum):
    CAPTURED = "captured"
    RELEASED = "released"
    ALREADY_CAPTURED = "already_captured"
    ALREADY_RELEASED = "already_released"


@dataclass
class HoldAuthorization:
    payment_intent_id: str
    amount_cents: int
    status: str


def _to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _classify(intent_status: str) -> HoldOutcome | None:
    if intent_status == "succeeded":
        return HoldOutcome.ALREADY_CAPTURED
    if intent_status == "canceled":
        return HoldOutcome.ALREADY_RELEASED
    return None


class StripePaymentAuthorizer:
    """Manual-capture PaymentIntents used as booking holds."""

    def __init__(self, api_key: str | None = None, timeout: int | None = None, currency: str | None = None):
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.timeout = timeout or settings.STRIPE_TIMEOUT_SECONDS
        self.currency = currency or settings.CURRENCY

    def _ensure_stripe_client(self) -> None:
        """Configure the SDK key and a client that gives up after ``timeout`` seconds."""
        if not self.api_key:
            raise PaymentOperationFailed("Payment provider is not configured.")
        http_client = _http_clients.get(self.timeout)
        if http_client is None:
            http_client = _http_clients[self.timeout] = stripe.RequestsClient(timeout=self.timeout)
        stripe.api_key = self.api_key
        stripe.default_http_client = http_client

    def authorize_hold(
            self,
            *,
            amount: Decimal,
            payment_method_id: str,
            customer_id: str | None = None,
            metadata: dict | None = None,
            idempotency_key: str | None = None,
    ) -> HoldAuthorization:
        try:
            self._ensure_stripe_client()
        except PaymentOperationFailed as exc:
            raise PaymentAuthorizationFailed(exc.detail)

        amount_cents = _to_cents(amount)
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=self.currency,
                customer=customer_id,
                payment_method=payment_method_id,
                payment_method_types=["card"],
                capture_method="manual",
                confirm=True,
                metadata={**(metadata or {}), "authorization_hold": "true"},
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as exc:
            logger.info(f"Hold declined by card issuer: {exc.code}")
            raise PaymentAuthorizationFailed(exc.user_message or "Your card was declined.")
        except stripe.StripeError as exc:
            logger.error(f"Stripe error while placing hold: {exc}")
            raise PaymentAuthorizationFailed()

        if intent.status != "requires_capture":
            # 3-D Secure or similar; we can't finish that server-side, so drop the intent.
            logger.warning(f"PaymentIntent {intent.id} not authorized (status={intent.status}); cancelling.")
            try:
                stripe.PaymentIntent.cancel(intent.id)
            except stripe.StripeError as exc:
                logger.error(f"Failed to cancel unauthorized PaymentIntent {intent.id}: {exc}")
            raise PaymentAuthorizationFailed("Payment requires additional authentication.")

        logger.info(f"Hold placed: {intent.id} for {amount_cents} cents")
        return HoldAuthorization(payment_intent_id=intent.id, amount_cents=amount_cents, status=intent.status)

    def _retrieve_status(self, payment_intent_id: str) -> str | None:
        """Current provider status, or None when the intent no longer exists."""
        try:
            return stripe.PaymentIntent.retrieve(payment_intent_id).status
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", "") == "resource_missing":
                return None
            raise

    def capture(self, payment_intent_id: str, *, idempotency_key: str | None = None) -> HoldOutcome:
        self._ensure_stripe_client()
        try:
            intent_status = self._retrieve_status(payment_intent_id)
            if intent_status is None:
                logger.info(f"PaymentIntent {payment_intent_id} missing; treating hold as released.")
                return HoldOutcome.ALREADY_RELEASED
            known = _classify(intent_status)
            if known is not None:
                logger.info(f"PaymentIntent {payment_intent_id} already {intent_status}; skipping capture.")
                return known
            if intent_status != "requires_capture":
                raise PaymentOperationFailed(f"Cannot capture payment in status '{intent_status}'.")

            try:
                captured = stripe.PaymentIntent.capture(payment_intent_id, idempotency_key=idempotency_key)
            except stripe.InvalidRequestError as exc:
                if getattr(exc, "code", "") != "payment_intent_unexpected_state":
                    raise
                # Someone else moved the intent between retrieve and capture.
                known = _classify(self._retrieve_status(payment_intent_id) or "canceled")
                if known is None:
                    raise
                return known
        except stripe.StripeError as exc:
            logger.error(f"Stripe capture failed for {payment_intent_id}: {exc}")
            raise PaymentOperationFailed()

        logger.info(f"Captured {payment_intent_id} (status={captured.status})")
        return HoldOutcome.CAPTURED

    def release(self, payment_intent_id: str, *, idempotency_key: str | None = None) -> HoldOutcome:
        self._ensure_stripe_client()
        try:
            intent_status = self._retrieve_status(payment_intent_id)
            if intent_status is None:
                logger.info(f"PaymentIntent {payment_intent_id} missing; treating hold as released.")
                return HoldOutcome.ALREADY_RELEASED
            known = _classify(intent_status)
            if known is not None:
                logger.info(f"PaymentIntent {payment_intent_id} already {intent_status}; skipping release.")
                return known

            try:
                stripe.PaymentIntent.cancel(
                    payment_intent_id,
                    cancellation_reason="abandoned",
                    idempotency_key=idempotency_key,
                )
            except stripe.InvalidRequestError as exc:
                if getattr(exc, "code", "") != "payment_intent_unexpected_state":
                    raise
                known = _classify(self._retrieve_status(payment_intent_id) or "canceled")
                if known is None:
                    raise
                return known
        except stripe.StripeError as exc:
            logger.error(f"Stripe release failed for {payment_intent_id}: {exc}")
            raise PaymentOperationFailed()

        logger.info(f"Released hold {payment_intent_id}")
        return HoldOutcome.RELEASED


def get_payment_authorizer() -> StripePaymentAuthorizer:
    return StripePaymentAuthorizer()
