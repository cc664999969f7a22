from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

import stripe

from services.errors import PermanentProviderError, TransientProviderError
from utils.retry import call_with_retry

logger = logging.getLogger(__name__)

PROVIDER = "stripe"


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str


@dataclass(frozen=True)
class CheckoutStatus:
    session_id: str
    status: str | None  # open, complete, expired
    payment_status: str | None  # paid, unpaid, no_payment_required
    amount_total: int | None
    payment_intent: str | None


class PaymentProvider(ABC):
    @abstractmethod
    def create_checkout_session(self, booking_id: str, amount: int, currency: str, success_url: str,
                                cancel_url: str, *, description: str = "", metadata: dict | None = None,
                                idempotency_key: str | None = None) -> CheckoutSession:
        raise NotImplementedError

    @abstractmethod
    def create_refund(self, payment_reference: str, amount: int | None = None, *,
                      metadata: dict | None = None, idempotency_key: str | None = None) -> str:
        """Refund a payment (checkout session or payment intent id). Returns the refund id."""
        raise NotImplementedError

    @abstractmethod
    def get_checkout_session(self, session_id: str) -> CheckoutStatus:
        raise NotImplementedError


def _translate(exc: stripe.StripeError) -> Exception:
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return TransientProviderError(f"Stripe unavailable: {exc.user_message or exc}", provider=PROVIDER)
    status = getattr(exc, "http_status", None) or 0
    if isinstance(exc, stripe.APIError) or status >= 500:
        return TransientProviderError(f"Stripe server error ({status})", provider=PROVIDER)
    return PermanentProviderError(f"Stripe rejected request: {exc.user_message or exc}", provider=PROVIDER)


class StripePayments(PaymentProvider):
    def __init__(
        self,
        api_key: str | None,
        *,
        timeout: float = 10.0,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
        client: stripe.StripeClient | None = None,
        sleep=time.sleep,
    ) -> None:
        if client is None and api_key:
            client = stripe.StripeClient(api_key, http_client=stripe.RequestsClient(timeout=timeout))
        self._client = client
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay
        self._sleep = sleep

    def _call(self, operation: str, fn):
        if self._client is None:
            raise PermanentProviderError("Stripe secret key not configured", provider=PROVIDER)

        def attempt():
            try:
                return fn()
            except stripe.StripeError as e:
                raise _translate(e) from e

        return call_with_retry(
            attempt,
            attempts=self._retry_attempts,
            base_delay=self._retry_base_delay,
            sleep=self._sleep,
            operation=operation,
        )

    def create_checkout_session(self, booking_id, amount, currency, success_url, cancel_url, *,
                                description="", metadata=None, idempotency_key=None):
        metadata = {k: str(v) for k, v in (metadata or {}).items() if v is not None}
        params = {
            "mode": "payment",
            "client_reference_id": booking_id,
            "line_items": [{
                "price_data": {
                    "currency": currency.lower(),
                    "product_data": {"name": description or f"Session booking {booking_id}"},
                    "unit_amount": int(amount),
                },
                "quantity": 1,
            }],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            # payment_intent.* events carry the booking id too
            "payment_intent_data": {"metadata": metadata},
        }
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}

        session = self._call(
            "stripe.checkout.create",
            lambda: self._client.checkout.sessions.create(params=params, options=options),
        )
        logger.info("Checkout session created", extra={"booking_id": booking_id, "reference": session.id})
        return CheckoutSession(session_id=session.id, url=session.url)

    def create_refund(self, payment_reference, amount=None, *, metadata=None, idempotency_key=None):
        payment_intent = payment_reference
        if payment_reference.startswith("cs_"):
            payment_intent = self.get_checkout_session(payment_reference).payment_intent
            if not payment_intent:
                raise PermanentProviderError("Checkout session has no payment to refund", provider=PROVIDER)

        params = {"payment_intent": payment_intent}
        if amount is not None:
            params["amount"] = int(amount)
        if metadata:
            params["metadata"] = {k: str(v) for k, v in metadata.items() if v is not None}
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}

        refund = self._call(
            "stripe.refund.create",
            lambda: self._client.refunds.create(params=params, options=options),
        )
        logger.info("Refund requested", extra={"reference": refund.id})
        return refund.id

    def get_checkout_session(self, session_id):
        session = self._call(
            "stripe.checkout.retrieve",
            lambda: self._client.checkout.sessions.retrieve(session_id),
        )
        payment_intent = session.payment_intent
        if payment_intent is not None and not isinstance(payment_intent, str):
            payment_intent = payment_intent.id
        return CheckoutStatus(
            session_id=session.id,
            status=session.status,
            payment_status=session.payment_status,
            amount_total=session.amount_total,
            payment_intent=payment_intent,
        )
