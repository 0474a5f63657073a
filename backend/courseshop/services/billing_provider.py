from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Protocol, Union

import stripe
from pydantic import ValidationError

from courseshop.core.config import settings
from courseshop.core.errors import DataIntegrityError, ProviderError, SignatureError
from courseshop.schemas.billing import CheckoutSessionPayload, SubscriptionPayload, SubscriptionSnapshot

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_EVENT_TYPES = {SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED}


@dataclass(frozen=True)
class CheckoutCompletedEvent:
    event_id: str
    type: str
    session: CheckoutSessionPayload


@dataclass(frozen=True)
class SubscriptionChangedEvent:
    event_id: str
    type: str
    subscription: SubscriptionPayload


@dataclass(frozen=True)
class UnhandledEvent:
    event_id: str
    type: str


InboundEvent = Union[CheckoutCompletedEvent, SubscriptionChangedEvent, UnhandledEvent]


@dataclass(frozen=True)
class CheckoutSessionRequest:
    customer_id: str
    course_id: str
    user_id: str
    title: str
    amount: int
    currency: str
    success_url: str
    cancel_url: str


@dataclass(frozen=True)
class CheckoutSessionResponse:
    provider_checkout_id: str
    checkout_url: str


class SubscriptionSource(Protocol):
    def retrieve_subscription(self, subscription_id: str, *, expand: list[str]) -> SubscriptionSnapshot:
        ...


class BillingProviderAdapter(SubscriptionSource, Protocol):
    def create_customer(self, *, email: str, name: str | None, user_id: str) -> str:
        ...

    def create_checkout_session(self, request: CheckoutSessionRequest) -> CheckoutSessionResponse:
        ...


class StripeBillingProvider:
    def __init__(self, api_key: str):
        self._api_key = api_key

    def retrieve_subscription(self, subscription_id: str, *, expand: list[str]) -> SubscriptionSnapshot:
        try:
            sub = stripe.Subscription.retrieve(subscription_id, expand=expand, api_key=self._api_key)
        except stripe.StripeError as exc:
            raise ProviderError(
                f"Could not retrieve subscription {subscription_id}",
                subscription_id=subscription_id,
                provider_error=str(exc),
            ) from exc
        snapshot = SubscriptionSnapshot.model_validate(sub.to_dict())
        logger.info("Fetched subscription %s from provider, period=%s", subscription_id, snapshot.period())
        return snapshot

    def create_customer(self, *, email: str, name: str | None, user_id: str) -> str:
        try:
            customer = stripe.Customer.create(
                email=email,
                name=name,
                metadata={"userId": user_id},
                api_key=self._api_key,
            )
        except stripe.StripeError as exc:
            raise ProviderError("Could not create customer", user_id=user_id, provider_error=str(exc)) from exc
        return customer.id

    def create_checkout_session(self, request: CheckoutSessionRequest) -> CheckoutSessionResponse:
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                customer=request.customer_id,
                line_items=[
                    {
                        "price_data": {
                            "currency": request.currency,
                            "unit_amount": request.amount,
                            "product_data": {"name": request.title},
                        },
                        "quantity": 1,
                    }
                ],
                success_url=request.success_url,
                cancel_url=request.cancel_url,
                metadata={"courseId": request.course_id, "userId": request.user_id},
                api_key=self._api_key,
            )
        except stripe.StripeError as exc:
            raise ProviderError(
                "Could not create checkout session",
                course_id=request.course_id,
                user_id=request.user_id,
                provider_error=str(exc),
            ) from exc
        return CheckoutSessionResponse(provider_checkout_id=session.id, checkout_url=session.url)


class NoopBillingProvider:
    def retrieve_subscription(self, subscription_id: str, *, expand: list[str]) -> SubscriptionSnapshot:
        raise NotImplementedError("Billing provider is not configured (STRIPE_SECRET_KEY)")

    def create_customer(self, *, email: str, name: str | None, user_id: str) -> str:
        raise NotImplementedError("Billing provider is not configured (STRIPE_SECRET_KEY)")

    def create_checkout_session(self, request: CheckoutSessionRequest) -> CheckoutSessionResponse:
        raise NotImplementedError("Billing provider is not configured (STRIPE_SECRET_KEY)")


def get_provider_adapter() -> BillingProviderAdapter:
    if settings.STRIPE_SECRET_KEY:
        return StripeBillingProvider(settings.STRIPE_SECRET_KEY)
    return NoopBillingProvider()


def subscription_expand_fields() -> list[str]:
    return [f.strip() for f in settings.STRIPE_SUBSCRIPTION_EXPAND.split(",") if f.strip()]


def verify_signature(
    raw_body: bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    tolerance_seconds: int,
) -> None:
    """Check a ``Stripe-Signature`` header against the raw request body.

    The header is checked by ``stripe.WebhookSignature``: every ``v1`` value is
    compared in constant time against the HMAC-SHA256 of ``"{t}." + body``, and
    a timestamp older than the tolerance fails. Any failure, a missing secret
    included, raises ``SignatureError``.
    """
    if not secret:
        raise SignatureError("Webhook secret is not configured")
    if not signature_header:
        raise SignatureError("Missing signature header")
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise SignatureError("Payload is not UTF-8") from exc
    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance_seconds)
    except stripe.SignatureVerificationError as exc:
        raise SignatureError(str(exc)) from exc


def construct_event(
    raw_body: bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    tolerance_seconds: int | None = None,
) -> dict:
    """Verify the raw body, then parse it. The body is never parsed before verification."""
    verify_signature(
        raw_body,
        signature_header,
        secret,
        tolerance_seconds=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS if tolerance_seconds is None else tolerance_seconds,
    )
    try:
        payload = json.loads(raw_body)
    except ValueError as exc:
        raise SignatureError("Signed payload is not valid JSON") from exc
    if not isinstance(payload, dict) or not payload.get("type"):
        raise SignatureError("Signed payload is not an event envelope")
    return payload


def decode_event(payload: dict) -> InboundEvent:
    event_id = str(payload.get("id") or "")
    event_type = str(payload["type"])
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    obj = data.get("object")

    try:
        if event_type == CHECKOUT_COMPLETED:
            return CheckoutCompletedEvent(event_id, event_type, CheckoutSessionPayload.model_validate(obj))
        if event_type in SUBSCRIPTION_EVENT_TYPES:
            return SubscriptionChangedEvent(event_id, event_type, SubscriptionPayload.model_validate(obj))
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        raise DataIntegrityError(
            f"Malformed {event_type} payload",
            event_id=event_id,
            event_type=event_type,
            fields=fields,
        ) from exc
    return UnhandledEvent(event_id, event_type)
