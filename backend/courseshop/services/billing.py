"""Stripe webhook reconciliation.

``process_webhook`` is the dispatcher: it authenticates the raw request,
decodes the event into one of the tagged variants and hands it to the purchase
recorder or the subscription upserter. It returns the HTTP status the provider
should see; 500 asks the provider to redeliver later.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

from courseshop.core.errors import BillingError, DataIntegrityError, ReferentialError, SignatureError
from courseshop.schemas.billing import CheckoutSessionPayload, SubscriptionPayload
from courseshop.services.billing_provider import (
    CheckoutCompletedEvent,
    InboundEvent,
    SubscriptionChangedEvent,
    SubscriptionSource,
    construct_event,
    decode_event,
    subscription_expand_fields,
)
from courseshop.services.billing_store import (
    BillingStore,
    PurchaseRecordIn,
    RecordResult,
    SubscriptionRecordIn,
)

logger = logging.getLogger(__name__)

VALID_PLAN_TYPES = {"month", "year"}


@dataclass(frozen=True)
class WebhookResult:
    status_code: int
    outcome: str
    event_id: str | None = None
    event_type: str | None = None
    detail: str | None = None


def _resolve_user_id(store: BillingStore, customer_id: str | None, **context) -> UUID:
    if not customer_id:
        raise ReferentialError("Missing customer id", field="customer", **context)
    user = store.find_user_by_external_customer_id(customer_id)
    if user is None:
        raise ReferentialError(f"User not found for customer id {customer_id}", customer_id=customer_id, **context)
    return user.id


def record_checkout_purchase(session: CheckoutSessionPayload, *, store: BillingStore) -> RecordResult | None:
    if session.mode == "subscription":
        # subscriptions are reconciled from customer.subscription.* events only
        logger.info("Skipping subscription checkout %s", session.id)
        return None

    course_ref = session.metadata.get("courseId")
    if not course_ref:
        logger.info("No courseId in metadata of checkout %s, not a course purchase", session.id)
        return None

    try:
        course_id = UUID(course_ref)
    except ValueError as exc:
        raise DataIntegrityError(
            f"Invalid courseId in checkout {session.id}",
            checkout_id=session.id,
            field="metadata.courseId",
            value=course_ref,
        ) from exc

    user_id = _resolve_user_id(store, session.customer_external_id, checkout_id=session.id)
    if not store.course_exists(course_id):
        raise ReferentialError(
            f"Course {course_id} not found for checkout {session.id}",
            checkout_id=session.id,
            field="metadata.courseId",
            course_id=str(course_id),
        )
    result = store.record_purchase(
        PurchaseRecordIn(
            user_id=user_id,
            course_id=course_id,
            amount=session.amount_total or 0,
            provider_purchase_id=session.id,
        )
    )
    if result.written:
        logger.info("Recorded purchase %s for user %s course %s", session.id, user_id, course_id)
    else:
        logger.info("Purchase %s already recorded", session.id)
    return result


def upsert_subscription_from_event(
    subscription: SubscriptionPayload,
    *,
    store: BillingStore,
    provider: SubscriptionSource,
) -> RecordResult | None:
    if subscription.status != "active" or not subscription.latest_invoice_ref:
        logger.info(
            "Skipping subscription %s (status=%s, has_invoice=%s)",
            subscription.id,
            subscription.status,
            bool(subscription.latest_invoice_ref),
        )
        return None

    user_id = _resolve_user_id(store, subscription.customer_external_id, subscription_id=subscription.id)

    start, end = subscription.current_period_start, subscription.current_period_end
    # 0 is as unusable as an absent bound
    if not start or not end:
        logger.info("Period missing on subscription %s payload, fetching from provider", subscription.id)
        snapshot = provider.retrieve_subscription(subscription.id, expand=subscription_expand_fields())
        start, end = snapshot.period()
        if not start or not end:
            raise DataIntegrityError(
                f"Missing period dates in subscription {subscription.id}",
                subscription_id=subscription.id,
                field="current_period_start" if not start else "current_period_end",
                current_period_start=start,
                current_period_end=end,
            )

    plan_type = subscription.items[0].interval if subscription.items else None
    if plan_type not in VALID_PLAN_TYPES:
        raise DataIntegrityError(
            f"Invalid or missing plan type in subscription {subscription.id}",
            subscription_id=subscription.id,
            field="items[0].price.recurring.interval",
            value=plan_type,
        )

    record = SubscriptionRecordIn(
        user_id=user_id,
        provider_subscription_id=subscription.id,
        status=subscription.status,
        plan_type=plan_type,
        current_period_start=start * 1000,
        current_period_end=end * 1000,
        cancel_at_period_end=subscription.cancel_at_period_end,
    )
    result = store.upsert_subscription(record)
    logger.info(
        "Upserted subscription %s for user %s (%s, %s-%s)",
        subscription.id,
        user_id,
        plan_type,
        record.current_period_start,
        record.current_period_end,
    )
    return result


def handle_event(event: InboundEvent, *, store: BillingStore, provider: SubscriptionSource) -> str:
    if isinstance(event, CheckoutCompletedEvent):
        result = record_checkout_purchase(event.session, store=store)
    elif isinstance(event, SubscriptionChangedEvent):
        result = upsert_subscription_from_event(event.subscription, store=store, provider=provider)
    else:
        logger.info("Unhandled event type %s", event.type)
        return "ignored"
    return "processed" if result is not None else "ignored"


def process_webhook(
    raw_body: bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    store: BillingStore,
    provider: SubscriptionSource,
) -> WebhookResult:
    try:
        payload = construct_event(raw_body, signature_header, secret)
    except SignatureError as exc:
        logger.warning("Webhook signature verification failed: %s", exc, extra=exc.context)
        return WebhookResult(400, "rejected", detail="Webhook signature verification failed.")

    event_id = str(payload.get("id") or "")
    event_type = str(payload["type"])
    try:
        event = decode_event(payload)
        outcome = handle_event(event, store=store, provider=provider)
    except BillingError as exc:
        logger.error(
            "Error processing webhook %s (%s): %s",
            event_id,
            event_type,
            exc,
            extra={"event_id": event_id, "event_type": event_type, "error": type(exc).__name__, **exc.context},
        )
        return WebhookResult(500, "error", event_id, event_type, detail="Error processing webhook")
    except Exception:
        logger.exception(
            "Unexpected error processing webhook %s (%s)",
            event_id,
            event_type,
            extra={"event_id": event_id, "event_type": event_type},
        )
        return WebhookResult(500, "error", event_id, event_type, detail="Error processing webhook")

    return WebhookResult(200, outcome, event_id, event_type)
