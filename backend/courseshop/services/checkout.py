from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from courseshop.core.config import settings
from courseshop.core.errors import ReferentialError
from courseshop.models.course import Course
from courseshop.services.billing_provider import BillingProviderAdapter, CheckoutSessionRequest
from courseshop.services.billing_store import SqlBillingStore

logger = logging.getLogger(__name__)


class AlreadyEnrolledError(Exception):
    pass


def create_course_checkout(
    db: Session,
    *,
    user_id: UUID,
    course_id: UUID,
    provider: BillingProviderAdapter,
) -> dict:
    store = SqlBillingStore(db)
    user = store.get_user(user_id)
    if user is None:
        raise ReferentialError("User not found", user_id=str(user_id))
    course = db.get(Course, course_id)
    if course is None or not course.is_published:
        raise ReferentialError("Course not found", course_id=str(course_id))

    if store.find_user_access(user.id, course.id).has_access:
        raise AlreadyEnrolledError(f"User {user.id} already has access to course {course.id}")

    customer_id = user.stripe_customer_id
    if not customer_id:
        customer_id = provider.create_customer(email=user.email, name=user.name, user_id=str(user.id))
        store.set_stripe_customer_id(user, customer_id)
        # the customer link outlives a failed session call
        db.commit()
        logger.info("Created provider customer %s for user %s", customer_id, user.id)

    response = provider.create_checkout_session(
        CheckoutSessionRequest(
            customer_id=customer_id,
            course_id=str(course.id),
            user_id=str(user.id),
            title=course.title,
            amount=course.price_amount,
            currency=course.currency or settings.CHECKOUT_CURRENCY,
            success_url=settings.CHECKOUT_SUCCESS_URL.replace("{course_id}", str(course.id)),
            cancel_url=settings.CHECKOUT_CANCEL_URL.replace("{course_id}", str(course.id)),
        )
    )
    logger.info("Created checkout %s for user %s course %s", response.provider_checkout_id, user.id, course.id)
    return {"session_id": response.provider_checkout_id, "checkout_url": response.checkout_url}
