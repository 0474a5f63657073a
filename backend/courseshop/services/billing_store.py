"""Persistence collaborator used by the webhook reconciler.

``BillingStore`` is the contract the reconciliation code depends on; the SQL
implementation relies on the unique keys of ``purchases`` and ``subscriptions``
for idempotency instead of checking for duplicates first. It never commits:
the caller owns the transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from courseshop.core.errors import PersistenceError
from courseshop.models.billing import Purchase, Subscription
from courseshop.models.course import Course
from courseshop.models.user import User


@dataclass(frozen=True)
class UserRef:
    id: UUID
    email: str


@dataclass(frozen=True)
class CourseAccess:
    has_access: bool


@dataclass(frozen=True)
class PurchaseRecordIn:
    user_id: UUID
    course_id: UUID
    amount: int
    provider_purchase_id: str


@dataclass(frozen=True)
class SubscriptionRecordIn:
    user_id: UUID
    provider_subscription_id: str
    status: str
    plan_type: str
    current_period_start: int
    current_period_end: int
    cancel_at_period_end: bool


@dataclass(frozen=True)
class RecordResult:
    key: str
    written: bool


class BillingStore(Protocol):
    def find_user_by_external_customer_id(self, customer_id: str) -> UserRef | None:
        ...

    def course_exists(self, course_id: UUID) -> bool:
        ...

    def find_user_access(self, user_id: UUID, course_id: UUID) -> CourseAccess:
        ...

    def record_purchase(self, record: PurchaseRecordIn) -> RecordResult:
        ...

    def upsert_subscription(self, record: SubscriptionRecordIn) -> RecordResult:
        ...


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


_INSERT_PURCHASE = sa.text(
    """
    INSERT INTO purchases (id, user_id, course_id, amount, provider_purchase_id)
    VALUES (:id, :u, :course, :amount, :purchase_id)
    ON CONFLICT (provider_purchase_id) DO NOTHING
    RETURNING id
    """
).bindparams(
    sa.bindparam("id", type_=sa.Uuid),
    sa.bindparam("u", type_=sa.Uuid),
    sa.bindparam("course", type_=sa.Uuid),
)

_UPSERT_SUBSCRIPTION = sa.text(
    """
    INSERT INTO subscriptions (
        id,
        user_id,
        provider_subscription_id,
        status,
        plan_type,
        current_period_start,
        current_period_end,
        cancel_at_period_end
    )
    VALUES (
        :id,
        :u,
        :sub_id,
        :status,
        :plan_type,
        :period_start,
        :period_end,
        :cancel_at_period_end
    )
    ON CONFLICT (provider_subscription_id) DO UPDATE
    SET user_id=excluded.user_id,
        status=excluded.status,
        plan_type=excluded.plan_type,
        current_period_start=excluded.current_period_start,
        current_period_end=excluded.current_period_end,
        cancel_at_period_end=excluded.cancel_at_period_end,
        updated_at=CURRENT_TIMESTAMP
    """
).bindparams(
    sa.bindparam("id", type_=sa.Uuid),
    sa.bindparam("u", type_=sa.Uuid),
)


class SqlBillingStore:
    def __init__(self, db: Session):
        self.db = db

    def find_user_by_external_customer_id(self, customer_id: str) -> UserRef | None:
        try:
            row = self.db.execute(
                sa.select(User.id, User.email).where(User.stripe_customer_id == customer_id)
            ).first()
        except SQLAlchemyError as exc:
            raise PersistenceError("User lookup failed", customer_id=customer_id) from exc
        if row is None:
            return None
        return UserRef(id=row.id, email=row.email)

    def course_exists(self, course_id: UUID) -> bool:
        try:
            row = self.db.execute(sa.select(Course.id).where(Course.id == course_id)).first()
        except SQLAlchemyError as exc:
            raise PersistenceError("Course lookup failed", course_id=str(course_id)) from exc
        return row is not None

    def find_user_access(self, user_id: UUID, course_id: UUID) -> CourseAccess:
        try:
            purchased = self.db.execute(
                sa.select(Purchase.id).where(Purchase.user_id == user_id, Purchase.course_id == course_id).limit(1)
            ).first()
            if purchased is not None:
                return CourseAccess(has_access=True)
            subscribed = self.db.execute(
                sa.select(Subscription.id)
                .where(
                    Subscription.user_id == user_id,
                    Subscription.status == "active",
                    Subscription.current_period_end > now_ms(),
                )
                .limit(1)
            ).first()
        except SQLAlchemyError as exc:
            raise PersistenceError("Access lookup failed", user_id=str(user_id), course_id=str(course_id)) from exc
        return CourseAccess(has_access=subscribed is not None)

    def record_purchase(self, record: PurchaseRecordIn) -> RecordResult:
        try:
            inserted = self.db.execute(
                _INSERT_PURCHASE,
                {
                    "id": uuid4(),
                    "u": record.user_id,
                    "course": record.course_id,
                    "amount": record.amount,
                    "purchase_id": record.provider_purchase_id,
                },
            ).first()
        except SQLAlchemyError as exc:
            raise PersistenceError(
                "Could not record purchase",
                provider_purchase_id=record.provider_purchase_id,
                user_id=str(record.user_id),
                course_id=str(record.course_id),
            ) from exc
        return RecordResult(key=record.provider_purchase_id, written=inserted is not None)

    def upsert_subscription(self, record: SubscriptionRecordIn) -> RecordResult:
        try:
            self.db.execute(
                _UPSERT_SUBSCRIPTION,
                {
                    "id": uuid4(),
                    "u": record.user_id,
                    "sub_id": record.provider_subscription_id,
                    "status": record.status,
                    "plan_type": record.plan_type,
                    "period_start": record.current_period_start,
                    "period_end": record.current_period_end,
                    "cancel_at_period_end": record.cancel_at_period_end,
                },
            )
        except SQLAlchemyError as exc:
            raise PersistenceError(
                "Could not upsert subscription",
                provider_subscription_id=record.provider_subscription_id,
                user_id=str(record.user_id),
            ) from exc
        return RecordResult(key=record.provider_subscription_id, written=True)

    def get_user(self, user_id: UUID) -> User | None:
        return self.db.get(User, user_id)

    def set_stripe_customer_id(self, user: User, customer_id: str) -> None:
        user.stripe_customer_id = customer_id
        self.db.flush()
