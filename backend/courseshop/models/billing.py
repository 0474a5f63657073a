import uuid

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from courseshop.db.base import Base


class Purchase(Base):
    __tablename__ = "purchases"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    course_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, sa.ForeignKey("courses.id", ondelete="RESTRICT"), nullable=False)
    amount: Mapped[int] = mapped_column(sa.Integer, nullable=False, server_default="0")
    provider_purchase_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    created_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())

    __table_args__ = (
        sa.UniqueConstraint("provider_purchase_id", name="uq_purchases_provider_purchase_id"),
        sa.Index("ix_purchases_user_course", "user_id", "course_id"),
    )


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    provider_subscription_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    plan_type: Mapped[str] = mapped_column(sa.Text, nullable=False)
    # epoch milliseconds
    current_period_start: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    current_period_end: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    cancel_at_period_end: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, server_default=sa.false())
    created_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())
    updated_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())

    __table_args__ = (
        sa.CheckConstraint("plan_type IN ('month','year')", name="ck_subscriptions_plan_type"),
        sa.UniqueConstraint("provider_subscription_id", name="uq_subscriptions_provider_sub_id"),
        sa.Index("ix_subscriptions_user_status", "user_id", "status"),
    )
