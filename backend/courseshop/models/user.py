import uuid

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from courseshop.db.base import Base

class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(sa.Text, unique=True, nullable=True)
    created_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())
