from typing import Literal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


PlanType = Literal["month", "year"]


def _object_id(value):
    # Stripe expands references into full objects when asked to; keep the id only.
    if isinstance(value, dict):
        return value.get("id")
    return value


class _ProviderObject(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


class Recurring(_ProviderObject):
    interval: str | None = None


class Price(_ProviderObject):
    id: str | None = None
    recurring: Recurring | None = None


class SubscriptionItem(_ProviderObject):
    id: str | None = None
    price: Price | None = None
    current_period_start: int | None = None
    current_period_end: int | None = None

    @property
    def interval(self) -> str | None:
        if self.price is None or self.price.recurring is None:
            return None
        return self.price.recurring.interval


def _unwrap_list(value):
    if value is None:
        return []
    if isinstance(value, dict):
        return value.get("data") or []
    return value


class CheckoutSessionPayload(_ProviderObject):
    id: str
    mode: str | None = None
    customer_external_id: str | None = Field(default=None, validation_alias=AliasChoices("customer", "customer_external_id"))
    amount_total: int | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("customer_external_id", mode="before")
    @classmethod
    def customer_ref(cls, value):
        return _object_id(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def metadata_strings(cls, value):
        if not value:
            return {}
        return {str(k): str(v) for k, v in value.items() if v is not None}


class SubscriptionPayload(_ProviderObject):
    id: str
    status: str
    customer_external_id: str | None = Field(default=None, validation_alias=AliasChoices("customer", "customer_external_id"))
    items: list[SubscriptionItem] = Field(default_factory=list)
    current_period_start: int | None = None
    current_period_end: int | None = None
    cancel_at_period_end: bool = False
    latest_invoice_ref: str | None = Field(default=None, validation_alias=AliasChoices("latest_invoice", "latest_invoice_ref"))

    @field_validator("customer_external_id", "latest_invoice_ref", mode="before")
    @classmethod
    def object_refs(cls, value):
        return _object_id(value)

    @field_validator("items", mode="before")
    @classmethod
    def item_list(cls, value):
        return _unwrap_list(value)

    @field_validator("cancel_at_period_end", mode="before")
    @classmethod
    def cancel_flag(cls, value):
        return bool(value)


class SubscriptionSnapshot(_ProviderObject):
    """Subscription as returned by a fresh provider read.

    Every field is optional: depending on the API version the billing period is
    carried on the subscription itself or only on its items.
    """

    id: str | None = None
    status: str | None = None
    items: list[SubscriptionItem] = Field(default_factory=list)
    current_period_start: int | None = None
    current_period_end: int | None = None

    @field_validator("items", mode="before")
    @classmethod
    def item_list(cls, value):
        return _unwrap_list(value)

    def period(self) -> tuple[int | None, int | None]:
        start, end = self.current_period_start, self.current_period_end
        if (not start or not end) and self.items:
            first = self.items[0]
            start = start or first.current_period_start
            end = end or first.current_period_end
        return (start, end)


class CheckoutCreateIn(BaseModel):
    user_id: UUID
    course_id: UUID


class CheckoutCreateOut(BaseModel):
    session_id: str
    checkout_url: str


class CourseAccessOut(BaseModel):
    course_id: UUID
    user_id: UUID
    has_access: bool
