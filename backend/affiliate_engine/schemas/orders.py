from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

from pydantic import BaseModel, validator

from affiliate_engine.core.time import normalize_utc


# ref values that mark merchant or direct traffic, never affiliate traffic.
INTERNAL_REFS = frozenset({"internal", "direct"})
CLICK_ID_ATTRIBUTE = "affiliate_click_id"


def _to_decimal(value) -> Optional[Decimal]:
    """Blank means absent; anything else must be a finite number."""
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"not a money amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"not a money amount: {value!r}")
    return amount


class NameValue(BaseModel):
    # Shopify uses "name" for note attributes and line-item properties; some
    # apps write "key" for cart attributes.
    name: Optional[str] = None
    key: Optional[str] = None
    value: Any = None

    class Config:
        extra = "allow"

    @property
    def label(self) -> Optional[str]:
        return self.name or self.key


class Metafield(BaseModel):
    namespace: Optional[str] = None
    key: Optional[str] = None
    value: Any = None

    class Config:
        extra = "allow"


class DiscountCode(BaseModel):
    code: Optional[str] = None
    amount: Optional[str] = None
    type: Optional[str] = None

    class Config:
        extra = "allow"


class LineItem(BaseModel):
    id: Optional[Union[int, str]] = None
    title: Optional[str] = None
    price: Optional[str] = None
    quantity: Optional[int] = None
    properties: list[NameValue] = []
    tags: list[str] = []
    selling_plan_allocation: Optional[dict[str, Any]] = None

    class Config:
        extra = "allow"

    @validator("properties", pre=True)
    def normalize_properties(cls, value):
        if value is None:
            return []
        if isinstance(value, dict):
            return [{"name": k, "value": v} for k, v in value.items()]
        return value

    @validator("tags", pre=True)
    def normalize_tags(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    def property_value(self, *names: str) -> Optional[str]:
        for prop in self.properties:
            if prop.label in names and prop.value not in (None, ""):
                return str(prop.value)
        return None

    @property
    def billing_interval(self) -> Optional[str]:
        allocation = self.selling_plan_allocation or {}
        plan = allocation.get("selling_plan") or {}
        policy = plan.get("billing_policy") or {}
        interval = policy.get("interval")
        return str(interval) if interval else None


class Customer(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None

    class Config:
        extra = "allow"


class Address(BaseModel):
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    class Config:
        extra = "allow"


class ClientDetails(BaseModel):
    browser_ip: Optional[str] = None
    user_agent: Optional[str] = None
    landing_site: Optional[str] = None

    class Config:
        extra = "allow"


class OrderEvent(BaseModel):
    """Validated view of a Shopify order webhook body."""

    id: Optional[Union[int, str]] = None
    order_number: Optional[Union[int, str]] = None
    email: Optional[str] = None
    financial_status: Optional[str] = None
    total_price: Optional[Decimal] = None
    subtotal_price: Optional[Decimal] = None
    currency: Optional[str] = None
    created_at: Optional[datetime] = None
    test: bool = False
    line_items: list[LineItem] = []
    discount_codes: list[DiscountCode] = []
    customer: Optional[Customer] = None
    billing_address: Optional[Address] = None
    referring_site: Optional[str] = None
    landing_site: Optional[str] = None
    client_details: Optional[ClientDetails] = None
    attributes: list[NameValue] = []
    note_attributes: list[NameValue] = []
    metafields: list[Metafield] = []
    tags: Optional[str] = None

    class Config:
        extra = "allow"

    @validator("total_price", "subtotal_price", pre=True)
    def parse_money(cls, value):
        return _to_decimal(value)

    @validator("test", pre=True)
    def parse_test_flag(cls, value):
        return value is True or str(value).lower() == "true"

    @validator("line_items", "discount_codes", "metafields", pre=True)
    def none_to_empty(cls, value):
        return [] if value is None else value

    @validator("attributes", "note_attributes", pre=True)
    def attributes_to_list(cls, value):
        if value is None:
            return []
        if isinstance(value, dict):
            return [{"name": k, "value": v} for k, v in value.items()]
        return value

    @validator("created_at")
    def created_at_to_utc(cls, value):
        return normalize_utc(value)

    @property
    def order_id(self) -> Optional[str]:
        return str(self.id) if self.id not in (None, "") else None

    @property
    def order_number_str(self) -> Optional[str]:
        return str(self.order_number) if self.order_number not in (None, "") else None

    @property
    def total_amount(self) -> Decimal:
        return self.total_price if self.total_price is not None else Decimal("0")

    @property
    def subtotal_amount(self) -> Decimal:
        return self.subtotal_price if self.subtotal_price is not None else Decimal("0")

    @property
    def coupon_code(self) -> Optional[str]:
        if not self.discount_codes:
            return None
        code = self.discount_codes[0].code
        return code.strip() if code and code.strip() else None

    @property
    def carried_click_id(self) -> Optional[str]:
        for attr in self.attributes:
            if attr.label == CLICK_ID_ATTRIBUTE and attr.value:
                return str(attr.value)
        for attr in self.note_attributes:
            if attr.label == CLICK_ID_ATTRIBUTE and attr.value:
                return str(attr.value)
        for field in self.metafields:
            if field.namespace == "affiliate" and field.key == "click_id" and field.value:
                return str(field.value)
        return None

    @property
    def has_internal_marker(self) -> bool:
        for attr in list(self.attributes) + list(self.note_attributes):
            if attr.label == "ref" and str(attr.value or "").lower() in INTERNAL_REFS:
                return True
        return False

    @property
    def customer_name(self) -> Optional[str]:
        if self.customer:
            parts = [p for p in (self.customer.first_name, self.customer.last_name) if p]
            if parts:
                return " ".join(parts).strip()
        if self.billing_address and self.billing_address.name:
            return self.billing_address.name
        return None

    @property
    def customer_email(self) -> Optional[str]:
        if self.email:
            return self.email
        if self.customer and self.customer.email:
            return self.customer.email
        return None

    @property
    def browser_ip(self) -> Optional[str]:
        return self.client_details.browser_ip if self.client_details else None

    @property
    def browser_user_agent(self) -> Optional[str]:
        return self.client_details.user_agent if self.client_details else None

    @property
    def referrer_url(self) -> Optional[str]:
        if self.referring_site:
            return self.referring_site
        if self.client_details and self.client_details.landing_site:
            return self.client_details.landing_site
        return self.landing_site

    def metafield_value(self, namespaces: tuple[str, ...], keys: tuple[str, ...]) -> Optional[str]:
        for field in self.metafields:
            if field.namespace in namespaces and field.key in keys and field.value not in (None, ""):
                return str(field.value)
        return None


class RefundEvent(BaseModel):
    id: Optional[Union[int, str]] = None
    order_id: Optional[Union[int, str]] = None

    class Config:
        extra = "allow"


class WebhookAck(BaseModel):
    received: bool = True
    outcome: Optional[str] = None
    test: Optional[bool] = None
