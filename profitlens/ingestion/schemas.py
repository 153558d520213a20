"""
Source Record Schemas

Pydantic models for the records streamed out of the transactional store.
Numeric fields are coerced through ``safe_number`` exactly once, here, so
downstream formulas never see None, NaN or strings.
"""

import math
from typing import Annotated, Any, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    model_validator,
)
from pydantic.alias_generators import to_camel

from profitlens.utils.money import safe_int, safe_number

CANCELLED_STATUS_MARKERS = ("cancel", "void", "decline")

COST_TYPES = frozenset({
    "product", "shipping", "handling", "payment", "marketing", "operational", "tax",
})
CALCULATIONS = frozenset({"percentage", "fixed", "per_unit"})
PER_ORDER_FREQUENCIES = frozenset({"per_order", "per_item", "per_unit"})
CALENDAR_FREQUENCIES = frozenset({
    "daily", "weekly", "monthly", "quarterly", "yearly", "one_time",
})
FREQUENCIES = PER_ORDER_FREQUENCIES | CALENDAR_FREQUENCIES


def _coerce_id(value: Any) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError("record id is required")
    return str(value)


def _optional_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _optional_timestamp(value: Any) -> Optional[float]:
    """None stays open-ended; anything unparsable becomes NaN (never active)"""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return math.nan
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else math.nan
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return math.nan
        return parsed if math.isfinite(parsed) else math.nan
    return math.nan


def _lower(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip().lower()


RecordId = Annotated[str, BeforeValidator(_coerce_id)]
OptionalId = Annotated[Optional[str], BeforeValidator(_optional_id)]
Money = Annotated[float, BeforeValidator(safe_number)]
Count = Annotated[int, BeforeValidator(safe_int)]
Timestamp = Annotated[float, BeforeValidator(safe_number)]
OptionalTimestamp = Annotated[Optional[float], BeforeValidator(_optional_timestamp)]
Label = Annotated[Optional[str], BeforeValidator(_lower)]


class SourceRecord(BaseModel):
    """Base for store records; accepts camelCase or snake_case keys and ``_id``"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    id: RecordId

    @model_validator(mode="before")
    @classmethod
    def _map_store_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and "id" not in data and "_id" in data:
            data = {**data, "id": data["_id"]}
        return data


# =============================================================================
# ORDER TRACK
# =============================================================================

class Order(SourceRecord):
    organization_id: OptionalId = None
    store_id: OptionalId = None
    created_at: Timestamp = Field(
        default=0,
        validation_alias=AliasChoices("createdAt", "shopifyCreatedAt", "created_at"),
    )
    total_price: Money = 0
    subtotal_price: Money = 0
    total_discounts: Money = 0
    total_shipping_price: Money = 0
    total_tax: Money = 0
    total_quantity: Count = 0
    customer_id: OptionalId = None
    financial_status: Label = None
    fulfillment_status: Label = None
    cancelled_at: OptionalTimestamp = None

    @property
    def is_cancelled(self) -> bool:
        if self.cancelled_at is not None and not math.isnan(self.cancelled_at):
            return True
        for status in (self.financial_status, self.fulfillment_status):
            if status and any(marker in status for marker in CANCELLED_STATUS_MARKERS):
                return True
        return False

    @property
    def gross_sales(self) -> float:
        """Merchandise value before discounts"""
        return self.subtotal_price + self.total_discounts


class OrderLineItem(SourceRecord):
    order_id: RecordId
    variant_id: OptionalId = None
    product_id: OptionalId = None
    quantity: Count = 0
    unit_price: Money = Field(
        default=0,
        validation_alias=AliasChoices("unitPrice", "price", "unit_price"),
    )
    line_discount: Money = Field(
        default=0,
        validation_alias=AliasChoices("lineDiscount", "totalDiscount", "line_discount"),
    )

    @property
    def revenue(self) -> float:
        """Net line revenue, floored at 0"""
        return max(0.0, self.unit_price * self.quantity - self.line_discount)


class Transaction(SourceRecord):
    order_id: RecordId
    amount: Money = 0
    fee: Money = 0
    gateway: Label = None
    kind: Label = None
    status: Label = None
    processed_at: OptionalTimestamp = None


class Refund(SourceRecord):
    order_id: RecordId
    amount: Money = Field(
        default=0,
        validation_alias=AliasChoices("amount", "totalRefunded", "total_refunded"),
    )
    processed_at: OptionalTimestamp = None


class Customer(SourceRecord):
    orders_count: Count = 0
    first_order_at: OptionalTimestamp = None


# =============================================================================
# COST CONFIGURATION
# =============================================================================

class VariantCostComponent(SourceRecord):
    variant_id: RecordId
    cogs_per_unit: Money = 0
    shipping_per_unit: Money = 0
    handling_per_unit: Money = 0
    payment_fee_percent: Money = 0
    payment_fixed_per_item: Money = 0
    effective_from: OptionalTimestamp = None
    effective_to: OptionalTimestamp = None
    is_active: bool = True


class CostRuleConfig(BaseModel):
    """Rule configuration with no variant-specific options"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class PaymentFeeConfig(CostRuleConfig):
    """payment/percentage rules may add a fixed fee once per order"""

    fixed_fee: Optional[Money] = None


class CostRule(SourceRecord):
    name: Optional[str] = None
    type: Label = None
    calculation: Label = "fixed"
    frequency: Label = None
    value: Money = Field(
        default=0,
        validation_alias=AliasChoices("value", "amount"),
    )
    effective_from: OptionalTimestamp = None
    effective_to: OptionalTimestamp = None
    created_at: OptionalTimestamp = Field(
        default=None,
        validation_alias=AliasChoices("createdAt", "_creationTime", "created_at"),
    )
    is_active: bool = True
    config: Union[PaymentFeeConfig, CostRuleConfig] = Field(default_factory=CostRuleConfig)

    @model_validator(mode="before")
    @classmethod
    def _select_config(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        raw_config = data.get("config") or {}
        if not isinstance(raw_config, dict):
            raw_config = {}
        rule_type = _lower(data.get("type"))
        calculation = _lower(data.get("calculation")) or "fixed"
        if (rule_type, calculation) == ("payment", "percentage"):
            fixed_fee = raw_config.get("fixedFee", raw_config.get("fixed_fee"))
            if fixed_fee is None:
                fixed_fee = data.get("fixedFee", data.get("fixed_fee"))
            config: CostRuleConfig = PaymentFeeConfig(fixed_fee=fixed_fee)
        else:
            config = CostRuleConfig.model_validate(raw_config)
        return {**data, "config": config}

    @property
    def fixed_fee(self) -> float:
        if isinstance(self.config, PaymentFeeConfig) and self.config.fixed_fee:
            return self.config.fixed_fee
        return 0.0


# =============================================================================
# SUPPLEMENTAL DATASETS
# =============================================================================

class AdInsight(SourceRecord):
    date: str
    platform: Label = "meta"
    entity_type: Label = None
    spend: Money = 0
    impressions: Count = 0
    clicks: Count = 0
    conversions: Count = 0
    conversion_value: Money = Field(
        default=0,
        validation_alias=AliasChoices("conversionValue", "purchaseValue", "conversion_value"),
    )
    reach: Count = 0
    video_views: Count = 0
    video_3s_views: Count = Field(
        default=0,
        validation_alias=AliasChoices("video3SecViews", "video3sViews", "video_3s_views"),
    )


class SessionRecord(SourceRecord):
    start_time: OptionalTimestamp = Field(
        default=None,
        validation_alias=AliasChoices("startTime", "start_time"),
    )


class ShopAnalyticsRecord(SourceRecord):
    date: str
    sessions: Count = 0
    visitors: Count = Field(
        default=0,
        validation_alias=AliasChoices("visitors", "uniqueVisitors", "visitors_count"),
    )
