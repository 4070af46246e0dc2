"""
Gumroad payload handling.

Gumroad posts sale and refund pings as form-encoded bodies (JSON is accepted
too). This module turns a raw body into a GumroadSale and maps the sold
product onto a plan tier. It does no I/O.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl
import json

from legalinsight.core.errors import InvalidMappingError, ValidationError
from legalinsight.models.plan import PlanTier


# Product ids (full and short permalink forms) per plan
PRODUCT_PLAN_MAP = {
    "ptlsqlp": PlanTier.BASIC,
    "lcgkby": PlanTier.BASIC,
    "SovSpZUABprtMPU0KmUksA==": PlanTier.BASIC,
    "ZU_EYSqQjZGJ3x_8Hm102g==": PlanTier.BASIC,
    "omxfm": PlanTier.PREMIUM,
    "jqkug": PlanTier.PREMIUM,
    "lWL2oynuKtJTYjAEEhmTsg==": PlanTier.PREMIUM,
    "8Z5KbSnX9tZnx7buHJcbWQ==": PlanTier.PREMIUM,
}

# Inclusive price bands used when the product id is unknown
PRICE_BANDS = (
    (9.98, 10.01, PlanTier.BASIC),
    (29.98, 30.01, PlanTier.PREMIUM),
)

_TRUTHY = {"true", "1", "yes"}


@dataclass
class GumroadSale:
    """A sale or refund notification, normalized."""
    order_id: str
    product_id: str
    short_product_id: Optional[str]
    amount: float
    currency: str
    refunded: bool
    email: Optional[str]
    user_id: Optional[str]
    plan_id: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_type(self) -> str:
        return "refunded" if self.refunded else "completed"

    @property
    def event_key(self) -> str:
        return f"{self.order_id}:{self.event_type}"


def parse_body(body: bytes, content_type: Optional[str] = None) -> Dict[str, Any]:
    """Decode a webhook body into a flat dict."""
    try:
        text = body.decode("utf-8") if body else ""
    except UnicodeDecodeError:
        raise ValidationError("Malformed webhook payload")
    if not text.strip():
        raise ValidationError("Empty webhook payload")

    if content_type and "application/json" in content_type:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            raise ValidationError("Malformed JSON payload")
        if not isinstance(payload, dict):
            raise ValidationError("Webhook payload must be an object")
        return payload

    return dict(parse_qsl(text, keep_blank_values=True))


def is_ping(payload: Dict[str, Any]) -> bool:
    return str(payload.get("type") or payload.get("resource_name") or "").lower() == "ping"


def _first(payload: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return str(value).strip()
    return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUTHY


def _parse_amount(payload: Dict[str, Any]) -> float:
    raw = _first(payload, "price", "amount")
    if raw is None:
        return 0.0
    try:
        return float(raw)
    except ValueError:
        raise ValidationError(f"Invalid amount: {raw}")


def parse_sale(payload: Dict[str, Any]) -> GumroadSale:
    order_id = _first(payload, "sale_id", "order_id")
    if not order_id:
        raise ValidationError("Missing sale_id")
    product_id = _first(payload, "product_id", "product_permalink")
    if not product_id:
        raise ValidationError("Missing product_id")

    return GumroadSale(
        order_id=order_id,
        product_id=product_id,
        short_product_id=_first(payload, "short_product_id"),
        amount=_parse_amount(payload),
        currency=(_first(payload, "currency") or "USD").upper(),
        refunded=_as_bool(payload.get("refunded", False)),
        email=_first(payload, "email", "purchaser_email"),
        user_id=_first(payload, "user_id", "url_params[user_id]"),
        plan_id=_first(payload, "plan_id", "url_params[plan_id]"),
        raw=dict(payload),
    )


def map_product_to_plan(sale: GumroadSale) -> PlanTier:
    """
    Resolve the purchased tier.

    An explicit paid plan_id wins, then the product id, then the short
    product id, then the price band.
    """
    if sale.plan_id:
        try:
            explicit = PlanTier(sale.plan_id.lower())
        except ValueError:
            raise InvalidMappingError(f"Unknown plan: {sale.plan_id}", product_id=sale.product_id)
        if not explicit.is_paid:
            raise InvalidMappingError("Free plan cannot be purchased", product_id=sale.product_id)
        return explicit

    for candidate in (sale.product_id, sale.short_product_id):
        if candidate and candidate in PRODUCT_PLAN_MAP:
            return PRODUCT_PLAN_MAP[candidate]

    for low, high, tier in PRICE_BANDS:
        if low <= sale.amount <= high:
            return tier

    raise InvalidMappingError(
        f"Unable to map product {sale.product_id} to a plan",
        product_id=sale.product_id,
    )
