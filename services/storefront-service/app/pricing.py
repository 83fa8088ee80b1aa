"""Catalog price lookup and cart/order line item normalization.

The backend is inconsistent about payload shapes: the catalog may be a bare
array or an array wrapped under ``items``/``data``/an entity key, and cart
rows either embed the priced part or carry only ``{sku, qty}``. Everything
here is total: malformed input degrades to empty results or zero prices,
never to an exception.
"""
import logging
import math
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Iterator, List, Mapping, Optional

from shared.security_config import clean_identifier

from app.models import LineItem, PriceEntry

logger = logging.getLogger("storefront-service.pricing")

WRAPPER_KEYS = ("items", "data")
EMBEDDED_PART_KEYS = ("partId", "part", "product")
OVERRIDE_KEYS = ("unitPriceOverride", "unit_price_override", "priceAtOrder")


def unwrap_collection(payload: Any, *entity_keys: str) -> list:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in WRAPPER_KEYS + entity_keys:
            value = payload.get(key)
            if isinstance(value, list):
                return value
    return []


def finite_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def coerce_price(value: Any) -> float:
    number = finite_number(value)
    return number if number is not None else 0.0


def optional_text(value: Any) -> Optional[str]:
    # populated sub-documents and other non-scalars read as absent
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def coerce_quantity(value: Any) -> Optional[int]:
    number = finite_number(value)
    if number is None or not number.is_integer():
        return None
    return int(number)


class PriceLookup(Mapping[str, PriceEntry]):
    """Read-only SKU -> PriceEntry snapshot of one catalog fetch.

    Never patched: a refetch builds a new table.
    """

    def __init__(self, entries: Optional[Mapping[str, PriceEntry]] = None):
        self._entries = MappingProxyType(dict(entries or {}))

    def __getitem__(self, sku: str) -> PriceEntry:
        return self._entries[sku]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def price_of(self, sku: str) -> Optional[float]:
        entry = self._entries.get(sku)
        return entry.unit_price if entry is not None else None

    @classmethod
    def build(cls, raw_catalog: Any) -> "PriceLookup":
        entries = {}
        for record in unwrap_collection(raw_catalog, "parts", "products"):
            if not isinstance(record, dict):
                continue
            sku = clean_identifier(record.get("sku"))
            if not sku:
                continue
            name = record.get("name")
            entries[sku] = PriceEntry(
                sku=sku,
                name=str(name) if name else sku,
                unit_price=coerce_price(record.get("price")),
            )
        return cls(entries)


def cart_items(payload: Any) -> list:
    """Raw rows from a cart response: ``{cart: {items}}``, ``{items}`` or a bare array."""
    if isinstance(payload, dict) and isinstance(payload.get("cart"), dict):
        payload = payload["cart"]
    return unwrap_collection(payload)


def _embedded_part(raw: dict) -> dict:
    for key in EMBEDDED_PART_KEYS:
        value = raw.get(key)
        if isinstance(value, dict):
            return value
    return {}


def _item_sku(raw: dict, part: dict) -> str:
    for candidate in (raw.get("sku"), part.get("sku"), part.get("_id"), raw.get("partId")):
        if isinstance(candidate, dict):
            continue
        sku = clean_identifier(candidate)
        if sku:
            return sku
    return ""


def _override_price(raw: dict) -> Optional[float]:
    for key in OVERRIDE_KEYS:
        number = finite_number(raw.get(key))
        if number is not None:
            return number
    return None


def normalize(raw_items: Any, price_lookup: PriceLookup) -> List[LineItem]:
    """Canonical line items with a resolved unit price.

    Price precedence: the item's own historical price, then the price of an
    embedded part record, then the catalog lookup, then zero. Items whose
    price cannot be resolved are kept at zero so they stay visible.
    """
    items = []
    for raw in unwrap_collection(raw_items):
        if not isinstance(raw, dict):
            continue
        part = _embedded_part(raw)
        sku = _item_sku(raw, part)
        if not sku:
            continue

        qty = raw.get("qty")
        if qty is None:
            qty = raw.get("quantity")
        quantity = coerce_quantity(qty)
        if quantity is None or quantity < 1:
            logger.debug("Dropping row with non-positive quantity", extra={"sku": sku, "quantity": quantity})
            continue

        override = _override_price(raw)
        embedded = finite_number(part.get("price"))
        if override is not None:
            unit_price = override
        elif embedded is not None:
            unit_price = embedded
        else:
            unit_price = coerce_price(price_lookup.price_of(sku))

        entry = price_lookup.get(sku)
        name = raw.get("name") or part.get("name") or (entry.name if entry else None)

        items.append(LineItem(
            sku=sku,
            quantity=quantity,
            unit_price=unit_price,
            unit_price_override=override,
            name=str(name) if name else None,
        ))
    return items
