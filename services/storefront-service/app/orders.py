import logging
from typing import Any, Iterable, List, Optional, Tuple, TypeVar
from urllib.parse import quote

from shared.backend_client import BackendClient
from shared.security_config import clean_identifier
from shared.utils import ClientValidationError, NotFoundException

from app.community import parse_time
from app.models import Order, Totals
from app.pricing import PriceLookup, normalize, optional_text, unwrap_collection
from app.totals import compute_totals, server_totals

logger = logging.getLogger("storefront-service.orders")

T = TypeVar("T")

# Admin UI vocabulary -> backend order states
STATUS_MAP = {
    "pending": "CREATED",
    "paid": "PAID",
    "fulfilled": "RESERVED",
    "cancelled": "CANCELLED",
}


def backend_status(ui_status: str) -> str:
    value = str(ui_status or "").strip()
    if not value:
        raise ClientValidationError("Status is required")
    return STATUS_MAP.get(value.lower(), value.upper())


def unwrap_order(payload: Any) -> Any:
    if isinstance(payload, dict) and isinstance(payload.get("order"), dict):
        return payload["order"]
    return payload


def parse_order(raw: Any, price_lookup: PriceLookup) -> Optional[Order]:
    if not isinstance(raw, dict):
        return None
    order_id = clean_identifier(raw.get("orderId") or raw.get("_id") or raw.get("id"))
    if not order_id:
        return None
    return Order(
        order_id=order_id,
        status=optional_text(raw.get("status")) or "",
        items=normalize(raw.get("items") or [], price_lookup),
        server_totals=server_totals(raw.get("totals")),
        user_id=optional_text(raw.get("userId")),
        user_email=optional_text(raw.get("userEmail")),
        created_at=parse_time(raw.get("createdAt")),
        payment=raw.get("payment") if isinstance(raw.get("payment"), dict) else None,
    )


def parse_orders(payload: Any, price_lookup: PriceLookup) -> List[Order]:
    orders = (parse_order(raw, price_lookup) for raw in unwrap_collection(payload, "orders"))
    return [order for order in orders if order is not None]


def order_totals(order: Order) -> Totals:
    return compute_totals(order.items, order.server_totals)


def filter_orders(orders: Iterable[Order], query: str = "", status: str = "") -> List[Order]:
    q = (query or "").strip().lower()
    st = (status or "").strip().lower()

    def matches(order: Order) -> bool:
        haystack = (order.order_id, order.user_id or "", order.user_email or "")
        if q and not any(q in value.lower() for value in haystack):
            return False
        s = order.status.lower()
        return not st or s == st or st in s

    return [order for order in orders if matches(order)]


def paginate(items: List[T], page: int = 1, limit: int = 20) -> Tuple[List[T], int]:
    if page < 1 or limit < 1:
        raise ClientValidationError("page and limit must be positive")
    start = (page - 1) * limit
    return items[start:start + limit], len(items)


async def fetch_orders(client: BackendClient, price_lookup: PriceLookup, path: str = "/orders") -> List[Order]:
    return parse_orders(await client.get(path), price_lookup)


async def fetch_order(client: BackendClient, price_lookup: PriceLookup, order_id: str,
                      path: str = "/orders") -> Order:
    order_id = clean_identifier(order_id)
    payload = await client.get(f"{path}/{quote(order_id, safe='')}")
    order = parse_order(unwrap_order(payload), price_lookup)
    if order is None:
        raise NotFoundException(f"Order {order_id} not found")
    return order


async def update_status(client: BackendClient, price_lookup: PriceLookup, order_id: str, ui_status: str) -> Order:
    status = backend_status(ui_status)
    order_id = clean_identifier(order_id)
    await client.patch(f"/admin/orders/{quote(order_id, safe='')}", {"status": status})
    logger.info("Order status changed", extra={"order_id": order_id})
    return await fetch_order(client, price_lookup, order_id, path="/admin/orders")


async def refund(client: BackendClient, price_lookup: PriceLookup, order_id: str) -> Order:
    order_id = clean_identifier(order_id)
    await client.post(f"/admin/orders/{quote(order_id, safe='')}/refund")
    logger.info("Order refunded", extra={"order_id": order_id})
    return await fetch_order(client, price_lookup, order_id, path="/admin/orders")
