from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Optional

from shared.security_config import clean_identifier

from app.models import Order
from app.orders import order_totals
from app.pricing import coerce_quantity, optional_text, unwrap_collection
from app.schemas import LowStockRow, RevenuePoint

# Orders whose money has been taken
REVENUE_STATUSES = {"paid", "reserved", "fulfilled", "complete", "completed"}


def counts_as_revenue(status: str) -> bool:
    return (status or "").strip().lower() in REVENUE_STATUSES


def revenue_by_day(orders: Iterable[Order], days: int = 30, now: Optional[datetime] = None) -> List[RevenuePoint]:
    """Grand totals of paid orders bucketed per UTC day, oldest first.

    Every day in the window gets a point, zero when nothing was sold.
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    today = now.astimezone(timezone.utc).date()

    buckets = OrderedDict()
    for offset in range(days - 1, -1, -1):
        buckets[(today - timedelta(days=offset)).isoformat()] = 0.0

    for order in orders:
        if order.created_at is None or not counts_as_revenue(order.status):
            continue
        created = order.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        label = created.astimezone(timezone.utc).date().isoformat()
        if label in buckets:
            buckets[label] += order_totals(order).grand

    return [RevenuePoint(label=label, total=total) for label, total in buckets.items()]


def severity(available: int, threshold: int) -> str:
    if available <= 0:
        return "out"
    if available <= max(1, threshold // 2):
        return "critical"
    return "low"


def parse_low_stock(payload: Any, default_min: int = 5) -> List[LowStockRow]:
    rows = []
    for raw in unwrap_collection(payload):
        if not isinstance(raw, dict):
            continue
        part = raw.get("part") if isinstance(raw.get("part"), dict) else {}
        part_id = clean_identifier(raw.get("partId") or part.get("_id") or raw.get("_id"))
        if not part_id:
            continue
        available = coerce_quantity(raw.get("available")) or 0
        threshold = coerce_quantity(raw.get("threshold"))
        threshold = default_min if threshold is None else threshold
        rows.append(LowStockRow(
            part_id=part_id,
            sku=optional_text(part.get("sku")),
            name=optional_text(part.get("name")),
            location_id=optional_text(raw.get("locationId")),
            qty_on_hand=coerce_quantity(raw.get("qtyOnHand")) or 0,
            available=available,
            threshold=threshold,
            eta=optional_text(raw.get("eta")),
            severity=severity(available, threshold),
        ))
    return rows


def shape_low_stock(rows: List[LowStockRow], hide_zero: bool = True, zero_cap: int = 5) -> List[LowStockRow]:
    """Drop out-of-stock rows, or keep at most `zero_cap` of them ahead of the rest."""
    if hide_zero:
        return [row for row in rows if row.available > 0]
    zeros = [row for row in rows if row.available <= 0]
    others = [row for row in rows if row.available > 0]
    return zeros[:max(0, zero_cap)] + others
