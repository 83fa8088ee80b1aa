from typing import Any, Iterable, Optional

from app.models import LineItem, ServerTotals, Totals
from app.pricing import finite_number


def server_totals(raw: Any) -> Optional[ServerTotals]:
    """Pick the backend's totals block apart; fields that are missing or not numeric stay None."""
    if not isinstance(raw, dict):
        return None
    totals = ServerTotals(
        subtotal=finite_number(raw.get("subtotal")),
        tax=finite_number(raw.get("tax")),
        grand=finite_number(raw.get("grand")),
    )
    if totals.subtotal is None and totals.tax is None and totals.grand is None:
        return None
    return totals


def compute_totals(items: Iterable[LineItem], server: Optional[ServerTotals] = None) -> Totals:
    """Client-side projection of subtotal/tax/grand.

    Tax is never computed here, it is zero unless the backend sends one.
    Every figure the backend sends is used as-is.
    """
    subtotal = sum((item.unit_price * item.quantity for item in items), 0.0)
    tax = 0.0
    grand = None

    if server is not None:
        if server.subtotal is not None:
            subtotal = server.subtotal
        if server.tax is not None:
            tax = server.tax
        grand = server.grand

    if grand is None:
        grand = subtotal + tax

    return Totals(subtotal=subtotal, tax=tax, grand=grand)
