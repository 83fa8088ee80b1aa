import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Set
from urllib.parse import quote

from shared.backend_client import BackendClient
from shared.security_config import clean_identifier
from shared.utils import (
    AppException, ClientValidationError, InvalidQuantity, MutationInFlight,
    PartialMutationFailure, ServerError
)

from app.models import CartState
from app.pricing import PriceLookup, cart_items, normalize
from app.totals import compute_totals, server_totals

logger = logging.getLogger("storefront-service.cart")


class CartContract(str, Enum):
    UPSERT = "upsert"    # PUT with the absolute quantity
    REPLACE = "replace"  # DELETE, then POST with the absolute quantity


def is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


class CartMutationSequencer:
    """Turns cart intents into backend calls for one user's cart view.

    Only one mutation per SKU may be in flight; a second one for the same SKU
    is refused with MutationInFlight while other SKUs proceed. Every mutation,
    failed or not, is followed by a refetch so `state` always reflects the
    server, never a local guess.
    """

    def __init__(
        self,
        client: BackendClient,
        contract: str = CartContract.UPSERT,
        cart_path: str = "/cart",
        catalog_path: str = "/parts",
        checkout_path: str = "/payments/checkout",
    ):
        self.client = client
        self.contract = CartContract(contract)
        self.cart_path = cart_path
        self.catalog_path = catalog_path
        self.checkout_path = checkout_path
        self.state = CartState()
        self.price_lookup = PriceLookup()
        self.closed = False
        self._in_flight: Set[str] = set()

    @property
    def items_path(self) -> str:
        return f"{self.cart_path}/items"

    def item_path(self, sku: str) -> str:
        return f"{self.items_path}/{quote(sku, safe='')}"

    def is_busy(self, sku: Optional[str] = None) -> bool:
        if sku is None:
            return bool(self._in_flight)
        return sku in self._in_flight

    def close(self):
        # Late refetches stop updating state; in-flight calls still finish
        self.closed = True

    # --- Reads ---

    async def refresh_catalog(self) -> PriceLookup:
        lookup = PriceLookup.build(await self.client.get(self.catalog_path))
        if not self.closed:
            self.price_lookup = lookup
        return lookup

    async def refresh(self, reload_catalog: bool = False) -> CartState:
        if reload_catalog:
            await self.refresh_catalog()
        payload = await self.client.get(self.cart_path)
        items = normalize(cart_items(payload), self.price_lookup)

        raw_totals = None
        if isinstance(payload, dict):
            cart = payload.get("cart") if isinstance(payload.get("cart"), dict) else payload
            raw_totals = cart.get("totals", payload.get("totals"))

        state = CartState(items=items, totals=compute_totals(items, server_totals(raw_totals)))
        if not self.closed:
            self.state = state
        return state

    # --- Mutations ---

    async def add_to_cart(self, sku: str, qty: int) -> CartState:
        sku = self._require_sku(sku)
        # Adding reflects explicit intent: never clamp
        if not is_positive_int(qty):
            raise InvalidQuantity(qty)

        async def add():
            await self.client.post(self.items_path, {"sku": sku, "qty": qty})

        return await self._mutate(sku, add, quantity=qty)

    async def set_quantity(self, sku: str, new_qty: int) -> CartState:
        sku = self._require_sku(sku)
        if isinstance(new_qty, bool) or not isinstance(new_qty, int):
            raise InvalidQuantity(new_qty)
        if new_qty < 1:
            # Removal goes through remove_item; nothing is sent
            logger.info("Ignoring non-positive quantity", extra={"sku": sku, "quantity": new_qty})
            return self.state

        if self.contract is CartContract.UPSERT:
            async def apply():
                await self.client.put(self.items_path, {"sku": sku, "qty": new_qty})
        else:
            async def apply():
                await self._delete_line(sku)
                # the add is only sent once the delete has been acknowledged
                try:
                    await self.client.post(self.items_path, {"sku": sku, "qty": new_qty})
                except AppException as exc:
                    raise PartialMutationFailure(sku, exc) from exc

        return await self._mutate(sku, apply, quantity=new_qty)

    async def remove_item(self, sku: str) -> CartState:
        sku = self._require_sku(sku)
        return await self._mutate(sku, lambda: self._delete_line(sku))

    async def checkout(self) -> str:
        if self.is_busy():
            raise MutationInFlight("cart")
        state = await self.refresh()
        if not state.items:
            raise ClientValidationError("Cart is empty")
        payload = await self.client.post(self.checkout_path, {})
        url = payload.get("url") if isinstance(payload, dict) else None
        if not url:
            raise ServerError("Checkout did not return a redirect URL")
        return url

    # --- Internals ---

    def _require_sku(self, sku: Any) -> str:
        sku = clean_identifier(sku)
        if not sku:
            raise ClientValidationError("SKU is required")
        return sku

    async def _delete_line(self, sku: str):
        try:
            await self.client.delete(self.item_path(sku))
        except ServerError as exc:
            # removing an absent line is not an error
            if exc.backend_status != 404:
                raise

    async def _mutate(self, sku: str, operation: Callable[[], Awaitable[None]], quantity: Optional[int] = None) -> CartState:
        if sku in self._in_flight:
            raise MutationInFlight(f"cart item {sku}")
        self._in_flight.add(sku)
        log_extra = {"sku": sku, "quantity": quantity, "contract": self.contract.value}
        try:
            try:
                await operation()
            except AppException:
                logger.warning("Cart mutation failed", extra=log_extra)
                await self._refetch_after_failure(sku)
                raise
            logger.info("Cart mutation applied", extra=log_extra)
            return await self.refresh()
        finally:
            self._in_flight.discard(sku)

    async def _refetch_after_failure(self, sku: str):
        try:
            await self.refresh()
        except AppException:
            # the mutation error is what the caller sees
            logger.warning("Refetch after failed cart mutation failed", extra={"sku": sku}, exc_info=True)
