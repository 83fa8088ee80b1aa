import pytest

from app.models import PriceEntry
from app.pricing import PriceLookup, cart_items, coerce_price, coerce_quantity, normalize, optional_text


CATALOG = {"items": [
    {"sku": "A1", "name": "Widget", "price": "250"},
    {"sku": "B2", "name": "Gear", "price": 99.5},
]}


class TestPriceLookup:
    def test_build_from_wrapped_catalog(self):
        lookup = PriceLookup.build({"items": [{"sku": "A1", "name": "Widget", "price": "250"}]})
        assert lookup["A1"] == PriceEntry(sku="A1", name="Widget", unit_price=250.0)

    @pytest.mark.parametrize("payload", [
        [{"sku": "A1", "price": 10}],
        {"data": [{"sku": "A1", "price": 10}]},
        {"parts": [{"sku": "A1", "price": 10}]},
        {"products": [{"sku": "A1", "price": 10}]},
    ])
    def test_accepts_every_wrapper_shape(self, payload):
        lookup = PriceLookup.build(payload)
        assert lookup.price_of("A1") == 10.0
        # name falls back to the sku
        assert lookup["A1"].name == "A1"

    def test_items_wins_over_data(self):
        lookup = PriceLookup.build({"items": [{"sku": "A1", "price": 1}], "data": [{"sku": "A1", "price": 2}]})
        assert lookup.price_of("A1") == 1.0

    @pytest.mark.parametrize("payload", [None, "garbage", 42, {"items": "nope"}, {}, []])
    def test_malformed_catalog_is_empty(self, payload):
        assert len(PriceLookup.build(payload)) == 0

    def test_skips_records_without_sku(self):
        lookup = PriceLookup.build([None, 3, {"price": 1}, {"sku": "  "}, {"sku": "C3", "price": 4}])
        assert list(lookup) == ["C3"]

    @pytest.mark.parametrize("price", ["abc", float("nan"), "inf", None, True, {"amount": 3}])
    def test_non_finite_prices_become_zero(self, price):
        lookup = PriceLookup.build([{"sku": "A1", "price": price}])
        assert lookup.price_of("A1") == 0.0

    def test_last_duplicate_sku_wins(self):
        lookup = PriceLookup.build([{"sku": "A1", "price": 1}, {"sku": "A1", "price": 2}])
        assert lookup.price_of("A1") == 2.0

    def test_lookup_is_read_only(self):
        lookup = PriceLookup.build(CATALOG)
        with pytest.raises(TypeError):
            lookup["A1"] = PriceEntry(sku="A1", name="x", unit_price=1)
        assert lookup.price_of("missing") is None


class TestCoercion:
    def test_coerce_price(self):
        assert coerce_price("12.5") == 12.5
        assert coerce_price(" 3 ") == 3.0
        assert coerce_price("-inf") == 0.0

    def test_optional_text(self):
        assert optional_text("x") == "x"
        assert optional_text(7) == "7"
        assert optional_text({"_id": "u1"}) is None
        assert optional_text(False) is None

    def test_coerce_quantity(self):
        assert coerce_quantity("3") == 3
        assert coerce_quantity(2.0) == 2
        assert coerce_quantity(1.5) is None
        assert coerce_quantity("abc") is None
        assert coerce_quantity(True) is None


class TestNormalize:
    def test_prices_from_lookup(self):
        lookup = PriceLookup.build(CATALOG)
        items = normalize([{"sku": "A1", "qty": 2}], lookup)
        assert len(items) == 1
        assert items[0].sku == "A1"
        assert items[0].quantity == 2
        assert items[0].unit_price == 250.0
        assert items[0].name == "Widget"
        assert items[0].line_total == 500.0

    def test_unknown_sku_kept_at_zero(self):
        lookup = PriceLookup.build(CATALOG)
        items = normalize([{"sku": "A1", "qty": 2}, {"sku": "B9", "qty": 1}], lookup)
        assert [i.sku for i in items] == ["A1", "B9"]
        assert items[1].unit_price == 0.0

    def test_override_wins_over_embedded_and_lookup(self):
        lookup = PriceLookup.build(CATALOG)
        items = normalize([
            {"sku": "A1", "qty": 1, "priceAtOrder": 200, "part": {"sku": "A1", "price": 300}},
            {"sku": "A1", "qty": 1, "part": {"sku": "A1", "price": 300}},
            {"sku": "A1", "qty": 1, "unitPriceOverride": "180"},
        ], lookup)
        assert [i.unit_price for i in items] == [200.0, 300.0, 180.0]
        assert items[0].unit_price_override == 200.0
        assert items[1].unit_price_override is None

    def test_embedded_part_cart_shape(self):
        payload = {"cart": {"items": [
            {"partId": {"_id": "p1", "sku": "A1", "name": "Widget", "price": 300}, "qty": 2},
            {"partId": "p2", "qty": 1},
        ]}}
        items = normalize(cart_items(payload), PriceLookup())
        assert [(i.sku, i.unit_price, i.name) for i in items] == [("A1", 300.0, "Widget"), ("p2", 0.0, None)]

    @pytest.mark.parametrize("qty", [0, -1, "abc", None, 1.5])
    def test_drops_rows_without_positive_quantity(self, qty):
        items = normalize([{"sku": "A1", "qty": qty}, {"sku": "B2", "quantity": "3"}], PriceLookup.build(CATALOG))
        assert [(i.sku, i.quantity) for i in items] == [("B2", 3)]

    def test_null_qty_falls_back_to_quantity(self):
        items = normalize([{"sku": "A1", "qty": None, "quantity": 2}], PriceLookup.build(CATALOG))
        assert [(i.sku, i.quantity) for i in items] == [("A1", 2)]

    @pytest.mark.parametrize("raw", [None, "x", {"items": None}, [None, "row", {"qty": 1}]])
    def test_malformed_items_are_empty(self, raw):
        assert normalize(raw, PriceLookup()) == []
