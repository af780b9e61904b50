"""Order line normalization, totals and stock request collapsing."""

from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from dispatch_kernel.domain.dtos import OrderLine, StockRequest
from dispatch_kernel.domain.order_rules import compute_total, normalize_order_lines, stock_requests
from dispatch_kernel.exceptions import ValidationError


class TestNormalizeOrderLines:
    def test_accepts_mappings_and_dtos(self):
        lines = normalize_order_lines([
            {"product_id": "SKU-A", "quantity": 2, "unit_price": "1.50"},
            OrderLine("SKU-B", 1, Decimal("3")),
        ])
        assert lines == (
            OrderLine("SKU-A", 2, Decimal("1.50")),
            OrderLine("SKU-B", 1, Decimal("3.00")),
        )

    def test_accepts_short_key_aliases(self):
        (line,) = normalize_order_lines([{"sku": "SKU-A", "qty": 3, "price": 2}])
        assert line.product_id == "SKU-A"
        assert line.quantity == 3
        assert line.unit_price == Decimal("2.00")

    def test_strips_product_id(self):
        (line,) = normalize_order_lines([{"product_id": "  SKU-A ", "quantity": 1, "unit_price": 0}])
        assert line.product_id == "SKU-A"

    def test_empty_list_rejected(self):
        with pytest.raises(ValidationError) as exc:
            normalize_order_lines([])
        assert exc.value.field == "items"

    @pytest.mark.parametrize("items", [None, "SKU-A", {"product_id": "SKU-A"}])
    def test_non_list_rejected(self, items):
        with pytest.raises(ValidationError):
            normalize_order_lines(items)

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, "2", True])
    def test_bad_quantity_rejected(self, quantity):
        with pytest.raises(ValidationError) as exc:
            normalize_order_lines([{"product_id": "SKU-A", "quantity": quantity, "unit_price": 1}])
        assert exc.value.field == "quantity"

    @pytest.mark.parametrize("price", ["-0.01", "abc", None, "NaN", "Infinity"])
    def test_bad_price_rejected(self, price):
        with pytest.raises(ValidationError) as exc:
            normalize_order_lines([{"product_id": "SKU-A", "quantity": 1, "unit_price": price}])
        assert exc.value.field == "unit_price"

    @pytest.mark.parametrize("price", ["0.005", "1.999", "10.001"])
    def test_sub_cent_price_rejected(self, price):
        with pytest.raises(ValidationError) as exc:
            normalize_order_lines([{"product_id": "SKU-A", "quantity": 1, "unit_price": price}])
        assert exc.value.field == "unit_price"

    def test_trailing_zeros_are_not_extra_precision(self):
        (line,) = normalize_order_lines([{"product_id": "SKU-A", "quantity": 1, "unit_price": "1.500"}])
        assert line.unit_price == Decimal("1.50")

    def test_missing_product_rejected(self):
        with pytest.raises(ValidationError) as exc:
            normalize_order_lines([{"quantity": 1, "unit_price": 1}])
        assert exc.value.field == "product_id"

    def test_non_mapping_line_rejected(self):
        with pytest.raises(ValidationError):
            normalize_order_lines([("SKU-A", 1, 1)])


class TestComputeTotal:
    def test_sum_of_line_totals(self):
        lines = normalize_order_lines([
            {"product_id": "SKU-A", "quantity": 2, "unit_price": "9.99"},
            {"product_id": "SKU-B", "quantity": 3, "unit_price": "0.10"},
        ])
        assert compute_total(lines) == Decimal("20.28")

    @given(
        st.lists(
            st.tuples(
                st.integers(min_value=1, max_value=1000),
                st.decimals(min_value=0, max_value=10000, places=2, allow_nan=False, allow_infinity=False),
            ),
            min_size=1,
            max_size=20,
        )
    )
    def test_total_equals_sum_of_quantity_times_price(self, raw):
        lines = normalize_order_lines(
            [{"product_id": f"SKU-{i}", "quantity": q, "unit_price": p} for i, (q, p) in enumerate(raw)]
        )
        assert compute_total(lines) == sum((q * p for q, p in raw), Decimal("0"))


class TestStockRequests:
    def test_repeated_products_are_summed_and_sorted(self):
        requests = stock_requests([
            OrderLine("SKU-B", 1, Decimal("1")),
            OrderLine("SKU-A", 2, Decimal("1")),
            OrderLine("SKU-B", 4, Decimal("1")),
        ])
        assert requests == (StockRequest("SKU-A", 2), StockRequest("SKU-B", 5))

    @given(st.lists(st.tuples(st.sampled_from("ABCDE"), st.integers(1, 50)), min_size=1))
    def test_quantities_are_preserved(self, raw):
        requests = stock_requests([StockRequest(p, q) for p, q in raw])
        assert sum(r.quantity for r in requests) == sum(q for _, q in raw)
        assert [r.product_id for r in requests] == sorted({p for p, _ in raw})
