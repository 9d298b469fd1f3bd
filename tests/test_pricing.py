import pytest
from bson import ObjectId

from pricing import compute_total, round_money
from tests.factories import create_product, make_store


@pytest.mark.unit
class TestComputeTotal:
    def setup_method(self):
        self.store = make_store()
        self.a = create_product(self.store, price=10.0)
        self.b = create_product(self.store, price=2.5)

    def test_empty(self):
        assert compute_total(self.store, []) == 0

    def test_sums_price_times_quantity(self):
        lines = [{"product": self.a, "quantity": 2}, {"product": self.b, "quantity": 3}]
        assert compute_total(self.store, lines) == pytest.approx(27.5)

    def test_uses_current_price(self):
        lines = [{"product": self.a, "quantity": 1, "price": 999}]
        self.store.update_by_id("product", self.a, {"price": 12.0})
        assert compute_total(self.store, lines) == pytest.approx(12.0)

    def test_missing_product_contributes_zero(self):
        lines = [{"product": self.a, "quantity": 1}, {"product": ObjectId(), "quantity": 4}]
        assert compute_total(self.store, lines) == pytest.approx(10.0)

    def test_not_rounded(self):
        cheap = create_product(self.store, price=0.333)
        assert compute_total(self.store, [{"product": cheap, "quantity": 3}]) == pytest.approx(0.999)


def test_round_money():
    assert round_money(0.1 + 0.2) == 0.3
    assert round_money(25) == 25.00
