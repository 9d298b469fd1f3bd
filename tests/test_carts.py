import pytest
from bson import ObjectId

from carts import CartManager, cart_view
from errors import NotFound, ValidationError
from tests.factories import create_product, create_user, make_store


@pytest.mark.unit
class TestCartManager:
    def setup_method(self):
        self.store = make_store()
        self.carts = CartManager(self.store)
        self.seller = create_user(self.store, username="acme")
        self.user = create_user(self.store)
        self.a = create_product(self.store, price=10.0, seller=self.seller)
        self.b = create_product(self.store, price=5.0, seller=self.seller)

    def stored_cart(self):
        return self.store.find_one("cart", {"user_id": self.user})

    def test_get_or_create_is_idempotent(self):
        first = self.carts.get_or_create(self.user)
        second = self.carts.get_or_create(str(self.user))
        assert first["_id"] == second["_id"]
        assert first["items"] == []
        assert first["total_price"] == 0
        assert self.store.count_documents("cart") == 1

    def test_upsert_appends_and_totals(self):
        self.carts.upsert_line(self.user, self.a, 2)
        cart = self.carts.upsert_line(self.user, self.b, 1)
        assert [line["product"] for line in cart["items"]] == [self.a, self.b]
        assert self.stored_cart()["total_price"] == pytest.approx(25.0)

    def test_upsert_merges_quantity(self):
        self.carts.upsert_line(self.user, self.a, 2)
        self.carts.upsert_line(self.user, str(self.a), 3)
        items = self.stored_cart()["items"]
        assert items == [{"product": self.a, "quantity": 5}]
        assert self.stored_cart()["total_price"] == pytest.approx(50.0)

    def test_upsert_total_reflects_price_change(self):
        self.carts.upsert_line(self.user, self.a, 1)
        self.store.update_by_id("product", self.a, {"price": 20.0})
        self.carts.upsert_line(self.user, self.b, 1)
        assert self.stored_cart()["total_price"] == pytest.approx(25.0)

    def test_upsert_unknown_product(self):
        with pytest.raises(NotFound):
            self.carts.upsert_line(self.user, ObjectId(), 1)
        assert self.stored_cart() is None

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, True])
    def test_upsert_rejects_non_positive_quantity(self, quantity):
        with pytest.raises(ValidationError):
            self.carts.upsert_line(self.user, self.a, quantity)
        assert self.stored_cart() is None

    def test_stale_line_priced_at_zero(self):
        self.carts.upsert_line(self.user, self.a, 1)
        self.carts.upsert_line(self.user, self.b, 2)
        self.store.delete_by_id("product", self.a)

        cart = self.carts.remove_line(self.user, self.b)

        assert cart["items"] == [{"product": self.a, "quantity": 1}]
        assert cart["total_price"] == 0

    def test_remove_line(self):
        self.carts.upsert_line(self.user, self.a, 1)
        self.carts.upsert_line(self.user, self.b, 1)
        cart = self.carts.remove_line(self.user, str(self.a))
        assert [line["product"] for line in cart["items"]] == [self.b]
        assert self.stored_cart()["total_price"] == pytest.approx(5.0)

    def test_remove_line_without_cart(self):
        with pytest.raises(NotFound, match="Cart not found"):
            self.carts.remove_line(self.user, self.a)

    def test_remove_line_not_in_cart(self):
        self.carts.upsert_line(self.user, self.a, 1)
        with pytest.raises(NotFound, match="not found in cart"):
            self.carts.remove_line(self.user, self.b)

    def test_clear(self):
        self.carts.upsert_line(self.user, self.a, 3)
        self.carts.clear(self.user)
        cart = self.stored_cart()
        assert cart["items"] == []
        assert cart["total_price"] == 0

    def test_clear_without_cart(self):
        with pytest.raises(NotFound):
            self.carts.clear(self.user)

    def test_expand(self):
        self.carts.upsert_line(self.user, self.a, 2)
        view = self.carts.expand(self.stored_cart())
        assert view["totalPrice"] == pytest.approx(20.0)
        line = view["products"][0]
        assert line["quantity"] == 2
        assert line["product"]["id"] == str(self.a)
        assert line["product"]["price"] == 10.0
        assert line["product"]["seller"] == "acme"

    def test_expand_deleted_product(self):
        self.carts.upsert_line(self.user, self.a, 1)
        self.store.delete_by_id("product", self.a)
        view = self.carts.expand(self.stored_cart())
        assert view["products"] == [{"product": None, "quantity": 1}]

    def test_cart_view(self):
        cart = self.carts.upsert_line(self.user, self.a, 1)
        view = cart_view(cart)
        assert view["user"] == str(self.user)
        assert view["products"] == [{"product": str(self.a), "quantity": 1}]
