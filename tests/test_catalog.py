import pytest
from bson import ObjectId

from catalog import Catalog
from errors import Forbidden, NotFound, ValidationError
from schemas import ProductIn, ProductUpdate
from tests.factories import CategoryFactory, create, create_user, make_store


def product_input(**kwargs):
    data = {"title": "Chair", "description": "Oak chair", "price": 40.0, "quantity": 3}
    data.update(kwargs)
    return ProductIn(**data)


@pytest.mark.unit
class TestProductCategoryLinks:
    def setup_method(self):
        self.store = make_store()
        self.catalog = Catalog(self.store)
        self.seller = create_user(self.store)
        self.other = create_user(self.store)
        self.c1 = create(self.store, "category", CategoryFactory())
        self.c2 = create(self.store, "category", CategoryFactory())
        self.c3 = create(self.store, "category", CategoryFactory())

    def assert_consistent(self):
        products = self.store.find("product")
        categories = self.store.find("category")
        for product in products:
            for category in categories:
                assert (category["_id"] in product["categories"]) == (product["_id"] in category["products"])

    def test_create_links_categories(self):
        product = self.catalog.create_product(self.seller, product_input(categories=[str(self.c1), str(self.c2)]))
        assert product["seller"] == self.seller
        assert self.store.find_by_id("category", self.c1)["products"] == [product["_id"]]
        assert self.store.find_by_id("category", self.c3)["products"] == []
        self.assert_consistent()

    def test_create_with_unknown_category(self):
        with pytest.raises(ValidationError, match="invalid"):
            self.catalog.create_product(self.seller, product_input(categories=[str(ObjectId())]))
        assert self.store.count_documents("product") == 0

    def test_update_moves_links(self):
        product = self.catalog.create_product(self.seller, product_input(categories=[str(self.c1), str(self.c2)]))
        updated = self.catalog.update_product(
            self.seller, product["_id"], ProductUpdate(categories=[str(self.c2), str(self.c3)], price=35.0)
        )
        assert updated["price"] == 35.0
        assert set(updated["categories"]) == {self.c2, self.c3}
        assert self.store.find_by_id("category", self.c1)["products"] == []
        self.assert_consistent()

    def test_update_without_categories_keeps_links(self):
        product = self.catalog.create_product(self.seller, product_input(categories=[str(self.c1)]))
        self.catalog.update_product(self.seller, product["_id"], ProductUpdate(title="Stool"))
        assert self.store.find_by_id("category", self.c1)["products"] == [product["_id"]]

    def test_update_with_nothing(self):
        product = self.catalog.create_product(self.seller, product_input())
        with pytest.raises(ValidationError):
            self.catalog.update_product(self.seller, product["_id"], ProductUpdate())

    def test_delete_retracts_links(self):
        product = self.catalog.create_product(self.seller, product_input(categories=[str(self.c1), str(self.c2)]))
        keep = self.catalog.create_product(self.seller, product_input(categories=[str(self.c1)]))
        self.catalog.delete_product(self.seller, product["_id"])

        assert self.store.find_by_id("product", product["_id"]) is None
        assert self.store.find_by_id("category", self.c1)["products"] == [keep["_id"]]
        assert self.store.find_by_id("category", self.c2)["products"] == []
        self.assert_consistent()

    def test_non_seller_is_forbidden(self):
        product = self.catalog.create_product(self.seller, product_input(categories=[str(self.c1)]))
        with pytest.raises(Forbidden):
            self.catalog.update_product(self.other, product["_id"], ProductUpdate(price=1.0))
        with pytest.raises(Forbidden):
            self.catalog.delete_product(self.other, product["_id"])
        assert self.store.find_by_id("product", product["_id"])["price"] == 40.0

    def test_unknown_product(self):
        with pytest.raises(NotFound):
            self.catalog.delete_product(self.seller, ObjectId())

    def test_delete_category_retracts_from_products(self):
        product = self.catalog.create_product(self.seller, product_input(categories=[str(self.c1), str(self.c2)]))
        self.catalog.delete_category(self.c1)
        assert self.store.find_by_id("product", product["_id"])["categories"] == [self.c2]
        self.assert_consistent()

    def test_repair_after_partial_failure(self):
        product = self.catalog.create_product(self.seller, product_input(categories=[str(self.c1)]))
        # simulate an update whose mirror writes never happened
        self.store.update_by_id("product", product["_id"], {"categories": [self.c2]})

        result = self.catalog.repair_product_references(self.seller, product["_id"])

        assert result == {"added": [str(self.c2)], "removed": [str(self.c1)]}
        self.assert_consistent()

    def test_repair_requires_seller(self):
        product = self.catalog.create_product(self.seller, product_input())
        with pytest.raises(Forbidden):
            self.catalog.repair_product_references(self.other, product["_id"])

    def test_review(self):
        product = self.catalog.create_product(self.seller, product_input())
        reviewed = self.catalog.add_review(self.other, product["_id"], 4, "Sturdy")
        assert reviewed["reviews"][0]["rating"] == 4
        assert reviewed["reviews"][0]["user"] == self.other


@pytest.mark.unit
class TestCategories:
    def setup_method(self):
        self.store = make_store()
        self.catalog = Catalog(self.store)

    def test_add_categories_trims_and_skips_existing(self):
        self.catalog.add_categories(["Home"])
        saved = self.catalog.add_categories([" Garden ", "Home", "Garden"])
        assert [c["name"] for c in saved] == ["Garden"]
        assert [c["name"] for c in self.catalog.list_categories()] == ["Garden", "Home"]

    def test_add_categories_requires_names(self):
        with pytest.raises(ValidationError):
            self.catalog.add_categories([])

    def test_get_category_populates_products(self):
        category_id = create(self.store, "category", CategoryFactory())
        seller = create_user(self.store)
        product = self.catalog.create_product(seller, product_input(categories=[str(category_id)]))
        category = self.catalog.get_category(category_id)
        assert category["products"][0]["_id"] == product["_id"]
        assert category["products"][0]["title"] == "Chair"

    def test_list_products_by_category(self):
        category_id = create(self.store, "category", CategoryFactory())
        seller = create_user(self.store)
        self.catalog.create_product(seller, product_input(categories=[str(category_id)]))
        self.catalog.create_product(seller, product_input())
        page = self.catalog.list_products(category=str(category_id))
        assert page["totalProducts"] == 1
        assert page["totalPages"] == 1
        assert self.catalog.list_products(limit=1)["totalPages"] == 2
