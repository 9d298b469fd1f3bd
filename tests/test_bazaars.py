import pytest
from bson import ObjectId

from bazaars import Bazaars
from errors import NotFound, ValidationError
from schemas import BazaarCategoryIn, BazaarIn, BazaarUpdate
from tests.factories import BazaarCategoryFactory, BazaarFactory, create, make_store


def bazaar_input(**kwargs):
    data = {
        "name": "Spring Market",
        "partitionInfo": "Hall B",
        "openDates": "1-3 April",
        "openTimes": "12:00-20:00",
        "location": "Zamalek",
    }
    data.update(kwargs)
    return BazaarIn(**data)


@pytest.mark.unit
class TestBazaarCategoryLinks:
    def setup_method(self):
        self.store = make_store()
        self.bazaars = Bazaars(self.store)
        self.k1 = create(self.store, "bazaarcategory", BazaarCategoryFactory())
        self.k2 = create(self.store, "bazaarcategory", BazaarCategoryFactory())

    def category(self, category_id):
        return self.store.find_by_id("bazaarcategory", category_id)

    def assert_consistent(self):
        for bazaar in self.store.find("bazaar"):
            for category in self.store.find("bazaarcategory"):
                assert (category["_id"] in bazaar["categories"]) == (category.get("bazaar") == bazaar["_id"])

    def test_create_with_comma_separated_ids(self):
        bazaar = self.bazaars.create_bazaar(bazaar_input(categoriesIds=f"{self.k1}, {self.k2}"))
        assert set(bazaar["categories"]) == {self.k1, self.k2}
        assert self.category(self.k1)["bazaar"] == bazaar["_id"]
        self.assert_consistent()

    def test_create_with_unknown_category(self):
        with pytest.raises(ValidationError):
            self.bazaars.create_bazaar(bazaar_input(categoriesIds=[str(ObjectId())]))
        assert self.store.count_documents("bazaar") == 0

    def test_category_moves_between_bazaars(self):
        first = self.bazaars.create_bazaar(bazaar_input(categoriesIds=[str(self.k1), str(self.k2)]))
        second = self.bazaars.create_bazaar(bazaar_input(name="Autumn", categoriesIds=[str(self.k1)]))

        assert self.store.find_by_id("bazaar", first["_id"])["categories"] == [self.k2]
        assert self.category(self.k1)["bazaar"] == second["_id"]
        self.assert_consistent()

    def test_update_membership(self):
        bazaar = self.bazaars.create_bazaar(bazaar_input(categoriesIds=[str(self.k1)]))
        updated = self.bazaars.update_bazaar(
            bazaar["_id"], BazaarUpdate(categoriesIds=[str(self.k2)], location="Maadi")
        )
        assert updated["location"] == "Maadi"
        assert updated["categories"] == [self.k2]
        assert self.category(self.k1)["bazaar"] is None
        self.assert_consistent()

    def test_add_and_delete_category(self):
        bazaar_id = create(self.store, "bazaar", BazaarFactory())
        added = self.bazaars.add_category(bazaar_id, BazaarCategoryIn(name="Food", brandsNames="Kiosk", images=[]))
        assert self.store.find_by_id("bazaar", bazaar_id)["categories"] == [added["_id"]]

        self.bazaars.delete_category(bazaar_id, added["_id"])
        assert self.store.find_by_id("bazaar", bazaar_id)["categories"] == []
        assert self.category(added["_id"]) is None

    def test_delete_category_from_wrong_bazaar(self):
        bazaar = self.bazaars.create_bazaar(bazaar_input(categoriesIds=[str(self.k1)]))
        other = create(self.store, "bazaar", BazaarFactory())
        with pytest.raises(NotFound, match="not found in this bazaar"):
            self.bazaars.delete_category(other, self.k1)
        assert self.store.find_by_id("bazaar", bazaar["_id"])["categories"] == [self.k1]

    def test_delete_bazaar_removes_its_categories(self):
        bazaar = self.bazaars.create_bazaar(bazaar_input(categoriesIds=[str(self.k1)]))
        self.bazaars.delete_bazaar(bazaar["_id"])
        assert self.store.find_by_id("bazaar", bazaar["_id"]) is None
        assert self.category(self.k1) is None
        assert self.category(self.k2) is not None

    def test_bulk_add(self):
        bazaar_id = create(self.store, "bazaar", BazaarFactory())
        saved = self.bazaars.add_categories([
            {"name": "Crafts", "brandsNames": "Loom", "images": ["a.jpg"], "bazaar": str(bazaar_id)},
            {"name": "Skipped", "brandsNames": "X"},
            {"name": "Loose", "brandsNames": "Y", "images": [], "bazaar": str(ObjectId())},
        ])
        assert [c["name"] for c in saved] == ["Crafts", "Loose"]
        assert saved[1]["bazaar"] is None
        assert self.store.find_by_id("bazaar", bazaar_id)["categories"] == [saved[0]["_id"]]
        self.assert_consistent()

    def test_get_bazaar_populates_categories(self):
        bazaar = self.bazaars.create_bazaar(bazaar_input(categoriesIds=[str(self.k1)]))
        fetched = self.bazaars.get_bazaar(bazaar["_id"])
        assert fetched["categories"][0]["name"] == self.category(self.k1)["name"]

    def test_list_categories_populates_bazaar_name(self):
        self.bazaars.create_bazaar(bazaar_input(categoriesIds=[str(self.k1)]))
        page = self.bazaars.list_categories()
        assert page["totalCategories"] == 2
        names = {c["name"]: c["bazaar"] for c in page["categories"]}
        assert names[self.category(self.k1)["name"]]["name"] == "Spring Market"
