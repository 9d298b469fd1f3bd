import logging
from typing import Any, Dict, List

from bson import ObjectId

from catalog import page_of
from database import Store, oid, utcnow
from errors import NotFound, ValidationError
from references import Link, Relation
from schemas import Bazaar, BazaarCategory, BazaarCategoryIn, BazaarCategoryUpdate, BazaarIn, BazaarUpdate

logger = logging.getLogger(__name__)

CATEGORY_BAZAAR = Link("bazaarcategory", "bazaar", many=False)
BAZAAR_CATEGORIES = Link("bazaar", "categories")


class Bazaars:
    """Bazaars and their categories. A category belongs to at most one bazaar
    (``bazaarcategory.bazaar``) and the bazaar lists it in ``categories``."""

    def __init__(self, store: Store):
        self.store = store
        self.links = Relation(store, CATEGORY_BAZAAR, BAZAAR_CATEGORIES)

    def _category_ids(self, ids: List[str]) -> List[ObjectId]:
        wanted = list(dict.fromkeys(oid(i) for i in ids))
        if wanted and self.store.count_documents("bazaarcategory", {"_id": {"$in": wanted}}) != len(wanted):
            raise ValidationError("Some category IDs are invalid")
        return wanted

    def _bazaar(self, bazaar_id: Any) -> Dict[str, Any]:
        bazaar = self.store.find_by_id("bazaar", bazaar_id)
        if not bazaar:
            raise NotFound("Bazaar not found")
        return bazaar

    def create_bazaar(self, data: BazaarIn) -> Dict[str, Any]:
        categories = self._category_ids(data.categories_ids)
        bazaar = Bazaar(**data.model_dump(exclude={"categories_ids"}), categories=categories)
        bazaar_id = self.store.create("bazaar", bazaar)
        self.links.sync_mirror(bazaar_id, [], categories)
        logger.info("Bazaar %s created with %d categories", bazaar_id, len(categories))
        return self._bazaar(bazaar_id)

    def list_bazaars(self, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        page, limit = max(page, 1), max(limit, 1)
        total = self.store.count_documents("bazaar")
        bazaars = self.store.find("bazaar", skip=(page - 1) * limit, limit=limit)
        self.store.populate(bazaars, "categories", "bazaarcategory")
        return {"bazaars": bazaars, "totalBazaars": total, **page_of(total, page, limit)}

    def get_bazaar(self, bazaar_id: Any) -> Dict[str, Any]:
        bazaar = self._bazaar(bazaar_id)
        self.store.populate([bazaar], "categories", "bazaarcategory")
        return bazaar

    def update_bazaar(self, bazaar_id: Any, data: BazaarUpdate) -> Dict[str, Any]:
        bazaar = self._bazaar(bazaar_id)
        update = {k: v for k, v in data.model_dump(exclude_unset=True, exclude={"categories_ids"}).items() if v}
        new_categories = None
        if data.categories_ids is not None:
            new_categories = self._category_ids(data.categories_ids)
            update["categories"] = new_categories
        update["updated_at"] = utcnow()
        self.store.update_by_id("bazaar", bazaar["_id"], update)
        if new_categories is not None:
            self.links.sync_mirror(bazaar["_id"], BAZAAR_CATEGORIES.members(bazaar), new_categories)
        return self._bazaar(bazaar["_id"])

    def delete_bazaar(self, bazaar_id: Any) -> None:
        bazaar = self._bazaar(bazaar_id)
        removed = self.store.delete_many("bazaarcategory", {"bazaar": bazaar["_id"]})
        self.store.delete_by_id("bazaar", bazaar["_id"])
        logger.info("Bazaar %s deleted with %d categories", bazaar["_id"], removed)

    # Categories

    def add_category(self, bazaar_id: Any, data: BazaarCategoryIn) -> Dict[str, Any]:
        bazaar = self._bazaar(bazaar_id)
        category = BazaarCategory(**data.model_dump(), bazaar=bazaar["_id"])
        category_id = self.store.create("bazaarcategory", category)
        self.links.sync_owner(category_id, [], [bazaar["_id"]])
        return self.store.find_by_id("bazaarcategory", category_id)

    def bazaar_categories(self, bazaar_id: Any) -> List[Dict[str, Any]]:
        return self.get_bazaar(bazaar_id)["categories"]

    def get_category(self, bazaar_id: Any, category_id: Any) -> Dict[str, Any]:
        category = self.store.find_one("bazaarcategory", {"_id": oid(category_id), "bazaar": oid(bazaar_id)})
        if not category:
            raise NotFound("Category not found in this bazaar")
        return category

    def update_category(self, bazaar_id: Any, category_id: Any, data: BazaarCategoryUpdate) -> Dict[str, Any]:
        category = self.get_category(bazaar_id, category_id)
        update = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v}
        if update:
            self.store.update_by_id("bazaarcategory", category["_id"], update)
        return self.store.find_by_id("bazaarcategory", category["_id"])

    def delete_category(self, bazaar_id: Any, category_id: Any) -> None:
        bazaar = self._bazaar(bazaar_id)
        category = self.get_category(bazaar["_id"], category_id)
        self.store.delete_by_id("bazaarcategory", category["_id"])
        self.links.sync_owner(category["_id"], [bazaar["_id"]], [])

    def add_categories(self, categories: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Bulk insert. Entries without a name, brand names or an image list are
        skipped; a ``bazaar`` that does not exist is ignored."""
        if not categories:
            raise ValidationError("Please provide an array of categories")
        saved = []
        for entry in categories:
            name, brands, images = entry.get("name"), entry.get("brandsNames"), entry.get("images")
            if not name or not brands or not isinstance(images, list):
                continue
            bazaar_id = entry.get("bazaar")
            bazaar = self.store.find_by_id("bazaar", bazaar_id) if bazaar_id and ObjectId.is_valid(bazaar_id) else None
            category = BazaarCategory(
                name=name, brands_names=brands, images=images, bazaar=bazaar["_id"] if bazaar else None
            )
            category_id = self.store.create("bazaarcategory", category)
            if bazaar:
                self.links.sync_owner(category_id, [], [bazaar["_id"]])
            saved.append(self.store.find_by_id("bazaarcategory", category_id))
        return saved

    def list_categories(self, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        page, limit = max(page, 1), max(limit, 1)
        total = self.store.count_documents("bazaarcategory")
        categories = self.store.find("bazaarcategory", skip=(page - 1) * limit, limit=limit)
        self.store.populate(categories, "bazaar", "bazaar", ["name"])
        return {"categories": categories, "totalCategories": total, **page_of(total, page, limit)}
