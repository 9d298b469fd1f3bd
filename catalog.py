import logging
import math
from typing import Any, Dict, Iterable, List, Optional

from pymongo.errors import DuplicateKeyError

from database import Store, oid, utcnow
from errors import Forbidden, NotFound, ValidationError
from references import Link, Relation
from schemas import Category, Product, ProductIn, ProductUpdate, Review

logger = logging.getLogger(__name__)

PRODUCT_CATEGORIES = Link("product", "categories")
CATEGORY_PRODUCTS = Link("category", "products")


def page_of(total: int, page: int, limit: int) -> Dict[str, int]:
    return {"currentPage": page, "totalPages": math.ceil(total / limit) if limit else 0}


class Catalog:
    """Products and categories. ``product.categories`` is authoritative and
    ``category.products`` mirrors it; only ``self.categories`` writes the
    mirror."""

    def __init__(self, store: Store):
        self.store = store
        self.categories = Relation(store, PRODUCT_CATEGORIES, CATEGORY_PRODUCTS)

    # Products

    def _category_ids(self, ids: Iterable[str]) -> List[Any]:
        wanted = list(dict.fromkeys(oid(i) for i in ids))
        if not wanted:
            return []
        found = self.store.count_documents("category", {"_id": {"$in": wanted}})
        if found != len(wanted):
            raise ValidationError("Some category IDs are invalid")
        return wanted

    def get_product(self, product_id: Any) -> Dict[str, Any]:
        product = self.store.find_by_id("product", product_id)
        if not product:
            raise NotFound("Product not found")
        return product

    def _owned_product(self, user_id: Any, product_id: Any) -> Dict[str, Any]:
        product = self.get_product(product_id)
        if product["seller"] != oid(user_id):
            raise Forbidden("You can only modify your own products")
        return product

    def create_product(self, seller_id: Any, data: ProductIn) -> Dict[str, Any]:
        categories = self._category_ids(data.categories)
        product = Product(
            **data.model_dump(exclude={"categories"}),
            seller=oid(seller_id),
            categories=categories,
        )
        product_id = self.store.create("product", product)
        self.categories.sync_owner(product_id, [], categories)
        logger.info("Product %s created by seller %s", product_id, seller_id)
        return self.get_product(product_id)

    def update_product(self, user_id: Any, product_id: Any, data: ProductUpdate) -> Dict[str, Any]:
        product = self._owned_product(user_id, product_id)
        update = data.model_dump(exclude_unset=True, exclude={"categories"})
        new_categories = None
        if data.categories is not None:
            new_categories = self._category_ids(data.categories)
            update["categories"] = new_categories
        if not update:
            raise ValidationError("No fields to update")
        update["updated_at"] = utcnow()
        self.store.update_by_id("product", product["_id"], update)
        if new_categories is not None:
            self.categories.sync_owner(product["_id"], PRODUCT_CATEGORIES.members(product), new_categories)
        return self.get_product(product["_id"])

    def delete_product(self, user_id: Any, product_id: Any) -> None:
        product = self._owned_product(user_id, product_id)
        self.categories.detach_owner(product)
        self.store.delete_by_id("product", product["_id"])
        logger.info("Product %s deleted by seller %s", product["_id"], user_id)

    def repair_product_references(self, user_id: Any, product_id: Any) -> Dict[str, Any]:
        product = self._owned_product(user_id, product_id)
        result = self.categories.repair_owner(product)
        return {"added": [str(i) for i in result.added], "removed": [str(i) for i in result.removed]}

    def list_products(self, page: int = 1, limit: int = 10, category: Optional[str] = None) -> Dict[str, Any]:
        page, limit = max(page, 1), max(limit, 1)
        query: Dict[str, Any] = {}
        if category:
            query["categories"] = oid(category)
        total = self.store.count_documents("product", query)
        products = self.store.find(
            "product", query, skip=(page - 1) * limit, limit=limit, sort=[("created_at", -1), ("_id", -1)]
        )
        return {"products": products, "totalProducts": total, **page_of(total, page, limit)}

    def seller_products(self, seller_id: Any) -> List[Dict[str, Any]]:
        return self.store.find("product", {"seller": oid(seller_id)})

    def add_review(self, user_id: Any, product_id: Any, rating: int, comment: str) -> Dict[str, Any]:
        product = self.get_product(product_id)
        review = Review(user=oid(user_id), rating=rating, comment=comment)
        self.store.update_by_id("product", product["_id"], {"$push": {"reviews": review.model_dump()}})
        return self.get_product(product["_id"])

    # Categories

    def add_categories(self, names: List[str]) -> List[Dict[str, Any]]:
        if not names:
            raise ValidationError("Please provide an array of category names")
        saved = []
        for name in names:
            name = name.strip()
            if not name or self.store.find_one("category", {"name": name}):
                continue
            try:
                category_id = self.store.create("category", Category(name=name))
            except DuplicateKeyError:
                # created concurrently
                continue
            saved.append(self.store.find_by_id("category", category_id))
        return saved

    def list_categories(self) -> List[Dict[str, Any]]:
        return self.store.find("category", sort=[("name", 1)])

    def get_category(self, category_id: Any) -> Dict[str, Any]:
        category = self.store.find_by_id("category", category_id)
        if not category:
            raise NotFound("Category not found")
        self.store.populate([category], "products", "product", ["title", "price", "images"])
        return category

    def delete_category(self, category_id: Any) -> None:
        category = self.store.find_by_id("category", category_id)
        if not category:
            raise NotFound("Category not found")
        self.categories.detach_mirror(category)
        self.store.delete_by_id("category", category["_id"])
        logger.info("Category %s deleted", category["_id"])
