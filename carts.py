import logging
from typing import Any, Dict, List

from database import Store, oid, utcnow
from errors import NotFound, ValidationError
from pricing import compute_total

logger = logging.getLogger(__name__)

# Fields read from a product when rendering a cart
PRODUCT_FIELDS = ["title", "price", "images", "seller"]


class CartManager:
    """One cart per user. Every mutation recomputes ``total_price`` from
    current product prices.

    Writes are read-modify-write without locking; two concurrent updates for
    the same user can lose one of them.
    """

    def __init__(self, store: Store):
        self.store = store

    def get_or_create(self, user_id: Any) -> Dict[str, Any]:
        user_id = oid(user_id)
        return self.store.upsert_one(
            "cart",
            {"user_id": user_id},
            {"items": [], "total_price": 0.0, "created_at": utcnow()},
        )

    def _find(self, user_id: Any) -> Dict[str, Any]:
        cart = self.store.find_one("cart", {"user_id": oid(user_id)})
        if not cart:
            raise NotFound("Cart not found")
        return cart

    def _save(self, cart: Dict[str, Any], items: List[Dict[str, Any]]) -> Dict[str, Any]:
        total = compute_total(self.store, items)
        self.store.update_by_id(
            "cart", cart["_id"], {"items": items, "total_price": total, "updated_at": utcnow()}
        )
        cart.update(items=items, total_price=total)
        return cart

    def upsert_line(self, user_id: Any, product_id: Any, quantity: int) -> Dict[str, Any]:
        """Add ``quantity`` of a product, merging into an existing line."""
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Quantity must be a positive integer")
        product_id = oid(product_id)
        if not self.store.find_by_id("product", product_id, ["_id"]):
            raise NotFound("Product not found")

        cart = self.get_or_create(user_id)
        items = list(cart.get("items", []))
        for line in items:
            if line["product"] == product_id:
                line["quantity"] = int(line["quantity"]) + quantity
                break
        else:
            items.append({"product": product_id, "quantity": quantity})
        cart = self._save(cart, items)
        logger.info("Cart %s: +%d of product %s", cart["_id"], quantity, product_id)
        return cart

    def remove_line(self, user_id: Any, product_id: Any) -> Dict[str, Any]:
        product_id = oid(product_id)
        cart = self._find(user_id)
        items = [line for line in cart.get("items", []) if line["product"] != product_id]
        if len(items) == len(cart.get("items", [])):
            raise NotFound("Product not found in cart")
        cart = self._save(cart, items)
        logger.info("Cart %s: removed product %s", cart["_id"], product_id)
        return cart

    def clear(self, user_id: Any) -> Dict[str, Any]:
        cart = self._find(user_id)
        self.store.update_by_id(
            "cart", cart["_id"], {"items": [], "total_price": 0.0, "updated_at": utcnow()}
        )
        cart.update(items=[], total_price=0.0)
        return cart

    def expand(self, cart: Dict[str, Any]) -> Dict[str, Any]:
        """Presentation view of a cart: lines with product details and the
        seller's username."""
        lines = [dict(line) for line in cart.get("items", [])]
        self.store.populate(lines, "product", "product", PRODUCT_FIELDS)
        self.store.populate(lines, "product.seller", "user", ["username"])
        products = []
        for line in lines:
            product = line["product"]
            if product is None:
                products.append({"product": None, "quantity": line["quantity"]})
                continue
            seller = product.get("seller")
            products.append({
                "product": {
                    "id": str(product["_id"]),
                    "name": product.get("title"),
                    "price": product.get("price"),
                    "seller": (seller or {}).get("username") or "Unknown",
                    "image": product.get("images", []),
                },
                "quantity": line["quantity"],
            })
        return {"products": products, "totalPrice": cart.get("total_price", 0.0)}


def cart_view(cart: Dict[str, Any]) -> Dict[str, Any]:
    """Unexpanded cart as returned by the mutating endpoints."""
    return {
        "id": str(cart["_id"]),
        "user": str(cart["user_id"]),
        "products": [
            {"product": str(line["product"]), "quantity": line["quantity"]}
            for line in cart.get("items", [])
        ],
        "totalPrice": cart.get("total_price", 0.0),
    }
