"""
Order placement

An order is composed from the caller's cart in three writes that the store
cannot make atomic:

1. mark the cart with ``checkout: {order_id, started_at}``
2. insert the order under the pre-allocated ``order_id``
3. empty the cart and drop the mark

A crash between 2 and 3 leaves a marked cart whose order exists. The next
``place_order`` for that user, or ``recover_checkouts`` at startup, finishes
the cleanup instead of creating a second order, taking out of the cart only
the quantities the order holds. A mark without an order is treated as a
checkout still running while it is younger than ``CHECKOUT_TIMEOUT_SECONDS``
(``place_order`` answers 409) and is dropped once older. Clients may also
send an idempotency key; a repeated key returns the order it created the
first time.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId

import config
from database import Store, oid, utcnow
from errors import ConflictOrInconsistency, EmptyCart
from pricing import compute_total, round_money
from schemas import Order

logger = logging.getLogger(__name__)


def _is_recent(started_at: Optional[datetime]) -> bool:
    if started_at is None:
        return False
    if started_at.tzinfo is None:
        # pymongo hands back naive UTC datetimes
        started_at = started_at.replace(tzinfo=timezone.utc)
    return utcnow() - started_at < timedelta(seconds=config.CHECKOUT_TIMEOUT_SECONDS)


class OrderComposer:
    def __init__(self, store: Store):
        self.store = store

    def place_order(self, user_id: Any, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        user_id = oid(user_id)
        if idempotency_key:
            existing = self.store.find_one("order", {"user_id": user_id, "idempotency_key": idempotency_key})
            if existing:
                logger.info("Order %s replayed for idempotency key %s", existing["_id"], idempotency_key)
                return self.expand(existing)

        cart = self.store.find_one("cart", {"user_id": user_id})
        if cart and cart.get("checkout"):
            finished = self._finish_checkout(cart)
            if finished:
                return self.expand(finished)
        if not cart or not cart.get("items"):
            raise EmptyCart()

        lines = [dict(line) for line in cart["items"]]
        self.store.populate(lines, "product", "product", ["price"])
        items = [
            {"product": line["product"]["_id"], "quantity": line["quantity"], "price": float(line["product"]["price"])}
            for line in lines
            if line["product"]
        ]
        if not items:
            raise EmptyCart()
        total = round_money(sum(item["price"] * item["quantity"] for item in items))

        order_id = ObjectId()
        self.store.update_by_id("cart", cart["_id"], {"checkout": {"order_id": order_id, "started_at": utcnow()}})
        order = Order(user_id=user_id, items=items, total_amount=total, idempotency_key=idempotency_key)
        self.store.create("order", order, _id=order_id)
        logger.info("Order %s created for user %s: %d line(s), total %.2f", order_id, user_id, len(items), total)
        self._empty_cart(cart["_id"])

        return self.expand(self.store.find_by_id("order", order_id))

    def _empty_cart(self, cart_id: ObjectId) -> None:
        self.store.update_by_id(
            "cart",
            cart_id,
            {
                "$set": {"items": [], "total_price": 0.0, "updated_at": utcnow()},
                "$unset": {"checkout": ""},
            },
        )

    def _finish_checkout(self, cart: Dict[str, Any], in_flight_ok: bool = False) -> Optional[Dict[str, Any]]:
        """Settle a checkout mark. Returns the marked order when it exists.

        Only the quantities snapshotted into that order are taken out of the
        cart; lines added since stay. A mark without an order younger than
        ``CHECKOUT_TIMEOUT_SECONDS`` belongs to a checkout still running and
        raises ``ConflictOrInconsistency`` unless ``in_flight_ok``.
        """
        mark = cart["checkout"]
        order_id = mark.get("order_id")
        order = self.store.find_by_id("order", order_id) if order_id else None
        if order:
            logger.warning("Cart %s still held items of order %s; removing them", cart["_id"], order_id)
            self._release_lines(cart, order["items"])
            return order
        if _is_recent(mark.get("started_at")):
            if in_flight_ok:
                return None
            raise ConflictOrInconsistency("Checkout already in progress, try again shortly")
        logger.warning("Dropping stale checkout mark on cart %s", cart["_id"])
        self.store.update_by_id("cart", cart["_id"], {"$unset": {"checkout": ""}})
        return None

    def _release_lines(self, cart: Dict[str, Any], ordered: List[Dict[str, Any]]) -> None:
        taken: Dict[ObjectId, int] = {}
        for item in ordered:
            taken[item["product"]] = taken.get(item["product"], 0) + int(item["quantity"])
        items = []
        for line in cart.get("items", []):
            left = int(line["quantity"]) - taken.pop(line["product"], 0)
            if left > 0:
                items.append({"product": line["product"], "quantity": left})
        self.store.update_by_id(
            "cart",
            cart["_id"],
            {
                "$set": {"items": items, "total_price": compute_total(self.store, items), "updated_at": utcnow()},
                "$unset": {"checkout": ""},
            },
        )

    def recover_checkouts(self) -> int:
        """Finish or discard every checkout left half done. Returns how many
        carts were touched."""
        touched = 0
        for cart in self.store.find("cart", {"checkout": {"$exists": True}}):
            order = self._finish_checkout(cart, in_flight_ok=True)
            if order or not _is_recent(cart["checkout"].get("started_at")):
                touched += 1
        if touched:
            logger.info("Recovered %d interrupted checkout(s)", touched)
        return touched

    def list_orders(self, user_id: Any) -> List[Dict[str, Any]]:
        orders = self.store.find("order", {"user_id": oid(user_id)}, sort=[("created_at", -1), ("_id", -1)])
        views = []
        for order in orders:
            view = self.expand(order)
            view["itemCount"] = len(order["items"])
            views.append(view)
        return views

    def expand(self, order: Dict[str, Any]) -> Dict[str, Any]:
        """Order lines with product title, first image and seller username.
        Prices are the stored snapshot, never the product's current price."""
        expanded = [dict(item) for item in order["items"]]
        self.store.populate(expanded, "product", "product", ["title", "images", "seller"])
        self.store.populate(expanded, "product.seller", "user", ["username"])
        lines = []
        for item, view in zip(order["items"], expanded):
            product = view["product"] or {}
            seller = product.get("seller") or {}
            images = product.get("images") or []
            lines.append({
                "product": {
                    "id": str(item["product"]),
                    "title": product.get("title"),
                    "price": item["price"],
                    "seller": seller.get("username") or "Unknown",
                    "image": images[0] if images else None,
                },
                "quantity": item["quantity"],
                "subtotal": round_money(item["price"] * item["quantity"]),
            })
        return {
            "orderId": str(order["_id"]),
            "items": lines,
            "totalAmount": order["total_amount"],
            "status": order["status"],
            "createdAt": order.get("created_at"),
        }
