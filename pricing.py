import logging
from typing import Any, Dict, Iterable

from database import Store

logger = logging.getLogger(__name__)


def round_money(amount: float) -> float:
    return round(float(amount), 2)


def compute_total(store: Store, lines: Iterable[Dict[str, Any]]) -> float:
    """Sum ``price * quantity`` over cart lines using each product's current
    stored price.

    A line whose product no longer exists contributes nothing; the line itself
    is left in place. The result is not rounded.
    """
    total = 0.0
    for line in lines:
        product = store.find_by_id("product", line["product"], ["price"])
        if not product:
            logger.warning("Cart line references missing product %s, priced at 0", line["product"])
            continue
        total += float(product.get("price", 0)) * int(line["quantity"])
    return total
