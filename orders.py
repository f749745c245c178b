"""
Order pricing and placement.
"""

import logging
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.database import Database

from database import now
from schemas import Order, OrderItem

logger = logging.getLogger(__name__)


class InvalidProductId(ValueError):
    pass


class ProductNotFound(LookupError):
    pass


def price_order(lines: Sequence[Tuple[str, int]],
                products: Mapping[str, Mapping[str, Any]]) -> Tuple[List[OrderItem], float, float]:
    """
    Price each (product_id, quantity) line against `products`, keyed by id.

    Returns the order items with their amount and discount filled in, the
    total amount due (sum of amount - discount) and the total discount.
    """
    items: List[OrderItem] = []
    total_amount = 0.0
    total_discount = 0.0
    for product_id, quantity in lines:
        product = products.get(product_id)
        if product is None:
            raise ProductNotFound(f"product not found: {product_id}")

        amount = float(product["price"]) * quantity
        discount = amount * float(product.get("discount", 0)) / 100
        total_amount += amount - discount
        total_discount += discount

        items.append(OrderItem(product=product_id, quantity=quantity, amount=amount, discount=discount))
    return items, total_amount, total_discount


def create_order(database: Database, owner_id: str, lines: Sequence[Tuple[str, int]]) -> Dict[str, Any]:
    """
    Resolve every product, price the order and insert it.

    All products are loaded before the single insert, so a bad or unknown id
    leaves the order collection untouched. Ids are stored in their canonical
    lowercase hex form, however the client spelled them.
    """
    resolved: List[Tuple[ObjectId, int]] = []
    for product_id, quantity in lines:
        try:
            resolved.append((ObjectId(product_id), quantity))
        except (InvalidId, TypeError):
            raise InvalidProductId(f"Invalid product id: {product_id}")

    ids = [oid for oid, _ in resolved]
    products = {str(p["_id"]): p for p in database["product"].find({"_id": {"$in": ids}})}
    items, total_amount, total_discount = price_order([(str(oid), qty) for oid, qty in resolved], products)

    order = Order(owner=owner_id, items=items, total_amount=total_amount, total_discount=total_discount)
    doc = order.model_dump()
    doc["_id"] = ObjectId()
    doc["created_at"] = now()
    doc["updated_at"] = doc["created_at"]

    database["order"].insert_one(doc)
    logger.info("order %s placed by %s: %d items, total %.2f", doc["_id"], owner_id, len(items), total_amount)
    return doc
