import logging
from typing import Any, Dict, List

from pymongo import ReturnDocument
from pymongo.database import Database

from catalog import Catalog, find_variant_in
from database import utcnow
from errors import InsufficientStockError, NotFoundError, StockShortage
from schemas import AddToCartRequest, Cart, CartItem

logger = logging.getLogger("cartflow.carts")


def cart_response(cart: Cart) -> Dict[str, Any]:
    items = []
    for index, item in enumerate(cart.items):
        items.append({"index": index, **item.model_dump(), "subtotal": item.subtotal})
    return {
        "user_id": cart.user_id,
        "items": items,
        "total_quantity": cart.total_quantity,
        "subtotal": cart.subtotal,
    }


class CartStore:
    """Holds one cart per user. Every mutation loads the Cart aggregate, edits it, saves it."""

    def __init__(self, db: Database, catalog: Catalog):
        self.db = db
        self.carts = db["cart"]
        self.catalog = catalog

    def get_or_create(self, user_id: str) -> Cart:
        now = utcnow()
        doc = self.carts.find_one_and_update(
            {"user_id": user_id},
            {"$setOnInsert": {"user_id": user_id, "items": [], "created_at": now, "updated_at": now}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return Cart(user_id=doc["user_id"], items=doc.get("items", []))

    def _save(self, cart: Cart) -> Cart:
        self.carts.update_one(
            {"user_id": cart.user_id},
            {"$set": {"items": [i.model_dump() for i in cart.items], "updated_at": utcnow()}},
            upsert=True,
        )
        return cart

    def add_item(self, user_id: str, data: AddToCartRequest) -> Cart:
        product = self.catalog.find_by_id(data.product_id)
        variant = find_variant_in(product, data.variant_sku)
        if variant is None:
            raise NotFoundError("Variant", message=f"Variant with SKU {data.variant_sku} not found")

        cart = self.get_or_create(user_id)
        index = cart.find_line(data.product_id, data.variant_sku)
        requested = data.quantity if index is None else cart.items[index].quantity + data.quantity
        if variant.get("stock", 0) < requested:
            raise InsufficientStockError([
                StockShortage(data.product_id, data.variant_sku, product["name"], variant.get("stock", 0), requested)
            ])

        images = product.get("images") or []
        cart.add_line(CartItem(
            product_id=data.product_id,
            variant_sku=data.variant_sku,
            quantity=data.quantity,
            price_at_add=variant["price"],
            product_name=product["name"],
            product_image=images[0] if images else None,
            variant_size=variant["size"],
            variant_color=variant["color"],
        ))
        return self._save(cart)

    def update_item(self, user_id: str, index: int, quantity: int) -> Cart:
        cart = self.get_or_create(user_id)
        if not cart.has_line(index):
            raise NotFoundError("Cart item", message="Cart item not found")
        item = cart.items[index]
        variant = self.catalog.find_variant(item.product_id, item.variant_sku)
        if variant.get("stock", 0) < quantity:
            raise InsufficientStockError([
                StockShortage(item.product_id, item.variant_sku, item.product_name, variant.get("stock", 0), quantity)
            ])
        cart.set_quantity(index, quantity)
        return self._save(cart)

    def remove_item(self, user_id: str, index: int) -> Cart:
        cart = self.get_or_create(user_id)
        if not cart.has_line(index):
            raise NotFoundError("Cart item", message="Cart item not found")
        cart.remove_line(index)
        return self._save(cart)

    def clear(self, user_id: str) -> Cart:
        cart = self.get_or_create(user_id)
        cart.clear()
        return self._save(cart)

    def validate_stock(self, cart: Cart) -> List[StockShortage]:
        """Check every line against live stock and report all shortages.

        A product or variant that no longer exists counts as a shortage with nothing available.
        """
        shortages: List[StockShortage] = []
        for item in cart.items:
            try:
                product = self.catalog.find_by_id(item.product_id)
            except NotFoundError:
                product = None
            variant = find_variant_in(product, item.variant_sku) if product else None
            available = variant.get("stock", 0) if variant else 0
            if available < item.quantity:
                shortages.append(
                    StockShortage(item.product_id, item.variant_sku, item.product_name, available, item.quantity)
                )
        return shortages
