"""
Catalog store: products, their variants and variant stock.

Stock changes are single conditional updates on the product document, so a decrement
either applies in full or leaves the variant untouched.
"""
import logging
import re
import time
from typing import Any, Dict, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, paginate, to_object_id, utcnow
from errors import (
    ConflictError,
    InsufficientStockError,
    InvalidRequestError,
    NotFoundError,
    StockShortage,
)
from schemas import (
    Product,
    ProductColor,
    ProductCreate,
    ProductFilter,
    ProductSize,
    ProductStatus,
    ProductUpdate,
    ProductVariant,
    VariantInput,
    VariantUpdate,
)

logger = logging.getLogger("cartflow.catalog")

COLOR_CODES = {
    ProductColor.BLACK: "BLK",
    ProductColor.WHITE: "WHT",
    ProductColor.GRAY: "GRY",
    ProductColor.NAVY: "NVY",
    ProductColor.RED: "RED",
    ProductColor.BLUE: "BLU",
}


def generate_sku(product_name: str, size: ProductSize, color: ProductColor) -> str:
    product_code = "".join(word[:2].upper() for word in product_name.split())
    size = ProductSize(size)
    color = ProductColor(color)
    return f"{product_code}-{size.value.upper()}-{COLOR_CODES[color]}"


def generate_unique_sku(product_name: str, size: ProductSize, color: ProductColor,
                        now_ms: Optional[int] = None) -> str:
    """SKU from name, size and color, suffixed with the last 4 digits of the millisecond clock."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{generate_sku(product_name, size, color)}-{str(now_ms)[-4:]}"


def find_variant_in(product: Dict[str, Any], sku: str) -> Optional[Dict[str, Any]]:
    for variant in product.get("variants", []):
        if variant.get("sku") == sku:
            return variant
    return None


def _regex(text: str) -> Dict[str, str]:
    return {"$regex": re.escape(text), "$options": "i"}


class Catalog:
    def __init__(self, db: Database):
        self.db = db
        self.products = db["product"]

    # -------------------- Lookup --------------------

    def find_by_id(self, product_id: str) -> Dict[str, Any]:
        product = self.products.find_one({"_id": to_object_id(product_id)})
        if not product:
            raise NotFoundError("Product", message="Product not found")
        return product

    def find_active_by_id(self, product_id: str) -> Dict[str, Any]:
        product = self.products.find_one({"_id": to_object_id(product_id), "status": ProductStatus.ACTIVE.value})
        if not product:
            raise NotFoundError("Product", message="Product not found or not available")
        return product

    def find_by_code(self, code: str) -> Dict[str, Any]:
        product = self.products.find_one({"code": code})
        if not product:
            raise NotFoundError("Product", message=f"Product with code {code} not found")
        return product

    def find_variant(self, product_id: str, sku: str) -> Dict[str, Any]:
        product = self.find_by_id(product_id)
        return self._variant_or_404(product, sku)

    def _variant_or_404(self, product: Dict[str, Any], sku: str) -> Dict[str, Any]:
        variant = find_variant_in(product, sku)
        if variant is None:
            raise NotFoundError("Variant", message=f"Variant with SKU {sku} not found")
        return variant

    def list(self, filters: ProductFilter, active_only: bool = False) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if active_only:
            query["status"] = ProductStatus.ACTIVE.value
        elif filters.status:
            query["status"] = filters.status.value
        if filters.category:
            query["category"] = filters.category
        if filters.code and not active_only:
            query["code"] = _regex(filters.code)
        if filters.tag:
            query["tags"] = filters.tag
        if filters.size:
            query["variants.size"] = filters.size.value
        if filters.color:
            query["variants.color"] = filters.color.value
        if filters.search:
            query["$or"] = [
                {"code": _regex(filters.search)},
                {"name": _regex(filters.search)},
                {"description": _regex(filters.search)},
            ]
        products, pagination = paginate(
            self.db, "product", query, filters.page, filters.limit, sort=[("created_at", -1)]
        )
        return {"products": products, "pagination": pagination}

    def list_active(self, filters: ProductFilter) -> Dict[str, Any]:
        return self.list(filters, active_only=True)

    # -------------------- Product writes --------------------

    def create(self, data: ProductCreate) -> Dict[str, Any]:
        if self.products.find_one({"code": data.code}):
            raise ConflictError("Product with this code already exists")
        variants = [self._new_variant(data.name, v) for v in data.variants]
        product = Product(**data.model_dump(exclude={"variants"}), variants=variants)
        try:
            product_id = create_document(self.db, "product", product)
        except DuplicateKeyError:
            raise ConflictError("Product with this code already exists")
        logger.info("Product %s created with %d variants", data.code, len(variants))
        return self.find_by_id(product_id)

    def _new_variant(self, product_name: str, data: VariantInput) -> ProductVariant:
        return ProductVariant(**data.model_dump(), sku=generate_unique_sku(product_name, data.size, data.color))

    def update(self, product_id: str, data: ProductUpdate) -> Dict[str, Any]:
        existing = self.find_by_id(product_id)
        changes = data.model_dump(mode="json", exclude_unset=True, exclude={"variants"})
        if data.code and data.code != existing.get("code"):
            if self.products.find_one({"code": data.code}):
                raise ConflictError("Product with this code already exists")
        if data.variants:
            name = data.name or existing["name"]
            changes["variants"] = [self._new_variant(name, v).model_dump(mode="json") for v in data.variants]
        changes["updated_at"] = utcnow()
        try:
            self.products.update_one({"_id": existing["_id"]}, {"$set": changes})
        except DuplicateKeyError:
            raise ConflictError("Product with this code already exists")
        return self.find_by_id(product_id)

    def _set_status(self, product_id: str, status: ProductStatus) -> Dict[str, Any]:
        product = self.find_by_id(product_id)
        if product.get("status") == status.value:
            raise ConflictError(f"Product is already {status.value}")
        self.products.update_one(
            {"_id": product["_id"]}, {"$set": {"status": status.value, "updated_at": utcnow()}}
        )
        return self.find_by_id(product_id)

    def activate(self, product_id: str) -> Dict[str, Any]:
        return self._set_status(product_id, ProductStatus.ACTIVE)

    def deactivate(self, product_id: str) -> Dict[str, Any]:
        return self._set_status(product_id, ProductStatus.INACTIVE)

    # -------------------- Variant writes --------------------

    def add_variant(self, product_id: str, data: VariantInput) -> Dict[str, Any]:
        product = self.find_by_id(product_id)
        for v in product.get("variants", []):
            if v.get("size") == data.size.value and v.get("color") == data.color.value:
                raise ConflictError(
                    f"Variant with size {data.size.value} and color {data.color.value} already exists"
                )
        variant = self._new_variant(product["name"], data)
        self.products.update_one(
            {"_id": product["_id"]},
            {"$push": {"variants": variant.model_dump(mode="json")}, "$set": {"updated_at": utcnow()}},
        )
        return self.find_by_id(product_id)

    def update_variant(self, product_id: str, sku: str, data: VariantUpdate) -> Dict[str, Any]:
        product = self.find_by_id(product_id)
        self._variant_or_404(product, sku)
        changes = {f"variants.$.{k}": v for k, v in data.model_dump(exclude_none=True).items()}
        if changes:
            self.products.update_one({"_id": product["_id"], "variants.sku": sku}, {"$set": changes})
        return self.find_by_id(product_id)

    def set_variant_stock(self, product_id: str, sku: str, stock: int) -> Dict[str, Any]:
        if stock < 0:
            raise InvalidRequestError("Stock cannot be negative")
        return self.update_variant(product_id, sku, VariantUpdate(stock=stock))

    def remove_variant(self, product_id: str, sku: str) -> Dict[str, Any]:
        product = self.find_by_id(product_id)
        self._variant_or_404(product, sku)
        if len(product.get("variants", [])) == 1:
            raise InvalidRequestError(
                "Cannot remove the last variant. A product must have at least one variant."
            )
        self.products.update_one(
            {"_id": product["_id"]},
            {"$pull": {"variants": {"sku": sku}}, "$set": {"updated_at": utcnow()}},
        )
        return self.find_by_id(product_id)

    # -------------------- Stock --------------------

    def check_availability(self, product_id: str, sku: str, quantity: int) -> bool:
        return self.find_variant(product_id, sku).get("stock", 0) >= quantity

    def decrease_stock(self, product_id: str, sku: str, quantity: int) -> None:
        """Take `quantity` units from a variant, or fail leaving its stock unchanged."""
        if quantity <= 0:
            raise InvalidRequestError("Quantity must be positive")
        result = self.products.update_one(
            {
                "_id": to_object_id(product_id),
                "variants": {"$elemMatch": {"sku": sku, "stock": {"$gte": quantity}}},
            },
            {"$inc": {"variants.$.stock": -quantity}, "$set": {"updated_at": utcnow()}},
        )
        if result.matched_count == 1:
            return
        product = self.find_by_id(product_id)
        variant = self._variant_or_404(product, sku)
        raise InsufficientStockError([
            StockShortage(str(product["_id"]), sku, product["name"], variant.get("stock", 0), quantity)
        ])

    def increase_stock(self, product_id: str, sku: str, quantity: int) -> None:
        if quantity <= 0:
            raise InvalidRequestError("Quantity must be positive")
        result = self.products.update_one(
            {"_id": to_object_id(product_id), "variants.sku": sku},
            {"$inc": {"variants.$.stock": quantity}, "$set": {"updated_at": utcnow()}},
        )
        if result.matched_count == 0:
            self.find_variant(product_id, sku)
