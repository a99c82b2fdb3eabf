"""
Order engine: registered and guest checkout, order numbering, listing, status changes,
cancellation and guest-order linking.

Checkout validates every line before touching anything, then reserves stock line by line
with the catalog's conditional decrement. When a reservation or the order insert fails, the
lines already reserved are handed back, so an order document only exists once all of its
stock is held. The cart is cleared last.
"""
import logging
import re
from datetime import datetime, time, timezone
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from addresses import AddressBook
from auth import find_user
from carts import CartStore
from catalog import Catalog, find_variant_in
from database import counter_value, create_document, next_sequence, paginate, to_object_id, to_str_id, utcnow
from errors import (
    AlreadyLinkedError,
    DuplicateOrderNumberError,
    EmptyCartError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    StockShortage,
)
from schemas import (
    CreateGuestOrderRequest,
    CreateOrderRequest,
    Order,
    OrderFilter,
    OrderItem,
    OrderStatus,
    ShippingAddress,
    UpdateOrderStatusRequest,
)

logger = logging.getLogger("cartflow.orders")

ORDER_NUMBER_PREFIX = "ORD"

# (product_id, variant_sku, quantity)
StockLine = Tuple[str, str, int]


def format_order_number(year: int, sequence: int) -> str:
    return f"{ORDER_NUMBER_PREFIX}-{year}-{sequence:05d}"


def parse_order_sequence(order_number: str) -> int:
    return int(order_number.split("-")[2])


def can_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    """Status rules: nothing leaves CANCELLED and CANCELLED is only reachable from PENDING.

    Any other status may be set from any non-cancelled status; admins are trusted to move
    orders backwards when needed.
    """
    current = OrderStatus(current)
    requested = OrderStatus(requested)
    if current == OrderStatus.CANCELLED:
        return False
    if requested == OrderStatus.CANCELLED:
        return current == OrderStatus.PENDING
    return True


def order_response(order: Dict[str, Any]) -> Dict[str, Any]:
    out = to_str_id(order)
    out["is_guest"] = order.get("user_id") is None
    return out


def order_list_item(order: Dict[str, Any]) -> Dict[str, Any]:
    shipping = order.get("shipping_address") or {}
    return {
        "id": str(order["_id"]),
        "order_number": order["order_number"],
        "customer_name": shipping.get("full_name"),
        "customer_email": shipping.get("email"),
        "items_count": len(order.get("items", [])),
        "total": order["total"],
        "status": order["status"],
        "payment_status": order["payment_status"],
        "is_guest": order.get("user_id") is None,
        "created_at": order.get("created_at"),
    }


class OrderEngine:
    def __init__(self, db: Database, catalog: Catalog, carts: CartStore, addresses: AddressBook):
        self.db = db
        self.orders = db["order"]
        self.catalog = catalog
        self.carts = carts
        self.addresses = addresses

    # -------------------- Order numbers --------------------

    def next_order_number(self, now: Optional[datetime] = None) -> str:
        """Next ORD-<year>-<seq> from the year's atomic counter.

        A year's counter starts after the highest order number already stored for that year.
        """
        year = (now or utcnow()).year
        key = f"order-{year}"
        floor = 0
        if counter_value(self.db, key) is None:
            floor = self._highest_sequence(year)
        return format_order_number(year, next_sequence(self.db, key, floor=floor))

    def _highest_sequence(self, year: int) -> int:
        last = self.orders.find_one(
            {"order_number": {"$regex": f"^{ORDER_NUMBER_PREFIX}-{year}-"}},
            sort=[("order_number", -1)],
        )
        return parse_order_sequence(last["order_number"]) if last else 0

    # -------------------- Stock reservation --------------------

    def _reserve(self, lines: List[StockLine]) -> None:
        reserved: List[StockLine] = []
        try:
            for product_id, sku, quantity in lines:
                self.catalog.decrease_stock(product_id, sku, quantity)
                reserved.append((product_id, sku, quantity))
        except Exception:
            self._release(reserved)
            raise

    def _release(self, lines: List[StockLine]) -> None:
        for product_id, sku, quantity in lines:
            try:
                self.catalog.increase_stock(product_id, sku, quantity)
            except Exception:
                logger.exception("Could not give back %d x %s of product %s", quantity, sku, product_id)
        if lines:
            logger.warning("Released stock for %d line(s) after a failed checkout", len(lines))

    def _place(self, lines: List[StockLine], **fields) -> Dict[str, Any]:
        self._reserve(lines)
        order_number = None
        try:
            order_number = self.next_order_number()
            order_id = create_document(self.db, "order", Order(order_number=order_number, **fields))
        except DuplicateKeyError:
            self._release(lines)
            raise DuplicateOrderNumberError(order_number or "")
        except Exception:
            self._release(lines)
            raise
        return self.orders.find_one({"_id": to_object_id(order_id)})

    # -------------------- Checkout --------------------

    def create(self, user_id: str, data: CreateOrderRequest) -> Dict[str, Any]:
        """Turn the user's whole cart into one order."""
        cart = self.carts.get_or_create(user_id)
        if not cart.items:
            raise EmptyCartError()

        shortages = self.carts.validate_stock(cart)
        if shortages:
            raise InsufficientStockError(shortages)

        address = self.addresses.find_by_id(data.address_id, user_id)
        user = find_user(self.db, user_id)

        items = [
            OrderItem(
                product_id=line.product_id,
                variant_sku=line.variant_sku,
                product_name=line.product_name,
                product_image=line.product_image,
                variant_size=line.variant_size,
                variant_color=line.variant_color,
                quantity=line.quantity,
                price=line.price_at_add,
                subtotal=line.quantity * line.price_at_add,
            )
            for line in cart.items
        ]
        subtotal = sum(item.subtotal for item in items)
        shipping_cost = data.shipping_cost or 0

        order = self._place(
            [(i.product_id, i.variant_sku, i.quantity) for i in items],
            user_id=user_id,
            items=items,
            shipping_address=ShippingAddress(
                full_name=address["full_name"],
                email=user["email"],
                street=address["street"],
                city=address["city"],
                state=address["state"],
                zip_code=address["zip_code"],
                country=address["country"],
                phone=address["phone"],
            ),
            subtotal=subtotal,
            shipping_cost=shipping_cost,
            total=subtotal + shipping_cost,
            payment_method=data.payment_method,
            notes=data.notes,
        )
        self.carts.clear(user_id)
        logger.info("Order %s placed by user %s, total %.2f", order["order_number"], user_id, order["total"])
        return order

    def create_guest(self, data: CreateGuestOrderRequest) -> Dict[str, Any]:
        """Place an order without an account. Lines are priced at the product's base price."""
        if not data.cart:
            raise EmptyCartError()

        items: List[OrderItem] = []
        shortages: List[StockShortage] = []
        for line in data.cart:
            product = self.catalog.find_by_id(line.product_id)
            variant = find_variant_in(product, line.variant_sku)
            if variant is None:
                raise NotFoundError(
                    "Variant", message=f"Variant {line.variant_sku} not found for product {product['name']}"
                )
            if variant.get("stock", 0) < line.quantity:
                shortages.append(StockShortage(
                    line.product_id, line.variant_sku, product["name"], variant.get("stock", 0), line.quantity
                ))
            price = product["base_price"]
            images = product.get("images") or []
            items.append(OrderItem(
                product_id=line.product_id,
                variant_sku=line.variant_sku,
                product_name=product["name"],
                product_image=images[0] if images else None,
                variant_size=variant["size"],
                variant_color=variant["color"],
                quantity=line.quantity,
                price=price,
                subtotal=price * line.quantity,
            ))
        if shortages:
            raise InsufficientStockError(shortages)

        subtotal = sum(item.subtotal for item in items)
        shipping_cost = data.shipping_cost or 0
        address = data.shipping_address
        order = self._place(
            [(i.product_id, i.variant_sku, i.quantity) for i in items],
            user_id=None,
            items=items,
            shipping_address=ShippingAddress(
                **address.model_dump(exclude={"email"}),
                email=address.email or data.email,
            ),
            subtotal=subtotal,
            shipping_cost=shipping_cost,
            total=subtotal + shipping_cost,
            payment_method=data.payment_method,
            notes=data.notes,
        )
        logger.info("Guest order %s placed for %s, total %.2f", order["order_number"], data.email, order["total"])
        return order

    # -------------------- Queries --------------------

    def list(self, user_id: str, is_admin: bool, filters: OrderFilter) -> Dict[str, Any]:
        clauses: List[Dict[str, Any]] = []
        if not is_admin:
            clauses.append({"user_id": user_id})
        if filters.is_guest is not None:
            clauses.append({"user_id": None} if filters.is_guest else {"user_id": {"$ne": None}})
        if filters.search:
            clauses.append({"order_number": {"$regex": re.escape(filters.search), "$options": "i"}})
        if filters.status:
            clauses.append({"status": filters.status.value})
        if filters.payment_status:
            clauses.append({"payment_status": filters.payment_status.value})
        if filters.date_from or filters.date_to:
            created: Dict[str, datetime] = {}
            if filters.date_from:
                created["$gte"] = datetime.combine(filters.date_from, time.min, tzinfo=timezone.utc)
            if filters.date_to:
                created["$lte"] = datetime.combine(filters.date_to, time.max, tzinfo=timezone.utc)
            clauses.append({"created_at": created})

        query = {"$and": clauses} if clauses else {}
        orders, pagination = paginate(
            self.db, "order", query, filters.page, filters.limit, sort=[("created_at", -1)]
        )
        return {"orders": [order_list_item(o) for o in orders], "pagination": pagination}

    def get(self, order_id: str, user_id: str, is_admin: bool) -> Dict[str, Any]:
        query: Dict[str, Any] = {"_id": to_object_id(order_id)}
        if not is_admin:
            query["user_id"] = user_id
        order = self.orders.find_one(query)
        if not order:
            raise NotFoundError("Order", message="Order not found")
        return order

    # -------------------- Status --------------------

    def update_status(self, order_id: str, data: UpdateOrderStatusRequest) -> Dict[str, Any]:
        order = self.orders.find_one({"_id": to_object_id(order_id)})
        if not order:
            raise NotFoundError("Order", message="Order not found")
        current = OrderStatus(order["status"])
        if current == OrderStatus.CANCELLED:
            raise InvalidStateError(
                "Cannot update status of cancelled order", current=current.value, requested=data.status.value
            )
        if not can_transition(current, data.status):
            raise InvalidStateError(
                "Only pending orders can be cancelled", current=current.value, requested=data.status.value
            )

        extra: Dict[str, Any] = {}
        if data.payment_status:
            extra["payment_status"] = data.payment_status.value
        if data.status == OrderStatus.CANCELLED:
            return self._cancel(order, extra)

        updated = self.orders.find_one_and_update(
            {"_id": order["_id"], "status": {"$ne": OrderStatus.CANCELLED.value}},
            {"$set": {"status": data.status.value, "updated_at": utcnow(), **extra}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise InvalidStateError("Cannot update status of cancelled order", requested=data.status.value)
        logger.info("Order %s moved from %s to %s", order["order_number"], current.value, data.status.value)
        return updated

    def cancel(self, order_id: str, user_id: str) -> Dict[str, Any]:
        order = self.get(order_id, user_id, is_admin=False)
        if order["status"] != OrderStatus.PENDING.value:
            raise InvalidStateError("Only pending orders can be cancelled", current=order["status"])
        return self._cancel(order)

    def _cancel(self, order: Dict[str, Any], extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        # The status flip is conditional, so two racing cancellations refund only once.
        updated = self.orders.find_one_and_update(
            {"_id": order["_id"], "status": OrderStatus.PENDING.value},
            {"$set": {"status": OrderStatus.CANCELLED.value, "updated_at": utcnow(), **(extra or {})}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise InvalidStateError("Only pending orders can be cancelled")
        for item in updated["items"]:
            try:
                self.catalog.increase_stock(item["product_id"], item["variant_sku"], item["quantity"])
            except NotFoundError:
                logger.warning(
                    "Order %s: %s of product %s no longer exists, stock not returned",
                    updated["order_number"], item["variant_sku"], item["product_id"],
                )
        logger.info("Order %s cancelled, stock returned for %d line(s)", updated["order_number"], len(updated["items"]))
        return updated

    # -------------------- Guest linking --------------------

    def ensure_linkable(self, order_id: str) -> Dict[str, Any]:
        """Check that a guest order exists and belongs to nobody yet."""
        order = self.orders.find_one({"_id": to_object_id(order_id)})
        if not order:
            raise NotFoundError("Order", order_id)
        if order.get("user_id") is not None:
            raise AlreadyLinkedError(order_id)
        return order

    def find_guest_order_for(self, order_id: str, email: str) -> Dict[str, Any]:
        """Return the order whose shipping email is `email`; to any other caller the order is missing."""
        order = self.orders.find_one({"_id": to_object_id(order_id)})
        placed_with = (order or {}).get("shipping_address", {}).get("email") or ""
        if not order or placed_with.lower() != email.lower():
            raise NotFoundError("Order", order_id)
        return order

    def link_guest_order(self, order_id: str, user_id: str) -> Tuple[Dict[str, Any], Dict[str, Any], bool]:
        """Attach a guest order to `user_id`.

        Returns the order, its shipping address snapshot, and whether this call made the link.
        Linking again to the same user is a no-op; linking to another user raises AlreadyLinkedError.
        """
        oid = to_object_id(order_id)
        order = self.orders.find_one({"_id": oid})
        if not order:
            raise NotFoundError("Order", order_id)

        if order.get("user_id") is None:
            linked = self.orders.find_one_and_update(
                {"_id": oid, "user_id": None},
                {"$set": {"user_id": user_id, "updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
            if linked is not None:
                logger.info("Guest order %s linked to user %s", linked["order_number"], user_id)
                return linked, linked["shipping_address"], True
            order = self.orders.find_one({"_id": oid})

        if order.get("user_id") == user_id:
            return order, order["shipping_address"], False
        raise AlreadyLinkedError(order_id)
