"""Tests for the order engine: checkout, numbering, status changes and listing."""

from datetime import date, datetime, timezone

import pytest

from conftest import address_data, sku_of, stock_of
from database import utcnow
from errors import (
    DuplicateOrderNumberError,
    EmptyCartError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
)
from orders import can_transition, format_order_number, parse_order_sequence
from schemas import (
    AddToCartRequest,
    CreateGuestOrderRequest,
    CreateOrderRequest,
    GuestCartItem,
    OrderFilter,
    OrderStatus,
    UpdateOrderStatusRequest,
    VariantUpdate,
)


@pytest.fixture
def shopper(make_user, addresses):
    user = make_user()
    address = addresses.create(str(user["_id"]), address_data())
    return str(user["_id"]), str(address["_id"])


def add(carts, user_id, product, quantity, size="m", color="black"):
    carts.add_item(user_id, AddToCartRequest(
        product_id=str(product["_id"]), variant_sku=sku_of(product, size, color), quantity=quantity
    ))


def guest_request(*lines, shipping_cost=0.0, email="guest@example.com", address_email=None):
    shipping = address_data().model_dump(exclude={"is_default"})
    shipping["email"] = address_email
    return CreateGuestOrderRequest(
        email=email,
        cart=[GuestCartItem(product_id=p, variant_sku=s, quantity=q) for p, s, q in lines],
        shipping_address=shipping,
        payment_method="pix",
        shipping_cost=shipping_cost,
    )


class TestCheckout:
    def test_cart_to_order(self, db, catalog, carts, orders, shopper, make_product):
        user_id, address_id = shopper
        product = make_product(variants=[("m", "black", 10, 50.0)])
        add(carts, user_id, product, 2)

        order = orders.create(user_id, CreateOrderRequest(address_id=address_id, payment_method="pix", shipping_cost=10))

        assert order["subtotal"] == 100.0
        assert order["total"] == 110.0
        assert order["status"] == OrderStatus.PENDING.value
        assert order["payment_status"] == "pending"
        assert order["user_id"] == user_id
        assert carts.get_or_create(user_id).items == []
        assert stock_of(catalog, product, sku_of(product)) == 8

    def test_snapshots_address_and_email(self, db, carts, orders, shopper, make_product):
        user_id, address_id = shopper
        add(carts, user_id, make_product(), 1)
        order = orders.create(user_id, CreateOrderRequest(address_id=address_id, payment_method="credit_card"))
        user = db["user"].find_one()
        assert order["shipping_address"]["email"] == user["email"]
        assert order["shipping_address"]["street"] == "Rua das Flores, 100"
        assert order["shipping_cost"] == 0

    def test_totals_add_up(self, carts, orders, shopper, make_product):
        user_id, address_id = shopper
        add(carts, user_id, make_product(variants=[("m", "black", 10, 19.9)]), 3)
        add(carts, user_id, make_product(name="Navy Hoodie", variants=[("g", "navy", 10, 89.99)]), 2, "g", "navy")
        order = orders.create(user_id, CreateOrderRequest(address_id=address_id, payment_method="pix", shipping_cost=7.5))

        for item in order["items"]:
            assert item["subtotal"] == item["quantity"] * item["price"]
        assert order["subtotal"] == sum(item["subtotal"] for item in order["items"])
        assert order["total"] == order["subtotal"] + order["shipping_cost"]

    def test_uses_price_at_add(self, catalog, carts, orders, shopper, make_product):
        user_id, address_id = shopper
        product = make_product(variants=[("m", "black", 10, 50.0)])
        add(carts, user_id, product, 1)
        catalog.update_variant(str(product["_id"]), sku_of(product), VariantUpdate(price=75.0))
        order = orders.create(user_id, CreateOrderRequest(address_id=address_id, payment_method="pix"))
        assert order["items"][0]["price"] == 50.0

    def test_empty_cart(self, orders, shopper):
        user_id, address_id = shopper
        with pytest.raises(EmptyCartError):
            orders.create(user_id, CreateOrderRequest(address_id=address_id, payment_method="pix"))

    def test_shortages_are_batched_and_nothing_changes(self, db, catalog, carts, orders, shopper, make_product):
        user_id, address_id = shopper
        first = make_product(variants=[("m", "black", 5, 50.0)])
        second = make_product(name="Navy Hoodie", variants=[("g", "navy", 5, 90.0)])
        add(carts, user_id, first, 3)
        add(carts, user_id, second, 4, "g", "navy")
        catalog.set_variant_stock(str(first["_id"]), sku_of(first), 1)
        catalog.set_variant_stock(str(second["_id"]), sku_of(second, "g", "navy"), 2)

        with pytest.raises(InsufficientStockError) as exc_info:
            orders.create(user_id, CreateOrderRequest(address_id=address_id, payment_method="pix"))

        assert len(exc_info.value.errors) == 2
        assert db["order"].count_documents({}) == 0
        assert len(carts.get_or_create(user_id).items) == 2
        assert stock_of(catalog, first, sku_of(first)) == 1

    def test_foreign_address(self, carts, orders, shopper, make_user, addresses, make_product):
        user_id, _ = shopper
        stranger = make_user()
        foreign = addresses.create(str(stranger["_id"]), address_data())
        add(carts, user_id, make_product(), 1)
        with pytest.raises(NotFoundError):
            orders.create(user_id, CreateOrderRequest(address_id=str(foreign["_id"]), payment_method="pix"))


class TestReservation:
    def test_lost_race_releases_earlier_lines(self, db, catalog, carts, orders, shopper, make_product, monkeypatch):
        user_id, address_id = shopper
        first = make_product(variants=[("m", "black", 5, 50.0)])
        second = make_product(name="Navy Hoodie", variants=[("g", "navy", 5, 90.0)])
        add(carts, user_id, first, 2)
        add(carts, user_id, second, 2, "g", "navy")
        # Stock drops after validation, as if another checkout got there first.
        monkeypatch.setattr(carts, "validate_stock", lambda cart: [])
        catalog.set_variant_stock(str(second["_id"]), sku_of(second, "g", "navy"), 1)

        with pytest.raises(InsufficientStockError):
            orders.create(user_id, CreateOrderRequest(address_id=address_id, payment_method="pix"))

        assert stock_of(catalog, first, sku_of(first)) == 5
        assert stock_of(catalog, second, sku_of(second, "g", "navy")) == 1
        assert db["order"].count_documents({}) == 0
        assert len(carts.get_or_create(user_id).items) == 2

    def test_failed_insert_releases_all_lines(self, db, catalog, carts, orders, shopper, make_product, monkeypatch):
        user_id, address_id = shopper
        product = make_product(variants=[("m", "black", 5, 50.0)])
        add(carts, user_id, product, 2)

        def broken_number(now=None):
            raise RuntimeError("counter unavailable")

        monkeypatch.setattr(orders, "next_order_number", broken_number)
        with pytest.raises(RuntimeError):
            orders.create(user_id, CreateOrderRequest(address_id=address_id, payment_method="pix"))

        assert stock_of(catalog, product, sku_of(product)) == 5
        assert len(carts.get_or_create(user_id).items) == 1

    def test_duplicate_number_is_a_conflict(self, db, catalog, carts, orders, shopper, make_product, monkeypatch):
        user_id, address_id = shopper
        product = make_product(variants=[("m", "black", 5, 50.0)])
        add(carts, user_id, product, 1)
        orders.create(user_id, CreateOrderRequest(address_id=address_id, payment_method="pix"))
        taken = db["order"].find_one()["order_number"]

        add(carts, user_id, product, 1)
        monkeypatch.setattr(orders, "next_order_number", lambda now=None: taken)
        with pytest.raises(DuplicateOrderNumberError):
            orders.create(user_id, CreateOrderRequest(address_id=address_id, payment_method="pix"))
        assert stock_of(catalog, product, sku_of(product)) == 4


class TestGuestCheckout:
    def test_priced_at_base_price(self, catalog, orders, make_product):
        product = make_product(base_price=70.0, variants=[("g", "white", 3, 85.0)])
        sku = sku_of(product, "g", "white")
        order = orders.create_guest(guest_request((str(product["_id"]), sku, 2), shipping_cost=15))

        assert order["user_id"] is None
        assert order["items"][0]["price"] == 70.0
        assert order["subtotal"] == 140.0
        assert order["total"] == 155.0
        assert order["shipping_address"]["email"] == "guest@example.com"
        assert stock_of(catalog, product, sku) == 1

    def test_address_email_wins(self, orders, make_product):
        product = make_product()
        order = orders.create_guest(guest_request(
            (str(product["_id"]), sku_of(product), 1), address_email="ship@example.com"
        ))
        assert order["shipping_address"]["email"] == "ship@example.com"

    def test_out_of_stock_creates_nothing(self, db, catalog, orders, make_product):
        product = make_product(base_price=70.0, variants=[("g", "white", 0, 70.0)])
        sku = sku_of(product, "g", "white")
        with pytest.raises(InsufficientStockError):
            orders.create_guest(guest_request((str(product["_id"]), sku, 1)))
        assert db["order"].count_documents({}) == 0
        assert stock_of(catalog, product, sku) == 0

    def test_unknown_variant(self, orders, make_product):
        product = make_product()
        with pytest.raises(NotFoundError):
            orders.create_guest(guest_request((str(product["_id"]), "NOPE-M-BLK", 1)))

    def test_empty_cart(self, orders):
        with pytest.raises(EmptyCartError):
            orders.create_guest(guest_request())


class TestOrderNumbers:
    def test_format(self):
        assert format_order_number(2025, 7) == "ORD-2025-00007"
        assert parse_order_sequence("ORD-2025-00042") == 42

    def test_sequential_within_a_year(self, orders):
        now = datetime(2025, 3, 1, tzinfo=timezone.utc)
        numbers = [orders.next_order_number(now) for _ in range(3)]
        assert numbers == ["ORD-2025-00001", "ORD-2025-00002", "ORD-2025-00003"]

    def test_years_have_separate_sequences(self, orders):
        orders.next_order_number(datetime(2025, 12, 31, tzinfo=timezone.utc))
        assert orders.next_order_number(datetime(2026, 1, 1, tzinfo=timezone.utc)) == "ORD-2026-00001"

    def test_continues_after_existing_orders(self, db, orders):
        db["order"].insert_many([{"order_number": "ORD-2025-00041"}, {"order_number": "ORD-2024-00900"}])
        assert orders.next_order_number(datetime(2025, 6, 1, tzinfo=timezone.utc)) == "ORD-2025-00042"
        assert orders.next_order_number(datetime(2025, 6, 1, tzinfo=timezone.utc)) == "ORD-2025-00043"

    def test_placed_orders_are_numbered_in_sequence(self, carts, orders, shopper, make_product):
        user_id, address_id = shopper
        product = make_product(variants=[("m", "black", 10, 50.0)])
        placed = []
        for _ in range(3):
            add(carts, user_id, product, 1)
            placed.append(orders.create(user_id, CreateOrderRequest(address_id=address_id, payment_method="pix")))
        sequences = [parse_order_sequence(o["order_number"]) for o in placed]
        assert sequences == [1, 2, 3]
        assert placed[0]["order_number"].startswith(f"ORD-{utcnow().year}-")


@pytest.fixture
def placed_order(carts, orders, shopper, make_product):
    user_id, address_id = shopper
    product = make_product(variants=[("m", "black", 10, 50.0), ("g", "black", 10, 55.0)])
    add(carts, user_id, product, 2)
    add(carts, user_id, product, 3, "g", "black")
    order = orders.create(user_id, CreateOrderRequest(address_id=address_id, payment_method="pix"))
    return user_id, product, order


class TestCancel:
    def test_cancel_restores_every_line(self, catalog, orders, placed_order):
        user_id, product, order = placed_order
        assert stock_of(catalog, product, sku_of(product, "m", "black")) == 8

        cancelled = orders.cancel(str(order["_id"]), user_id)

        assert cancelled["status"] == OrderStatus.CANCELLED.value
        assert stock_of(catalog, product, sku_of(product, "m", "black")) == 10
        assert stock_of(catalog, product, sku_of(product, "g", "black")) == 10

    def test_second_cancel_fails(self, catalog, orders, placed_order):
        user_id, product, order = placed_order
        orders.cancel(str(order["_id"]), user_id)
        with pytest.raises(InvalidStateError):
            orders.cancel(str(order["_id"]), user_id)
        assert stock_of(catalog, product, sku_of(product, "m", "black")) == 10

    def test_only_pending_orders(self, orders, placed_order):
        user_id, _, order = placed_order
        orders.update_status(str(order["_id"]), UpdateOrderStatusRequest(status="paid"))
        with pytest.raises(InvalidStateError):
            orders.cancel(str(order["_id"]), user_id)

    def test_only_the_owner(self, orders, placed_order):
        _, _, order = placed_order
        with pytest.raises(NotFoundError):
            orders.cancel(str(order["_id"]), "someone-else")

    def test_vanished_product_does_not_block_cancel(self, db, orders, placed_order):
        user_id, product, order = placed_order
        db["product"].delete_one({"_id": product["_id"]})
        assert orders.cancel(str(order["_id"]), user_id)["status"] == "cancelled"


class TestStatusUpdates:
    def test_transition_table(self):
        assert can_transition(OrderStatus.PENDING, OrderStatus.CANCELLED)
        assert not can_transition(OrderStatus.PAID, OrderStatus.CANCELLED)
        assert not can_transition(OrderStatus.CANCELLED, OrderStatus.PENDING)
        assert can_transition(OrderStatus.SHIPPED, OrderStatus.PROCESSING)
        assert can_transition("delivered", "paid")

    def test_set_status_and_payment(self, orders, placed_order):
        _, _, order = placed_order
        updated = orders.update_status(
            str(order["_id"]), UpdateOrderStatusRequest(status="paid", payment_status="completed")
        )
        assert updated["status"] == "paid"
        assert updated["payment_status"] == "completed"

    def test_admin_cancel_refunds_stock(self, catalog, orders, placed_order):
        _, product, order = placed_order
        updated = orders.update_status(
            str(order["_id"]), UpdateOrderStatusRequest(status="cancelled", payment_status="refunded")
        )
        assert updated["status"] == "cancelled"
        assert updated["payment_status"] == "refunded"
        assert stock_of(catalog, product, sku_of(product, "g", "black")) == 10

    def test_cancelled_is_final(self, orders, placed_order):
        user_id, _, order = placed_order
        orders.cancel(str(order["_id"]), user_id)
        with pytest.raises(InvalidStateError):
            orders.update_status(str(order["_id"]), UpdateOrderStatusRequest(status="paid"))

    def test_cancel_after_shipping_is_refused(self, orders, placed_order):
        _, _, order = placed_order
        orders.update_status(str(order["_id"]), UpdateOrderStatusRequest(status="shipped"))
        with pytest.raises(InvalidStateError):
            orders.update_status(str(order["_id"]), UpdateOrderStatusRequest(status="cancelled"))

    def test_unknown_order(self, orders):
        with pytest.raises(NotFoundError):
            orders.update_status("64b000000000000000000000", UpdateOrderStatusRequest(status="paid"))


class TestListing:
    @pytest.fixture
    def history(self, db, carts, orders, shopper, make_user, addresses, make_product):
        user_id, address_id = shopper
        product = make_product(variants=[("m", "black", 50, 50.0)])
        own = []
        for _ in range(2):
            add(carts, user_id, product, 1)
            own.append(orders.create(user_id, CreateOrderRequest(address_id=address_id, payment_method="pix")))

        other = make_user()
        other_id = str(other["_id"])
        other_address = addresses.create(other_id, address_data())
        add(carts, other_id, product, 1)
        orders.create(other_id, CreateOrderRequest(address_id=str(other_address["_id"]), payment_method="pix"))

        orders.create_guest(guest_request((str(product["_id"]), sku_of(product), 1)))

        db["order"].update_one({"_id": own[0]["_id"]}, {"$set": {
            "created_at": datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc), "status": "paid",
        }})
        return user_id, own

    def test_users_see_only_their_orders(self, orders, history):
        user_id, own = history
        result = orders.list(user_id, False, OrderFilter())
        assert result["pagination"]["total"] == 2
        assert {o["id"] for o in result["orders"]} == {str(o["_id"]) for o in own}

    def test_admins_see_everything(self, orders, history):
        result = orders.list("admin", True, OrderFilter())
        assert result["pagination"]["total"] == 4

    def test_guest_filter(self, orders, history):
        guests = orders.list("admin", True, OrderFilter(is_guest=True))
        assert guests["pagination"]["total"] == 1
        assert guests["orders"][0]["is_guest"] is True
        assert orders.list("admin", True, OrderFilter(is_guest=False))["pagination"]["total"] == 3

    def test_status_filter(self, orders, history):
        user_id, own = history
        result = orders.list(user_id, False, OrderFilter(status="paid"))
        assert [o["order_number"] for o in result["orders"]] == [own[0]["order_number"]]

    def test_date_range_is_inclusive(self, orders, history):
        user_id, own = history
        january = orders.list(user_id, False, OrderFilter(date_from=date(2024, 1, 1), date_to=date(2024, 1, 10)))
        assert [o["id"] for o in january["orders"]] == [str(own[0]["_id"])]
        later = orders.list(user_id, False, OrderFilter(date_from=date(2024, 1, 11)))
        assert [o["id"] for o in later["orders"]] == [str(own[1]["_id"])]

    def test_search_by_order_number(self, orders, history):
        user_id, own = history
        needle = own[1]["order_number"].lower()
        result = orders.list(user_id, False, OrderFilter(search=needle))
        assert [o["order_number"] for o in result["orders"]] == [own[1]["order_number"]]

    def test_newest_first_and_paginated(self, orders, history):
        user_id, own = history
        result = orders.list(user_id, False, OrderFilter(limit=1))
        assert result["orders"][0]["id"] == str(own[1]["_id"])
        assert result["pagination"]["total_pages"] == 2

    def test_get_is_scoped_to_owner(self, orders, history):
        user_id, own = history
        assert orders.get(str(own[0]["_id"]), user_id, False)["_id"] == own[0]["_id"]
        with pytest.raises(NotFoundError):
            orders.get(str(own[0]["_id"]), "someone-else", False)
        assert orders.get(str(own[0]["_id"]), "admin", True)["_id"] == own[0]["_id"]
