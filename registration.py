"""
Account registration, optionally claiming a guest order placed before the account existed.

Coordinates the account store, the order engine and the address book without coupling them
to each other.
"""
import logging
from typing import Any, Dict

from pymongo.database import Database

from addresses import AddressBook
from auth import create_user, delete_user
from errors import CartflowError
from orders import OrderEngine
from schemas import AddressCreate, RegisterRequest

logger = logging.getLogger("cartflow.registration")


class Registration:
    def __init__(self, db: Database, orders: OrderEngine, addresses: AddressBook):
        self.db = db
        self.orders = orders
        self.addresses = addresses

    def register(self, data: RegisterRequest) -> Dict[str, Any]:
        """Create the account and, when asked, link the guest order and save its address.

        The guest order is checked before the account is written. If the link is lost to a
        concurrent claim afterwards, the new account is deleted again and the error propagates.
        """
        if data.linked_guest_order_id:
            self.orders.ensure_linkable(data.linked_guest_order_id)

        user = create_user(
            self.db,
            email=data.email,
            password=data.password,
            first_name=data.first_name,
            last_name=data.last_name,
            phone=data.phone,
        )
        user_id = str(user["_id"])
        logger.info("User %s registered", user_id)

        if data.linked_guest_order_id:
            try:
                self.link_guest_order(user_id, data.linked_guest_order_id)
            except CartflowError as exc:
                logger.error("Failed to link guest order %s: %s", data.linked_guest_order_id, exc)
                delete_user(self.db, user_id)
                raise
        return user

    def link_guest_order(self, user_id: str, order_id: str) -> Dict[str, Any]:
        """Link a guest order to `user_id` and keep its shipping address as the default address.

        Returns the order's shipping address snapshot. Repeating the call for the same user
        returns the same snapshot and stores no second address.
        """
        order, shipping_address, linked_now = self.orders.link_guest_order(order_id, user_id)
        if linked_now:
            self.addresses.create(user_id, self._address_from(shipping_address))
            logger.info("Saved shipping address of order %s for user %s", order["order_number"], user_id)
        return shipping_address

    def claim_guest_order(self, user: Dict[str, Any], order_id: str) -> Dict[str, Any]:
        """Link a guest order placed with the signed-in user's email address.

        Orders placed with any other email are reported as missing.
        """
        self.orders.find_guest_order_for(order_id, user["email"])
        return self.link_guest_order(str(user["_id"]), order_id)

    @staticmethod
    def _address_from(shipping_address: Dict[str, Any]) -> AddressCreate:
        return AddressCreate(
            full_name=shipping_address["full_name"],
            street=shipping_address["street"],
            city=shipping_address["city"],
            state=shipping_address["state"],
            zip_code=shipping_address["zip_code"],
            country=shipping_address["country"],
            phone=shipping_address["phone"],
            is_default=True,
        )
