import logging
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from database import create_document, get_documents, to_object_id, utcnow
from errors import InvalidRequestError, NotFoundError
from schemas import Address, AddressCreate, AddressUpdate

logger = logging.getLogger("cartflow.addresses")


class AddressBook:
    """Shipping addresses of a user. At most one address per user carries is_default."""

    def __init__(self, db: Database):
        self.db = db
        self.addresses = db["address"]

    def _clear_default(self, user_id: str, except_id=None) -> None:
        query: Dict[str, Any] = {"user_id": user_id, "is_default": True}
        if except_id is not None:
            query["_id"] = {"$ne": except_id}
        self.addresses.update_many(query, {"$set": {"is_default": False, "updated_at": utcnow()}})

    def create(self, user_id: str, data: AddressCreate) -> Dict[str, Any]:
        # The first address of a user becomes the default one.
        existing = self.addresses.count_documents({"user_id": user_id})
        is_default = True if existing == 0 else bool(data.is_default)
        if is_default:
            self._clear_default(user_id)
        address = Address(user_id=user_id, **data.model_dump(exclude={"is_default"}), is_default=is_default)
        address_id = create_document(self.db, "address", address)
        return self.addresses.find_one({"_id": to_object_id(address_id)})

    def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return get_documents(self.db, "address", {"user_id": user_id}, sort=[("is_default", -1), ("created_at", -1)])

    def find_by_id(self, address_id: str, user_id: str) -> Dict[str, Any]:
        address = self.addresses.find_one({"_id": to_object_id(address_id), "user_id": user_id})
        if not address:
            raise NotFoundError("Address", message="Address not found")
        return address

    def update(self, address_id: str, user_id: str, data: AddressUpdate) -> Dict[str, Any]:
        address = self.find_by_id(address_id, user_id)
        changes = data.model_dump(exclude_none=True)
        is_default = changes.pop("is_default", None)
        if is_default:
            self._clear_default(user_id, except_id=address["_id"])
            changes["is_default"] = True
        elif is_default is False and address.get("is_default"):
            raise InvalidRequestError("The default address can only change by making another one default")
        changes["updated_at"] = utcnow()
        self.addresses.update_one({"_id": address["_id"]}, {"$set": changes})
        return self.find_by_id(address_id, user_id)

    def remove(self, address_id: str, user_id: str) -> None:
        address = self.find_by_id(address_id, user_id)
        if self.addresses.count_documents({"user_id": user_id}) == 1:
            raise InvalidRequestError("Cannot delete the last address. Add another address first.")
        if address.get("is_default"):
            successor = self.addresses.find_one({"user_id": user_id, "_id": {"$ne": address["_id"]}})
            if successor:
                self.addresses.update_one(
                    {"_id": successor["_id"]}, {"$set": {"is_default": True, "updated_at": utcnow()}}
                )
        self.addresses.delete_one({"_id": address["_id"]})

    def set_default(self, address_id: str, user_id: str) -> Dict[str, Any]:
        address = self.find_by_id(address_id, user_id)
        self._clear_default(user_id, except_id=address["_id"])
        self.addresses.update_one({"_id": address["_id"]}, {"$set": {"is_default": True, "updated_at": utcnow()}})
        return self.find_by_id(address_id, user_id)

    def get_default(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.addresses.find_one({"user_id": user_id, "is_default": True})
