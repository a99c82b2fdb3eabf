"""Pytest fixtures for cartflow tests."""

import itertools

import mongomock
import pytest
from fastapi.testclient import TestClient

from addresses import AddressBook
from auth import create_token, create_user
from carts import CartStore
from catalog import Catalog
from database import ensure_indexes, get_db
from orders import OrderEngine
from registration import Registration
from schemas import AddressCreate, ProductCreate, UserRole, VariantInput

_codes = itertools.count(1)
_emails = itertools.count(1)


@pytest.fixture
def db():
    """An in-memory MongoDB database with the application indexes."""
    client = mongomock.MongoClient(tz_aware=True)
    database = client["cartflow_test"]
    ensure_indexes(database)
    yield database
    client.close()


@pytest.fixture
def catalog(db):
    return Catalog(db)


@pytest.fixture
def carts(db, catalog):
    return CartStore(db, catalog)


@pytest.fixture
def addresses(db):
    return AddressBook(db)


@pytest.fixture
def orders(db, catalog, carts, addresses):
    return OrderEngine(db, catalog, carts, addresses)


@pytest.fixture
def registration(db, orders, addresses):
    return Registration(db, orders, addresses)


@pytest.fixture
def make_product(catalog):
    """Create a product. Variants are (size, color, stock, price) tuples."""

    def _make(name="Classic Tee", base_price=50.0, variants=None, **extra):
        if variants is None:
            variants = [("m", "black", 10, 50.0)]
        data = ProductCreate(
            name=name,
            code=extra.pop("code", f"CODE-{next(_codes)}"),
            base_price=base_price,
            variants=[VariantInput(size=s, color=c, stock=st, price=p) for s, c, st, p in variants],
            **extra,
        )
        return catalog.create(data)

    return _make


@pytest.fixture
def make_user(db):
    def _make(email=None, role=UserRole.USER, password="secret123"):
        return create_user(
            db,
            email=email or f"user{next(_emails)}@example.com",
            password=password,
            first_name="Ana",
            last_name="Silva",
            role=role,
        )

    return _make


def address_data(**overrides) -> AddressCreate:
    fields = dict(
        full_name="Ana Silva",
        street="Rua das Flores, 100",
        city="Sao Paulo",
        state="SP",
        zip_code="01000-000",
        country="BR",
        phone="+55 11 99999-0000",
    )
    fields.update(overrides)
    return AddressCreate(**fields)


def sku_of(product, size="m", color="black") -> str:
    for variant in product["variants"]:
        if variant["size"] == size and variant["color"] == color:
            return variant["sku"]
    raise KeyError((size, color))


def stock_of(catalog, product, sku) -> int:
    return catalog.find_variant(str(product["_id"]), sku)["stock"]


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {create_token(user)}"}


@pytest.fixture
def api_client(db):
    """HTTP client whose requests all run against the in-memory database."""
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()
