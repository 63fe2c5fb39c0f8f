import os

# keep the app's module-level engine away from the working directory
os.environ.setdefault("DB_URL", "sqlite://")

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from shop_billing.auth import create_token
from shop_billing.db import init_db
from shop_billing.models import Product, Shop, ShopProduct, Stock, User
from tests.fakes import InMemoryCatalog, InMemoryUnitOfWork


@pytest.fixture
def catalog():
    return InMemoryCatalog(
        shops=[Shop(id=1, shop_name="Lakshmi Stores"), Shop(id=2, shop_name="Sri Ram Traders")],
        products=[
            Product(id=1, product_name="Milk 500ml", gst=10.0, price=50.0),
            Product(id=2, product_name="Curd 1kg", gst=5.0, price=80.0),
            Product(id=3, product_name="Paneer 200g", gst=12.0, price=90.0),
        ],
        prices={(1, 2): 75.0},
        stock={1: 10, 2: 5, 3: 0},
    )


@pytest.fixture
def uow(catalog):
    return InMemoryUnitOfWork(catalog=catalog)


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(eng)
    with Session(eng) as s:
        s.add(User(id=1, username="billing", name="Billing Desk", password_hash="x", role="USER"))
        s.add(Shop(id=1, shop_name="Lakshmi Stores", address="12 Market Road"))
        s.add(Shop(id=2, shop_name="Sri Ram Traders", address="4 Station Street"))
        s.add(Product(id=1, product_name="Milk 500ml", gst=10.0, price=50.0))
        s.add(Product(id=2, product_name="Curd 1kg", gst=5.0, price=80.0))
        s.add(Product(id=3, product_name="Paneer 200g", gst=12.0, price=90.0))
        s.add(ShopProduct(shop_id=1, product_id=2, price=75.0))
        s.add(Stock(product_id=1, quantity=10))
        s.add(Stock(product_id=2, quantity=5))
        s.add(Stock(product_id=3, quantity=0))
        s.commit()
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {create_token(1, 'billing', 'USER')}"}
