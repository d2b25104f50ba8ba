import os

os.environ.setdefault("GEMSTONE_DATABASE_URL", "sqlite://")
os.environ.setdefault("GEMSTONE_SECRET_KEY", "test-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from gemstone_shop.config import get_settings
from gemstone_shop.database import Base, get_db, make_engine
from gemstone_shop.main import app
from gemstone_shop.models import Order, Product, Role, User
from gemstone_shop.orders import NewOrder, NewOrderItem, create_order
from gemstone_shop.security import create_access_token, get_password_hash

PASSWORD = "secret123"


@pytest.fixture(scope="session")
def password_hash():
    return get_password_hash(PASSWORD)


@pytest.fixture
def engine():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _make_user(db, password_hash, email, role, full_name):
    user = User(email=email, password_hash=password_hash, full_name=full_name, role=role.value)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def admin(db, password_hash):
    return _make_user(db, password_hash, "admin@test.com", Role.ADMIN, "Admin User")


@pytest.fixture
def manager(db, password_hash):
    return _make_user(db, password_hash, "manager@test.com", Role.MANAGER, "Manager User")


@pytest.fixture
def customer(db, password_hash):
    return _make_user(db, password_hash, "customer@test.com", Role.CUSTOMER, "Customer One")


@pytest.fixture
def other_customer(db, password_hash):
    return _make_user(db, password_hash, "other@test.com", Role.CUSTOMER, "Customer Two")


@pytest.fixture
def courier(db, password_hash):
    return _make_user(db, password_hash, "courier@test.com", Role.DELIVERY_MAN, "Courier")


def auth(user):
    return {"Authorization": f"Bearer {create_access_token(user, get_settings())}"}


@pytest.fixture
def make_product(db):
    def _make(name="Sapphire Ring", stock=10, price=250.0, type="ring"):
        product = Product(name=name, type=type, price=price, quantity_in_stock=stock)
        db.add(product)
        db.commit()
        db.refresh(product)
        return product

    return _make


@pytest.fixture
def place_order(db):
    def _place(user, *items, total_amount=None):
        lines = [NewOrderItem(product.id, qty, product.price) for product, qty in items]
        total = total_amount if total_amount is not None else sum(line.price_at_purchase * line.quantity for line in lines)
        return create_order(db, NewOrder(user_id=user.id, total_amount=total, items=lines)).order

    return _place


def stock_of(db, product_id):
    db.expire_all()
    return db.get(Product, product_id).quantity_in_stock


def order_count(db):
    db.expire_all()
    return db.query(Order).count()
