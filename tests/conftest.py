import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from orderflow.db import init_db, make_engine
from orderflow.models import Customer, Product, Tenant
from orderflow.schemas import OrderCreate, OrderItemCreate


@pytest.fixture
def engine():
    engine = make_engine("sqlite:///:memory:", poolclass=StaticPool)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def add_tenant(db, name="Laundry Bersih") -> int:
    tenant = Tenant(name=name)
    db.add(tenant)
    db.flush()
    tenant_id = tenant.id
    db.commit()
    return tenant_id


def add_customer(db, tenant_id, name="Siti", total_orders=0, total_spent=0) -> int:
    customer = Customer(
        tenant_id=tenant_id,
        name=name,
        phone="0812000111",
        total_orders=total_orders,
        total_spent=total_spent,
    )
    db.add(customer)
    db.flush()
    customer_id = customer.id
    db.commit()
    return customer_id


def add_product(db, tenant_id, name="Kemeja", price=3500, stock=10, track_stock=True, min_stock=0) -> int:
    product = Product(
        tenant_id=tenant_id,
        name=name,
        price=price,
        stock=stock,
        min_stock=min_stock,
        track_stock=track_stock,
    )
    db.add(product)
    db.flush()
    product_id = product.id
    db.commit()
    return product_id


def reload(db, model, row_id):
    db.expire_all()
    return db.get(model, row_id)


def order_payload(items=None, **kwargs) -> OrderCreate:
    if items is None:
        items = [OrderItemCreate(name="Cuci kering", price=3500, qty=5)]
    return OrderCreate(items=items, **kwargs)


def fetch(session_factory, model, row_id):
    """Load a row in a short-lived session so no transaction stays open."""
    with session_factory() as session:
        return session.get(model, row_id)
