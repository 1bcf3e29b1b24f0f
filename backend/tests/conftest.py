"""
Pytest fixtures for fulfillment backend tests.

Provides the test database, store fixtures, factories for products,
carriers and orders, and a test client bound to a store.
"""

import pytest
from fulfillment import create_app
from fulfillment.extensions import db
from fulfillment.models import Store
from fulfillment.services import carrier_service, order_service, products_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'STOCK_POLICY': 'STRICT',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        db.session.remove()


@pytest.fixture(scope='function')
def store(db_session):
    store = Store(name="Main Store", code="MAIN", timezone="UTC")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def other_store(db_session):
    store = Store(name="Other Store", code="OTHER", timezone="America/Asuncion")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def make_product(db_session, store):
    """Factory: make_product(stock=100, price_cents=1000, sku=None, store_id=None)."""
    counter = {"n": 0}

    def _make(stock=100, price_cents=1000, sku=None, name=None, store_id=None):
        counter["n"] += 1
        n = counter["n"]
        return products_service.create_product(
            store_id=store_id or store.id,
            patch={
                "sku": sku or f"SKU-{n:03d}",
                "name": name or f"Product {n}",
                "price_cents": price_cents,
                "stock": stock,
            },
        )

    return _make


@pytest.fixture(scope='function')
def make_order(db_session, store):
    """
    Factory: make_order([(product, qty), ...], **fields).

    fields are order columns (payment_method, delivery_zone, shipping_cost_cents, ...).
    """
    def _make(lines, store_id=None, **fields):
        items = [
            {"product_id": product.id, "quantity": qty, "unit_price_cents": None}
            for product, qty in lines
        ]
        return order_service.create_order(
            store_id=store_id or store.id,
            patch=dict(fields),
            items=items,
        )

    return _make


@pytest.fixture(scope='function')
def advance(store):
    """advance(order, "CONFIRMED", "IN_PREPARATION", ...) through direct status requests."""
    def _advance(order, *statuses, policy="STRICT"):
        for status in statuses:
            order = order_service.transition_order(
                store_id=order.store_id,
                order_id=order.id,
                status=status,
                policy=policy,
            )
        return order

    return _advance


@pytest.fixture(scope='function')
def make_carrier(db_session, store):
    """Factory: make_carrier(zones={"North": 800, "Default": 1000}, failed_attempt_fee_percent=None)."""
    def _make(name="FastBike", zones=None, failed_attempt_fee_percent=None, store_id=None):
        patch = {"name": name}
        if failed_attempt_fee_percent is not None:
            patch["failed_attempt_fee_percent"] = failed_attempt_fee_percent
        carrier = carrier_service.create_carrier(store_id=store_id or store.id, patch=patch)
        if zones:
            carrier = carrier_service.replace_zones(
                store_id=carrier.store_id,
                carrier_id=carrier.id,
                zones=[{"zone_name": k, "rate_cents": v} for k, v in zones.items()],
            )
        return carrier

    return _make


@pytest.fixture(scope='function')
def client(app, db_session):
    """Create test client."""
    return app.test_client()
