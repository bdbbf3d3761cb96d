"""
Pytest fixtures for stock ledger backend tests.

Provides test database setup, master data fixtures, and test client.
"""

import pytest
from stockledger import create_app
from stockledger.config import TestingConfig
from stockledger.extensions import db
from stockledger.models import Product, Unit
from stockledger.services import conversion_service, session_service
from stockledger.services.auth_service import create_user
from stockledger.validation import parse_transaction_payload


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestingConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


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


@pytest.fixture(scope='function')
def user(db_session):
    return create_user("clerk", "Store Clerk", "Password123!")


@pytest.fixture(scope='function')
def auth_headers(user):
    _session, token = session_service.create_session(user.id)
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def pcs(db_session):
    unit = Unit(name="pcs")
    db_session.add(unit)
    db_session.commit()
    return unit


@pytest.fixture(scope='function')
def box(db_session):
    unit = Unit(name="box")
    db_session.add(unit)
    db_session.commit()
    return unit


@pytest.fixture(scope='function')
def product(db_session, pcs):
    product = Product(name="Cola 330ml", sku="COLA-330", barcode="8990001", base_unit_id=pcs.id)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def make_conversion(user):
    """Factory: create a conversion through the registry."""
    def _make(product, unit, conv_type, unit_qty, price_cents, is_default=False):
        return conversion_service.create_conversion(
            product_id=product.id,
            unit_id=unit.id,
            unit_qty=unit_qty,
            unit_price_cents=price_cents,
            type=conv_type,
            is_default=is_default,
            actor_user_id=user.id,
        )
    return _make


@pytest.fixture(scope='function')
def configured_product(product, pcs, box, make_conversion):
    """
    Product sold and bought in pcs (factor 1, default) and box (factor 12).

    Prices: sale pcs 100, sale box 1100, purchase pcs 80, purchase box 900.
    """
    make_conversion(product, pcs, "sale", 1, 100, is_default=True)
    make_conversion(product, box, "sale", 12, 1100)
    make_conversion(product, pcs, "purchase", 1, 80, is_default=True)
    make_conversion(product, box, "purchase", 12, 900)
    return product


def txn_input(txn_type: str, items: list[dict], **header):
    """Build a validated transaction payload."""
    payload = dict(header)
    payload["items"] = items
    if txn_type == "sale":
        payload.setdefault("amount_paid_cents", 1_000_000)
        payload.setdefault("payment_method", "cash")
    if txn_type == "adjustment":
        payload.setdefault("description", "Stock count correction")
    return parse_transaction_payload(txn_type, payload)


def line(product, unit, qty, **extra) -> dict:
    item = {"product_id": product.id, "unit_id": unit.id, "qty": qty}
    item.update(extra)
    return item
