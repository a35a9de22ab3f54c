"""
Pytest fixtures for stockledger backend tests.

Provides an in-memory database, stores/products, and a helper that creates
a document and moves it to a status through the orchestration service.
"""

from datetime import datetime
from decimal import Decimal

import pytest
from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import Store, Product
from stockledger.services import document_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LOG_LEVEL': 'WARNING',
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


@pytest.fixture(scope='function')
def store(db_session):
    store = Store(code="MAIN", name="Main Store")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def other_store(db_session):
    store = Store(code="EAST", name="East Store")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def product(db_session):
    product = Product(sku="SKU-001", name="Widget")
    db_session.add(product)
    db_session.commit()
    return product


def day(n: int, hour: int = 12) -> datetime:
    """Business dates used across tests (always in the past)."""
    return datetime(2024, 1, n, hour, 0, 0)


@pytest.fixture(scope='function')
def post(db_session):
    """
    Create a document and complete it.

    post("PURCHASE", store_id=1, date=day(1), lines=[(product_id, qty, price)])
    Lines are (product_id, quantity) or (product_id, quantity, price).
    Returns (document, StatusChange).
    """
    def _post(document_type, *, date, lines, status="COMPLETED", **header):
        line_dicts = []
        for line in lines:
            values = {"product_id": line[0], "quantity": Decimal(str(line[1]))}
            if len(line) > 2 and line[2] is not None:
                values["price"] = Decimal(str(line[2]))
            line_dicts.append(values)
        document = document_service.create_document(document_type, date=date, lines=line_dicts, **header)
        change = document_service.change_document_status(document_type, document.id, status)
        return document, change

    return _post
