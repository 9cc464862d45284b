"""
Pytest fixtures for erpcore backend tests.

Provides an in-memory database, master data (warehouse, client, products
with list prices), a fake approval service and the test client.
"""

from collections import deque
from decimal import Decimal

import pytest

from erpcore import create_app
from erpcore.extensions import db
from erpcore.models import Client, PriceListEntry, Product, Warehouse
from erpcore.services.approval_client import ApprovalResult, ApprovalUnavailable


class FakeApprovalClient:
    """
    Stand-in for the approval service. Answers are queued with approve(),
    reject() and unreachable(); with nothing queued every call is approved.
    """

    def __init__(self):
        self.calls = []
        self._answers = deque()
        self._counter = 0

    def approve(self, token=None):
        self._answers.append(("approve", token))

    def reject(self, message="rejected by the service"):
        self._answers.append(("reject", message))

    def unreachable(self, message="connection refused"):
        self._answers.append(("unreachable", message))

    def submit(self, document_type, payload):
        self.calls.append((document_type, payload))
        action, value = self._answers.popleft() if self._answers else ("approve", None)
        if action == "unreachable":
            raise ApprovalUnavailable(value)
        if action == "reject":
            return ApprovalResult(approved=False, message=value, raw={"success": False})
        self._counter += 1
        token = value or f"cufe-{payload['number']}-{self._counter}"
        return ApprovalResult(approved=True, token=token, raw={"success": True, "cufe": token})


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SUBMIT_ON_COMMIT': False,
        'APPROVAL_SERVICE_URL': '',
        'LOG_LEVEL': 'WARNING',
    })

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
def approval(app):
    """Install a fake approval service for the duration of a test."""
    fake = FakeApprovalClient()
    app.extensions['approval_client'] = fake
    yield fake
    app.extensions.pop('approval_client', None)


@pytest.fixture(scope='function')
def warehouse(db_session):
    wh = Warehouse(code="01", name="Main warehouse")
    db_session.add(wh)
    db_session.commit()
    return wh


@pytest.fixture(scope='function')
def other_warehouse(db_session):
    wh = Warehouse(code="02", name="North warehouse")
    db_session.add(wh)
    db_session.commit()
    return wh


@pytest.fixture(scope='function')
def customer(db_session):
    c = Client(code="C001", name="Acme Retail", tax_id="900123456")
    db_session.add(c)
    db_session.commit()
    return c


def _product(db_session, sku, name, list_price, last_cost, tax_rate="19"):
    product = Product(sku=sku, name=name, tax_rate=Decimal(tax_rate), last_cost=Decimal(last_cost))
    db_session.add(product)
    db_session.flush()
    if list_price is not None:
        db_session.add(PriceListEntry(product_id=product.id, price_list="07", price=Decimal(list_price)))
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def widget(db_session):
    """119.00 tax-inclusive at 19% -> base price 100.0000."""
    return _product(db_session, "P-001", "Widget", "119.00", "60.00")


@pytest.fixture(scope='function')
def gadget(db_session):
    """No list price: valuation falls back to last cost."""
    return _product(db_session, "P-002", "Gadget", None, "45.50")

