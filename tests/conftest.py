# tests/conftest.py
from datetime import date, datetime

import pytest

from rentledger import create_app
from rentledger.extensions import db
from rentledger.services import billing, occupancy

ROOM_ID = 1
ACCOMMODATION_ID = 10
LANDLORD_ID = 900
TENANT_A = 101
TENANT_B = 102

JAN_2025 = datetime(2025, 1, 20, 9, 30)


@pytest.fixture
def app():
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "TRANSACTION_RETRY_ATTEMPTS": 3,
            "BILL_NUMBER_RETRY_ATTEMPTS": 5,
        }
    )
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def room(app):
    """Room 1 with tenants A (representative, from Jan 11) and B (from Jan 21)."""
    occ_a = occupancy.start_occupancy(ROOM_ID, TENANT_A, 501, date(2025, 1, 11))
    occ_b = occupancy.start_occupancy(ROOM_ID, TENANT_B, 502, date(2025, 1, 21))
    occupancy.set_representative(ROOM_ID, TENANT_A, actor_id=LANDLORD_ID)
    return {"a": occ_a.id, "b": occ_b.id}


@pytest.fixture
def make_bill(room):
    def _make(amount=1_000_000, *, tax=0, due=date(2025, 2, 10), now=JAN_2025, send=True, items=None):
        bill = billing.create_bill(
            ROOM_ID,
            ACCOMMODATION_ID,
            LANDLORD_ID,
            items if items is not None else [{"name": "Rent January", "type": "rent", "amount": amount}],
            date(2025, 1, 1),
            date(2025, 1, 31),
            due,
            tax=tax,
            now=now,
        )
        if send:
            bill = billing.send_bill(bill.id, now=now)
        return bill

    return _make
