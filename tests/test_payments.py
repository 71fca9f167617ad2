# tests/test_payments.py
from datetime import date, datetime

import pytest
from sqlalchemy.exc import OperationalError

from rentledger.errors import (
    AmountExceedsBalance,
    InvalidTransition,
    NotFound,
    PreconditionFailed,
    ValidationError,
)
from rentledger.extensions import db
from rentledger.models import Bill, BillStatus, PaymentMethod, PaymentStatus
from rentledger.services import billing, payments

from conftest import TENANT_A, TENANT_B


def _bill(bill_id):
    db.session.expire_all()
    return db.session.get(Bill, bill_id)


def _assert_reconciled(bill_id):
    bill = _bill(bill_id)
    assert bill.paid_amount == pytest.approx(payments.completed_total(bill_id))
    assert 0 <= bill.paid_amount <= bill.total_amount


class TestRecordPayment:
    def test_pending_payments_count_against_balance(self, make_bill):
        bill = make_bill(amount=1_000_000)

        first = payments.record_payment(bill.id, TENANT_A, 700_000, "bank_transfer")
        with pytest.raises(AmountExceedsBalance):
            payments.record_payment(bill.id, TENANT_B, 400_000, "cash")

        assert first.status == PaymentStatus.PENDING
        assert first.is_partial_payment is True
        assert len(payments.find_by_bill(bill.id)) == 1

    def test_exact_remaining_is_accepted(self, make_bill):
        bill = make_bill(amount=1_000_000)
        payments.record_payment(bill.id, TENANT_A, 700_000, "wallet")

        last = payments.record_payment(bill.id, TENANT_A, 300_000, "wallet")

        assert last.is_partial_payment is False

    @pytest.mark.parametrize("amount", [0, -5, "abc", None])
    def test_amount_must_be_positive(self, make_bill, amount):
        bill = make_bill()

        with pytest.raises(ValidationError):
            payments.record_payment(bill.id, TENANT_A, amount, "cash")

    def test_unknown_method(self, make_bill):
        bill = make_bill()

        with pytest.raises(ValidationError):
            payments.record_payment(bill.id, TENANT_A, 100, "cheque")

    def test_unknown_bill(self, app):
        with pytest.raises(NotFound):
            payments.record_payment(404, TENANT_A, 100, "cash")

    def test_cancelled_bill_refuses_payment(self, make_bill):
        bill = billing.cancel_bill(make_bill().id, "wrong room")

        with pytest.raises(PreconditionFailed):
            payments.record_payment(bill.id, TENANT_A, 100, "cash")

    def test_bank_transfer_details_are_kept(self, make_bill):
        bill = make_bill()

        p = payments.record_payment(
            bill.id,
            TENANT_A,
            250_000,
            PaymentMethod.BANK_TRANSFER,
            reference_number="FT2501200001",
            bank_transfer_details={
                "from_account": "0011-223344",
                "to_account": "0099-887766",
                "transfer_date": "2025-01-20",
                "confirmation_code": "XK29",
            },
        )

        assert p.bank_transfer_details["transfer_date"] == "2025-01-20"
        assert p.reference_number == "FT2501200001"

    def test_bank_details_rejected_for_cash(self, make_bill):
        bill = make_bill()

        with pytest.raises(ValidationError):
            payments.record_payment(
                bill.id, TENANT_A, 100, "cash", bank_transfer_details={"from_account": "1"}
            )


class TestCompleteAndRefund:
    def test_crossing_total_marks_paid_once(self, make_bill):
        bill = make_bill(amount=1_000_000)
        p1 = payments.record_payment(bill.id, TENANT_A, 600_000, "cash")
        p2 = payments.record_payment(bill.id, TENANT_B, 400_000, "cash")

        payments.complete_payment(p1.id)
        partial = _bill(bill.id)
        assert partial.status == BillStatus.SENT
        assert partial.payment_status == "partially_paid"
        assert partial.paid_at is None

        paid_at = datetime(2025, 1, 25, 12, 0)
        payments.complete_payment(p2.id, now=paid_at)
        with pytest.raises(InvalidTransition):
            payments.complete_payment(p2.id, now=datetime(2025, 1, 26))

        bill = _bill(bill.id)
        assert bill.status == BillStatus.PAID
        assert bill.paid_at == paid_at
        assert bill.paid_amount == 1_000_000
        assert bill.payment_status == "fully_paid"
        assert bill.remaining_balance == 0

    def test_complete_sets_paid_at(self, make_bill):
        bill = make_bill()
        p = payments.record_payment(bill.id, TENANT_A, 10, "online")

        done = payments.complete_payment(p.id, now=datetime(2025, 1, 21))

        assert done.status == PaymentStatus.COMPLETED
        assert done.paid_at == datetime(2025, 1, 21)

    def test_failed_payment_cannot_complete(self, make_bill):
        bill = make_bill()
        p = payments.record_payment(bill.id, TENANT_A, 10, "online")

        payments.fail_payment(p.id, "gateway declined")
        with pytest.raises(InvalidTransition):
            payments.complete_payment(p.id)

        assert _bill(bill.id).paid_amount == 0

    def test_failed_payment_frees_balance(self, make_bill):
        bill = make_bill(amount=1_000)
        p = payments.record_payment(bill.id, TENANT_A, 1_000, "online")
        payments.fail_payment(p.id)

        again = payments.record_payment(bill.id, TENANT_A, 1_000, "cash")

        assert again.status == PaymentStatus.PENDING

    def test_refund_reopens_paid_bill(self, make_bill):
        bill = make_bill(amount=1_000_000)
        p1 = payments.record_payment(bill.id, TENANT_A, 600_000, "cash")
        p2 = payments.record_payment(bill.id, TENANT_A, 400_000, "cash")
        payments.complete_payment(p1.id)
        payments.complete_payment(p2.id)

        refunded = payments.refund_payment(p2.id, "charged twice", now=datetime(2025, 1, 25))

        assert refunded.status == PaymentStatus.REFUNDED
        assert refunded.notes == "Refunded: charged twice"
        bill = _bill(bill.id)
        assert bill.paid_amount == 600_000
        assert bill.status == BillStatus.SENT
        assert bill.paid_at is None
        _assert_reconciled(bill.id)

    def test_refund_after_due_date_reopens_as_overdue(self, make_bill):
        bill = make_bill(amount=1_000, due=date(2025, 2, 10))
        billing.mark_overdue(bill.id, now=datetime(2025, 2, 11))
        p = payments.record_payment(bill.id, TENANT_A, 1_000, "cash")
        payments.complete_payment(p.id, now=datetime(2025, 2, 12))

        payments.refund_payment(p.id, "bounced", now=datetime(2025, 2, 14))

        bill = _bill(bill.id)
        assert bill.status == BillStatus.OVERDUE
        assert bill.paid_at is None

    def test_refund_before_due_date_keeps_viewed(self, make_bill):
        bill = make_bill(amount=1_000, due=date(2025, 2, 10))
        billing.mark_viewed(bill.id, TENANT_A, now=datetime(2025, 1, 21))
        p = payments.record_payment(bill.id, TENANT_A, 1_000, "cash")
        payments.complete_payment(p.id)

        payments.refund_payment(p.id, "bounced", now=datetime(2025, 1, 23))

        assert _bill(bill.id).status == BillStatus.VIEWED

    def test_refund_on_unsent_bill_returns_to_draft(self, make_bill):
        bill = make_bill(amount=1_000, send=False)
        p = payments.record_payment(bill.id, TENANT_A, 1_000, "cash")
        payments.complete_payment(p.id)
        assert _bill(bill.id).status == BillStatus.PAID

        payments.refund_payment(p.id, "paid by mistake", now=datetime(2025, 3, 1))

        assert _bill(bill.id).status == BillStatus.DRAFT

    def test_refund_requires_completed(self, make_bill):
        bill = make_bill()
        p = payments.record_payment(bill.id, TENANT_A, 10, "cash")

        with pytest.raises(InvalidTransition):
            payments.refund_payment(p.id, "nope")

    def test_refund_requires_reason(self, make_bill):
        bill = make_bill()
        p = payments.record_payment(bill.id, TENANT_A, 10, "cash")
        payments.complete_payment(p.id)

        with pytest.raises(ValidationError):
            payments.refund_payment(p.id, "  ")

    def test_unknown_payment(self, app):
        with pytest.raises(NotFound):
            payments.complete_payment(12345)


class TestReconcile:
    def test_interleaving_keeps_paid_amount_consistent(self, make_bill):
        bill = make_bill(amount=1_000)
        a = payments.record_payment(bill.id, TENANT_A, 100, "cash")
        b = payments.record_payment(bill.id, TENANT_B, 250, "wallet")
        c = payments.record_payment(bill.id, TENANT_A, 400, "online")

        steps = [
            lambda: payments.complete_payment(b.id),
            lambda: payments.complete_payment(a.id),
            lambda: payments.refund_payment(b.id, "chargeback"),
            lambda: payments.fail_payment(c.id),
            lambda: payments.reconcile_bill(bill.id),
        ]
        for step in steps:
            step()
            _assert_reconciled(bill.id)

        assert _bill(bill.id).paid_amount == 100

    def test_reconcile_heals_stale_paid_amount(self, make_bill):
        bill = make_bill(amount=1_000)
        p = payments.record_payment(bill.id, TENANT_A, 300, "cash")
        payments.complete_payment(p.id)

        stale = _bill(bill.id)
        stale.paid_amount = 0
        db.session.commit()

        healed = payments.reconcile_bill(bill.id)
        again = payments.reconcile_bill(bill.id)

        assert healed.paid_amount == 300
        assert again.paid_amount == 300

    def test_late_fee_after_partial_payment_keeps_balance(self, make_bill):
        bill = make_bill(amount=1_000)
        p = payments.record_payment(bill.id, TENANT_A, 1_000, "cash")
        billing.apply_late_fee(bill.id, 50)
        payments.complete_payment(p.id)

        bill = _bill(bill.id)
        assert bill.status == BillStatus.SENT
        assert bill.remaining_balance == 50

    def test_transient_error_retries_whole_completion(self, make_bill, monkeypatch):
        bill = make_bill(amount=1_000)
        p = payments.record_payment(bill.id, TENANT_A, 1_000, "cash")
        real_total = payments.completed_total
        calls = []

        def flaky(bill_id):
            calls.append(bill_id)
            if len(calls) == 1:
                raise OperationalError("SELECT sum(amount)", {}, Exception("deadlock detected"))
            return real_total(bill_id)

        monkeypatch.setattr(payments, "completed_total", flaky)
        payments.complete_payment(p.id)

        assert len(calls) == 2
        bill = _bill(bill.id)
        assert bill.status == BillStatus.PAID
        assert bill.paid_amount == 1_000
        assert payments.get_payment(p.id).status == PaymentStatus.COMPLETED


class TestFinders:
    def test_find_by_bill_newest_first(self, make_bill):
        bill = make_bill()
        first = payments.record_payment(bill.id, TENANT_A, 10, "cash")
        second = payments.record_payment(bill.id, TENANT_B, 20, "cash")

        assert [p.id for p in payments.find_by_bill(bill.id)] == [second.id, first.id]

    def test_find_by_payer_with_status_filter(self, make_bill):
        bill = make_bill()
        done = payments.record_payment(bill.id, TENANT_A, 10, "cash")
        payments.complete_payment(done.id)
        pending = payments.record_payment(bill.id, TENANT_A, 20, "cash")
        payments.record_payment(bill.id, TENANT_B, 30, "cash")

        assert [p.id for p in payments.find_by_payer(TENANT_A)] == [pending.id, done.id]
        assert [p.id for p in payments.find_by_payer(TENANT_A, "completed")] == [done.id]
        with pytest.raises(ValidationError):
            payments.find_by_payer(TENANT_A, "bogus")
