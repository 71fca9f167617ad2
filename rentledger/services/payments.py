# rentledger/services/payments.py
from __future__ import annotations

from datetime import date, datetime

import sqlalchemy as sa
from flask import current_app

from rentledger.errors import (
    AmountExceedsBalance,
    InvalidTransition,
    InvariantViolation,
    NotFound,
    PreconditionFailed,
    ValidationError,
)
from rentledger.extensions import db
from rentledger.models import Bill, BillPayment, BillStatus, PaymentMethod, PaymentStatus, utcnow_naive
from rentledger.utils.db import get_or_404, lock_or_404, run_in_transaction
from rentledger.utils.parsing import clean_text, parse_amount, parse_date, parse_enum, parse_id

BANK_TRANSFER_FIELDS = ("from_account", "to_account", "transfer_date", "confirmation_code")


def _sum_payments(bill_id: int, status: PaymentStatus) -> float:
    total = (
        db.session.query(sa.func.coalesce(sa.func.sum(BillPayment.amount), 0.0))
        .filter(BillPayment.bill_id == bill_id, BillPayment.status == status)
        .scalar()
    )
    return round(float(total or 0.0), 2)


def completed_total(bill_id: int) -> float:
    """Independent re-aggregation of completed payments for a bill."""
    return _sum_payments(bill_id, PaymentStatus.COMPLETED)


def outstanding_balance(bill: Bill) -> float:
    """What can still be recorded: remaining balance less pending payments."""
    return round(bill.remaining_balance - _sum_payments(bill.id, PaymentStatus.PENDING), 2)


def _clean_bank_details(details) -> dict | None:
    if not details:
        return None
    if not isinstance(details, dict):
        raise ValidationError("bank_transfer_details must be an object")
    unknown = set(details) - set(BANK_TRANSFER_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown bank transfer fields: {', '.join(sorted(unknown))}")
    cleaned = {k: clean_text(details.get(k), 120) for k in BANK_TRANSFER_FIELDS if details.get(k)}
    if "transfer_date" in cleaned:
        cleaned["transfer_date"] = parse_date(cleaned["transfer_date"], "transfer_date").isoformat()
    return cleaned or None


def _append_note(existing: str | None, note: str) -> str:
    return (f"{existing}. {note}" if existing else note)[:500]


# =========================================================
# Reconciliation (caller owns the transaction)
# =========================================================
def _reopened_status(bill: Bill, today: date) -> BillStatus:
    """Status a paid bill falls back to once it owes money again."""
    if bill.sent_at is None:
        return BillStatus.DRAFT
    if bill.due_date < today:
        return BillStatus.OVERDUE
    if bill.viewed_at is not None:
        return BillStatus.VIEWED
    return BillStatus.SENT


def _reconcile_locked(bill: Bill, stamp: datetime) -> Bill:
    """
    Full re-aggregation over completed payments. ``bill`` must already be
    locked by the current transaction.
    """
    paid = completed_total(bill.id)
    if paid > bill.total_amount:
        current_app.logger.critical(
            "Bill %s overpaid: completed=%.2f total=%.2f",
            bill.bill_number,
            paid,
            bill.total_amount,
        )
        raise InvariantViolation(f"Bill {bill.bill_number} would be overpaid")

    bill.paid_amount = paid
    if bill.status == BillStatus.CANCELLED:
        return bill

    if paid >= bill.total_amount:
        if bill.status != BillStatus.PAID:
            bill.status = BillStatus.PAID
            bill.paid_at = stamp
            current_app.logger.info("Bill %s fully paid (%.2f)", bill.bill_number, paid)
    elif bill.status == BillStatus.PAID:
        # A refund reopened the balance.
        bill.status = _reopened_status(bill, stamp.date())
        bill.paid_at = None
        current_app.logger.info(
            "Bill %s reopened as %s after refund (paid=%.2f)",
            bill.bill_number,
            bill.status.value,
            paid,
        )
    return bill


def reconcile_bill(bill_id, *, now: datetime | None = None) -> Bill:
    """Recompute paid_amount/status from payment rows; safe to call repeatedly."""
    stamp = now or utcnow_naive()

    def _reconcile():
        bill = lock_or_404(Bill, bill_id, "Bill")
        return _reconcile_locked(bill, stamp)

    return run_in_transaction("Reconcile bill", _reconcile)


# =========================================================
# Record / complete / fail / refund
# =========================================================
def record_payment(
    bill_id,
    payer_id,
    amount,
    method,
    *,
    transaction_id: str | None = None,
    reference_number: str | None = None,
    received_by=None,
    bank_transfer_details: dict | None = None,
    notes: str | None = None,
    receipt_url: str | None = None,
) -> BillPayment:
    payer_id = parse_id(payer_id, "payer_id")
    amount = parse_amount(amount, "amount", allow_zero=False)
    method = parse_enum(PaymentMethod, method, "payment_method")
    received_by = parse_id(received_by, "received_by") if received_by is not None else None
    details = _clean_bank_details(bank_transfer_details)
    if details and method != PaymentMethod.BANK_TRANSFER:
        raise ValidationError("bank_transfer_details only apply to bank transfers")
    transaction_id = clean_text(transaction_id, 64)
    reference_number = clean_text(reference_number, 120)
    notes = clean_text(notes, 500)
    receipt_url = clean_text(receipt_url, 500)

    def _record():
        bill = lock_or_404(Bill, bill_id, "Bill")
        if bill.status == BillStatus.CANCELLED:
            raise PreconditionFailed(f"Bill {bill.bill_number} is cancelled")

        available = outstanding_balance(bill)
        if amount > available:
            raise AmountExceedsBalance(
                f"Payment of {amount:.2f} exceeds the outstanding balance {max(available, 0.0):.2f} "
                f"of bill {bill.bill_number}"
            )

        payment = BillPayment(
            bill_id=bill.id,
            payer_id=payer_id,
            amount=amount,
            payment_method=method,
            status=PaymentStatus.PENDING,
            transaction_id=transaction_id,
            reference_number=reference_number,
            received_by=received_by,
            bank_transfer_details=details,
            is_partial_payment=amount < available,
            notes=notes,
            receipt_url=receipt_url,
        )
        db.session.add(payment)
        db.session.flush()
        return payment

    payment = run_in_transaction("Record payment", _record)
    current_app.logger.info(
        "Payment %s recorded on bill %s: %.2f via %s",
        payment.id,
        payment.bill_id,
        amount,
        method.value,
    )
    return payment


def _lock_payment_and_bill(payment_id) -> tuple[BillPayment, Bill]:
    # Lock order is always bill, then payment.
    bill_id = db.session.query(BillPayment.bill_id).filter(BillPayment.id == payment_id).scalar()
    if bill_id is None:
        raise NotFound(f"Payment {payment_id} not found")
    bill = lock_or_404(Bill, bill_id, "Bill")
    payment = lock_or_404(BillPayment, payment_id, "Payment")
    return payment, bill


def complete_payment(payment_id, *, now: datetime | None = None) -> BillPayment:
    stamp = now or utcnow_naive()

    def _complete():
        payment, bill = _lock_payment_and_bill(payment_id)
        if payment.status != PaymentStatus.PENDING:
            raise InvalidTransition(f"Payment {payment.id} is {payment.status.value}, not pending")
        payment.status = PaymentStatus.COMPLETED
        payment.paid_at = stamp
        db.session.flush()
        _reconcile_locked(bill, stamp)
        return payment

    payment = run_in_transaction("Complete payment", _complete)
    current_app.logger.info("Payment %s completed (%.2f)", payment.id, payment.amount)
    return payment


def fail_payment(payment_id, reason: str | None = None) -> BillPayment:
    reason = clean_text(reason, 200)

    def _fail():
        payment, _bill = _lock_payment_and_bill(payment_id)
        if payment.status != PaymentStatus.PENDING:
            raise InvalidTransition(f"Payment {payment.id} is {payment.status.value}, not pending")
        payment.status = PaymentStatus.FAILED
        if reason:
            payment.notes = _append_note(payment.notes, f"Failed: {reason}")
        return payment

    payment = run_in_transaction("Fail payment", _fail)
    current_app.logger.info("Payment %s marked failed", payment.id)
    return payment


def refund_payment(payment_id, reason: str, *, now: datetime | None = None) -> BillPayment:
    reason = clean_text(reason, 200)
    if not reason:
        raise ValidationError("A refund reason is required")
    stamp = now or utcnow_naive()

    def _refund():
        payment, bill = _lock_payment_and_bill(payment_id)
        if payment.status != PaymentStatus.COMPLETED:
            raise InvalidTransition(f"Payment {payment.id} is {payment.status.value}, not completed")
        payment.status = PaymentStatus.REFUNDED
        payment.notes = _append_note(payment.notes, f"Refunded: {reason}")
        db.session.flush()
        _reconcile_locked(bill, stamp)
        return payment

    payment = run_in_transaction("Refund payment", _refund)
    current_app.logger.info("Payment %s refunded (%.2f)", payment.id, payment.amount)
    return payment


# =========================================================
# Reads (newest first)
# =========================================================
def get_payment(payment_id) -> BillPayment:
    return get_or_404(BillPayment, payment_id, "Payment")


def find_by_bill(bill_id) -> list[BillPayment]:
    return (
        BillPayment.query.filter(BillPayment.bill_id == bill_id)
        .order_by(BillPayment.created_at.desc(), BillPayment.id.desc())
        .all()
    )


def find_by_payer(payer_id, status=None) -> list[BillPayment]:
    q = BillPayment.query.filter(BillPayment.payer_id == payer_id)
    if status is not None:
        q = q.filter(BillPayment.status == parse_enum(PaymentStatus, status, "status"))
    return q.order_by(BillPayment.created_at.desc(), BillPayment.id.desc()).all()
