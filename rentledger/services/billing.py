# rentledger/services/billing.py
from __future__ import annotations

from datetime import date, datetime

import sqlalchemy as sa
from flask import current_app
from sqlalchemy.exc import IntegrityError

from rentledger.errors import PreconditionFailed, ValidationError
from rentledger.extensions import db
from rentledger.models import (
    Bill,
    BillItem,
    BillItemType,
    BillPayment,
    BillStatus,
    BillTenantSnapshot,
    PaymentStatus,
    utcnow_naive,
)
from rentledger.services.occupancy import current_representative, current_tenants, overlap_days
from rentledger.utils.db import get_or_404, lock_or_404, run_in_transaction
from rentledger.utils.parsing import clean_text, parse_amount, parse_date, parse_enum, parse_id

BILL_NUMBER_PREFIX = "BILL"
MAX_MONTHLY_SEQUENCE = 9999

# Statuses a late fee cannot be added to
LATE_FEE_BLOCKED = {BillStatus.PAID, BillStatus.CANCELLED}


def _money(v) -> float:
    return round(float(v or 0.0), 2)


# =========================================================
# Bill numbers: BILL<YYYY><MM><NNNN>
# =========================================================
def bill_number_prefix(when: datetime) -> str:
    return f"{BILL_NUMBER_PREFIX}{when.year:04d}{when.month:02d}"


def format_bill_number(when: datetime, sequence: int) -> str:
    if sequence < 1 or sequence > MAX_MONTHLY_SEQUENCE:
        raise PreconditionFailed(f"Monthly bill sequence exhausted for {bill_number_prefix(when)}")
    return f"{bill_number_prefix(when)}{sequence:04d}"


def _count_bills_with_prefix(prefix: str) -> int:
    return (
        db.session.query(sa.func.count(Bill.id))
        .filter(Bill.bill_number.like(f"{prefix}%"))
        .scalar()
        or 0
    )


def next_bill_number(when: datetime) -> str:
    """
    1 + number of bills already numbered this calendar month.
    Not safe on its own: callers rely on uq_bill_bill_number and retry.
    """
    return format_bill_number(when, _count_bills_with_prefix(bill_number_prefix(when)) + 1)


# =========================================================
# Items + totals
# =========================================================
def build_item(raw: dict) -> BillItem:
    if not isinstance(raw, dict):
        raise ValidationError("Each bill item must be an object")

    name = clean_text(raw.get("name"), 120)
    if not name:
        raise ValidationError("Bill item name is required")

    item_type = parse_enum(BillItemType, raw.get("type") or raw.get("item_type"), "item type")
    quantity = parse_amount(raw.get("quantity", 1), "quantity")
    unit_price = parse_amount(raw.get("unit_price"), "unit_price", required=False)
    amount = parse_amount(raw.get("amount"), "amount", required=False)
    if amount is None:
        if unit_price is None:
            raise ValidationError(f"Bill item '{name}' needs an amount or a unit_price")
        amount = _money(quantity * unit_price)

    previous_reading = parse_amount(raw.get("previous_reading"), "previous_reading", required=False)
    current_reading = parse_amount(raw.get("current_reading"), "current_reading", required=False)
    consumption = parse_amount(raw.get("consumption"), "consumption", required=False)
    if previous_reading is not None and current_reading is not None:
        if current_reading < previous_reading:
            raise ValidationError(f"Bill item '{name}': current reading is below previous reading")
        consumption = _money(current_reading - previous_reading)

    return BillItem(
        name=name,
        item_type=item_type,
        amount=amount,
        quantity=quantity,
        unit_price=unit_price,
        description=clean_text(raw.get("description"), 200),
        previous_reading=previous_reading,
        current_reading=current_reading,
        consumption=consumption,
    )


def build_items(raw_items) -> list[BillItem]:
    if not raw_items:
        raise ValidationError("A bill needs at least one item")
    return [build_item(raw) for raw in raw_items]


def recalculate_totals(bill: Bill) -> Bill:
    """Run after any change to items, tax or late fee, before persisting."""
    bill.subtotal = _money(sum(_money(it.amount) for it in bill.items))
    bill.total_amount = _money(bill.subtotal + _money(bill.tax) + _money(bill.late_fee_amount))
    return bill


# =========================================================
# Reads
# =========================================================
def get_bill(bill_id) -> Bill:
    return get_or_404(Bill, bill_id, "Bill")


def find_bills_for_room(room_id: int, status=None) -> list[Bill]:
    q = Bill.query.filter(Bill.room_id == room_id)
    if status is not None:
        q = q.filter(Bill.status == parse_enum(BillStatus, status, "status"))
    return q.order_by(Bill.created_at.desc(), Bill.id.desc()).all()


# =========================================================
# CreateBill
# =========================================================
def create_bill(
    room_id,
    accommodation_id,
    landlord_id,
    items,
    period_from,
    period_to,
    due_date,
    tax=0,
    notes: str | None = None,
    *,
    now: datetime | None = None,
) -> Bill:
    room_id = parse_id(room_id, "room_id")
    accommodation_id = parse_id(accommodation_id, "accommodation_id")
    landlord_id = parse_id(landlord_id, "landlord_id")
    period_from = parse_date(period_from, "period_from")
    period_to = parse_date(period_to, "period_to")
    due_date = parse_date(due_date, "due_date")
    tax = parse_amount(tax or 0, "tax")
    notes = clean_text(notes, 1000)
    if period_to < period_from:
        raise ValidationError("Billing period end cannot be before its start")
    # Validate once up front; each attempt rebuilds fresh ORM rows.
    build_items(items)

    stamp = now or utcnow_naive()

    def _create():
        rep = current_representative(room_id)
        if rep is None:
            raise PreconditionFailed(f"Room {room_id} has no representative to bill")

        bill = Bill(
            bill_number=next_bill_number(stamp),
            room_id=room_id,
            accommodation_id=accommodation_id,
            landlord_id=landlord_id,
            representative_id=rep.tenant_id,
            period_from=period_from,
            period_to=period_to,
            due_date=due_date,
            status=BillStatus.DRAFT,
            tax=tax,
            late_fee_amount=0.0,
            paid_amount=0.0,
            notes=notes,
            created_at=stamp,
        )
        bill.items = build_items(items)

        today = stamp.date()
        bill.tenants_at_time_of_billing = [
            BillTenantSnapshot(
                tenant_id=occ.tenant_id,
                occupancy_id=occ.id,
                days_in_period=overlap_days(occ, period_from, period_to, today),
            )
            for occ in current_tenants(room_id)
        ]

        recalculate_totals(bill)
        db.session.add(bill)
        db.session.flush()
        return bill

    bill = run_in_transaction(
        "Create bill",
        _create,
        attempts=current_app.config.get("BILL_NUMBER_RETRY_ATTEMPTS", 5),
        retry_on=(IntegrityError,),
    )
    current_app.logger.info(
        "Bill %s created for room %s: total=%.2f representative=%s",
        bill.bill_number,
        room_id,
        bill.total_amount,
        bill.representative_id,
    )
    return bill


# =========================================================
# Status transitions
# =========================================================
def send_bill(bill_id, *, now: datetime | None = None) -> Bill:
    def _send():
        bill = lock_or_404(Bill, bill_id, "Bill")
        if bill.status != BillStatus.DRAFT:
            raise PreconditionFailed(f"Bill {bill.bill_number} is {bill.status.value}, not draft")
        bill.status = BillStatus.SENT
        bill.sent_at = now or utcnow_naive()
        return bill

    bill = run_in_transaction("Send bill", _send)
    current_app.logger.info("Bill %s sent to tenant %s", bill.bill_number, bill.representative_id)
    return bill


def mark_viewed(bill_id, viewer_id, *, now: datetime | None = None) -> Bill:
    """
    Record that the representative opened the bill. Idempotent once the bill
    has been sent: viewed_at/viewed_by keep the first view, and only a sent
    bill moves to viewed (paid or overdue stay as they are).

    Draft (not yet delivered) and cancelled bills raise PreconditionFailed.
    """

    def _view():
        bill = lock_or_404(Bill, bill_id, "Bill")
        if bill.status in (BillStatus.DRAFT, BillStatus.CANCELLED):
            raise PreconditionFailed(f"Bill {bill.bill_number} is {bill.status.value} and cannot be viewed")
        if bill.viewed_at is None:
            bill.viewed_at = now or utcnow_naive()
            bill.viewed_by = viewer_id
        if bill.status == BillStatus.SENT:
            bill.status = BillStatus.VIEWED
        return bill

    return run_in_transaction("Mark bill viewed", _view)


def update_items(bill_id, items) -> Bill:
    build_items(items)

    def _update():
        bill = lock_or_404(Bill, bill_id, "Bill")
        if bill.status != BillStatus.DRAFT:
            raise PreconditionFailed(f"Items of bill {bill.bill_number} are frozen once sent")
        bill.items = build_items(items)
        recalculate_totals(bill)

        committed = (
            db.session.query(sa.func.coalesce(sa.func.sum(BillPayment.amount), 0.0))
            .filter(
                BillPayment.bill_id == bill.id,
                BillPayment.status.in_([PaymentStatus.PENDING, PaymentStatus.COMPLETED]),
            )
            .scalar()
        )
        if bill.total_amount < _money(committed):
            raise PreconditionFailed(
                f"New total {bill.total_amount:.2f} is below the {_money(committed):.2f} already paid or pending"
            )
        return bill

    return run_in_transaction("Update bill items", _update)


def apply_late_fee(bill_id, amount, *, now: datetime | None = None) -> Bill:
    amount = parse_amount(amount, "late fee", allow_zero=False)

    def _apply():
        bill = lock_or_404(Bill, bill_id, "Bill")
        if bill.status in LATE_FEE_BLOCKED:
            raise PreconditionFailed(f"Cannot add a late fee to a {bill.status.value} bill")
        bill.late_fee_amount = _money(bill.late_fee_amount) + amount
        bill.late_fee_applied_at = now or utcnow_naive()
        recalculate_totals(bill)
        return bill

    bill = run_in_transaction("Apply late fee", _apply)
    current_app.logger.info("Late fee %.2f applied to bill %s", amount, bill.bill_number)
    return bill


def is_overdue_candidate(bill: Bill, today: date, statuses) -> bool:
    return bill.status in statuses and bill.due_date < today and bill.remaining_balance > 0


def mark_overdue(bill_id, *, now: datetime | None = None) -> Bill:
    """No-op unless the bill is sent, past due and still owes money."""
    today = (now or utcnow_naive()).date()

    def _mark():
        bill = lock_or_404(Bill, bill_id, "Bill")
        if is_overdue_candidate(bill, today, {BillStatus.SENT}):
            bill.status = BillStatus.OVERDUE
            current_app.logger.info("Bill %s marked overdue", bill.bill_number)
        return bill

    return run_in_transaction("Mark bill overdue", _mark)


def cancel_bill(bill_id, reason: str | None = None, *, now: datetime | None = None) -> Bill:
    reason = clean_text(reason, 500)

    def _cancel():
        bill = lock_or_404(Bill, bill_id, "Bill")
        if bill.status in (BillStatus.PAID, BillStatus.CANCELLED):
            raise PreconditionFailed(f"Bill {bill.bill_number} is already {bill.status.value}")
        completed = (
            db.session.query(sa.func.count(BillPayment.id))
            .filter(BillPayment.bill_id == bill.id, BillPayment.status == PaymentStatus.COMPLETED)
            .scalar()
        )
        if completed:
            raise PreconditionFailed(f"Bill {bill.bill_number} has completed payments; refund them first")
        bill.status = BillStatus.CANCELLED
        bill.cancelled_at = now or utcnow_naive()
        if reason:
            note = f"Cancelled: {reason}"
            bill.notes = f"{bill.notes}. {note}"[:1000] if bill.notes else note
        return bill

    bill = run_in_transaction("Cancel bill", _cancel)
    current_app.logger.info("Bill %s cancelled", bill.bill_number)
    return bill
