# rentledger/services/overdue.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app

from rentledger.extensions import db
from rentledger.models import Bill, BillStatus, utcnow_naive
from rentledger.services.billing import is_overdue_candidate
from rentledger.utils.db import lock_or_404, run_in_transaction

SWEEPABLE_STATUSES = {BillStatus.SENT, BillStatus.VIEWED}


@dataclass
class SweepResult:
    checked: int = 0
    flagged: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


def find_overdue_bill_ids(today) -> list[int]:
    rows = (
        db.session.query(Bill.id)
        .filter(
            Bill.due_date < today,
            Bill.status.in_(list(SWEEPABLE_STATUSES)),
            (Bill.total_amount - Bill.paid_amount) > 0,
        )
        .order_by(Bill.due_date.asc(), Bill.id.asc())
        .all()
    )
    return [r.id for r in rows]


def _flag_if_still_overdue(bill_id: int, today) -> tuple[str, bool]:
    # Balance may have changed since selection; decide on the locked row.
    bill = lock_or_404(Bill, bill_id, "Bill")
    if not is_overdue_candidate(bill, today, SWEEPABLE_STATUSES):
        return bill.bill_number, False
    bill.status = BillStatus.OVERDUE
    return bill.bill_number, True


def sweep_overdue_bills(*, now: datetime | None = None) -> SweepResult:
    today = (now or utcnow_naive()).date()
    result = SweepResult()

    bill_ids = find_overdue_bill_ids(today)
    db.session.rollback()  # release the selection snapshot

    for bill_id in bill_ids:
        result.checked += 1
        try:
            number, flagged = run_in_transaction(
                f"Flag bill {bill_id} overdue",
                lambda: _flag_if_still_overdue(bill_id, today),
            )
        except Exception:
            current_app.logger.exception("Overdue sweep failed for bill %s", bill_id)
            result.failed.append(bill_id)
            continue
        (result.flagged if flagged else result.skipped).append(number)

    current_app.logger.info(
        "Overdue sweep: checked=%d flagged=%d skipped=%d failed=%d",
        result.checked,
        len(result.flagged),
        len(result.skipped),
        len(result.failed),
    )
    return result
