# rentledger/services/occupancy.py
from __future__ import annotations

from datetime import date, datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError

from rentledger.errors import InvalidState, InvariantViolation, NotFound, PreconditionFailed, ValidationError
from rentledger.extensions import db
from rentledger.models import OccupancyStatus, RoomOccupancy, utcnow_naive
from rentledger.utils.db import get_or_404, run_in_transaction
from rentledger.utils.parsing import clean_text, parse_date, parse_enum, parse_id

TERMINAL_STATUSES = {OccupancyStatus.MOVED_OUT, OccupancyStatus.REMOVED}


# =========================================================
# Reads (no locking)
# =========================================================
def current_representative(room_id: int) -> RoomOccupancy | None:
    return (
        RoomOccupancy.query.filter(
            RoomOccupancy.room_id == room_id,
            RoomOccupancy.status == OccupancyStatus.ACTIVE,
            RoomOccupancy.is_representative.is_(True),
        )
        .order_by(RoomOccupancy.id.asc())
        .first()
    )


def current_tenants(room_id: int) -> list[RoomOccupancy]:
    return (
        RoomOccupancy.query.filter(
            RoomOccupancy.room_id == room_id,
            RoomOccupancy.status == OccupancyStatus.ACTIVE,
        )
        .order_by(RoomOccupancy.start_date.asc(), RoomOccupancy.id.asc())
        .all()
    )


def overlap_days(occ: RoomOccupancy, period_from: date, period_to: date, today: date) -> int:
    """
    Days of [start_date, end_date-or-today] that fall inside [period_from, period_to].
    Date difference, so a stay covering a whole 30-day period counts 30.
    """
    stay_end = occ.end_date or today
    start = max(occ.start_date, period_from)
    end = min(stay_end, period_to)
    return max(0, (end - start).days)


def days_in_period(occupancy_id: int, period_from, period_to, *, today: date | None = None) -> int:
    period_from = parse_date(period_from, "period_from")
    period_to = parse_date(period_to, "period_to")
    if period_to < period_from:
        raise ValidationError("period_to cannot be before period_from")

    occ = get_or_404(RoomOccupancy, occupancy_id, "Occupancy")
    return overlap_days(occ, period_from, period_to, today or utcnow_naive().date())


# =========================================================
# Lifecycle
# =========================================================
def start_occupancy(room_id, tenant_id, agreement_id, start_date) -> RoomOccupancy:
    room_id = parse_id(room_id, "room_id")
    tenant_id = parse_id(tenant_id, "tenant_id")
    agreement_id = parse_id(agreement_id, "agreement_id")
    start_date = parse_date(start_date, "start_date")

    def _start():
        already = RoomOccupancy.query.filter_by(
            room_id=room_id,
            tenant_id=tenant_id,
            status=OccupancyStatus.ACTIVE,
        ).first()
        if already:
            raise PreconditionFailed(f"Tenant {tenant_id} already occupies room {room_id}")

        occ = RoomOccupancy(
            room_id=room_id,
            tenant_id=tenant_id,
            tenancy_agreement_id=agreement_id,
            start_date=start_date,
            status=OccupancyStatus.ACTIVE,
            is_representative=False,
        )
        db.session.add(occ)
        db.session.flush()
        return occ

    occ = run_in_transaction("Start occupancy", _start)
    current_app.logger.info("Occupancy %s started: room=%s tenant=%s", occ.id, room_id, tenant_id)
    return occ


def end_occupancy(
    occupancy_id,
    end_date,
    actor_id=None,
    reason: str | None = None,
    terminal_status=OccupancyStatus.MOVED_OUT,
    *,
    now: datetime | None = None,
) -> RoomOccupancy:
    end_date = parse_date(end_date, "end_date")
    terminal_status = parse_enum(OccupancyStatus, terminal_status, "terminal_status")
    if terminal_status not in TERMINAL_STATUSES:
        raise ValidationError("terminal_status must be moved_out or removed")
    reason = clean_text(reason, 500)
    stamp = now or utcnow_naive()

    def _end():
        occ = (
            db.session.query(RoomOccupancy)
            .filter(RoomOccupancy.id == occupancy_id)
            .with_for_update(of=RoomOccupancy)
            .populate_existing()
            .first()
        )
        if occ is None or occ.status in TERMINAL_STATUSES:
            raise NotFound(f"Active occupancy {occupancy_id} not found")
        if end_date < occ.start_date:
            raise ValidationError("end_date cannot be before start_date")

        occ.end_date = end_date
        occ.status = terminal_status
        if terminal_status == OccupancyStatus.REMOVED:
            occ.removed_by = actor_id
            occ.removed_at = stamp
            occ.removal_reason = reason
        return occ

    occ = run_in_transaction("End occupancy", _end)
    current_app.logger.info(
        "Occupancy %s ended as %s on %s (actor=%s)",
        occ.id,
        terminal_status.value,
        end_date.isoformat(),
        actor_id,
    )
    return occ


# =========================================================
# Representative (atomic clear-then-set)
# =========================================================
def set_representative(room_id, tenant_id, actor_id=None, *, now: datetime | None = None) -> RoomOccupancy:
    room_id = parse_id(room_id, "room_id")
    tenant_id = parse_id(tenant_id, "tenant_id")
    stamp = now or utcnow_naive()

    def _set():
        # Lock every active record for the room; concurrent callers queue here.
        active = (
            db.session.query(RoomOccupancy)
            .filter(
                RoomOccupancy.room_id == room_id,
                RoomOccupancy.status == OccupancyStatus.ACTIVE,
            )
            .order_by(RoomOccupancy.id.asc())
            .with_for_update(of=RoomOccupancy)
            .populate_existing()
            .all()
        )
        target = next((o for o in active if o.tenant_id == tenant_id), None)
        if target is None:
            raise InvalidState(f"Tenant {tenant_id} has no active occupancy in room {room_id}")

        for occ in active:
            if occ.is_representative:
                occ.is_representative = False
                occ.representative_set_at = None
                occ.representative_set_by = None
        # Clear must reach the partial unique index before the set does.
        db.session.flush()

        target.is_representative = True
        target.representative_set_at = stamp
        target.representative_set_by = actor_id
        db.session.flush()

        reps = (
            RoomOccupancy.query.filter(
                RoomOccupancy.room_id == room_id,
                RoomOccupancy.status == OccupancyStatus.ACTIVE,
                RoomOccupancy.is_representative.is_(True),
            ).count()
        )
        if reps != 1:
            current_app.logger.critical("Room %s has %d active representatives", room_id, reps)
            raise InvariantViolation(f"Room {room_id} would have {reps} active representatives")
        return target

    occ = run_in_transaction(
        "Set representative",
        _set,
        retry_on=(OperationalError, IntegrityError),
    )
    current_app.logger.info("Room %s representative set to tenant %s by %s", room_id, tenant_id, actor_id)
    return occ
