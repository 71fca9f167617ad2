# rentledger/models.py
from __future__ import annotations

import enum
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.mutable import MutableDict

from .extensions import db


# Use **naive UTC** everywhere; columns are "timestamp without time zone".
def utcnow_naive() -> datetime:
    return datetime.utcnow()


def _enum_column(enum_cls, name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda e: [m.value for m in e],
        native_enum=False,
        validate_strings=True,
    )


# jsonb on Postgres, plain JSON elsewhere (tests run on SQLite)
JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


# =========================================================
# Enums
# =========================================================
class OccupancyStatus(enum.Enum):
    ACTIVE = "active"
    MOVED_OUT = "moved_out"
    REMOVED = "removed"


class BillStatus(enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class BillItemType(enum.Enum):
    RENT = "rent"
    WATER = "water"
    ELECTRICITY = "electricity"
    INTERNET = "internet"
    SANITATION = "sanitation"
    PARKING = "parking"
    SECURITY = "security"
    MAINTENANCE = "maintenance"
    CLEANING = "cleaning"
    OTHER = "other"


class PaymentMethod(enum.Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    WALLET = "wallet"
    ONLINE = "online"
    OTHER = "other"


class PaymentStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


# =========================================================
# RoomOccupancy (who stayed in a room, and when)
# =========================================================
class RoomOccupancy(db.Model):
    __tablename__ = "room_occupancy"

    id = db.Column(db.Integer, primary_key=True)

    # Room, tenant and agreement live in external services; ids only.
    room_id = db.Column(db.Integer, nullable=False)
    tenant_id = db.Column(db.Integer, nullable=False, index=True)
    tenancy_agreement_id = db.Column(db.Integer, nullable=False, index=True)

    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=True)  # NULL = still occupying

    status = db.Column(
        _enum_column(OccupancyStatus, "occupancy_status"),
        nullable=False,
        default=OccupancyStatus.ACTIVE,
    )

    is_representative = db.Column(db.Boolean, nullable=False, default=False)
    representative_set_at = db.Column(db.DateTime, nullable=True)
    representative_set_by = db.Column(db.Integer, nullable=True)  # landlord user id

    removed_by = db.Column(db.Integer, nullable=True)
    removed_at = db.Column(db.DateTime, nullable=True)
    removal_reason = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive, onupdate=utcnow_naive)

    __table_args__ = (
        db.Index("ix_room_occupancy_room_status", "room_id", "status"),
        # At most one active representative per room.
        db.Index(
            "uq_room_occupancy_active_representative",
            "room_id",
            unique=True,
            postgresql_where=sa.text("is_representative AND status = 'active'"),
            sqlite_where=sa.text("is_representative = 1 AND status = 'active'"),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.status == OccupancyStatus.ACTIVE

    def __repr__(self) -> str:
        return f"<RoomOccupancy {self.id} room={self.room_id} tenant={self.tenant_id} {self.status.value}>"


# =========================================================
# Bill
# =========================================================
class Bill(db.Model):
    __tablename__ = "bill"

    id = db.Column(db.Integer, primary_key=True)
    bill_number = db.Column(db.String(20), nullable=False)

    room_id = db.Column(db.Integer, nullable=False)
    accommodation_id = db.Column(db.Integer, nullable=False)
    landlord_id = db.Column(db.Integer, nullable=False, index=True)

    # Snapshot of the room representative at creation time
    representative_id = db.Column(db.Integer, nullable=False, index=True)

    period_from = db.Column(db.Date, nullable=False)
    period_to = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=False)

    status = db.Column(
        _enum_column(BillStatus, "bill_status"),
        nullable=False,
        default=BillStatus.DRAFT,
    )

    subtotal = db.Column(db.Float, nullable=False, default=0.0)
    tax = db.Column(db.Float, nullable=False, default=0.0)
    late_fee_amount = db.Column(db.Float, nullable=False, default=0.0)
    late_fee_applied_at = db.Column(db.DateTime, nullable=True)
    total_amount = db.Column(db.Float, nullable=False, default=0.0)

    # Derived from completed payments; written only by reconciliation.
    paid_amount = db.Column(db.Float, nullable=False, default=0.0)
    paid_at = db.Column(db.DateTime, nullable=True)

    notes = db.Column(db.String(1000), nullable=True)

    sent_at = db.Column(db.DateTime, nullable=True)
    viewed_at = db.Column(db.DateTime, nullable=True)
    viewed_by = db.Column(db.Integer, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive, onupdate=utcnow_naive)

    items = db.relationship(
        "BillItem",
        back_populates="bill",
        cascade="all, delete-orphan",
        order_by="BillItem.id",
        lazy="select",
    )
    tenants_at_time_of_billing = db.relationship(
        "BillTenantSnapshot",
        back_populates="bill",
        cascade="all, delete-orphan",
        order_by="BillTenantSnapshot.id",
        lazy="select",
    )
    payments = db.relationship("BillPayment", back_populates="bill", lazy="select")

    __table_args__ = (
        db.UniqueConstraint("bill_number", name="uq_bill_bill_number"),
        db.Index("ix_bill_room_status", "room_id", "status"),
        db.Index("ix_bill_due_date_status", "due_date", "status"),
        db.Index("ix_bill_period", "period_from", "period_to"),
        db.CheckConstraint("paid_amount >= 0", name="ck_bill_paid_amount_non_negative"),
    )

    @property
    def remaining_balance(self) -> float:
        return round((self.total_amount or 0.0) - (self.paid_amount or 0.0), 2)

    @property
    def payment_status(self) -> str:
        paid = self.paid_amount or 0.0
        if paid <= 0:
            return "unpaid"
        if paid >= (self.total_amount or 0.0):
            return "fully_paid"
        return "partially_paid"

    def __repr__(self) -> str:
        return f"<Bill {self.id} {self.bill_number} {self.status.value}>"


class BillItem(db.Model):
    __tablename__ = "bill_item"

    id = db.Column(db.Integer, primary_key=True)
    bill_id = db.Column(db.Integer, db.ForeignKey("bill.id", ondelete="CASCADE"), nullable=False, index=True)
    bill = db.relationship("Bill", back_populates="items")

    name = db.Column(db.String(120), nullable=False)
    item_type = db.Column(_enum_column(BillItemType, "bill_item_type"), nullable=False)
    amount = db.Column(db.Float, nullable=False, default=0.0)
    quantity = db.Column(db.Float, nullable=False, default=1.0)
    unit_price = db.Column(db.Float, nullable=True)
    description = db.Column(db.String(200), nullable=True)

    # Utility items only
    previous_reading = db.Column(db.Float, nullable=True)
    current_reading = db.Column(db.Float, nullable=True)
    consumption = db.Column(db.Float, nullable=True)


class BillTenantSnapshot(db.Model):
    """Tenant share frozen at bill creation; never recomputed."""

    __tablename__ = "bill_tenant_snapshot"

    id = db.Column(db.Integer, primary_key=True)
    bill_id = db.Column(db.Integer, db.ForeignKey("bill.id", ondelete="CASCADE"), nullable=False, index=True)
    bill = db.relationship("Bill", back_populates="tenants_at_time_of_billing")

    tenant_id = db.Column(db.Integer, nullable=False)
    occupancy_id = db.Column(db.Integer, db.ForeignKey("room_occupancy.id"), nullable=False)
    days_in_period = db.Column(db.Integer, nullable=False)

    __table_args__ = (
        db.CheckConstraint("days_in_period >= 0", name="ck_bill_tenant_snapshot_days"),
    )


# =========================================================
# BillPayment
# =========================================================
class BillPayment(db.Model):
    __tablename__ = "bill_payment"

    id = db.Column(db.Integer, primary_key=True)

    bill_id = db.Column(db.Integer, db.ForeignKey("bill.id"), nullable=False)
    bill = db.relationship("Bill", back_populates="payments")

    payer_id = db.Column(db.Integer, nullable=False)
    amount = db.Column(db.Float, nullable=False)

    payment_method = db.Column(_enum_column(PaymentMethod, "payment_method"), nullable=False)
    status = db.Column(
        _enum_column(PaymentStatus, "bill_payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )

    transaction_id = db.Column(db.String(64), nullable=True)  # payment gateway reference
    reference_number = db.Column(db.String(120), nullable=True, index=True)
    received_by = db.Column(db.Integer, nullable=True)  # cash payments

    # from_account / to_account / transfer_date / confirmation_code
    bank_transfer_details = db.Column(MutableDict.as_mutable(JSONType), nullable=True)

    is_partial_payment = db.Column(db.Boolean, nullable=False, default=False)
    paid_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.String(500), nullable=True)
    receipt_url = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive, onupdate=utcnow_naive)

    __table_args__ = (
        db.Index("ix_bill_payment_bill_status", "bill_id", "status"),
        db.Index("ix_bill_payment_payer_status", "payer_id", "status"),
        db.CheckConstraint("amount > 0", name="ck_bill_payment_amount_positive"),
    )

    def __repr__(self) -> str:
        return f"<BillPayment {self.id} bill={self.bill_id} {self.amount} {self.status.value}>"
