"""create occupancy and billing tables

Revision ID: 5d1f0c2a9e41
Revises:
Create Date: 2026-10-19 09:12:44.318204

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "5d1f0c2a9e41"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # =========================
    # room_occupancy
    # =========================
    op.create_table(
        "room_occupancy",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("room_id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("tenancy_agreement_id", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(length=9), nullable=False, server_default="active"),
        sa.Column("is_representative", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("representative_set_at", sa.DateTime(), nullable=True),
        sa.Column("representative_set_by", sa.Integer(), nullable=True),
        sa.Column("removed_by", sa.Integer(), nullable=True),
        sa.Column("removed_at", sa.DateTime(), nullable=True),
        sa.Column("removal_reason", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("status IN ('active','moved_out','removed')", name="ck_room_occupancy_status"),
    )
    op.create_index("ix_room_occupancy_tenant_id", "room_occupancy", ["tenant_id"])
    op.create_index("ix_room_occupancy_tenancy_agreement_id", "room_occupancy", ["tenancy_agreement_id"])
    op.create_index("ix_room_occupancy_room_status", "room_occupancy", ["room_id", "status"])

    # One active representative per room
    op.create_index(
        "uq_room_occupancy_active_representative",
        "room_occupancy",
        ["room_id"],
        unique=True,
        postgresql_where=sa.text("is_representative AND status = 'active'"),
    )

    # =========================
    # bill
    # =========================
    op.create_table(
        "bill",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("bill_number", sa.String(length=20), nullable=False),
        sa.Column("room_id", sa.Integer(), nullable=False),
        sa.Column("accommodation_id", sa.Integer(), nullable=False),
        sa.Column("landlord_id", sa.Integer(), nullable=False),
        sa.Column("representative_id", sa.Integer(), nullable=False),
        sa.Column("period_from", sa.Date(), nullable=False),
        sa.Column("period_to", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=9), nullable=False, server_default="draft"),
        sa.Column("subtotal", sa.Float(), nullable=False, server_default="0"),
        sa.Column("tax", sa.Float(), nullable=False, server_default="0"),
        sa.Column("late_fee_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("late_fee_applied_at", sa.DateTime(), nullable=True),
        sa.Column("total_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("paid_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("notes", sa.String(length=1000), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("viewed_at", sa.DateTime(), nullable=True),
        sa.Column("viewed_by", sa.Integer(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("bill_number", name="uq_bill_bill_number"),
        sa.CheckConstraint("paid_amount >= 0", name="ck_bill_paid_amount_non_negative"),
        sa.CheckConstraint(
            "status IN ('draft','sent','viewed','paid','overdue','cancelled')",
            name="ck_bill_status",
        ),
    )
    op.create_index("ix_bill_landlord_id", "bill", ["landlord_id"])
    op.create_index("ix_bill_representative_id", "bill", ["representative_id"])
    op.create_index("ix_bill_room_status", "bill", ["room_id", "status"])
    op.create_index("ix_bill_due_date_status", "bill", ["due_date", "status"])
    op.create_index("ix_bill_period", "bill", ["period_from", "period_to"])

    # =========================
    # bill_item
    # =========================
    op.create_table(
        "bill_item",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("bill_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("item_type", sa.String(length=11), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("quantity", sa.Float(), nullable=False, server_default="1"),
        sa.Column("unit_price", sa.Float(), nullable=True),
        sa.Column("description", sa.String(length=200), nullable=True),
        sa.Column("previous_reading", sa.Float(), nullable=True),
        sa.Column("current_reading", sa.Float(), nullable=True),
        sa.Column("consumption", sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(["bill_id"], ["bill.id"], name="fk_bill_item_bill", ondelete="CASCADE"),
    )
    op.create_index("ix_bill_item_bill_id", "bill_item", ["bill_id"])

    # =========================
    # bill_tenant_snapshot (frozen at bill creation)
    # =========================
    op.create_table(
        "bill_tenant_snapshot",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("bill_id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("occupancy_id", sa.Integer(), nullable=False),
        sa.Column("days_in_period", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["bill_id"], ["bill.id"], name="fk_bill_tenant_snapshot_bill", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["occupancy_id"], ["room_occupancy.id"], name="fk_bill_tenant_snapshot_occupancy"
        ),
        sa.CheckConstraint("days_in_period >= 0", name="ck_bill_tenant_snapshot_days"),
    )
    op.create_index("ix_bill_tenant_snapshot_bill_id", "bill_tenant_snapshot", ["bill_id"])

    # =========================
    # bill_payment
    # =========================
    op.create_table(
        "bill_payment",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("bill_id", sa.Integer(), nullable=False),
        sa.Column("payer_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("payment_method", sa.String(length=13), nullable=False),
        sa.Column("status", sa.String(length=9), nullable=False, server_default="pending"),
        sa.Column("transaction_id", sa.String(length=64), nullable=True),
        sa.Column("reference_number", sa.String(length=120), nullable=True),
        sa.Column("received_by", sa.Integer(), nullable=True),
        sa.Column("bank_transfer_details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("is_partial_payment", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("notes", sa.String(length=500), nullable=True),
        sa.Column("receipt_url", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["bill_id"], ["bill.id"], name="fk_bill_payment_bill"),
        sa.CheckConstraint("amount > 0", name="ck_bill_payment_amount_positive"),
        sa.CheckConstraint(
            "status IN ('pending','completed','failed','refunded')",
            name="ck_bill_payment_status",
        ),
    )
    op.create_index("ix_bill_payment_reference_number", "bill_payment", ["reference_number"])
    op.create_index("ix_bill_payment_bill_status", "bill_payment", ["bill_id", "status"])
    op.create_index("ix_bill_payment_payer_status", "bill_payment", ["payer_id", "status"])


def downgrade():
    op.drop_table("bill_payment")
    op.drop_table("bill_tenant_snapshot")
    op.drop_table("bill_item")
    op.drop_table("bill")
    op.execute("DROP INDEX IF EXISTS uq_room_occupancy_active_representative;")
    op.drop_table("room_occupancy")
