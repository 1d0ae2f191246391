from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(12, 2)


def upgrade():
    op.create_table(
        "resources",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("resource_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("hourly_rate", MONEY, nullable=True),
        sa.Column("daily_rate", MONEY, nullable=True),
        sa.Column("weekly_rate", MONEY, nullable=True),
        sa.Column("monthly_rate", MONEY, nullable=True),
        sa.Column("deposit", MONEY, nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("delivery_available", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("delivery_fee", MONEY, nullable=False, server_default="0"),
        sa.Column("min_rental_hours", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("max_rental_hours", sa.Integer(), nullable=False, server_default="720"),
        sa.Column("advance_booking_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("instant_booking", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_resources_resource_id", "resources", ["resource_id"], unique=True)
    op.create_index("ix_resources_owner_id", "resources", ["owner_id"], unique=False)

    op.create_table(
        "reservations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reservation_id", sa.String(), nullable=False),
        sa.Column("reference_code", sa.String(), nullable=False),
        sa.Column("resource_id", sa.String(), sa.ForeignKey("resources.resource_id"), nullable=False),
        sa.Column("renter_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("delivery_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("base_amount", MONEY, nullable=False),
        sa.Column("deposit", MONEY, nullable=False),
        sa.Column("service_fee", MONEY, nullable=False),
        sa.Column("delivery_fee", MONEY, nullable=False),
        sa.Column("taxes", MONEY, nullable=False),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("payment_ref", sa.String(), nullable=True),
        sa.Column("payment_status", sa.String(), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_reason", sa.String(), nullable=True),
        sa.Column("refund_amount", MONEY, nullable=True),
        sa.Column("refund_service_fee", MONEY, nullable=True),
        sa.Column("refund_percentage", sa.Numeric(5, 2), nullable=True),
        sa.Column("refund_ref", sa.String(), nullable=True),
        sa.Column("refund_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispute_reason", sa.String(), nullable=True),
        sa.Column("dispute_description", sa.Text(), nullable=True),
        sa.Column("disputed_by", sa.String(), nullable=True),
        sa.Column("disputed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispute_previous_status", sa.String(), nullable=True),
        sa.Column("dispute_decision", sa.Text(), nullable=True),
        sa.Column("dispute_resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(), nullable=True),
        sa.Column("cancellation_reason", sa.String(), nullable=True),
    )
    op.create_index("ix_reservations_reservation_id", "reservations", ["reservation_id"], unique=True)
    op.create_index("ix_reservations_reference_code", "reservations", ["reference_code"], unique=True)
    op.create_index("ix_reservations_resource_id", "reservations", ["resource_id"], unique=False)
    op.create_index("ix_reservations_renter_id", "reservations", ["renter_id"], unique=False)
    op.create_index("ix_reservations_owner_id", "reservations", ["owner_id"], unique=False)
    op.create_index("ix_reservations_status", "reservations", ["status"], unique=False)
    op.create_index("ix_reservations_payment_status", "reservations", ["payment_status"], unique=False)
    op.create_index(
        "ix_reservations_resource_interval",
        "reservations",
        ["resource_id", "start_at", "end_at"],
        unique=False,
    )


def downgrade():
    op.drop_index("ix_reservations_resource_interval", table_name="reservations")
    op.drop_index("ix_reservations_payment_status", table_name="reservations")
    op.drop_index("ix_reservations_status", table_name="reservations")
    op.drop_index("ix_reservations_owner_id", table_name="reservations")
    op.drop_index("ix_reservations_renter_id", table_name="reservations")
    op.drop_index("ix_reservations_resource_id", table_name="reservations")
    op.drop_index("ix_reservations_reference_code", table_name="reservations")
    op.drop_index("ix_reservations_reservation_id", table_name="reservations")
    op.drop_table("reservations")

    op.drop_index("ix_resources_owner_id", table_name="resources")
    op.drop_index("ix_resources_resource_id", table_name="resources")
    op.drop_table("resources")
