from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "dispatch_requests",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("car_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("mechanic_id", sa.String(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("urgency", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("car_make", sa.String(), nullable=True),
        sa.Column("service_tag", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("slot_released", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_dispatch_requests_owner_id", "dispatch_requests", ["owner_id"])
    op.create_index("ix_dispatch_requests_mechanic_id", "dispatch_requests", ["mechanic_id"])
    op.create_index("ix_dispatch_requests_status", "dispatch_requests", ["status"])

    op.create_table(
        "mechanic_availability",
        sa.Column("mechanic_id", sa.String(), primary_key=True),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("max_concurrent_jobs", sa.Integer(), nullable=False),
        sa.Column("current_active_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("base_location", sa.JSON(), nullable=False),
        sa.Column("service_radius_km", sa.Float(), nullable=False),
        sa.Column("specializations", sa.JSON(), nullable=False),
        sa.Column("hourly_rate", sa.Float(), nullable=False),
        sa.Column("emergency_service", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("working_hours", sa.JSON(), nullable=False),
        sa.Column("rating", sa.Float(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "current_active_jobs >= 0 AND current_active_jobs <= max_concurrent_jobs",
            name="ck_mechanic_availability_active_jobs",
        ),
    )
    op.create_index("ix_mechanic_availability_latitude", "mechanic_availability", ["latitude"])
    op.create_index("ix_mechanic_availability_longitude", "mechanic_availability", ["longitude"])


def downgrade():
    op.drop_index("ix_mechanic_availability_longitude", table_name="mechanic_availability")
    op.drop_index("ix_mechanic_availability_latitude", table_name="mechanic_availability")
    op.drop_table("mechanic_availability")

    op.drop_index("ix_dispatch_requests_status", table_name="dispatch_requests")
    op.drop_index("ix_dispatch_requests_mechanic_id", table_name="dispatch_requests")
    op.drop_index("ix_dispatch_requests_owner_id", table_name="dispatch_requests")
    op.drop_table("dispatch_requests")
