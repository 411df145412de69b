"""Create loyalty ledger, tier, wheel and mission tables."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261016_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = postgresql.UUID(as_uuid=True)

ledger_entry_kind = sa.Enum(
    "PURCHASE",
    "REWARD",
    "MISSION",
    "WHEEL",
    "ADJUSTMENT",
    "REFUND",
    "REVERSAL",
    name="loyalty_ledger_entry_kind",
)
wheel_reward_type = sa.Enum("POINTS", "DISCOUNT", "NOTHING", name="loyalty_wheel_reward_type")


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False))
    return columns


def upgrade() -> None:
    op.create_table(
        "loyalty_brands",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("points_per_currency_unit", sa.Numeric(10, 4), nullable=False, server_default="1"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "loyalty_tiers",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("brand_id", UUID, sa.ForeignKey("loyalty_brands.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("min_points", sa.Integer(), nullable=False),
        sa.Column("max_points", sa.Integer(), nullable=True),
        sa.Column("benefits", sa.JSON(), nullable=False),
        sa.Column("tier_order", sa.Integer(), nullable=False),
        *_timestamps(updated=False),
        sa.UniqueConstraint("brand_id", "tier_order", name="uq_loyalty_tiers_brand_order"),
        sa.CheckConstraint("min_points >= 0", name="ck_loyalty_tiers_min_points"),
    )
    op.create_index("ix_loyalty_tiers_brand_id", "loyalty_tiers", ["brand_id"])

    op.create_table(
        "loyalty_members",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("brand_id", UUID, sa.ForeignKey("loyalty_brands.id", ondelete="CASCADE"), nullable=False),
        sa.Column("external_ref", sa.String(), nullable=True),
        sa.Column("current_tier_id", UUID, sa.ForeignKey("loyalty_tiers.id"), nullable=True),
        sa.Column("points_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_spend", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("last_sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("brand_id", "external_ref", name="uq_loyalty_members_brand_ref"),
    )
    op.create_index("ix_loyalty_members_brand_id", "loyalty_members", ["brand_id"])

    op.create_table(
        "loyalty_ledger_entries",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("member_id", UUID, sa.ForeignKey("loyalty_members.id", ondelete="CASCADE"), nullable=False),
        sa.Column("brand_id", UUID, sa.ForeignKey("loyalty_brands.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("kind", ledger_entry_kind, nullable=False),
        sa.Column("points_delta", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("monetary_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(updated=False),
        sa.UniqueConstraint("member_id", "sequence", name="uq_loyalty_ledger_entries_member_sequence"),
    )
    op.create_index("ix_loyalty_ledger_entries_member_id", "loyalty_ledger_entries", ["member_id"])
    op.create_index("ix_loyalty_ledger_entries_correlation_id", "loyalty_ledger_entries", ["correlation_id"])

    op.create_table(
        "loyalty_wheels",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("brand_id", UUID, sa.ForeignKey("loyalty_brands.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("cost_to_spin", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_spins_per_day", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("cooldown_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_spinnable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("cost_to_spin >= 0", name="ck_loyalty_wheels_cost"),
        sa.CheckConstraint("max_spins_per_day >= 0", name="ck_loyalty_wheels_quota"),
    )
    op.create_index("ix_loyalty_wheels_brand_id", "loyalty_wheels", ["brand_id"])

    op.create_table(
        "loyalty_wheel_segments",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("wheel_id", UUID, sa.ForeignKey("loyalty_wheels.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("label", sa.String(), nullable=False),
        sa.Column("probability", sa.Float(), nullable=False),
        sa.Column("reward_type", wheel_reward_type, nullable=False),
        sa.Column("reward_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reward_metadata", sa.JSON(), nullable=True),
        sa.Column("retired_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_loyalty_wheel_segments_wheel_id", "loyalty_wheel_segments", ["wheel_id"])

    op.create_table(
        "loyalty_spin_records",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("wheel_id", UUID, sa.ForeignKey("loyalty_wheels.id", ondelete="CASCADE"), nullable=False),
        sa.Column("member_id", UUID, sa.ForeignKey("loyalty_members.id", ondelete="CASCADE"), nullable=False),
        sa.Column("brand_id", UUID, sa.ForeignKey("loyalty_brands.id", ondelete="CASCADE"), nullable=False),
        sa.Column("segment_id", UUID, sa.ForeignKey("loyalty_wheel_segments.id"), nullable=False),
        sa.Column("spin_day", sa.Date(), nullable=False),
        sa.Column("daily_sequence", sa.Integer(), nullable=False),
        sa.Column("points_used", sa.Integer(), nullable=False),
        sa.Column("points_awarded", sa.Integer(), nullable=False),
        sa.Column("result_reward", sa.JSON(), nullable=True),
        sa.Column("ledger_entry_id", UUID, sa.ForeignKey("loyalty_ledger_entries.id"), nullable=True),
        sa.Column("spun_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "member_id",
            "wheel_id",
            "spin_day",
            "daily_sequence",
            name="uq_loyalty_spin_records_member_wheel_day_seq",
        ),
    )
    op.create_index("ix_loyalty_spin_records_member_id", "loyalty_spin_records", ["member_id"])

    op.create_table(
        "loyalty_missions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("brand_id", UUID, sa.ForeignKey("loyalty_brands.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("mission_type", sa.String(), nullable=False),
        sa.Column("target", sa.Numeric(14, 2), nullable=False),
        sa.Column("reward_points", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("target > 0", name="ck_loyalty_missions_target"),
        sa.CheckConstraint("reward_points >= 0", name="ck_loyalty_missions_reward"),
    )
    op.create_index("ix_loyalty_missions_brand_id", "loyalty_missions", ["brand_id"])

    op.create_table(
        "loyalty_mission_progress",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("member_id", UUID, sa.ForeignKey("loyalty_members.id", ondelete="CASCADE"), nullable=False),
        sa.Column("mission_id", UUID, sa.ForeignKey("loyalty_missions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("brand_id", UUID, sa.ForeignKey("loyalty_brands.id", ondelete="CASCADE"), nullable=False),
        sa.Column("progress", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reward_points", sa.Integer(), nullable=True),
        sa.Column("ledger_entry_id", UUID, sa.ForeignKey("loyalty_ledger_entries.id"), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("member_id", "mission_id", name="uq_loyalty_mission_progress_member_mission"),
    )
    op.create_index("ix_loyalty_mission_progress_member_id", "loyalty_mission_progress", ["member_id"])


def downgrade() -> None:
    op.drop_index("ix_loyalty_mission_progress_member_id", table_name="loyalty_mission_progress")
    op.drop_table("loyalty_mission_progress")
    op.drop_index("ix_loyalty_missions_brand_id", table_name="loyalty_missions")
    op.drop_table("loyalty_missions")
    op.drop_index("ix_loyalty_spin_records_member_id", table_name="loyalty_spin_records")
    op.drop_table("loyalty_spin_records")
    op.drop_index("ix_loyalty_wheel_segments_wheel_id", table_name="loyalty_wheel_segments")
    op.drop_table("loyalty_wheel_segments")
    op.drop_index("ix_loyalty_wheels_brand_id", table_name="loyalty_wheels")
    op.drop_table("loyalty_wheels")
    op.drop_index("ix_loyalty_ledger_entries_correlation_id", table_name="loyalty_ledger_entries")
    op.drop_index("ix_loyalty_ledger_entries_member_id", table_name="loyalty_ledger_entries")
    op.drop_table("loyalty_ledger_entries")
    op.drop_index("ix_loyalty_members_brand_id", table_name="loyalty_members")
    op.drop_table("loyalty_members")
    op.drop_index("ix_loyalty_tiers_brand_id", table_name="loyalty_tiers")
    op.drop_table("loyalty_tiers")
    op.drop_table("loyalty_brands")

    bind = op.get_bind()
    wheel_reward_type.drop(bind, checkfirst=True)
    ledger_entry_kind.drop(bind, checkfirst=True)
