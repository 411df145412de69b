"""Add tier and points requirements to loyalty missions."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261017_02"
down_revision: Union[str, None] = "20261016_01"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("loyalty_missions", sa.Column("required_tier_order", sa.Integer(), nullable=True))
    op.add_column("loyalty_missions", sa.Column("min_points_required", sa.Integer(), nullable=True))
    op.create_check_constraint(
        "ck_loyalty_missions_min_points",
        "loyalty_missions",
        "min_points_required IS NULL OR min_points_required >= 0",
    )


def downgrade() -> None:
    op.drop_constraint("ck_loyalty_missions_min_points", "loyalty_missions", type_="check")
    op.drop_column("loyalty_missions", "min_points_required")
    op.drop_column("loyalty_missions", "required_tier_order")
