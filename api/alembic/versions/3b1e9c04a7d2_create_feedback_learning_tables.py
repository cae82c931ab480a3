"""create_feedback_learning_tables

Revision ID: 3b1e9c04a7d2
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b1e9c04a7d2"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "interactions",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("card_id", sa.String(length=64), nullable=True),
        sa.Column("tier", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),
        sa.Column("outcome", sa.String(length=30), nullable=True),
        sa.Column("risk_score", sa.Integer(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("reasoning_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_interactions_user_id", "interactions", ["user_id"], unique=False)
    op.create_index("ix_interactions_user_created", "interactions", ["user_id", "created_at"], unique=False)

    op.create_table(
        "ghost_cards",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "interaction_id",
            sa.String(length=64),
            sa.ForeignKey("interactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("satisfaction_feedback", sa.String(length=20), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_ghost_cards_user_id", "ghost_cards", ["user_id"], unique=False)
    op.create_index("ix_ghost_cards_interaction_id", "ghost_cards", ["interaction_id"], unique=False)
    op.create_index("ix_ghost_cards_user_created", "ghost_cards", ["user_id", "created_at"], unique=False)

    op.create_table(
        "skillbooks",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("skills", sa.JSON(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "savings",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "interaction_id",
            sa.String(length=64),
            sa.ForeignKey("interactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("coupon_code", sa.String(length=120), nullable=True),
        sa.Column("source", sa.String(length=60), nullable=True),
        sa.Column("applied", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_savings_interaction_id", "savings", ["interaction_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_savings_interaction_id", table_name="savings")
    op.drop_table("savings")
    op.drop_table("skillbooks")
    op.drop_index("ix_ghost_cards_user_created", table_name="ghost_cards")
    op.drop_index("ix_ghost_cards_interaction_id", table_name="ghost_cards")
    op.drop_index("ix_ghost_cards_user_id", table_name="ghost_cards")
    op.drop_table("ghost_cards")
    op.drop_index("ix_interactions_user_created", table_name="interactions")
    op.drop_index("ix_interactions_user_id", table_name="interactions")
    op.drop_table("interactions")
