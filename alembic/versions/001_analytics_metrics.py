"""Telemetry table: analytics_metrics.

Revision ID: 001_analytics_metrics
Revises:
Create Date: 2026-10-17

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001_analytics_metrics"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "analytics_metrics",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("agent_id", sa.Text(), nullable=False),
        sa.Column("metric_type", sa.String(32), nullable=False),
        sa.Column("value", sa.Float(), nullable=False),
        sa.Column("details", sa.JSON().with_variant(JSONB(), "postgresql"), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("idx_analytics_agent_id", "analytics_metrics", ["agent_id"])
    op.create_index("idx_analytics_timestamp", "analytics_metrics", ["timestamp"])


def downgrade() -> None:
    op.drop_index("idx_analytics_timestamp", table_name="analytics_metrics")
    op.drop_index("idx_analytics_agent_id", table_name="analytics_metrics")
    op.drop_table("analytics_metrics")
