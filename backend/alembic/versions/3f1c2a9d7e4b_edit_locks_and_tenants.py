"""edit_locks and tenants tables

Revision ID: 3f1c2a9d7e4b
Revises:
Create Date: 2026-10-19 09:12:44.310527

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3f1c2a9d7e4b"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "edit_locks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("resource_type", sa.String(length=255), nullable=False),
        sa.Column("resource_id", sa.String(length=255), nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("acquired_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("resource_type", "resource_id", name="uq_edit_locks_resource"),
    )
    op.create_index("ix_edit_locks_owner_id", "edit_locks", ["owner_id"])
    op.create_index("ix_edit_locks_acquired_at", "edit_locks", ["acquired_at"])
    op.create_index("ix_edit_locks_owner_acquired", "edit_locks", ["owner_id", "acquired_at"])

    # 중앙 DB에서만 사용 (테넌트 DB에서는 빈 테이블로 남음)
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("primary_domain", sa.String(length=255), nullable=True, unique=True),
    )


def downgrade() -> None:
    op.drop_table("tenants")
    op.drop_index("ix_edit_locks_owner_acquired", table_name="edit_locks")
    op.drop_index("ix_edit_locks_acquired_at", table_name="edit_locks")
    op.drop_index("ix_edit_locks_owner_id", table_name="edit_locks")
    op.drop_table("edit_locks")
