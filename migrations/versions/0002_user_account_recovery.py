"""users: forced password change, reset tokens, activity feed read marker

Revision ID: 0002_user_account_recovery
Revises: 0001_initial
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "0002_user_account_recovery"
down_revision: Union[str, Sequence[str], None] = "0001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)
    cols = {c["name"] for c in insp.get_columns("users")}

    with op.batch_alter_table("users") as batch_op:
        if "must_change_password" not in cols:
            batch_op.add_column(
                sa.Column("must_change_password", sa.Boolean(), nullable=False, server_default=sa.false())
            )
        if "reset_token_hash" not in cols:
            batch_op.add_column(sa.Column("reset_token_hash", sa.String(64), nullable=True))
        if "reset_token_expires_at" not in cols:
            batch_op.add_column(sa.Column("reset_token_expires_at", sa.DateTime(timezone=False), nullable=True))
        if "last_seen_activity_at" not in cols:
            batch_op.add_column(sa.Column("last_seen_activity_at", sa.DateTime(timezone=False), nullable=True))

    # index (idempotent)
    idx_names = {ix.get("name") for ix in insp.get_indexes("users")}
    if "idx_users_reset_token_hash" not in idx_names:
        op.create_index("idx_users_reset_token_hash", "users", ["reset_token_hash"])


def downgrade() -> None:
    op.drop_index("idx_users_reset_token_hash", table_name="users")
    with op.batch_alter_table("users") as batch_op:
        batch_op.drop_column("last_seen_activity_at")
        batch_op.drop_column("reset_token_expires_at")
        batch_op.drop_column("reset_token_hash")
        batch_op.drop_column("must_change_password")
