"""create media entries index

Revision ID: 0001_create_media_entries
Revises:
Create Date: 2026-10-19

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_create_media_entries"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Identity columns are indexed but not unique: ingest jobs evict
    # the previous entry before inserting the new one. Entry ids are never reused,
    # so a stale handle cannot resolve to a newer entry or its blob.
    op.create_table(
        "media_entries",
        sa.Column("entry_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("volume", sa.Text(), nullable=False),
        sa.Column("collection", sa.Text(), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.Column("relative_path", sa.Text(), nullable=False),
        sa.Column("is_pending", sa.Boolean(), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "collection IN ('images', 'audio', 'video', 'downloads')",
            name="media_entries_collection_check",
        ),
        sqlite_autoincrement=True,
    )
    op.create_index(
        "media_entries_identity_idx",
        "media_entries",
        ["volume", "collection", "relative_path", "display_name"],
    )
    op.create_index(
        "media_entries_pending_created_idx",
        "media_entries",
        ["is_pending", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("media_entries_pending_created_idx", table_name="media_entries")
    op.drop_index("media_entries_identity_idx", table_name="media_entries")
    op.drop_table("media_entries")
