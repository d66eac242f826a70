"""Create assets table

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

What:  Creates the `assets` table and the indexes the sweeps rely on.
How:   Generic column types (Uuid, DateTime with time zone, non-native
       enums) so the same migration runs on PostgreSQL and SQLite.

Rollback: downgrade() drops the table (destructive).
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, length=20)


def upgrade() -> None:
    op.create_table(
        "assets",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("note_id", sa.Uuid(), nullable=False),

        # Declared at intent time, never updated
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=False),
        sa.Column("mime_type", sa.String(100), nullable=False),
        sa.Column("storage_key", sa.String(500), nullable=False),
        sa.Column("thumbnail_key", sa.String(500), nullable=True),
        sa.Column("origin", _enum("asset_origin", "upload", "ai_generated"), nullable=False),

        # State machine
        sa.Column(
            "upload_status",
            _enum("upload_status", "PENDING", "UPLOADED", "FAILED"),
            nullable=False,
        ),
        sa.Column(
            "extraction_status",
            _enum("extraction_status", "pending", "processing", "completed", "failed"),
            nullable=True,
        ),
        sa.Column("extracted_content", sa.Text(), nullable=True),
        sa.Column("total_pages", sa.Integer(), nullable=True),
        sa.Column("extraction_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("upload_expires_at", sa.DateTime(timezone=True), nullable=False),

        # Optimistic lock counter; every conditional update bumps it
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),

        sa.PrimaryKeyConstraint("id", name="pk_assets"),
        sa.UniqueConstraint("storage_key", name="uq_assets_storage_key"),
    )

    # Timeout sweep: WHERE extraction_status = 'processing' AND updated_at < :cutoff
    op.create_index(
        "idx_assets_extraction_status_updated_at",
        "assets",
        ["extraction_status", "updated_at"],
    )
    # Intent expiry sweep: WHERE upload_status = 'PENDING' AND upload_expires_at < :cutoff
    op.create_index(
        "idx_assets_upload_status_expires_at",
        "assets",
        ["upload_status", "upload_expires_at"],
    )
    op.create_index("idx_assets_note_id", "assets", ["note_id"])
    op.create_index("idx_assets_owner_id", "assets", ["owner_id"])


def downgrade() -> None:
    op.drop_index("idx_assets_owner_id", table_name="assets")
    op.drop_index("idx_assets_note_id", table_name="assets")
    op.drop_index("idx_assets_upload_status_expires_at", table_name="assets")
    op.drop_index("idx_assets_extraction_status_updated_at", table_name="assets")
    op.drop_table("assets")
