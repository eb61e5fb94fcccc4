from __future__ import annotations

"""init schema"""

from alembic import op
import sqlalchemy as sa


revision = "0001_init_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "conversations",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("is_guest", sa.Boolean, nullable=False, server_default=sa.text("FALSE")),
        sa.Column("degraded", sa.Boolean, nullable=False, server_default=sa.text("FALSE")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")),
    )
    op.create_index("idx_conversations_user_id", "conversations", ["user_id", "updated_at"])

    # One row per conversation, locked FOR UPDATE by every write
    op.create_table(
        "message_counters",
        sa.Column(
            "conversation_id",
            sa.String(length=64),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("last_seq_id", sa.BigInteger, nullable=False, server_default=sa.text("0")),
        sa.Column("user_message_count", sa.Integer, nullable=False, server_default=sa.text("0")),
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.BigInteger, sa.Identity(always=True), primary_key=True),
        sa.Column(
            "conversation_id",
            sa.String(length=64),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("seq_id", sa.BigInteger, nullable=False),
        sa.Column("author", sa.String(length=20), nullable=False),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("image_url", sa.Text),
        sa.Column("created_at", sa.String(length=32), nullable=False),
        sa.Column("received_at", sa.BigInteger, nullable=False),
        sa.Column("stored_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")),
        sa.UniqueConstraint("conversation_id", "seq_id", name="uq_messages_conversation_seq"),
        sa.CheckConstraint("author IN ('user', 'assistant')", name="ck_messages_author"),
    )


def downgrade() -> None:
    op.drop_table("messages")
    op.drop_table("message_counters")
    op.drop_index("idx_conversations_user_id", table_name="conversations")
    op.drop_table("conversations")
