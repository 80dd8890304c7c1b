"""Create conversation, ledger, read receipt, event and legacy message tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "conversations",
        sa.Column("conversation_id", sa.String(length=64), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("phone_address", sa.String(length=64), nullable=False),
        sa.Column("lead_id", sa.String(length=128), nullable=True),
        sa.Column("customer_name", sa.String(length=256), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("tags_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("last_message", sa.Text(), nullable=True),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unread_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("conversation_id"),
        sa.UniqueConstraint("channel", "phone_address", name="uq_conversations_channel_phone"),
    )
    op.create_index("ix_conversations_channel", "conversations", ["channel"], unique=False)
    op.create_index("ix_conversations_lead_id", "conversations", ["lead_id"], unique=False)
    op.create_index("ix_conversations_status", "conversations", ["status"], unique=False)
    op.create_index("ix_conversations_last_message_at", "conversations", ["last_message_at"], unique=False)

    op.create_table(
        "conversation_messages",
        sa.Column("message_id", sa.String(length=64), nullable=False),
        sa.Column("conversation_id", sa.String(length=64), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("sender_type", sa.String(length=16), nullable=False),
        sa.Column("sender_id", sa.String(length=128), nullable=True),
        sa.Column("from_address", sa.String(length=64), nullable=False),
        sa.Column("to_address", sa.String(length=64), nullable=False),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("media_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("provider_message_id", sa.String(length=64), nullable=True),
        sa.Column("provider_status", sa.String(length=32), nullable=True),
        sa.Column("failure_code", sa.String(length=64), nullable=True),
        sa.Column("failure_message", sa.Text(), nullable=True),
        sa.Column("legacy_message_id", sa.String(length=64), nullable=True),
        sa.Column("num_segments", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.conversation_id"]),
        sa.PrimaryKeyConstraint("message_id"),
        sa.UniqueConstraint("provider_message_id"),
    )
    op.create_index(
        "ix_conversation_messages_conversation_id", "conversation_messages", ["conversation_id"], unique=False
    )
    op.create_index("ix_conversation_messages_status", "conversation_messages", ["status"], unique=False)
    op.create_index("ix_conversation_messages_sent_at", "conversation_messages", ["sent_at"], unique=False)

    op.create_table(
        "message_read_receipts",
        sa.Column("receipt_id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("message_id", sa.String(length=64), nullable=False),
        sa.Column("reader_id", sa.String(length=128), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["message_id"], ["conversation_messages.message_id"]),
        sa.PrimaryKeyConstraint("receipt_id"),
        sa.UniqueConstraint("message_id", "reader_id", name="uq_message_read_receipts_reader"),
    )
    op.create_index("ix_message_read_receipts_message_id", "message_read_receipts", ["message_id"], unique=False)

    op.create_table(
        "conversation_events",
        sa.Column("event_id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("conversation_id", sa.String(length=64), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.conversation_id"]),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_conversation_events_conversation_id", "conversation_events", ["conversation_id"], unique=False)

    op.create_table(
        "legacy_messages",
        sa.Column("legacy_message_id", sa.String(length=64), nullable=False),
        sa.Column("source_message_id", sa.String(length=64), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("message_type", sa.String(length=16), nullable=False),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column("from_number", sa.String(length=64), nullable=False),
        sa.Column("to_number", sa.String(length=64), nullable=False),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("media_urls_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("provider_message_id", sa.String(length=64), nullable=True),
        sa.Column("provider_status", sa.String(length=32), nullable=True),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("num_segments", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("lead_id", sa.String(length=128), nullable=True),
        sa.Column("customer_name", sa.String(length=256), nullable=True),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("legacy_message_id"),
        sa.UniqueConstraint("source_message_id"),
        sa.UniqueConstraint("provider_message_id"),
    )
    op.create_index("ix_legacy_messages_channel", "legacy_messages", ["channel"], unique=False)
    op.create_index("ix_legacy_messages_status", "legacy_messages", ["status"], unique=False)
    op.create_index("ix_legacy_messages_lead_id", "legacy_messages", ["lead_id"], unique=False)
    op.create_index("ix_legacy_messages_user_id", "legacy_messages", ["user_id"], unique=False)
    op.create_index("ix_legacy_messages_sent_at", "legacy_messages", ["sent_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_legacy_messages_sent_at", table_name="legacy_messages")
    op.drop_index("ix_legacy_messages_user_id", table_name="legacy_messages")
    op.drop_index("ix_legacy_messages_lead_id", table_name="legacy_messages")
    op.drop_index("ix_legacy_messages_status", table_name="legacy_messages")
    op.drop_index("ix_legacy_messages_channel", table_name="legacy_messages")
    op.drop_table("legacy_messages")

    op.drop_index("ix_conversation_events_conversation_id", table_name="conversation_events")
    op.drop_table("conversation_events")

    op.drop_index("ix_message_read_receipts_message_id", table_name="message_read_receipts")
    op.drop_table("message_read_receipts")

    op.drop_index("ix_conversation_messages_sent_at", table_name="conversation_messages")
    op.drop_index("ix_conversation_messages_status", table_name="conversation_messages")
    op.drop_index("ix_conversation_messages_conversation_id", table_name="conversation_messages")
    op.drop_table("conversation_messages")

    op.drop_index("ix_conversations_last_message_at", table_name="conversations")
    op.drop_index("ix_conversations_status", table_name="conversations")
    op.drop_index("ix_conversations_lead_id", table_name="conversations")
    op.drop_index("ix_conversations_channel", table_name="conversations")
    op.drop_table("conversations")
