"""Create manager, conversation, message, archive and push subscription tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "managers",
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("slug", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
        sa.UniqueConstraint("slug"),
    )

    op.create_table(
        "conversations",
        sa.Column("convo_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("visitor_id", sa.String(length=128), nullable=False),
        sa.Column("visitor_name", sa.String(length=256), nullable=False, server_default="Anonymous"),
        sa.Column("visitor_email", sa.String(length=320), nullable=False, server_default=""),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("unread_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_message_preview", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["managers.user_id"]),
        sa.PrimaryKeyConstraint("convo_id"),
        sa.CheckConstraint("unread_count >= 0", name="ck_conversations_unread_non_negative"),
    )
    op.create_index("ix_conversations_user_id", "conversations", ["user_id"], unique=False)
    op.create_index("ix_conversations_last_message_at", "conversations", ["last_message_at"], unique=False)
    op.create_index("ix_conversations_user_visitor", "conversations", ["user_id", "visitor_id"], unique=False)

    op.create_table(
        "conversation_messages",
        sa.Column("message_id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("convo_id", sa.String(length=64), nullable=False),
        sa.Column("sender", sa.String(length=16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["convo_id"], ["conversations.convo_id"]),
        sa.PrimaryKeyConstraint("message_id"),
    )
    op.create_index("ix_conversation_messages_convo_id", "conversation_messages", ["convo_id"], unique=False)

    op.create_table(
        "conversation_archives",
        sa.Column("archive_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("convo_id", sa.String(length=64), nullable=False),
        sa.Column("visitor_id", sa.String(length=128), nullable=False),
        sa.Column("visitor_name", sa.String(length=256), nullable=False),
        sa.Column("visitor_email", sa.String(length=320), nullable=False),
        sa.Column("messages_json", sa.JSON(), nullable=False),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("conversation_created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("archive_id"),
        sa.UniqueConstraint("user_id", "convo_id", name="uq_conversation_archives_user_convo"),
    )
    op.create_index("ix_conversation_archives_user_id", "conversation_archives", ["user_id"], unique=False)

    op.create_table(
        "push_subscriptions",
        sa.Column("subscription_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("endpoint", sa.Text(), nullable=False),
        sa.Column("p256dh", sa.String(length=256), nullable=False),
        sa.Column("auth", sa.String(length=256), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("subscription_id"),
        sa.UniqueConstraint("user_id", "endpoint", name="uq_push_subscriptions_user_endpoint"),
    )
    op.create_index("ix_push_subscriptions_user_id", "push_subscriptions", ["user_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_push_subscriptions_user_id", table_name="push_subscriptions")
    op.drop_table("push_subscriptions")
    op.drop_index("ix_conversation_archives_user_id", table_name="conversation_archives")
    op.drop_table("conversation_archives")
    op.drop_index("ix_conversation_messages_convo_id", table_name="conversation_messages")
    op.drop_table("conversation_messages")
    op.drop_index("ix_conversations_user_visitor", table_name="conversations")
    op.drop_index("ix_conversations_last_message_at", table_name="conversations")
    op.drop_index("ix_conversations_user_id", table_name="conversations")
    op.drop_table("conversations")
    op.drop_table("managers")
