"""create library and loan tables

Revision ID: 202610180002
Revises: 202610180001
Create Date: 2026-10-18 00:00:01
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180002"
down_revision: str | None = "202610180001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "groups",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_by_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("groups_creator_idx", "groups", ["created_by_id"], unique=False)

    op.create_table(
        "user_groups",
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("group_id", sa.Uuid(), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["group_id"], ["groups.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id", "group_id"),
    )
    op.create_index("user_groups_user_idx", "user_groups", ["user_id"], unique=False)
    op.create_index("user_groups_group_idx", "user_groups", ["group_id"], unique=False)

    op.create_table(
        "contacts",
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=16), server_default="pending", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["contact_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id", "contact_id"),
    )
    op.create_index("contacts_user_idx", "contacts", ["user_id"], unique=False)
    op.create_index("contacts_contact_idx", "contacts", ["contact_id"], unique=False)
    op.create_index("contacts_status_idx", "contacts", ["status"], unique=False)

    op.create_table(
        "books",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.String(length=512), nullable=False),
        sa.Column("author", sa.String(length=512), nullable=True),
        sa.Column("isbn", sa.String(length=32), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("open_library_url", sa.Text(), nullable=True),
        sa.Column("is_owned", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("available_for_loan", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("books_owner_idx", "books", ["owner_id"], unique=False)
    op.create_index("books_isbn_idx", "books", ["isbn"], unique=False)

    op.create_table(
        "tags",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("created_by_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("tags_creator_idx", "tags", ["created_by_id"], unique=False)
    op.create_index("tags_name_creator_idx", "tags", ["name", "created_by_id"], unique=False)

    op.create_table(
        "book_tags",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("book_id", sa.Uuid(), nullable=False),
        sa.Column("tag_id", sa.Uuid(), nullable=False),
        sa.Column("tagged_by_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["book_id"], ["books.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["tag_id"], ["tags.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["tagged_by_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("book_id", "tag_id", "tagged_by_id", name="uq_book_tags_book_tag_tagger"),
    )
    op.create_index("book_tags_book_idx", "book_tags", ["book_id"], unique=False)
    op.create_index("book_tags_tag_idx", "book_tags", ["tag_id"], unique=False)
    op.create_index("book_tags_tagger_idx", "book_tags", ["tagged_by_id"], unique=False)

    op.create_table(
        "shared_tags_to_groups",
        sa.Column("tag_id", sa.Uuid(), nullable=False),
        sa.Column("group_id", sa.Uuid(), nullable=False),
        sa.Column("shared_by_id", sa.Uuid(), nullable=False),
        sa.Column("shared_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["tag_id"], ["tags.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["group_id"], ["groups.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["shared_by_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("tag_id", "group_id"),
    )
    op.create_index("shared_tags_tag_idx", "shared_tags_to_groups", ["tag_id"], unique=False)
    op.create_index("shared_tags_group_idx", "shared_tags_to_groups", ["group_id"], unique=False)

    op.create_table(
        "book_loans",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("book_id", sa.Uuid(), nullable=False),
        sa.Column("requester_id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=16), server_default="pending", nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("loaned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("returned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["book_id"], ["books.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["requester_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("book_loans_book_idx", "book_loans", ["book_id"], unique=False)
    op.create_index("book_loans_requester_idx", "book_loans", ["requester_id"], unique=False)
    op.create_index("book_loans_owner_idx", "book_loans", ["owner_id"], unique=False)
    op.create_index("book_loans_status_idx", "book_loans", ["status"], unique=False)
    op.create_index(
        "book_loans_composite_idx",
        "book_loans",
        ["requester_id", "owner_id", "status"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_table("book_loans")
    op.drop_table("shared_tags_to_groups")
    op.drop_table("book_tags")
    op.drop_table("tags")
    op.drop_table("books")
    op.drop_table("contacts")
    op.drop_table("user_groups")
    op.drop_table("groups")
