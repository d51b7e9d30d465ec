"""Create users and verification_codes tables.

Revision ID: 001_users_codes
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_users_codes"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    user_role = postgresql.ENUM("teacher", "admin", name="userrole")
    user_status = postgresql.ENUM(
        "unverified", "verified", "banned", "deleted", name="userstatus"
    )
    code_purpose = postgresql.ENUM("login", "recovery", name="codepurpose")
    code_status = postgresql.ENUM("active", "used", "expired", name="codestatus")
    for enum_type in (user_role, user_status, code_purpose, code_status):
        enum_type.create(op.get_bind())

    op.create_table(
        "users",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("login", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("hashed_password", sa.String(length=255), nullable=False),
        sa.Column(
            "role",
            postgresql.ENUM("teacher", "admin", name="userrole", create_type=False),
            nullable=False,
            server_default="teacher",
        ),
        sa.Column(
            "status",
            postgresql.ENUM(
                "unverified",
                "verified",
                "banned",
                "deleted",
                name="userstatus",
                create_type=False,
            ),
            nullable=False,
            server_default="unverified",
        ),
        sa.Column("telegram_id", sa.String(length=32), nullable=True),
        sa.Column("telegram_username", sa.String(length=100), nullable=True),
        sa.Column("language", sa.String(length=2), nullable=False, server_default="ru"),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("telegram_id"),
    )
    op.create_index(op.f("ix_users_login"), "users", ["login"], unique=True)

    op.create_table(
        "verification_codes",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column(
            "user_id",
            sa.UUID(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "purpose",
            postgresql.ENUM("login", "recovery", name="codepurpose", create_type=False),
            nullable=False,
        ),
        sa.Column("code_hash", sa.String(length=64), nullable=False),
        sa.Column(
            "status",
            postgresql.ENUM(
                "active", "used", "expired", name="codestatus", create_type=False
            ),
            nullable=False,
            server_default="active",
        ),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_verification_codes_user_purpose_status",
        "verification_codes",
        ["user_id", "purpose", "status"],
    )
    op.create_index(
        op.f("ix_verification_codes_issued_at"),
        "verification_codes",
        ["issued_at"],
    )


def downgrade() -> None:
    op.drop_index(
        op.f("ix_verification_codes_issued_at"), table_name="verification_codes"
    )
    op.drop_index(
        "ix_verification_codes_user_purpose_status", table_name="verification_codes"
    )
    op.drop_table("verification_codes")
    op.drop_index(op.f("ix_users_login"), table_name="users")
    op.drop_table("users")

    for name in ("codestatus", "codepurpose", "userstatus", "userrole"):
        postgresql.ENUM(name=name).drop(op.get_bind())
