"""Initial schema: profiles, service preferences, tokens, subscription feed.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps(mutable: bool = False) -> list[sa.Column]:
    columns = [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]
    if mutable:
        columns.append(
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.text("now()"),
            )
        )
    return columns


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')
    op.execute(
        "CREATE TYPE services_preferences_mode AS ENUM ('LEGACY', 'AUTO', 'MANUAL')"
    )

    # Profiles
    op.create_table(
        "profiles",
        sa.Column("id", sa.UUID(), nullable=False, server_default=sa.text("uuid_generate_v4()")),
        sa.Column("fiscal_code", sa.String(16), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("is_email_validated", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_inbox_enabled", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_webhook_enabled", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_email_enabled", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("accepted_tos_version", sa.Integer(), nullable=True),
        sa.Column(
            "services_preferences_mode",
            postgresql.ENUM(
                "LEGACY", "AUTO", "MANUAL", name="services_preferences_mode", create_type=False
            ),
            nullable=False,
            server_default="LEGACY",
        ),
        sa.Column(
            "services_preferences_version", sa.Integer(), nullable=False, server_default="-1"
        ),
        sa.Column("blocked_inbox_or_channels", postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_profiles")),
        sa.UniqueConstraint("fiscal_code", "version", name="uq_profiles_fiscal_code_version"),
    )
    op.create_index(
        "ix_profiles_fiscal_code_version_desc", "profiles", ["fiscal_code", "version"]
    )

    # Service preferences
    op.create_table(
        "service_preferences",
        sa.Column("id", sa.UUID(), nullable=False, server_default=sa.text("uuid_generate_v4()")),
        sa.Column("document_id", sa.String(128), nullable=False),
        sa.Column("fiscal_code", sa.String(16), nullable=False),
        sa.Column("service_id", sa.String(64), nullable=False),
        sa.Column("settings_version", sa.Integer(), nullable=False),
        sa.Column("is_inbox_enabled", sa.Boolean(), nullable=False),
        sa.Column("is_email_enabled", sa.Boolean(), nullable=False),
        sa.Column("is_webhook_enabled", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_service_preferences")),
        sa.UniqueConstraint("document_id", name=op.f("uq_service_preferences_document_id")),
        sa.UniqueConstraint(
            "fiscal_code",
            "service_id",
            "settings_version",
            name="uq_service_preferences_fiscal_code_service_version",
        ),
    )
    op.create_index(
        op.f("ix_service_preferences_fiscal_code"), "service_preferences", ["fiscal_code"]
    )

    # Tokens
    op.create_table(
        "validation_tokens",
        sa.Column("id", sa.UUID(), nullable=False, server_default=sa.text("uuid_generate_v4()")),
        sa.Column("partition_key", sa.String(26), nullable=False),
        sa.Column("row_key", sa.String(64), nullable=False),
        sa.Column("fiscal_code", sa.String(16), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("invalid_after", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_validation_tokens")),
        sa.UniqueConstraint(
            "partition_key", "row_key", name="uq_validation_tokens_partition_row"
        ),
    )
    op.create_index(
        op.f("ix_validation_tokens_partition_key"), "validation_tokens", ["partition_key"]
    )
    op.create_table(
        "verification_tokens",
        sa.Column("id", sa.UUID(), nullable=False, server_default=sa.text("uuid_generate_v4()")),
        sa.Column("partition_key", sa.String(26), nullable=False),
        sa.Column("row_key", sa.String(64), nullable=False),
        sa.Column("fiscal_code", sa.String(16), nullable=False),
        sa.Column("invalid_after", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_verification_tokens")),
        sa.UniqueConstraint(
            "partition_key", "row_key", name="uq_verification_tokens_partition_row"
        ),
    )
    op.create_index(
        op.f("ix_verification_tokens_partition_key"), "verification_tokens", ["partition_key"]
    )

    # Subscription feed
    op.create_table(
        "subscription_feed",
        sa.Column("id", sa.UUID(), nullable=False, server_default=sa.text("uuid_generate_v4()")),
        sa.Column("partition_key", sa.String(128), nullable=False),
        sa.Column("row_key", sa.String(255), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(mutable=True),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_subscription_feed")),
        sa.UniqueConstraint(
            "partition_key", "row_key", name="uq_subscription_feed_partition_row"
        ),
    )
    op.create_index(
        op.f("ix_subscription_feed_partition_key"), "subscription_feed", ["partition_key"]
    )


def downgrade() -> None:
    op.drop_table("subscription_feed")
    op.drop_table("verification_tokens")
    op.drop_table("validation_tokens")
    op.drop_table("service_preferences")
    op.drop_table("profiles")
    op.execute("DROP TYPE IF EXISTS services_preferences_mode")
