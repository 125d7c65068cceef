"""create users, products, videos, posts and platform tokens

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18 12:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(with_updated: bool = True) -> list[sa.Column]:
    cols = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)]
    if with_updated:
        cols.append(
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                server_default=sa.func.now(),
                onupdate=sa.func.now(),
                nullable=False,
            )
        )
    return cols


def upgrade() -> None:
    op.create_table(
        "user_accounts",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("storage_folders", sa.JSON(), nullable=True),
        *_timestamps(with_updated=False),
    )

    op.create_table(
        "products",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(12, 2), nullable=True),
        sa.Column("category", sa.String(length=255), nullable=True),
        sa.Column("images", sa.JSON(), nullable=True),
        *_timestamps(with_updated=False),
    )
    op.create_index("ix_products_owner_id", "products", ["owner_id"])

    op.create_table(
        "videos",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("product_id", sa.String(length=64), sa.ForeignKey("products.id", ondelete="SET NULL"), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("script", sa.Text(), nullable=True),
        sa.Column("duration", sa.Float(), nullable=True),
        sa.Column("aspect_ratio", sa.String(length=8), nullable=False, server_default="9:16"),
        sa.Column("style", sa.String(length=64), nullable=True),
        sa.Column("voice", sa.String(length=64), nullable=True),
        sa.Column("music", sa.String(length=128), nullable=True),
        sa.Column("model_text", sa.String(length=64), nullable=True),
        sa.Column("model_video", sa.String(length=64), nullable=True),
        sa.Column("model_tts", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("original_file_id", sa.Text(), nullable=True),
        sa.Column("optimized_file_id", sa.Text(), nullable=True),
        sa.Column("thumbnail_file_id", sa.Text(), nullable=True),
        sa.Column("audio_file_id", sa.Text(), nullable=True),
        sa.Column("public_url", sa.Text(), nullable=True),
        sa.Column("thumbnail_url", sa.Text(), nullable=True),
        sa.Column("watermark_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("watermark_text", sa.Text(), nullable=True),
        sa.Column("watermark_position", sa.String(length=32), nullable=True),
        sa.Column("subtitle_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("subtitle_style", sa.String(length=32), nullable=True),
        sa.Column("subtitle_position", sa.String(length=32), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_videos_owner_status", "videos", ["owner_id", "status"])

    op.create_table(
        "posts",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("video_id", sa.String(length=64), sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("caption", sa.Text(), nullable=True),
        sa.Column("hashtags", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("posted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_post_id", sa.Text(), nullable=True),
        sa.Column("external_post_url", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("views", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("likes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("comments", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("shares", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("clicks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("analytics_updated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_posts_status_scheduled_at", "posts", ["status", "scheduled_at"])
    op.create_index("ix_posts_owner", "posts", ["owner_id"])

    op.create_table(
        "platform_tokens",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("account_id", sa.Text(), nullable=True),
        sa.Column("account_name", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("owner_id", "platform", name="uq_platform_tokens_owner_platform"),
    )


def downgrade() -> None:
    op.drop_table("platform_tokens")
    op.drop_index("ix_posts_owner", table_name="posts")
    op.drop_index("ix_posts_status_scheduled_at", table_name="posts")
    op.drop_table("posts")
    op.drop_index("ix_videos_owner_status", table_name="videos")
    op.drop_table("videos")
    op.drop_index("ix_products_owner_id", table_name="products")
    op.drop_table("products")
    op.drop_table("user_accounts")
