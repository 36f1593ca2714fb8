"""grid scan foundation tables

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00
"""
from alembic import op
import sqlalchemy as sa


revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "local_campaigns",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("business_name", sa.String(length=255), nullable=False),
        sa.Column("gmb_cid", sa.String(length=64), nullable=True),
        sa.Column("gmb_place_id", sa.String(length=255), nullable=True),
        sa.Column("domain", sa.String(length=320), nullable=True),
        sa.Column("center_lat", sa.Float(), nullable=True),
        sa.Column("center_lng", sa.Float(), nullable=True),
        sa.Column("grid_size", sa.Integer(), nullable=False, server_default="7"),
        sa.Column("grid_radius_miles", sa.Float(), nullable=False, server_default="5.0"),
        sa.Column("keywords_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("scan_frequency", sa.String(length=20), nullable=False, server_default="weekly"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="ACTIVE"),
        sa.Column("last_scan_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_scan_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_local_campaigns_user_id", "local_campaigns", ["user_id"])
    op.create_index("ix_local_campaigns_status_next_scan_at", "local_campaigns", ["status", "next_scan_at"])

    op.create_table(
        "grid_scans",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("campaign_id", sa.String(length=36), sa.ForeignKey("local_campaigns.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("api_calls_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("estimated_cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("avg_rank", sa.Float(), nullable=True),
        sa.Column("avg_rank_change", sa.Float(), nullable=True),
        sa.Column("share_of_voice", sa.Float(), nullable=True),
        sa.Column("top_competitor", sa.String(length=255), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_grid_scans_campaign_id", "grid_scans", ["campaign_id"])
    op.create_index("ix_grid_scans_status", "grid_scans", ["status"])
    op.create_index("ix_grid_scans_campaign_status_completed_at", "grid_scans", ["campaign_id", "status", "completed_at"])

    op.create_table(
        "grid_point_results",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("scan_id", sa.String(length=36), sa.ForeignKey("grid_scans.id", ondelete="CASCADE"), nullable=False),
        sa.Column("keyword", sa.String(length=255), nullable=False),
        sa.Column("grid_row", sa.Integer(), nullable=False),
        sa.Column("grid_col", sa.Integer(), nullable=False),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lng", sa.Float(), nullable=False),
        sa.Column("rank", sa.Integer(), nullable=True),
        sa.Column("top_rankings_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("total_results", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("scan_id", "keyword", "grid_row", "grid_col", name="uq_grid_point_results_scan_keyword_cell"),
    )
    op.create_index("ix_grid_point_results_scan_id", "grid_point_results", ["scan_id"])

    op.create_table(
        "competitor_stats",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("scan_id", sa.String(length=36), sa.ForeignKey("grid_scans.id", ondelete="CASCADE"), nullable=False),
        sa.Column("identity_key", sa.String(length=320), nullable=False),
        sa.Column("business_name", sa.String(length=255), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        sa.Column("rating", sa.Float(), nullable=True),
        sa.Column("review_count", sa.Integer(), nullable=True),
        sa.Column("avg_rank", sa.Float(), nullable=False),
        sa.Column("times_in_top3", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("times_in_top10", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("times_in_top20", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("appearances", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("share_of_voice", sa.Float(), nullable=False, server_default="0"),
        sa.Column("prev_avg_rank", sa.Float(), nullable=True),
        sa.Column("rank_change", sa.Float(), nullable=True),
        sa.Column("is_target", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("scan_id", "identity_key", name="uq_competitor_stats_scan_identity"),
    )
    op.create_index("ix_competitor_stats_scan_id", "competitor_stats", ["scan_id"])


def downgrade() -> None:
    op.drop_index("ix_competitor_stats_scan_id", table_name="competitor_stats")
    op.drop_table("competitor_stats")
    op.drop_index("ix_grid_point_results_scan_id", table_name="grid_point_results")
    op.drop_table("grid_point_results")
    op.drop_index("ix_grid_scans_campaign_status_completed_at", table_name="grid_scans")
    op.drop_index("ix_grid_scans_status", table_name="grid_scans")
    op.drop_index("ix_grid_scans_campaign_id", table_name="grid_scans")
    op.drop_table("grid_scans")
    op.drop_index("ix_local_campaigns_status_next_scan_at", table_name="local_campaigns")
    op.drop_index("ix_local_campaigns_user_id", table_name="local_campaigns")
    op.drop_table("local_campaigns")
