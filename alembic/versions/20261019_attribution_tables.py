"""Create click, session, aggregate, chain and capture tables.

Revision ID: 3f9c1a7e2b40
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "3f9c1a7e2b40"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "click_records",
        sa.Column("click_id", sa.String(64), primary_key=True),
        sa.Column("affiliate_id", sa.String(200), nullable=False, index=True),
        sa.Column("campaign_id", sa.String(200), nullable=True, index=True),
        sa.Column("publisher_id", sa.String(200), nullable=True),
        sa.Column("advertiser_id", sa.String(200), nullable=True),
        sa.Column("source", sa.String(200), nullable=True),
        sa.Column("preview_url", sa.String(4000), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="generated"),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column("click_domain", sa.String(255), nullable=True),
        sa.Column("click_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("query_params", sa.JSON, nullable=True),
        sa.Column("final_url", sa.String(4000), nullable=True),
        sa.Column("clickref", sa.String(500), nullable=True),
        sa.Column("client_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("clicked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_table(
        "user_sessions",
        sa.Column("browser_session_id", sa.String(64), primary_key=True),
        sa.Column("affiliate_id", sa.String(200), nullable=False),
        sa.Column("campaign_id", sa.String(200), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=False),
        sa.Column("click_id", sa.String(64), nullable=False, index=True),
        sa.Column("click_kind", sa.String(20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_sessions_aff_ip_campaign_ts", "user_sessions", ["affiliate_id", "ip_address", "campaign_id", "created_at"],
    )

    op.create_table(
        "attribution_aggregates",
        sa.Column("kind", sa.String(40), primary_key=True),
        sa.Column("affiliate_id", sa.String(200), primary_key=True),
        sa.Column("total", sa.Integer, nullable=False, server_default="0"),
        sa.Column("first_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "chain_entries",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("affiliate_id", sa.String(200), nullable=False),
        sa.Column("click_id", sa.String(64), nullable=True, index=True),
        sa.Column("start_url", sa.String(4000), nullable=False),
        sa.Column("final_url", sa.String(4000), nullable=False),
        sa.Column("hop_count", sa.Integer, nullable=False),
        sa.Column("redirect_count", sa.Integer, nullable=False),
        sa.Column("completed", sa.Boolean, nullable=False),
        sa.Column("needs_client_capture", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("final_parameters", sa.JSON, nullable=True),
        sa.Column("campaign_id", sa.String(200), nullable=True),
        sa.Column("publisher_id", sa.String(200), nullable=True),
        sa.Column("source", sa.String(200), nullable=True),
        sa.Column("tracked_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_chain_entries_affiliate_ts", "chain_entries", ["affiliate_id", "tracked_at"])

    op.create_table(
        "chain_hops",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "entry_id", sa.Integer,
            sa.ForeignKey("chain_entries.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("step", sa.Integer, nullable=False),
        sa.Column("url", sa.String(4000), nullable=False),
        sa.Column("base_url", sa.String(4000), nullable=False),
        sa.Column("status", sa.Integer, nullable=True),
        sa.Column("method", sa.String(10), nullable=True),
        sa.Column("redirect_type", sa.String(20), nullable=True),
        sa.Column("headers", sa.JSON, nullable=True),
        sa.Column("parameters", sa.JSON, nullable=True),
        sa.Column("latency_ms", sa.Float, nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("entry_id", "step", name="uq_chain_hop_step"),
    )

    op.create_table(
        "capture_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("kind", sa.String(40), nullable=False),
        sa.Column("affiliate_id", sa.String(200), nullable=False),
        sa.Column("click_id", sa.String(200), nullable=False, index=True),
        sa.Column("final_url", sa.String(4000), nullable=False),
        sa.Column("parameters", sa.JSON, nullable=True),
        sa.Column("clickref", sa.String(500), nullable=True),
        sa.Column("has_clickref", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("referrer", sa.String(2000), nullable=True),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column("campaign_id", sa.String(200), nullable=True),
        sa.Column("publisher_id", sa.String(200), nullable=True),
        sa.Column("source", sa.String(200), nullable=True),
        sa.Column("origin", sa.String(20), nullable=False),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_capture_kind_affiliate", "capture_events", ["kind", "affiliate_id"])


def downgrade() -> None:
    op.drop_index("ix_capture_kind_affiliate", table_name="capture_events")
    op.drop_table("capture_events")
    op.drop_table("chain_hops")
    op.drop_index("ix_chain_entries_affiliate_ts", table_name="chain_entries")
    op.drop_table("chain_entries")
    op.drop_table("attribution_aggregates")
    op.drop_index("ix_sessions_aff_ip_campaign_ts", table_name="user_sessions")
    op.drop_table("user_sessions")
    op.drop_table("click_records")
