"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _inspector():
    from sqlalchemy import inspect as sa_inspect
    return sa_inspect(op.get_bind())


def upgrade() -> None:
    inspector = _inspector()
    existing_tables = set(inspector.get_table_names())

    def existing_indexes(table: str) -> set[str]:
        if table not in existing_tables:
            return set()
        return {idx["name"] for idx in inspector.get_indexes(table)}

    def ensure_indexes(table: str, columns: list[str], unique: frozenset[str] = frozenset()) -> None:
        idxs = existing_indexes(table)
        for col in columns:
            name = f"ix_{table}_{col}"
            if name not in idxs:
                op.create_index(name, table, [col], unique=col in unique)

    if "credit_accounts" not in existing_tables:
        op.create_table(
            "credit_accounts",
            sa.Column("account_id", sa.String(), primary_key=True),
            sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("plan_key", sa.String(), nullable=False, server_default="free"),
            sa.Column("plan_status", sa.String(), nullable=True),
            sa.Column("plan_credits", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("next_reset_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("provider_customer_id", sa.String(), nullable=True),
            sa.Column("provider_subscription_id", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
        )
    ensure_indexes(
        "credit_accounts",
        ["account_id", "plan_key", "provider_customer_id", "provider_subscription_id"],
    )

    if "credit_transactions" not in existing_tables:
        op.create_table(
            "credit_transactions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("account_id", sa.String(), nullable=False),
            sa.Column("kind", sa.String(length=16), nullable=False),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("delta", sa.Integer(), nullable=False),
            sa.Column("job_id", sa.String(), nullable=True),
            sa.Column("external_ref", sa.String(), nullable=True),
            sa.Column("description", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    ensure_indexes("credit_transactions", ["id", "account_id", "kind", "job_id", "external_ref"])

    if "jobs" not in existing_tables:
        op.create_table(
            "jobs",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("owner_id", sa.String(), nullable=False),
            sa.Column("project_id", sa.String(), nullable=True),
            sa.Column("type", sa.String(length=16), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False),
            sa.Column("total_items", sa.Integer(), nullable=False),
            sa.Column("completed_items", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("failed_items", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("credits_per_item", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("credits_reserved", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("credits_spent", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("credits_refunded", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("refund_issued", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        )
    ensure_indexes("jobs", ["id", "owner_id", "project_id", "type", "status"])

    if "job_items" not in existing_tables:
        op.create_table(
            "job_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("job_id", sa.String(), sa.ForeignKey("jobs.id"), nullable=False),
            sa.Column("target_id", sa.String(), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("asset_key", sa.String(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        )
    ensure_indexes("job_items", ["id", "job_id", "status"])

    if "billing_events" not in existing_tables:
        op.create_table(
            "billing_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("event_id", sa.String(), nullable=False),
            sa.Column("event_type", sa.String(), nullable=False),
            sa.Column("account_id", sa.String(), nullable=True),
            sa.Column("outcome", sa.String(), nullable=False),
            sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    ensure_indexes(
        "billing_events",
        ["id", "event_id", "event_type", "account_id"],
        unique=frozenset({"event_id"}),
    )


def downgrade() -> None:
    for table, columns in (
        ("billing_events", ["account_id", "event_type", "event_id", "id"]),
        ("job_items", ["status", "job_id", "id"]),
        ("jobs", ["status", "type", "project_id", "owner_id", "id"]),
        ("credit_transactions", ["external_ref", "job_id", "kind", "account_id", "id"]),
        ("credit_accounts", ["provider_subscription_id", "provider_customer_id", "plan_key", "account_id"]),
    ):
        for col in columns:
            op.drop_index(f"ix_{table}_{col}", table_name=table)
        op.drop_table(table)
