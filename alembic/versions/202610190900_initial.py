"""household finance schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "goals",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("target_amount", sa.Float(), nullable=False),
        sa.Column(
            "currency",
            sa.Enum("PLN", name="currencycode"),
            nullable=False,
            server_default="PLN",
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("target_amount > 0", name="ck_goals_target_positive"),
    )
    op.create_index("ix_goals_created_at", "goals", ["created_at"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "type",
            sa.Enum("income", "expense", "savings", name="transactiontype"),
            nullable=False,
        ),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column(
            "currency",
            sa.Enum("PLN", name="currencycode"),
            nullable=False,
            server_default="PLN",
        ),
        sa.Column(
            "category",
            sa.Enum(
                "bills",
                "loans",
                "installments",
                "food",
                "other",
                name="expensecategory",
            ),
        ),
        sa.Column("sub_category", sa.String(length=100)),
        sa.Column(
            "person",
            sa.Enum("Konki", "Ania", name="person"),
            nullable=False,
            server_default="Konki",
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column(
            "goal_id",
            sa.String(length=36),
            sa.ForeignKey("goals.id", ondelete="SET NULL"),
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_date", "transactions", ["date"])
    op.create_index("ix_transactions_type_date", "transactions", ["type", "date"])
    op.create_index("ix_transactions_goal", "transactions", ["goal_id"])

    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("email_confirmed_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "user_roles",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(length=36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("role", sa.Enum("owner", "member", name="role"), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "auth_sessions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(length=36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "kind",
            sa.Enum("password", "recovery", name="authsessionkind"),
            nullable=False,
            server_default="password",
        ),
        sa.Column("refresh_token", sa.String(length=64), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("revoked_at", sa.DateTime()),
    )
    op.create_index("ix_auth_sessions_user", "auth_sessions", ["user_id"])


def downgrade():
    op.drop_index("ix_auth_sessions_user", table_name="auth_sessions")
    op.drop_table("auth_sessions")
    op.drop_table("user_roles")
    op.drop_table("users")
    op.drop_index("ix_transactions_goal", table_name="transactions")
    op.drop_index("ix_transactions_type_date", table_name="transactions")
    op.drop_index("ix_transactions_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_goals_created_at", table_name="goals")
    op.drop_table("goals")
