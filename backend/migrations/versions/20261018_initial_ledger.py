"""Initial ledger schema

Revision ID: 20261018_initial_ledger
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_initial_ledger"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("username", sa.String(64), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("role", sa.String(16), nullable=False, server_default="Staff"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("role IN ('Admin', 'Staff')", name="ck_users_role_valid"),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
        sa.UniqueConstraint("email", name="uq_users_email"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("users", schema=None) as batch_op:
        batch_op.create_index("ix_users_username", ["username"], unique=True)

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_categories"),
        sa.UniqueConstraint("name", name="uq_categories_name"),
    )

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("barcode", sa.String(64), nullable=True),
        sa.Column("price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("unit_cost_cents", sa.Integer(), nullable=True),
        sa.Column("stock", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(32), nullable=False, server_default="out_of_stock"),
        sa.Column("low_stock_threshold", sa.Integer(), nullable=True),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        sa.ForeignKeyConstraint(["category_id"], ["categories.id"], name="fk_products_category_id_categories"),
        sa.PrimaryKeyConstraint("id", name="pk_products"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("products", schema=None) as batch_op:
        batch_op.create_index("ix_products_status", ["status"], unique=False)
        batch_op.create_index("ix_products_category_id", ["category_id"], unique=False)
        batch_op.create_index(
            "uq_products_barcode_live",
            ["barcode"],
            unique=True,
            sqlite_where=sa.text("status != 'deleted'"),
            postgresql_where=sa.text("status != 'deleted'"),
        )

    op.create_table(
        "ledger_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("transaction_no", sa.String(96), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("reverses_transaction_id", sa.Integer(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("approved_by_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.CheckConstraint("kind IN ('sale', 'void', 'return', 'manual')", name="ck_ledger_transactions_kind_valid"),
        sa.ForeignKeyConstraint(
            ["reverses_transaction_id"], ["ledger_transactions.id"],
            name="fk_ledger_transactions_reverses_transaction_id_ledger_transactions",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_ledger_transactions_user_id_users"),
        sa.ForeignKeyConstraint(["approved_by_user_id"], ["users.id"], name="fk_ledger_transactions_approved_by_user_id_users"),
        sa.PrimaryKeyConstraint("id", name="pk_ledger_transactions"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("ledger_transactions", schema=None) as batch_op:
        batch_op.create_index("ix_ledger_transactions_transaction_no", ["transaction_no"], unique=True)
        batch_op.create_index("ix_ledger_transactions_kind", ["kind"], unique=False)
        batch_op.create_index("ix_ledger_transactions_reverses_transaction_id", ["reverses_transaction_id"], unique=False)
        batch_op.create_index("ix_ledger_transactions_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_ledger_transactions_created_at", ["created_at"], unique=False)

    op.create_table(
        "sales",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("transaction_id", sa.Integer(), nullable=False),
        sa.Column("ref_id", sa.String(96), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False),
        sa.Column("reverses_sale_id", sa.Integer(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("approved_by_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.CheckConstraint("quantity <> 0", name="ck_sales_quantity_non_zero"),
        sa.CheckConstraint(
            "(quantity > 0 AND total_amount_cents >= 0) OR (quantity < 0 AND total_amount_cents <= 0)",
            name="ck_sales_total_sign_matches_quantity",
        ),
        sa.ForeignKeyConstraint(["transaction_id"], ["ledger_transactions.id"], name="fk_sales_transaction_id_ledger_transactions"),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], name="fk_sales_product_id_products"),
        sa.ForeignKeyConstraint(["reverses_sale_id"], ["sales.id"], name="fk_sales_reverses_sale_id_sales"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_sales_user_id_users"),
        sa.ForeignKeyConstraint(["approved_by_user_id"], ["users.id"], name="fk_sales_approved_by_user_id_users"),
        sa.PrimaryKeyConstraint("id", name="pk_sales"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("sales", schema=None) as batch_op:
        batch_op.create_index("ix_sales_transaction_id", ["transaction_id"], unique=False)
        batch_op.create_index("ix_sales_ref_id", ["ref_id"], unique=False)
        batch_op.create_index("ix_sales_product_id", ["product_id"], unique=False)
        batch_op.create_index("ix_sales_reverses_sale_id", ["reverses_sale_id"], unique=False)
        batch_op.create_index("ix_sales_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_sales_created_at", ["created_at"], unique=False)
        batch_op.create_index("ix_sales_product_created", ["product_id", "created_at"], unique=False)

    op.create_table(
        "stock_movements",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("transaction_id", sa.Integer(), nullable=False),
        sa.Column("sale_id", sa.Integer(), nullable=True),
        sa.Column("ref_id", sa.String(96), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("before_stock", sa.Integer(), nullable=False),
        sa.Column("after_stock", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(255), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        sa.CheckConstraint("after_stock >= 0", name="ck_stock_movements_after_stock_non_negative"),
        sa.ForeignKeyConstraint(["transaction_id"], ["ledger_transactions.id"], name="fk_stock_movements_transaction_id_ledger_transactions"),
        sa.ForeignKeyConstraint(["sale_id"], ["sales.id"], name="fk_stock_movements_sale_id_sales"),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], name="fk_stock_movements_product_id_products"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_stock_movements_user_id_users"),
        sa.PrimaryKeyConstraint("id", name="pk_stock_movements"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("stock_movements", schema=None) as batch_op:
        batch_op.create_index("ix_stock_movements_transaction_id", ["transaction_id"], unique=False)
        batch_op.create_index("ix_stock_movements_sale_id", ["sale_id"], unique=False)
        batch_op.create_index("ix_stock_movements_ref_id", ["ref_id"], unique=False)
        batch_op.create_index("ix_stock_movements_product_id", ["product_id"], unique=False)
        batch_op.create_index("ix_stock_movements_type", ["type"], unique=False)
        batch_op.create_index("ix_stock_movements_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_stock_movements_created_at", ["created_at"], unique=False)
        batch_op.create_index("ix_stock_movements_product_created", ["product_id", "created_at"], unique=False)

    op.create_table(
        "void_requests",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("transaction_no", sa.String(96), nullable=False),
        sa.Column("requested_by_user_id", sa.Integer(), nullable=True),
        sa.Column("requested_by_email", sa.String(255), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("transaction_data", sa.Text(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("approved_by_user_id", sa.Integer(), nullable=True),
        sa.Column("approved_by_email", sa.String(255), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("void_transaction_no", sa.String(96), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.CheckConstraint("status IN ('pending', 'approved', 'rejected')", name="ck_void_requests_status_valid"),
        sa.ForeignKeyConstraint(["requested_by_user_id"], ["users.id"], name="fk_void_requests_requested_by_user_id_users"),
        sa.ForeignKeyConstraint(["approved_by_user_id"], ["users.id"], name="fk_void_requests_approved_by_user_id_users"),
        sa.PrimaryKeyConstraint("id", name="pk_void_requests"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("void_requests", schema=None) as batch_op:
        batch_op.create_index("ix_void_requests_transaction_no", ["transaction_no"], unique=False)
        batch_op.create_index("ix_void_requests_requested_by_user_id", ["requested_by_user_id"], unique=False)
        batch_op.create_index("ix_void_requests_status_created", ["status", "created_at"], unique=False)

    op.create_table(
        "session_tokens",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("token_hash", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("user_agent", sa.String(255), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("is_revoked", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_reason", sa.String(255), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_session_tokens_user_id_users"),
        sa.PrimaryKeyConstraint("id", name="pk_session_tokens"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("session_tokens", schema=None) as batch_op:
        batch_op.create_index("ix_session_tokens_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_session_tokens_token_hash", ["token_hash"], unique=True)
        batch_op.create_index("ix_session_tokens_expires_at", ["expires_at"], unique=False)
        batch_op.create_index("ix_session_tokens_user_active", ["user_id", "is_revoked"], unique=False)


def downgrade():
    op.drop_table("session_tokens")
    op.drop_table("void_requests")
    op.drop_table("stock_movements")
    op.drop_table("sales")
    op.drop_table("ledger_transactions")
    op.drop_table("products")
    op.drop_table("categories")
    op.drop_table("users")
