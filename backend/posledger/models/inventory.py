from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class Category(db.Model):
    __tablename__ = "categories"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False, unique=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name}


class Product(db.Model):
    """
    Product master data plus the live stock level.

    Stock and status are written only by the transaction engine. Every
    stock UPDATE is conditional on version_id (optimistic lock), so two
    writers that read the same row cannot both succeed.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("stock >= 0", name="stock_non_negative"),
        db.Index("ix_products_status", "status"),
        # A soft-deleted product releases its barcode.
        db.Index(
            "uq_products_barcode_live",
            "barcode",
            unique=True,
            sqlite_where=db.text("status != 'deleted'"),
            postgresql_where=db.text("status != 'deleted'"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    barcode = db.Column(db.String(64), nullable=True)

    # Authoritative storage in cents
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    unit_cost_cents = db.Column(db.Integer, nullable=True)

    stock = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(32), nullable=False, default="out_of_stock")

    # Per-product override of the low-stock threshold
    low_stock_threshold = db.Column(db.Integer, nullable=True)

    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    category = db.relationship("Category", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} stock={self.stock} status={self.status}>"

    @property
    def is_deleted(self) -> bool:
        return self.status == "deleted"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "barcode": self.barcode,
            "price_cents": self.price_cents,
            "unit_cost_cents": self.unit_cost_cents,
            "stock": self.stock,
            "status": self.status,
            "low_stock_threshold": self.low_stock_threshold,
            "category_id": self.category_id,
            "category": self.category.name if self.category else None,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Immutable audit line for every stock change.

    quantity is the magnitude of the change; the direction follows from
    type (sale decreases, void/refund increase, manual either way) and is
    always recoverable as after_stock - before_stock.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="quantity_positive"),
        db.CheckConstraint("after_stock >= 0", name="after_stock_non_negative"),
        db.Index("ix_stock_movements_product_created", "product_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("ledger_transactions.id"), nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)
    ref_id = db.Column(db.String(96), nullable=False, index=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    # sale | void | refund | manual
    type = db.Column(db.String(16), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    before_stock = db.Column(db.Integer, nullable=False)
    after_stock = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    product = db.relationship("Product")
    user = db.relationship("User")

    @property
    def quantity_delta(self) -> int:
        return self.after_stock - self.before_stock

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "sale_id": self.sale_id,
            "ref_id": self.ref_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "type": self.type,
            "quantity": self.quantity,
            "quantity_delta": self.quantity_delta,
            "before_stock": self.before_stock,
            "after_stock": self.after_stock,
            "reason": self.reason,
            "user_id": self.user_id,
            "user": self.user.username if self.user else None,
            "created_at": to_utc_z(self.created_at),
        }
