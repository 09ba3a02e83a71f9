from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class LedgerTransaction(db.Model):
    """
    Header row for one atomic ledger event (checkout, void, return, manual).

    transaction_no is unique, which makes void-{T} at-most-once at the
    database level and keeps checkouts in the same millisecond apart.
    Voids and returns point at the transaction they reverse explicitly.
    """
    __tablename__ = "ledger_transactions"
    __table_args__ = (
        db.CheckConstraint("kind IN ('sale', 'void', 'return', 'manual')", name="kind_valid"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_no = db.Column(db.String(96), nullable=False, unique=True, index=True)
    kind = db.Column(db.String(16), nullable=False, index=True)

    reverses_transaction_id = db.Column(
        db.Integer, db.ForeignKey("ledger_transactions.id"), nullable=True, index=True
    )

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    approved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    reverses = db.relationship("LedgerTransaction", remote_side=[id], backref="reversals")
    user = db.relationship("User", foreign_keys=[user_id])
    approved_by = db.relationship("User", foreign_keys=[approved_by_user_id])

    def __repr__(self) -> str:
        return f"<LedgerTransaction {self.transaction_no} kind={self.kind}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_no": self.transaction_no,
            "kind": self.kind,
            "reverses_transaction_id": self.reverses_transaction_id,
            "user_id": self.user_id,
            "approved_by_user_id": self.approved_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class Sale(db.Model):
    """
    Immutable sale ledger line.

    Positive quantity for a checkout line; negative for a void or return
    line, which also carries reverses_sale_id pointing at the line it offsets.
    total_amount_cents = quantity * unit_price_cents, so the sign always matches.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.CheckConstraint("quantity <> 0", name="quantity_non_zero"),
        db.CheckConstraint(
            "(quantity > 0 AND total_amount_cents >= 0) OR (quantity < 0 AND total_amount_cents <= 0)",
            name="total_sign_matches_quantity",
        ),
        db.Index("ix_sales_product_created", "product_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("ledger_transactions.id"), nullable=False, index=True)

    # Denormalized transaction_no for receipts and audit exports
    ref_id = db.Column(db.String(96), nullable=False, index=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    total_amount_cents = db.Column(db.Integer, nullable=False)

    reverses_sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    approved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    transaction = db.relationship("LedgerTransaction", backref=db.backref("sales", lazy=True))
    product = db.relationship("Product")
    reverses = db.relationship("Sale", remote_side=[id])
    user = db.relationship("User", foreign_keys=[user_id])
    approved_by = db.relationship("User", foreign_keys=[approved_by_user_id])

    def __repr__(self) -> str:
        return f"<Sale id={self.id} ref={self.ref_id} product_id={self.product_id} qty={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "ref_id": self.ref_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_amount_cents": self.total_amount_cents,
            "reverses_sale_id": self.reverses_sale_id,
            "user_id": self.user_id,
            "approved_by_user_id": self.approved_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
