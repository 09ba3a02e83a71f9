from __future__ import annotations

import json

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class VoidRequest(db.Model):
    """
    Staff request to void a whole checkout, resolved by an admin.

    Lifecycle: pending -> approved | rejected. Both outcomes are terminal.
    Approval runs the void through the transaction engine and records the
    resulting void-{T} number in void_transaction_no.
    """
    __tablename__ = "void_requests"
    __table_args__ = (
        db.CheckConstraint("status IN ('pending', 'approved', 'rejected')", name="status_valid"),
        db.Index("ix_void_requests_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_no = db.Column(db.String(96), nullable=False, index=True)

    requested_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    requested_by_email = db.Column(db.String(255), nullable=True)
    reason = db.Column(db.Text, nullable=True)

    # JSON snapshot: {"items": [{"product_id": ..., "quantity": ...}, ...]}
    transaction_data = db.Column(db.Text, nullable=False)

    status = db.Column(db.String(16), nullable=False, default="pending")

    approved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approved_by_email = db.Column(db.String(255), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    void_transaction_no = db.Column(db.String(96), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    requested_by = db.relationship("User", foreign_keys=[requested_by_user_id])
    approved_by = db.relationship("User", foreign_keys=[approved_by_user_id])

    @property
    def data(self) -> dict:
        return json.loads(self.transaction_data) if self.transaction_data else {}

    @property
    def items(self) -> list:
        return list(self.data.get("items") or [])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_no": self.transaction_no,
            "requested_by_user_id": self.requested_by_user_id,
            "requested_by_email": self.requested_by_email,
            "requested_by": self.requested_by.username if self.requested_by else None,
            "reason": self.reason,
            "transaction_data": self.data,
            "status": self.status,
            "approved_by_user_id": self.approved_by_user_id,
            "approved_by_email": self.approved_by_email,
            "approved_at": to_utc_z(self.approved_at),
            "void_transaction_no": self.void_transaction_no,
            "created_at": to_utc_z(self.created_at),
        }
