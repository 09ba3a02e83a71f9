# Overview: Service-layer operations for void requests; staff request, admin approve/reject.

"""
Void Request Workflow

Staff cannot void a checkout directly; they file a request with a snapshot
of the lines to reverse. An admin resolves it:

    pending -> approved   void posted through the transaction engine
    pending -> rejected   no ledger effect

Approval runs the engine void and flips the request status in the same
unit of work, so either both persist or neither does.
"""

from __future__ import annotations

import json

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import User, VoidRequest
from ..time_utils import utcnow
from ..validation import (
    ForbiddenError,
    InternalError,
    InvalidInputError,
    InvalidStateError,
    LedgerError,
    NotFoundError,
    UnauthorizedError,
)
from . import transaction_service
from .auth_service import verify_password
from .concurrency import begin_immediate, commit_with_retry, lock_for_update, run_with_retry

STATUSES = ("pending", "approved", "rejected")
ACTIONS = ("approve", "reject")


def create_void_request(
    transaction_no,
    reason,
    transaction_data,
    requesting_user: User | None,
) -> VoidRequest:
    """Record a pending void request. The snapshot must carry a non-empty items list."""
    problems = []
    if not isinstance(transaction_no, str) or not transaction_no.strip():
        problems.append("transaction_no is required")
    if transaction_data is None:
        problems.append("transaction_data is required")
    elif not isinstance(transaction_data, dict):
        problems.append("transaction_data must be an object")
    else:
        items = transaction_data.get("items")
        if not isinstance(items, list) or not items:
            problems.append("transaction_data.items must be a non-empty list")
    if problems:
        raise InvalidInputError("Missing required fields", details=problems)

    void_request = VoidRequest(
        transaction_no=transaction_no.strip(),
        requested_by_user_id=requesting_user.id if requesting_user else None,
        requested_by_email=requesting_user.email if requesting_user else None,
        reason=(reason.strip() or None) if isinstance(reason, str) else None,
        transaction_data=json.dumps(transaction_data),
        status="pending",
    )
    db.session.add(void_request)
    commit_with_retry()

    current_app.logger.info(
        "Void request %s filed for %s by user %s",
        void_request.id, void_request.transaction_no, void_request.requested_by_user_id,
    )
    return void_request


def list_void_requests(status: str | None = None) -> list[VoidRequest]:
    if status is not None and status not in STATUSES:
        raise InvalidInputError("Invalid status", details=[f"status must be one of: {', '.join(STATUSES)}"])
    query = db.session.query(VoidRequest)
    if status:
        query = query.filter(VoidRequest.status == status)
    return query.order_by(VoidRequest.created_at.desc(), VoidRequest.id.desc()).all()


def get_void_request(void_request_id: int) -> VoidRequest:
    void_request = db.session.get(VoidRequest, void_request_id)
    if not void_request:
        raise NotFoundError("Void request not found", details=[f"Void request {void_request_id}"])
    return void_request


def resolve_void_request(
    void_request_id: int,
    action,
    admin_user: User | None,
    admin_password: str | None = None,
) -> VoidRequest:
    """
    Approve or reject a pending void request.

    Check order: admin role, action, admin password (when supplied),
    request exists, request still pending.

    Raises:
        ForbiddenError: caller is not an admin
        InvalidInputError: action is not approve/reject
        UnauthorizedError: admin_password does not match
        NotFoundError: unknown request id
        InvalidStateError: request already approved or rejected
        InternalError: the engine refused the void; nothing was written
    """
    if admin_user is None or not admin_user.is_admin:
        raise ForbiddenError("Only admins can approve or reject void requests")

    if action not in ACTIONS:
        raise InvalidInputError("Invalid action", details=["action must be 'approve' or 'reject'"])

    if admin_password is not None and not verify_password(admin_password, admin_user.password_hash):
        raise UnauthorizedError("Invalid admin password")

    admin_id = admin_user.id
    admin_email = admin_user.email

    def _op():
        begin_immediate()
        void_request = lock_for_update(
            db.session.query(VoidRequest).filter_by(id=void_request_id)
        ).first()
        if not void_request:
            raise NotFoundError("Void request not found", details=[f"Void request {void_request_id}"])
        if void_request.status != "pending":
            raise InvalidStateError(
                "Void request already processed",
                details=[f"Void request {void_request_id} is {void_request.status}"],
            )

        result = None
        if action == "approve":
            try:
                plan = transaction_service.prepare_checkout(
                    void_request.items,
                    action="void",
                    acting_user_id=admin_id,
                    requested_by_user_id=void_request.requested_by_user_id,
                    approved_by_user_id=admin_id,
                    original_transaction_no=void_request.transaction_no,
                )
                result = transaction_service.apply_checkout(plan)
            except LedgerError as exc:
                raise InternalError(f"Failed to void transaction: {exc.message}", details=exc.details) from exc
            void_request.void_transaction_no = result["transaction_no"]

        void_request.status = "approved" if action == "approve" else "rejected"
        void_request.approved_by_user_id = admin_id
        void_request.approved_by_email = admin_email
        void_request.approved_at = utcnow()
        db.session.commit()
        return void_request

    void_request = run_with_retry(_op, retry_on=(IntegrityError,))

    current_app.logger.info(
        "Void request %s %s by admin %s (%s)",
        void_request_id, void_request.status, admin_id, void_request.void_transaction_no or "no ledger effect",
    )
    return void_request
