from __future__ import annotations

import math
from typing import Any


class LedgerError(Exception):
    """
    Base class for every error the ledger core reports to a caller.

    kind is the machine-readable error category rendered in API responses,
    status_code its HTTP mapping, details a list of human-readable lines
    the admin UI can show without re-deriving them.
    """
    kind = "InternalError"
    status_code = 500

    def __init__(self, message: str, details: list | None = None):
        super().__init__(message)
        self.message = message
        self.details = list(details or [])

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "kind": self.kind,
            "details": self.details,
        }


class InvalidInputError(LedgerError):
    """400-level input problem."""
    kind = "InvalidInput"
    status_code = 400


# Kept as an alias: request-shape checks read better as ValidationError.
ValidationError = InvalidInputError


class NotFoundError(LedgerError):
    """Referenced product, sale, transaction or void request is absent."""
    kind = "NotFound"
    status_code = 404


class InsufficientStockError(LedgerError):
    """A sale or adjustment would drive stock below zero."""
    kind = "InsufficientStock"
    status_code = 400


class InvalidStateError(LedgerError):
    """Operation not valid for the entity's current state."""
    kind = "InvalidState"
    status_code = 400


class ForbiddenError(LedgerError):
    kind = "Forbidden"
    status_code = 403


class UnauthorizedError(LedgerError):
    kind = "Unauthorized"
    status_code = 401


class InternalError(LedgerError):
    """Ledger store failure or an unexpected downstream error."""
    kind = "InternalError"
    status_code = 500


def coerce_positive_int(value: Any) -> int | None:
    """
    Return value as a positive int, or None when it is not one.

    Accepts ints and integral floats (JSON 3.0); rejects bools, strings,
    fractions, NaN/inf, zero and negatives.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            return None
        return int(value) if value > 0 else None
    return None


def coerce_id(value: Any) -> int | None:
    """Row ids arrive as JSON numbers or digit strings; anything else is None."""
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    return coerce_positive_int(value)


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer parsing for request fields.

    Plain digit strings are accepted (query strings); floats, scientific
    notation and decimals are rejected.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return int(value)
        raise ValidationError(f"{field} must be an integer, not a decimal")
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        # Reject decimal points (e.g., "12.5")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    raise ValidationError(f"{field} must be an integer")


def require_json_object(payload: Any) -> dict:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def require_item_list(value: Any, *, empty_message: str) -> list:
    """Items must be a non-empty JSON array of objects."""
    if value is None:
        raise ValidationError(empty_message)
    if not isinstance(value, list):
        raise ValidationError("items must be a list")
    if not value:
        raise ValidationError(empty_message)
    bad = [f"Item {i + 1} must be an object" for i, item in enumerate(value) if not isinstance(item, dict)]
    if bad:
        raise ValidationError("Invalid items", details=bad)
    return value
