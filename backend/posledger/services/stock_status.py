# Overview: Stock status policy; pure functions shared by the transaction engine and reports.

"""
Stock Status Policy

A product's status is derived from its stock and a low-stock threshold:

    stock <= 0              -> out_of_stock
    0 < stock < threshold   -> low_stock
    stock >= threshold      -> available

"deleted" is a lifecycle status owned by product management; the engine
never computes it and never overwrites it.
"""

from __future__ import annotations

import math
from typing import Iterable

AVAILABLE = "available"
LOW_STOCK = "low_stock"
OUT_OF_STOCK = "out_of_stock"
DELETED = "deleted"


def compute_status(stock: int, threshold: int) -> str:
    if stock <= 0:
        return OUT_OF_STOCK
    if stock < threshold:
        return LOW_STOCK
    return AVAILABLE


def normalize_threshold(value, default: int | None) -> int | None:
    """
    Clamp a caller-supplied threshold to a non-negative integer.

    Only real numbers count; None, strings and booleans fall back to default.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if isinstance(value, float) and not math.isfinite(value):
        return default
    return max(0, math.floor(value))


def resolve_threshold(product_threshold: int | None, general_threshold: int | None, default: int) -> int:
    """Product override first, then the request-wide threshold, then the configured default."""
    if product_threshold is not None:
        return product_threshold
    if general_threshold is not None:
        return general_threshold
    return default


def status_after_change(current_status: str | None, stock: int, threshold: int) -> str:
    if current_status == DELETED:
        return DELETED
    return compute_status(stock, threshold)


def classify(entries: Iterable[tuple[int, int, int]]) -> tuple[list[int], list[int]]:
    """
    Split (product_id, stock, threshold) entries into (low_now, out_now) id lists.

    Ids are deduplicated keeping the first-seen order; the last entry for an
    id decides its bucket.
    """
    final: dict[int, str] = {}
    for product_id, stock, threshold in entries:
        final[product_id] = compute_status(stock, threshold)

    low_now = [pid for pid, status in final.items() if status == LOW_STOCK]
    out_now = [pid for pid, status in final.items() if status == OUT_OF_STOCK]
    return low_now, out_now
