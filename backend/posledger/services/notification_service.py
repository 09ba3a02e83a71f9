# Overview: Stock-alert notification hook; publishes committed low/out-of-stock summaries on a blinker signal.

"""
Stock alerts are fire-and-forget: they are sent only after the ledger
transaction has committed, and a failing receiver never affects the
checkout or return that triggered it.

Receivers (email, push, dashboards) subscribe with:

    from posledger.services.notification_service import stock_alert

    @stock_alert.connect
    def on_alert(sender, **payload):
        ...
"""

from __future__ import annotations

from blinker import Namespace
from flask import current_app

_signals = Namespace()

stock_alert = _signals.signal("stock-alert")


def publish_stock_alert(transaction_no: str, low_now: list[int], out_now: list[int]) -> int:
    """
    Send a stock-alert for a committed transaction.

    Returns the number of receivers that handled the alert successfully.
    """
    if not low_now and not out_now:
        return 0

    payload = {
        "transaction_no": transaction_no,
        "low_now": list(low_now),
        "out_now": list(out_now),
    }

    delivered = 0
    for receiver in stock_alert.receivers_for(current_app._get_current_object()):
        try:
            receiver(current_app._get_current_object(), **payload)
            delivered += 1
        except Exception:
            current_app.logger.exception("Stock alert receiver failed for %s", transaction_no)

    current_app.logger.info(
        "Stock alert for %s: %d low, %d out (%d receivers)",
        transaction_no, len(low_now), len(out_now), delivered,
    )
    return delivered
