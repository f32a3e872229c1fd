"""Per-owner quota accounting."""

from docqueue.ledger.ledger import QuotaLedger, QuotaLimit, UsageSnapshot, month_start, week_start

__all__ = [
    "QuotaLedger",
    "QuotaLimit",
    "UsageSnapshot",
    "month_start",
    "week_start",
]
