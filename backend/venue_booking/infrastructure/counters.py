from __future__ import annotations

from ..domain.repositories import Transaction
from ..utils.time import utc_now_naive

COUNTERS_COLLECTION = "counters"
INVOICE_COUNTER = "invoices"
INVOICE_START = 1000
INVOICE_PAD = 6


async def next_value_in(txn: Transaction, name: str, *, initial: int = INVOICE_START) -> int:
    """Take the next value of a named counter inside the caller's transaction.

    The counter document is read before it is written, so two transactions
    drawing from the same counter conflict and one of them is retried.
    """
    current = await txn.get(COUNTERS_COLLECTION, name)
    value = initial if current is None else int(current["value"]) + 1
    txn.set(COUNTERS_COLLECTION, name, {"value": value, "updated_at": utc_now_naive().isoformat()})
    return value


def format_invoice_number(value: int, pad: int = INVOICE_PAD) -> str:
    return str(value).zfill(pad)
