"""Net effect of shared expenses and the reimbursements paid back against them."""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Optional, Protocol


class LedgerRow(Protocol):
    id: int
    amount_cents: int
    category_id: Optional[int]
    is_transfer: bool
    is_split: bool
    split_parent_id: Optional[int]


def is_reimbursement(txn: LedgerRow) -> bool:
    return txn.split_parent_id is not None


def reimbursements_by_parent(transactions: Iterable[LedgerRow]) -> dict[int, int]:
    """Sum of reimbursement amounts per split parent id."""
    totals: dict[int, int] = defaultdict(int)
    for txn in transactions:
        if txn.split_parent_id is not None:
            totals[txn.split_parent_id] += txn.amount_cents
    return dict(totals)


def net_amount(txn: LedgerRow, reimbursed: dict[int, int]) -> int:
    if txn.is_split:
        return txn.amount_cents + reimbursed.get(txn.id, 0)
    return txn.amount_cents


def resolved_amounts(
    transactions: Iterable[LedgerRow],
) -> list[tuple[LedgerRow, int]]:
    """Top-level rows paired with the amount they contribute to totals.

    Reimbursement children are folded into their parent and never appear on
    their own; only children present in ``transactions`` reduce a parent.
    """
    rows = list(transactions)
    reimbursed = reimbursements_by_parent(rows)
    return [
        (txn, net_amount(txn, reimbursed)) for txn in rows if not is_reimbursement(txn)
    ]


def fair_share(amount_cents: int, participants: int) -> int:
    """The payer's equal share of a split amount, rounded toward zero."""
    return int(amount_cents / participants)
