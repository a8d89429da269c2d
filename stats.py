from __future__ import annotations

from typing import Iterable, Optional

from splits import LedgerRow, resolved_amounts


def summarize(transactions: Iterable[LedgerRow]) -> dict[str, object]:
    """Income/expense/net rollup over an already filtered transaction set.

    Transfers are dropped, reimbursement children are folded into their split
    parent, and per-category totals use the same substituted amounts.
    """
    non_transfers = [t for t in transactions if not t.is_transfer]
    resolved = resolved_amounts(non_transfers)

    income = 0
    expenses = 0
    by_category: dict[int, int] = {}
    for txn, amount in resolved:
        if amount > 0:
            income += amount
        elif amount < 0:
            expenses += -amount
        if txn.category_id is not None:
            by_category[txn.category_id] = by_category.get(txn.category_id, 0) + amount

    return {
        "income": income,
        "expenses": expenses,
        "net": income - expenses,
        "transaction_count": len(resolved),
        "by_category": by_category,
    }


def spent_by_category(transactions: Iterable[LedgerRow]) -> dict[int, int]:
    # Budget view: raw expense magnitude, no split netting.
    spent: dict[int, int] = {}
    for txn in transactions:
        if txn.category_id is not None and txn.amount_cents < 0:
            spent[txn.category_id] = spent.get(txn.category_id, 0) - txn.amount_cents
    return spent


def budget_progress(amount_cents: int, spent_cents: Optional[int]) -> dict[str, object]:
    spent = spent_cents or 0
    percentage = (spent / amount_cents) * 100 if amount_cents > 0 else 0.0
    return {
        "spent": spent,
        "remaining": max(0, amount_cents - spent),
        "percentage": min(100.0, percentage),
        "is_over_budget": spent > amount_cents,
    }
