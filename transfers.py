"""Pairing of transactions that are two legs of one movement between accounts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Optional, Protocol, Sequence


class TransferLeg(Protocol):
    id: int
    account_id: int
    date: str
    amount_cents: int
    is_transfer: bool


@dataclass
class TransferMatchResult:
    pairs: list[tuple[TransferLeg, TransferLeg]] = field(default_factory=list)
    ambiguous_ids: list[int] = field(default_factory=list)
    unmatched_ids: list[int] = field(default_factory=list)


def shift_date(iso_date: str, days: int) -> str:
    return (date.fromisoformat(iso_date) + timedelta(days=days)).isoformat()


def days_between(a: str, b: str) -> int:
    return (date.fromisoformat(a) - date.fromisoformat(b)).days


def batch_window(dates: Sequence[str], window_days: int) -> tuple[str, str]:
    ordered = sorted(dates)
    return (
        shift_date(ordered[0], -window_days),
        shift_date(ordered[-1], window_days),
    )


def _is_opposite_leg(a: TransferLeg, b: TransferLeg, window_days: int) -> bool:
    return (
        a.amount_cents == -b.amount_cents
        and abs(days_between(a.date, b.date)) <= window_days
    )


def match_transfers(
    new_transactions: Sequence[TransferLeg],
    candidates: Sequence[TransferLeg],
    *,
    window_days: int = 2,
    universe: Optional[Sequence[TransferLeg]] = None,
) -> TransferMatchResult:
    """Greedy one-pass matching of new rows against candidate rows.

    A new row matches a candidate with the exact opposite amount dated within
    ``window_days``. A pair is only taken when exactly one candidate
    qualifies; a claimed candidate leaves the pool so it cannot pair twice.
    When ``universe`` is given, the chosen candidate must also have exactly
    one possible partner among the unclaimed rows of other accounts in it,
    so an ambiguous counterpart is never claimed from either side. Rows of
    the importing account other than the one being matched are not counted
    as partners; they wait their turn in the batch.
    The result depends on the order of ``new_transactions``.
    """
    pool = list(candidates)
    claimed: set[int] = set()
    result = TransferMatchResult()
    for txn in new_transactions:
        if txn.is_transfer or txn.id in claimed:
            continue
        matches = [c for c in pool if _is_opposite_leg(c, txn, window_days)]
        if len(matches) == 1 and universe is not None:
            counterpart = matches[0]
            partners = [
                u
                for u in universe
                if u.id not in claimed
                and u.account_id != counterpart.account_id
                and (u.account_id != txn.account_id or u.id == txn.id)
                and _is_opposite_leg(u, counterpart, window_days)
            ]
            if len(partners) > 1:
                matches = partners
        if len(matches) == 1:
            result.pairs.append((txn, matches[0]))
            claimed.update((txn.id, matches[0].id))
            pool.remove(matches[0])
        elif matches:
            result.ambiguous_ids.append(txn.id)
        else:
            result.unmatched_ids.append(txn.id)
    return result
