import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Account, AccountType, Transaction
from schemas import (
    AccountIn,
    AccountUpdate,
    BulkTransactionRow,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    AccountService,
    BalanceReconciler,
    ReconciliationFailure,
    TransactionService,
)

USER = 1


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_account(session, **kwargs) -> Account:
    data = {"name": "Checking", "type": AccountType.checking}
    data.update(kwargs)
    return AccountService(session, USER).create(AccountIn(**data))


def add(session, account_id: int, day: str, amount_cents: int):
    return TransactionService(session, USER).create(
        TransactionIn(
            account_id=account_id,
            date=day,
            description="Entry",
            amount_cents=amount_cents,
        )
    )


def balance_of(session, account_id: int) -> int:
    return session.get(Account, account_id, populate_existing=True).balance_cents


def test_create_and_delete_round_trip_without_anchor() -> None:
    session = make_session()
    account = make_account(session)

    rent = add(session, account.id, "2025-01-03", -120_000)
    add(session, account.id, "2025-01-05", 250_000)
    assert balance_of(session, account.id) == 130_000

    TransactionService(session, USER).delete(rent.id)
    assert balance_of(session, account.id) == 250_000


def test_anchor_excludes_rows_dated_before_it() -> None:
    session = make_session()
    account = make_account(
        session, starting_balance_cents=10_000, starting_balance_date="2025-03-01"
    )
    assert account.balance_cents == 10_000

    add(session, account.id, "2025-02-28", -500)
    assert balance_of(session, account.id) == 10_000

    add(session, account.id, "2025-03-01", -500)
    assert balance_of(session, account.id) == 9_500


def test_update_moves_row_across_anchor() -> None:
    session = make_session()
    account = make_account(
        session, starting_balance_cents=10_000, starting_balance_date="2025-03-01"
    )
    txn = add(session, account.id, "2025-02-20", -1_000)
    service = TransactionService(session, USER)

    service.update(txn.id, TransactionUpdate(date="2025-03-05"))
    assert balance_of(session, account.id) == 9_000

    service.update(txn.id, TransactionUpdate(amount_cents=-2_500))
    assert balance_of(session, account.id) == 7_500

    service.update(txn.id, TransactionUpdate(date="2025-02-01"))
    assert balance_of(session, account.id) == 10_000


def test_moving_transaction_between_accounts() -> None:
    session = make_session()
    first = make_account(session, name="First")
    second = make_account(
        session,
        name="Second",
        starting_balance_cents=0,
        starting_balance_date="2025-06-01",
    )
    txn = add(session, first.id, "2025-05-15", -1_000)

    TransactionService(session, USER).update(
        txn.id, TransactionUpdate(account_id=second.id)
    )
    assert balance_of(session, first.id) == 0
    # The second account's anchor is later than the row.
    assert balance_of(session, second.id) == 0

    TransactionService(session, USER).update(
        txn.id, TransactionUpdate(date="2025-06-02")
    )
    assert balance_of(session, second.id) == -1_000


def test_recompute_is_idempotent_and_repairs_drift() -> None:
    session = make_session()
    account = make_account(
        session, starting_balance_cents=5_000, starting_balance_date="2025-01-10"
    )
    add(session, account.id, "2025-01-09", -700)
    add(session, account.id, "2025-01-10", -300)
    add(session, account.id, "2025-01-20", 1_200)
    cached = balance_of(session, account.id)

    service = AccountService(session, USER)
    assert service.recalculate_balance(account.id) == {"balance": cached}
    assert service.recalculate_balance(account.id) == {"balance": cached}
    assert cached == 5_900

    stored = session.get(Account, account.id)
    stored.balance_cents = 42
    session.commit()
    assert service.recalculate_balance(account.id) == {"balance": 5_900}


def test_anchor_change_triggers_recompute() -> None:
    session = make_session()
    account = make_account(session)
    add(session, account.id, "2025-01-10", -100)
    add(session, account.id, "2025-02-10", -200)
    assert balance_of(session, account.id) == -300

    service = AccountService(session, USER)
    service.update(
        account.id,
        AccountUpdate(starting_balance_cents=1_000, starting_balance_date="2025-02-01"),
    )
    assert balance_of(session, account.id) == 800

    service.update(account.id, AccountUpdate(starting_balance_date=None))
    assert balance_of(session, account.id) == 700


def test_renaming_account_keeps_balance() -> None:
    session = make_session()
    account = make_account(session)
    add(session, account.id, "2025-01-10", -100)

    AccountService(session, USER).update(account.id, AccountUpdate(name="Daily"))
    assert balance_of(session, account.id) == -100


def test_bulk_create_matches_individual_inserts() -> None:
    session = make_session()
    anchor = {"starting_balance_cents": 20_000, "starting_balance_date": "2025-01-15"}
    bulk_account = make_account(session, name="Bulk", **anchor)
    single_account = make_account(session, name="Single", **anchor)

    rows = [
        BulkTransactionRow(
            date=f"2025-01-{(i % 28) + 1:02d}",
            description=f"Row {i}",
            amount_cents=(i * 37 % 500) - 250,
        )
        for i in range(100)
    ]
    result = TransactionService(session, USER).bulk_create(bulk_account.id, rows)
    assert result["count"] == 100
    assert len(result["ids"]) == 100

    for row in rows:
        add(session, single_account.id, row.date, row.amount_cents)

    bulk_balance = balance_of(session, bulk_account.id)
    assert bulk_balance == balance_of(session, single_account.id)
    assert AccountService(session, USER).recalculate_balance(bulk_account.id) == {
        "balance": bulk_balance
    }


def test_bulk_delete_applies_one_delta_per_account() -> None:
    session = make_session()
    first = make_account(session, name="First")
    second = make_account(session, name="Second")
    a = add(session, first.id, "2025-01-01", -100)
    b = add(session, first.id, "2025-01-02", -200)
    c = add(session, second.id, "2025-01-03", 400)
    add(session, second.id, "2025-01-04", 50)

    result = TransactionService(session, USER).bulk_delete([a.id, b.id, c.id, a.id])
    assert result == {"count": 3}
    assert balance_of(session, first.id) == 0
    assert balance_of(session, second.id) == 50


def test_reconciler_refuses_missing_account() -> None:
    session = make_session()
    with pytest.raises(ReconciliationFailure):
        BalanceReconciler(session).adjust(999, "2025-01-01", 100)


def test_failed_balance_update_leaves_no_transaction(monkeypatch) -> None:
    session = make_session()
    account = make_account(session)
    add(session, account.id, "2025-01-01", 1_000)

    def unreadable(self, account_id):
        raise ReconciliationFailure(f"Account {account_id} is unavailable")

    monkeypatch.setattr(BalanceReconciler, "_lock_account", unreadable)
    service = TransactionService(session, USER)
    with pytest.raises(ReconciliationFailure):
        service.create(
            TransactionIn(
                account_id=account.id,
                date="2025-01-02",
                description="Lost",
                amount_cents=-300,
            )
        )
    with pytest.raises(ReconciliationFailure):
        service.bulk_create(
            account.id,
            [
                BulkTransactionRow(date="2025-01-03", description="A", amount_cents=-10),
                BulkTransactionRow(date="2025-01-04", description="B", amount_cents=-20),
            ],
        )
    monkeypatch.undo()

    count = session.scalar(
        select(func.count(Transaction.id)).where(Transaction.account_id == account.id)
    )
    assert count == 1
    assert balance_of(session, account.id) == 1_000


def test_counts_is_inclusive_of_anchor_day() -> None:
    assert BalanceReconciler.counts(None, "1999-01-01")
    assert BalanceReconciler.counts("2025-03-01", "2025-03-01")
    assert not BalanceReconciler.counts("2025-03-01", "2025-02-28")
