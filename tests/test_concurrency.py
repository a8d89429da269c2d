import threading

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Account, AccountType, Transaction
from schemas import AccountIn, BulkTransactionRow, TransactionIn
from services import AccountService, TransactionService

USER = 1
THREADS = 4
PER_THREAD = 20


def make_session_factory(tmp_path):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def test_concurrent_writers_do_not_lose_updates(tmp_path) -> None:
    SessionLocal = make_session_factory(tmp_path)
    with SessionLocal() as session:
        account = AccountService(session, USER).create(
            AccountIn(name="Shared", type=AccountType.checking)
        )
        account_id = account.id

    errors: list[BaseException] = []

    def writer(worker: int) -> None:
        try:
            with SessionLocal() as session:
                service = TransactionService(session, USER)
                for i in range(PER_THREAD):
                    service.create(
                        TransactionIn(
                            account_id=account_id,
                            date=f"2025-03-{(i % 28) + 1:02d}",
                            description=f"Worker {worker} row {i}",
                            amount_cents=-(worker * 100 + i),
                        )
                    )
                service.bulk_create(
                    account_id,
                    [
                        BulkTransactionRow(
                            date="2025-04-01", description="Refund", amount_cents=worker
                        )
                    ],
                )
        except BaseException as exc:
            errors.append(exc)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(THREADS)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    with SessionLocal() as session:
        ledger_sum = session.scalar(
            select(func.sum(Transaction.amount_cents)).where(
                Transaction.account_id == account_id
            )
        )
        count = session.scalar(
            select(func.count(Transaction.id)).where(Transaction.account_id == account_id)
        )
        assert count == THREADS * (PER_THREAD + 1)
        assert session.get(Account, account_id).balance_cents == ledger_sum
