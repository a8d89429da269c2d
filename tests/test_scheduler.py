from contextlib import contextmanager

from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from models import Account, AccountType, RecurringInterval, Transaction
from recurrence import local_today
from scheduler import SchedulerManager
from schemas import AccountIn, RecurringTransactionIn, TransactionIn
from services import AccountService, RecurringTransactionService, TransactionService

USER = 1


def make_factory():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @contextmanager
    def scope():
        session = SessionLocal()
        try:
            yield session
            session.commit()
        finally:
            session.close()

    return SessionLocal, scope


def test_post_recurring_uses_local_today() -> None:
    SessionLocal, scope = make_factory()
    with SessionLocal() as session:
        joint = AccountService(session, USER).create(
            AccountIn(name="House", type=AccountType.joint)
        )
        RecurringTransactionService(session, USER).create(
            RecurringTransactionIn(
                account_id=joint.id,
                description="Coffee fund",
                amount_cents=-300,
                interval=RecurringInterval.daily,
                next_run_date=local_today(),
            )
        )

    manager = SchedulerManager(session_factory=scope)
    assert manager.post_recurring() == 1
    assert manager.post_recurring() == 0

    with SessionLocal() as session:
        rows = session.scalars(select(Transaction)).all()
        assert [(t.date, t.amount_cents) for t in rows] == [(local_today(), -300)]


def test_audit_balances_repairs_drift() -> None:
    SessionLocal, scope = make_factory()
    with SessionLocal() as session:
        account = AccountService(session, USER).create(
            AccountIn(name="Checking", type=AccountType.checking)
        )
        TransactionService(session, USER).create(
            TransactionIn(
                account_id=account.id,
                date="2025-05-01",
                description="Pay",
                amount_cents=12_500,
            )
        )
        session.execute(
            update(Account).where(Account.id == account.id).values(balance_cents=999)
        )
        session.commit()
        account_id = account.id

    manager = SchedulerManager(session_factory=scope)
    assert manager.audit_balances() == 1
    assert manager.audit_balances() == 0

    with SessionLocal() as session:
        assert session.get(Account, account_id).balance_cents == 12_500
