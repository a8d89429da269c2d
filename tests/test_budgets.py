import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import AccountType, BudgetPeriod
from schemas import AccountIn, BudgetIn, BudgetUpdate, CategoryIn, TransactionIn
from services import (
    AccessDenied,
    AccountService,
    BudgetService,
    CategoryService,
    LedgerValidationError,
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


def setup_household(session):
    joint = AccountService(session, USER).create(
        AccountIn(name="House", type=AccountType.joint)
    )
    groceries = CategoryService(session, USER).create(CategoryIn(name="Groceries"))
    return joint, groceries


def spend(session, account_id: int, category_id: int, day: str, amount_cents: int):
    TransactionService(session, USER).create(
        TransactionIn(
            account_id=account_id,
            date=day,
            description="Shop",
            amount_cents=amount_cents,
            category_id=category_id,
        )
    )


def test_budget_requires_household() -> None:
    session = make_session()
    category = CategoryService(session, USER).create(CategoryIn(name="Fun"))
    with pytest.raises(LedgerValidationError):
        BudgetService(session, USER).upsert(
            BudgetIn(category_id=category.id, amount_cents=10_000)
        )


def test_upsert_replaces_existing_budget_for_category() -> None:
    session = make_session()
    _, groceries = setup_household(session)
    service = BudgetService(session, USER)

    first = service.upsert(BudgetIn(category_id=groceries.id, amount_cents=40_000))
    second = service.upsert(
        BudgetIn(
            category_id=groceries.id, amount_cents=50_000, period=BudgetPeriod.weekly
        )
    )
    assert first.id == second.id
    assert len(service.list_all()) == 1
    assert second.amount_cents == 50_000
    assert second.period == BudgetPeriod.weekly


def test_non_positive_amounts_are_rejected() -> None:
    session = make_session()
    _, groceries = setup_household(session)
    service = BudgetService(session, USER)
    with pytest.raises(LedgerValidationError):
        service.upsert(BudgetIn(category_id=groceries.id, amount_cents=0))

    budget = service.upsert(BudgetIn(category_id=groceries.id, amount_cents=1_000))
    with pytest.raises(LedgerValidationError):
        service.update(budget.id, BudgetUpdate(amount_cents=-5))


def test_progress_within_and_over_budget() -> None:
    session = make_session()
    joint, groceries = setup_household(session)
    service = BudgetService(session, USER)
    service.upsert(BudgetIn(category_id=groceries.id, amount_cents=10_000))

    spend(session, joint.id, groceries.id, "2025-06-03", -3_000)
    spend(session, joint.id, groceries.id, "2025-05-30", -9_000)
    spend(session, joint.id, groceries.id, "2025-06-05", 500)

    [row] = service.progress("2025-06-01", "2025-06-30")
    assert row["category"].name == "Groceries"
    assert row["spent"] == 3_000
    assert row["remaining"] == 7_000
    assert row["percentage"] == 30.0
    assert row["is_over_budget"] is False

    spend(session, joint.id, groceries.id, "2025-06-20", -12_000)
    [row] = service.progress("2025-06-01", "2025-06-30")
    assert row["spent"] == 15_000
    assert row["remaining"] == 0
    assert row["percentage"] == 100.0
    assert row["is_over_budget"] is True


def test_budgets_are_private_to_household() -> None:
    session = make_session()
    _, groceries = setup_household(session)
    budget = BudgetService(session, USER).upsert(
        BudgetIn(category_id=groceries.id, amount_cents=1_000)
    )

    outsider = BudgetService(session, 2)
    assert outsider.list_all() == []
    assert outsider.progress("2025-06-01", "2025-06-30") == []
    with pytest.raises(AccessDenied):
        outsider.delete(budget.id)

    BudgetService(session, USER).delete(budget.id)
    assert BudgetService(session, USER).list_all() == []
