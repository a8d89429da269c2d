import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import AccountType
from schemas import AccountIn, GoalIn, GoalUpdate
from services import (
    AccessDenied,
    AccountService,
    GoalService,
    LedgerValidationError,
    NotFound,
)

USER = 1


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def setup_household(session, user_id: int = USER):
    return AccountService(session, user_id).create(
        AccountIn(name="House", type=AccountType.joint)
    )


def test_goal_requires_household() -> None:
    session = make_session()
    with pytest.raises(LedgerValidationError):
        GoalService(session, USER).create(GoalIn(name="Trip", target_amount_cents=100_000))


def test_create_applies_defaults_and_validates() -> None:
    session = make_session()
    setup_household(session)
    service = GoalService(session, USER)

    goal = service.create(GoalIn(name="  Holiday ", target_amount_cents=250_000))
    assert goal.name == "Holiday"
    assert goal.current_amount_cents == 0
    assert goal.icon == "savings"
    assert goal.color == "#10b981"

    with pytest.raises(LedgerValidationError):
        service.create(GoalIn(name=" ", target_amount_cents=1_000))
    with pytest.raises(LedgerValidationError):
        service.create(GoalIn(name="Nothing", target_amount_cents=0))
    with pytest.raises(LedgerValidationError):
        service.create(
            GoalIn(name="Debt", target_amount_cents=1_000, current_amount_cents=-1)
        )


def test_goals_list_newest_first() -> None:
    session = make_session()
    setup_household(session)
    service = GoalService(session, USER)
    service.create(GoalIn(name="Car", target_amount_cents=1_000_000))
    service.create(GoalIn(name="Bike", target_amount_cents=80_000))

    assert [g.name for g in service.list_all()] == ["Bike", "Car"]
    assert GoalService(session, 2).list_all() == []


def test_add_funds_caps_at_target() -> None:
    session = make_session()
    setup_household(session)
    service = GoalService(session, USER)
    goal = service.create(
        GoalIn(name="Laptop", target_amount_cents=150_000, current_amount_cents=100_000)
    )

    assert service.add_funds(goal.id, 20_000).current_amount_cents == 120_000
    assert service.add_funds(goal.id, 50_000).current_amount_cents == 150_000
    with pytest.raises(LedgerValidationError):
        service.add_funds(goal.id, 0)
    with pytest.raises(LedgerValidationError):
        service.add_funds(goal.id, -500)


def test_update_changes_only_given_fields() -> None:
    session = make_session()
    setup_household(session)
    service = GoalService(session, USER)
    goal = service.create(
        GoalIn(name="Wedding", target_amount_cents=900_000, target_date="2026-06-01")
    )

    updated = service.update(goal.id, GoalUpdate(target_amount_cents=1_000_000))
    assert updated.target_amount_cents == 1_000_000
    assert updated.name == "Wedding"
    assert updated.target_date == "2026-06-01"

    cleared = service.update(goal.id, GoalUpdate(target_date=None, name=None))
    assert cleared.target_date is None
    assert cleared.name == "Wedding"

    with pytest.raises(LedgerValidationError):
        service.update(goal.id, GoalUpdate(target_amount_cents=-1))
    with pytest.raises(LedgerValidationError):
        service.update(goal.id, GoalUpdate(current_amount_cents=-1))
    with pytest.raises(LedgerValidationError):
        service.update(goal.id, GoalUpdate(name="   "))


def test_goals_are_scoped_to_the_household() -> None:
    session = make_session()
    setup_household(session)
    setup_household(session, user_id=2)
    goal = GoalService(session, USER).create(
        GoalIn(name="Roof", target_amount_cents=500_000)
    )

    outsider = GoalService(session, 2)
    with pytest.raises(AccessDenied):
        outsider.get(goal.id)
    with pytest.raises(AccessDenied):
        outsider.add_funds(goal.id, 100)
    with pytest.raises(AccessDenied):
        outsider.delete(goal.id)

    GoalService(session, USER).delete(goal.id)
    with pytest.raises(NotFound):
        GoalService(session, USER).get(goal.id)
