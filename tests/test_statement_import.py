import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Account, AccountType, Category, Statement, Transaction
from schemas import (
    AccountIn,
    CategoryIn,
    StatementCandidate,
    StatementCommitIn,
    StatementRowIn,
    TransactionIn,
)
from services import (
    AccountService,
    CategoryService,
    LedgerValidationError,
    StatementImportService,
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


def setup_ledger(session):
    CategoryService(session, USER).seed_defaults()
    accounts = AccountService(session, USER)
    checking = accounts.create(AccountIn(name="Checking", type=AccountType.checking))
    savings = accounts.create(AccountIn(name="Savings", type=AccountType.savings))
    return checking, savings


def by_name(session, name: str) -> Category:
    return session.scalar(select(Category).where(Category.name == name))


def test_category_resolution_exact_fuzzy_and_fallback() -> None:
    session = make_session()
    CategoryService(session, USER).seed_defaults()
    categories = CategoryService(session, USER).list_all()
    resolve = StatementImportService.resolve_category

    assert resolve("groceries", categories).name == "Groceries"
    assert resolve("Grocerie", categories).name == "Groceries"
    assert resolve("Dinning", categories).name == "Dining"
    assert resolve("Pets", categories).name == "Other"
    assert resolve(None, categories).name == "Other"
    assert resolve("  ", categories).name == "Other"


def test_ambiguous_fuzzy_match_falls_back() -> None:
    session = make_session()
    service = CategoryService(session, USER)
    service.seed_defaults()
    service.create(CategoryIn(name="Cat"))
    service.create(CategoryIn(name="Bat"))
    categories = service.list_all()

    resolved = StatementImportService.resolve_category("Hat", categories)
    assert resolved.name == "Other"


def test_preview_flags_duplicates() -> None:
    session = make_session()
    checking, _ = setup_ledger(session)
    TransactionService(session, USER).create(
        TransactionIn(
            account_id=checking.id,
            date="2025-07-02",
            description="SUPERMARKET CENTRAL STATION BRANCH 0042",
            amount_cents=-4_250,
        )
    )

    preview = StatementImportService(session, USER).preview(
        checking.id,
        [
            StatementCandidate(
                date="2025-07-02",
                description="Supermarket Central Station Branch 0099",
                amount_cents=-4_250,
                category="Groceries",
            ),
            StatementCandidate(
                date="2025-07-03",
                description="Cinema",
                amount_cents=-1_800,
                category="Entertainment",
            ),
        ],
    )
    assert [row["is_duplicate"] for row in preview] == [True, False]
    assert preview[1]["category"] == "Entertainment"
    assert preview[1]["category_id"] == by_name(session, "Entertainment").id


def test_commit_records_statement_and_detects_transfers() -> None:
    session = make_session()
    checking, savings = setup_ledger(session)
    saved = TransactionService(session, USER).create(
        TransactionIn(
            account_id=savings.id,
            date="2025-07-02",
            description="From checking",
            amount_cents=20_000,
        )
    )

    result = StatementImportService(session, USER).commit(
        StatementCommitIn(
            account_id=checking.id,
            file_name="july.pdf",
            transactions=[
                StatementRowIn(date="2025-07-01", description="To savings", amount_cents=-20_000),
                StatementRowIn(
                    date="2025-07-03",
                    description="Bakery",
                    amount_cents=-650,
                    category_id=by_name(session, "Dining").id,
                ),
            ],
        )
    )
    assert result["transaction_count"] == 2
    assert result["skipped_duplicates"] == 0
    assert result["transfers_detected"] == 1

    statement = session.get(Statement, result["statement_id"])
    assert statement.processed is True
    assert statement.transaction_count == 2
    assert statement.file_name == "july.pdf"

    imported = session.scalars(
        select(Transaction).where(Transaction.id.in_(result["transaction_ids"]))
    ).all()
    assert {t.notes for t in imported} == {"Imported from july.pdf"}
    assert session.get(Transaction, saved.id, populate_existing=True).is_transfer
    assert session.get(Account, checking.id, populate_existing=True).balance_cents == -20_650


def test_commit_skips_duplicates_when_asked() -> None:
    session = make_session()
    checking, _ = setup_ledger(session)
    service = StatementImportService(session, USER)
    rows = [StatementRowIn(date="2025-07-05", description="Pharmacy", amount_cents=-990)]

    service.commit(StatementCommitIn(account_id=checking.id, file_name="a.csv", transactions=rows))
    with pytest.raises(LedgerValidationError):
        service.commit(
            StatementCommitIn(
                account_id=checking.id,
                file_name="a.csv",
                transactions=rows,
                skip_duplicates=True,
            )
        )

    again = service.commit(
        StatementCommitIn(
            account_id=checking.id,
            file_name="b.csv",
            transactions=rows
            + [StatementRowIn(date="2025-07-06", description="Bus", amount_cents=-300)],
            skip_duplicates=True,
        )
    )
    assert again["transaction_count"] == 1
    assert again["skipped_duplicates"] == 1


def test_commit_without_rows_is_rejected() -> None:
    session = make_session()
    checking, _ = setup_ledger(session)
    with pytest.raises(LedgerValidationError):
        StatementImportService(session, USER).commit(
            StatementCommitIn(account_id=checking.id, file_name="empty.pdf", transactions=[])
        )


def test_process_resolves_categories_and_imports() -> None:
    session = make_session()
    checking, _ = setup_ledger(session)
    result = StatementImportService(session, USER).process(
        checking.id,
        "august.pdf",
        "application/pdf",
        [
            StatementCandidate(
                date="2025-08-01", description="Tram pass", amount_cents=-4_900, category="Transprt"
            ),
            StatementCandidate(
                date="2025-08-02", description="Salary", amount_cents=310_000, category="Income"
            ),
        ],
    )
    assert result["transaction_count"] == 2
    imported = session.scalars(
        select(Transaction).where(Transaction.id.in_(result["transaction_ids"])).order_by(Transaction.date)
    ).all()
    assert [t.category_id for t in imported] == [
        by_name(session, "Transport").id,
        by_name(session, "Income").id,
    ]
