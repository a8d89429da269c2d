from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from rapidfuzz.distance import Levenshtein
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, joinedload
from sqlalchemy.sql import Select

from config import get_settings
from database import atomic
from models import (
    Account,
    AccountType,
    Budget,
    Category,
    Goal,
    Household,
    HouseholdMember,
    HouseholdRole,
    RecurringTransaction,
    Statement,
    Transaction,
)
from recurrence import RecurringEngine, local_today
from schemas import (
    AccountIn,
    AccountUpdate,
    BudgetIn,
    BudgetUpdate,
    BulkTransactionRow,
    CategoryIn,
    CategoryUpdate,
    GoalIn,
    GoalUpdate,
    RecurringTransactionIn,
    RecurringTransactionUpdate,
    ReimbursementIn,
    StatementCandidate,
    StatementCommitIn,
    StatementRowIn,
    TransactionIn,
    TransactionUpdate,
)
from splits import fair_share, net_amount, reimbursements_by_parent
from stats import budget_progress, spent_by_category, summarize
from transfers import batch_window, match_transfers


logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = [
    {"name": "Groceries", "color": "#10b981", "icon": "groceries"},
    {"name": "Dining", "color": "#f59e0b", "icon": "dining"},
    {"name": "Transport", "color": "#3b82f6", "icon": "transport"},
    {"name": "Utilities", "color": "#8b5cf6", "icon": "utilities"},
    {"name": "Entertainment", "color": "#ec4899", "icon": "entertainment"},
    {"name": "Shopping", "color": "#f43f5e", "icon": "shopping"},
    {"name": "Healthcare", "color": "#06b6d4", "icon": "healthcare"},
    {"name": "Income", "color": "#22c55e", "icon": "income"},
    {"name": "Other", "color": "#6b7280", "icon": "other"},
]
FALLBACK_CATEGORY = "Other"


class LedgerError(ValueError):
    pass


class NotFound(LedgerError):
    pass


class AccessDenied(LedgerError):
    pass


class LedgerValidationError(LedgerError):
    pass


class ReconciliationFailure(RuntimeError):
    pass


def household_ids_for_user(session: Session, user_id: int) -> list[int]:
    stmt = (
        select(HouseholdMember.household_id)
        .where(HouseholdMember.user_id == user_id)
        .order_by(HouseholdMember.joined_at, HouseholdMember.id)
    )
    return list(session.scalars(stmt).all())


def primary_household_id(session: Session, user_id: int) -> Optional[int]:
    ids = household_ids_for_user(session, user_id)
    return ids[0] if ids else None


def can_access_household(session: Session, user_id: int, household_id: int) -> bool:
    membership = session.scalar(
        select(HouseholdMember.id).where(
            HouseholdMember.user_id == user_id,
            HouseholdMember.household_id == household_id,
        )
    )
    return membership is not None


def accessible_account_ids(session: Session, user_id: int) -> set[int]:
    household_ids = household_ids_for_user(session, user_id)
    stmt = select(Account.id).where(
        or_(Account.owner_id == user_id, Account.household_id.in_(household_ids))
    )
    return set(session.scalars(stmt).all())


def can_access_account(session: Session, user_id: int, account: Account) -> bool:
    if account.owner_id is not None:
        return account.owner_id == user_id
    if account.household_id is not None:
        return can_access_household(session, user_id, account.household_id)
    return False


def require_account(session: Session, user_id: int, account_id: int) -> Account:
    account = session.get(Account, account_id)
    if not account:
        raise NotFound("Account not found")
    if not can_access_account(session, user_id, account):
        raise AccessDenied("Access denied: You do not have access to this account")
    return account


def _clean_text(value: Optional[str], label: str) -> str:
    clean = (value or "").strip()
    if not clean:
        raise LedgerValidationError(f"{label} cannot be empty")
    return clean


def validate_split_shape(
    *,
    amount_cents: int,
    is_transfer: bool,
    split_participants: Optional[int],
    split_parent: Optional[Transaction],
) -> None:
    if split_participants is not None:
        if split_participants < 2:
            raise LedgerValidationError("A split needs at least 2 participants")
        if amount_cents >= 0:
            raise LedgerValidationError("Split transactions must have a negative amount")
        if is_transfer:
            raise LedgerValidationError(
                "A transaction cannot be both split and a transfer"
            )
        if split_parent is not None:
            raise LedgerValidationError("Reimbursements cannot themselves be split")
    if split_parent is not None:
        if amount_cents <= 0:
            raise LedgerValidationError("Reimbursements must have a positive amount")
        if is_transfer:
            raise LedgerValidationError("Reimbursements cannot be marked as transfers")


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    search: Optional[str] = None
    min_amount_cents: Optional[int] = None
    max_amount_cents: Optional[int] = None


def _ledger_query(account_ids: Iterable[int], filters: TransactionFilters) -> Select:
    stmt = select(Transaction).where(Transaction.account_id.in_(list(account_ids)))
    if filters.account_id is not None:
        stmt = stmt.where(Transaction.account_id == filters.account_id)
    if filters.category_id is not None:
        stmt = stmt.where(Transaction.category_id == filters.category_id)
    if filters.date_from:
        stmt = stmt.where(Transaction.date >= filters.date_from)
    if filters.date_to:
        stmt = stmt.where(Transaction.date <= filters.date_to)
    if filters.search:
        like = f"%{filters.search.strip().lower()}%"
        stmt = stmt.where(func.lower(Transaction.description).like(like))
    if filters.min_amount_cents is not None:
        stmt = stmt.where(func.abs(Transaction.amount_cents) >= filters.min_amount_cents)
    if filters.max_amount_cents is not None:
        stmt = stmt.where(func.abs(Transaction.amount_cents) <= filters.max_amount_cents)
    return stmt


class BalanceReconciler:
    """Keeps ``Account.balance_cents`` equal to its anchored ledger sum.

    The balance is the starting balance plus every transaction dated on or
    after ``starting_balance_date`` (every transaction when there is no
    anchor). This class is the only writer of the cached balance once an
    account exists; the incremental paths and ``recompute`` must agree.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    @staticmethod
    def counts(anchor_date: Optional[str], txn_date: str) -> bool:
        return not anchor_date or txn_date >= anchor_date

    def _lock_account(self, account_id: int) -> Account:
        account = self.session.scalar(
            select(Account)
            .where(Account.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if account is None:
            raise ReconciliationFailure(
                f"Account {account_id} could not be read for balance adjustment"
            )
        return account

    def _apply(self, account_id: int, delta: int) -> None:
        if delta == 0:
            return
        self.session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(balance_cents=Account.balance_cents + delta)
            .execution_options(synchronize_session="fetch")
        )
        logger.debug(f"balance_delta: account={account_id} delta_cents={delta}")

    def adjust(self, account_id: int, txn_date: str, amount_cents: int) -> int:
        account = self._lock_account(account_id)
        delta = amount_cents if self.counts(account.starting_balance_date, txn_date) else 0
        self._apply(account_id, delta)
        return delta

    def on_create(self, txn: Transaction) -> int:
        return self.adjust(txn.account_id, txn.date, txn.amount_cents)

    def on_delete(self, txn: Transaction) -> int:
        return self.adjust(txn.account_id, txn.date, -txn.amount_cents)

    def on_change(
        self,
        *,
        old_account_id: int,
        old_date: str,
        old_amount_cents: int,
        new_account_id: int,
        new_date: str,
        new_amount_cents: int,
    ) -> None:
        # Remove under the old account's anchor, then add under the new one.
        self.adjust(old_account_id, old_date, -old_amount_cents)
        self.adjust(new_account_id, new_date, new_amount_cents)

    def apply_batch(
        self,
        account_id: int,
        transactions: Sequence[Transaction],
        *,
        removing: bool = False,
    ) -> int:
        account = self._lock_account(account_id)
        anchor = account.starting_balance_date
        delta = sum(t.amount_cents for t in transactions if self.counts(anchor, t.date))
        if removing:
            delta = -delta
        self._apply(account_id, delta)
        return delta

    def recompute(self, account_id: int) -> int:
        self.session.flush()
        account = self._lock_account(account_id)
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.account_id == account_id
        )
        if account.starting_balance_date:
            stmt = stmt.where(Transaction.date >= account.starting_balance_date)
        ledger_sum = int(self.session.execute(stmt).scalar_one() or 0)
        balance = (account.starting_balance_cents or 0) + ledger_sum
        if account.balance_cents != balance:
            logger.info(
                f"balance_recompute: account={account_id} cached={account.balance_cents}"
                f" actual={balance}"
            )
        account.balance_cents = balance
        self.session.flush()
        return balance

    def recompute_all(self) -> int:
        """Recompute every cached balance, one account per unit of work.

        Returns how many accounts had drifted from their ledger.
        """
        drifted = 0
        account_ids = self.session.scalars(select(Account.id).order_by(Account.id)).all()
        for account_id in account_ids:
            with atomic(self.session):
                cached = self.session.scalar(
                    select(Account.balance_cents).where(Account.id == account_id)
                )
                if self.recompute(account_id) != cached:
                    drifted += 1
        logger.info(f"balance_audit: accounts={len(account_ids)} drifted={drifted}")
        return drifted


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Account]:
        ids = accessible_account_ids(self.session, self.user_id)
        if not ids:
            return []
        stmt = (
            select(Account)
            .where(Account.id.in_(list(ids)))
            .order_by(Account.name, Account.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        return require_account(self.session, self.user_id, account_id)

    def create(self, data: AccountIn) -> Account:
        name = _clean_text(data.name, "Account name")
        with atomic(self.session):
            owner_id: Optional[int] = self.user_id
            household_id: Optional[int] = None
            if data.type == AccountType.joint:
                household = Household(name=f"{name} Household")
                self.session.add(household)
                self.session.flush()
                self.session.add(
                    HouseholdMember(
                        household_id=household.id,
                        user_id=self.user_id,
                        role=HouseholdRole.owner,
                    )
                )
                owner_id = None
                household_id = household.id

            account = Account(
                name=name,
                type=data.type,
                balance_cents=data.starting_balance_cents or 0,
                starting_balance_cents=data.starting_balance_cents,
                starting_balance_date=data.starting_balance_date,
                color=data.color,
                icon=data.icon,
                owner_id=owner_id,
                household_id=household_id,
            )
            self.session.add(account)
            self.session.flush()
        logger.info(f"account_created: id={account.id} type={account.type.value}")
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        account = self.get(account_id)
        fields = data.model_dump(exclude_unset=True)
        with atomic(self.session):
            if fields.get("name") is not None:
                account.name = _clean_text(fields["name"], "Account name")
            if fields.get("type") is not None:
                account.type = fields["type"]
            if "color" in fields:
                account.color = fields["color"]
            if "icon" in fields:
                account.icon = fields["icon"]

            anchor_changed = (
                "starting_balance_cents" in fields or "starting_balance_date" in fields
            )
            if anchor_changed:
                if "starting_balance_cents" in fields:
                    account.starting_balance_cents = fields["starting_balance_cents"]
                if "starting_balance_date" in fields:
                    account.starting_balance_date = fields["starting_balance_date"]
                self.session.flush()
                # Moving the anchor changes which history qualifies.
                BalanceReconciler(self.session).recompute(account.id)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        has_transactions = self.session.scalar(
            select(Transaction.id).where(Transaction.account_id == account.id).limit(1)
        )
        if has_transactions:
            raise LedgerValidationError(
                "Cannot delete account with existing transactions"
            )
        with atomic(self.session):
            self.session.execute(
                update(RecurringTransaction)
                .where(RecurringTransaction.account_id == account.id)
                .values(account_id=None)
                .execution_options(synchronize_session="fetch")
            )
            for statement in self.session.scalars(
                select(Statement).where(Statement.account_id == account.id)
            ).all():
                self.session.delete(statement)
            self.session.delete(account)
        logger.info(f"account_deleted: id={account_id}")

    def recalculate_balance(self, account_id: int) -> dict[str, int]:
        self.get(account_id)
        with atomic(self.session):
            balance = BalanceReconciler(self.session).recompute(account_id)
        return {"balance": balance}


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _visible_clause(self):
        return or_(Category.is_custom.is_(False), Category.owner_id == self.user_id)

    def list_all(self) -> list[Category]:
        stmt = select(Category).where(self._visible_clause()).order_by(Category.name)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFound("Category not found")
        if category.is_custom and category.owner_id != self.user_id:
            raise AccessDenied("Access denied")
        return category

    def _name_taken(self, name: str, *, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category.id).where(
            self._visible_clause(), func.lower(Category.name) == name.lower()
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt.limit(1)) is not None

    def _require_own_custom(self, category_id: int, action: str) -> Category:
        category = self.get(category_id)
        if not category.is_custom or category.owner_id != self.user_id:
            raise AccessDenied(f"You can only {action} your own custom categories")
        return category

    def create(self, data: CategoryIn) -> Category:
        name = _clean_text(data.name, "Category name")
        if self._name_taken(name):
            raise LedgerValidationError("A category with this name already exists")
        with atomic(self.session):
            category = Category(
                name=name,
                icon=data.icon or "other",
                color=data.color or "#6b7280",
                is_custom=True,
                owner_id=self.user_id,
            )
            self.session.add(category)
            self.session.flush()
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self._require_own_custom(category_id, "edit")
        fields = data.model_dump(exclude_unset=True)
        with atomic(self.session):
            if "name" in fields:
                name = _clean_text(fields["name"], "Category name")
                if self._name_taken(name, exclude_id=category.id):
                    raise LedgerValidationError(
                        "A category with this name already exists"
                    )
                category.name = name
            if fields.get("icon") is not None:
                category.icon = fields["icon"]
            if fields.get("color") is not None:
                category.color = fields["color"]
        return category

    def delete(self, category_id: int) -> None:
        category = self._require_own_custom(category_id, "delete")
        in_use = self.session.scalar(
            select(Transaction.id).where(Transaction.category_id == category.id).limit(1)
        )
        if in_use:
            raise LedgerValidationError(
                "Cannot delete category that is used by transactions."
                " Please reassign transactions first."
            )
        with atomic(self.session):
            for budget in self.session.scalars(
                select(Budget).where(Budget.category_id == category.id)
            ).all():
                self.session.delete(budget)
            self.session.execute(
                update(RecurringTransaction)
                .where(RecurringTransaction.category_id == category.id)
                .values(category_id=None)
                .execution_options(synchronize_session="fetch")
            )
            self.session.delete(category)

    def seed_defaults(self) -> int:
        created = 0
        with atomic(self.session):
            for entry in DEFAULT_CATEGORIES:
                existing = self.session.scalar(
                    select(Category.id).where(
                        Category.is_custom.is_(False), Category.name == entry["name"]
                    )
                )
                if existing:
                    continue
                self.session.add(Category(is_custom=False, owner_id=None, **entry))
                created += 1
        if created:
            logger.info(f"categories_seeded: created={created}")
        return created


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _require_category(self, category_id: Optional[int]) -> None:
        if category_id is not None:
            CategoryService(self.session, self.user_id).get(category_id)

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.id == transaction_id)
        )
        if not txn:
            raise NotFound("Transaction not found")
        account = self.session.get(Account, txn.account_id)
        if not account or not can_access_account(self.session, self.user_id, account):
            raise AccessDenied("Access denied")
        return txn

    def require_split_parent(self, parent_id: int) -> Transaction:
        parent = self.get(parent_id)
        if not parent.is_split:
            raise LedgerValidationError(
                "Reimbursements must point at a split transaction"
            )
        return parent

    def list_page(
        self,
        filters: TransactionFilters,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        ids = accessible_account_ids(self.session, self.user_id)
        if filters.account_id is not None and filters.account_id not in ids:
            raise AccessDenied("Access denied to this account")
        stmt = _ledger_query(ids, filters)
        total = int(
            self.session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        )
        items = self.session.scalars(
            stmt.options(joinedload(Transaction.category))
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        ).all()
        return items, total

    def create(self, data: TransactionIn) -> Transaction:
        description = _clean_text(data.description, "Description")
        require_account(self.session, self.user_id, data.account_id)
        self._require_category(data.category_id)
        parent = (
            self.require_split_parent(data.split_parent_id)
            if data.split_parent_id is not None
            else None
        )
        participants = data.split.participants if data.split else None
        validate_split_shape(
            amount_cents=data.amount_cents,
            is_transfer=data.is_transfer,
            split_participants=participants,
            split_parent=parent,
        )

        with atomic(self.session):
            txn = Transaction(
                account_id=data.account_id,
                category_id=data.category_id,
                user_id=self.user_id,
                date=data.date,
                description=description,
                amount_cents=data.amount_cents,
                notes=data.notes,
                is_recurring=data.is_recurring,
                is_transfer=data.is_transfer,
                is_split=participants is not None,
                split_participants=participants,
                split_parent_id=parent.id if parent else None,
            )
            self.session.add(txn)
            self.session.flush()
            BalanceReconciler(self.session).on_create(txn)
        logger.info(
            f"transaction_created: id={txn.id} account={txn.account_id}"
            f" amount_cents={txn.amount_cents}"
        )
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        fields = data.model_dump(exclude_unset=True)
        # Non-nullable columns treat an explicit null as "leave unchanged".
        for key in ("date", "description", "amount_cents", "account_id", "is_transfer"):
            if key in fields and fields[key] is None:
                del fields[key]

        if "description" in fields:
            fields["description"] = _clean_text(fields["description"], "Description")
        if "account_id" in fields and fields["account_id"] != txn.account_id:
            require_account(self.session, self.user_id, fields["account_id"])
        if fields.get("category_id") is not None:
            self._require_category(fields["category_id"])

        parent = (
            self.session.get(Transaction, txn.split_parent_id)
            if txn.split_parent_id is not None
            else None
        )
        validate_split_shape(
            amount_cents=fields.get("amount_cents", txn.amount_cents),
            is_transfer=fields.get("is_transfer", txn.is_transfer),
            split_participants=txn.split_participants if txn.is_split else None,
            split_parent=parent,
        )

        old_account_id = txn.account_id
        old_date = txn.date
        old_amount = txn.amount_cents
        with atomic(self.session):
            for key, value in fields.items():
                setattr(txn, key, value)
            self.session.flush()
            if {"amount_cents", "date", "account_id"} & fields.keys():
                BalanceReconciler(self.session).on_change(
                    old_account_id=old_account_id,
                    old_date=old_date,
                    old_amount_cents=old_amount,
                    new_account_id=txn.account_id,
                    new_date=txn.date,
                    new_amount_cents=txn.amount_cents,
                )
        return txn

    def _orphan_children(
        self, parent_ids: Sequence[int], *, keep_ids: Sequence[int] = ()
    ) -> int:
        stmt = select(Transaction.id).where(Transaction.split_parent_id.in_(parent_ids))
        if keep_ids:
            stmt = stmt.where(Transaction.id.not_in(keep_ids))
        child_ids = self.session.scalars(stmt).all()
        if not child_ids:
            return 0
        self.session.execute(
            update(Transaction)
            .where(Transaction.id.in_(child_ids))
            .values(split_parent_id=None)
            .execution_options(synchronize_session="fetch")
        )
        logger.info(f"split_orphaned: parents={list(parent_ids)} children={len(child_ids)}")
        return len(child_ids)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        with atomic(self.session):
            if txn.is_split:
                self._orphan_children([txn.id])
            BalanceReconciler(self.session).on_delete(txn)
            self.session.delete(txn)
            self.session.flush()
        logger.info(f"transaction_deleted: id={transaction_id}")

    def bulk_create(
        self, account_id: int, rows: Sequence[BulkTransactionRow]
    ) -> dict[str, object]:
        require_account(self.session, self.user_id, account_id)
        checked_categories: set[int] = set()
        for row in rows:
            _clean_text(row.description, "Description")
            if row.category_id is not None and row.category_id not in checked_categories:
                self._require_category(row.category_id)
                checked_categories.add(row.category_id)

        with atomic(self.session):
            txns = [
                Transaction(
                    account_id=account_id,
                    category_id=row.category_id,
                    user_id=self.user_id,
                    date=row.date,
                    description=row.description.strip(),
                    amount_cents=row.amount_cents,
                    notes=row.notes,
                    is_recurring=False,
                    is_transfer=row.is_transfer,
                )
                for row in rows
            ]
            self.session.add_all(txns)
            self.session.flush()
            # One aggregate delta after every row is written.
            delta = BalanceReconciler(self.session).apply_batch(account_id, txns)
        logger.info(
            f"bulk_create: account={account_id} count={len(txns)} delta_cents={delta}"
        )
        return {"count": len(txns), "ids": [t.id for t in txns]}

    def bulk_delete(self, transaction_ids: Sequence[int]) -> dict[str, int]:
        unique_ids = list(dict.fromkeys(transaction_ids))
        txns = [self.get(transaction_id) for transaction_id in unique_ids]
        by_account: dict[int, list[Transaction]] = defaultdict(list)
        for txn in txns:
            by_account[txn.account_id].append(txn)

        with atomic(self.session):
            parent_ids = [t.id for t in txns if t.is_split]
            if parent_ids:
                self._orphan_children(parent_ids, keep_ids=unique_ids)
            reconciler = BalanceReconciler(self.session)
            for account_id, group in by_account.items():
                reconciler.apply_batch(account_id, group, removing=True)
            for txn in txns:
                self.session.delete(txn)
            self.session.flush()
        logger.info(f"bulk_delete: count={len(txns)} accounts={len(by_account)}")
        return {"count": len(txns)}

    def bulk_update_category(
        self, transaction_ids: Sequence[int], category_id: Optional[int]
    ) -> dict[str, int]:
        unique_ids = list(dict.fromkeys(transaction_ids))
        for transaction_id in unique_ids:
            self.get(transaction_id)
        self._require_category(category_id)
        if not unique_ids:
            return {"count": 0}
        with atomic(self.session):
            self.session.execute(
                update(Transaction)
                .where(Transaction.id.in_(unique_ids))
                .values(category_id=category_id)
                .execution_options(synchronize_session="fetch")
            )
        return {"count": len(unique_ids)}


class TransferDetectionService:
    def __init__(
        self, session: Session, user_id: int, window_days: Optional[int] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.window_days = (
            window_days
            if window_days is not None
            else get_settings().transfer_window_days
        )

    @staticmethod
    def _matchable():
        return (
            Transaction.is_transfer.is_(False),
            Transaction.is_split.is_(False),
            Transaction.split_parent_id.is_(None),
        )

    def detect(
        self, account_id: int, transaction_ids: Sequence[int]
    ) -> dict[str, object]:
        """Flag both legs of transfers between ``account_id`` and other accounts.

        Only the dates around the batch are scanned, never the whole ledger.
        """
        empty = {"pairs": [], "ambiguous": 0}
        if not transaction_ids:
            return empty
        require_account(self.session, self.user_id, account_id)

        loaded = self.session.scalars(
            select(Transaction).where(
                Transaction.id.in_(list(transaction_ids)),
                Transaction.account_id == account_id,
                *self._matchable(),
            )
        ).all()
        by_id = {t.id: t for t in loaded}
        batch = [by_id[i] for i in dict.fromkeys(transaction_ids) if i in by_id]
        if not batch:
            return empty

        dates = [t.date for t in batch]
        window_from, window_to = batch_window(dates, self.window_days)
        reach_from, reach_to = batch_window(dates, 2 * self.window_days)
        account_ids = accessible_account_ids(self.session, self.user_id)
        nearby = self.session.scalars(
            select(Transaction)
            .where(
                Transaction.account_id.in_(list(account_ids)),
                Transaction.date >= reach_from,
                Transaction.date <= reach_to,
                *self._matchable(),
            )
            .order_by(Transaction.date, Transaction.id)
        ).all()
        candidates = [
            t
            for t in nearby
            if t.account_id != account_id and window_from <= t.date <= window_to
        ]

        result = match_transfers(
            batch, candidates, window_days=self.window_days, universe=nearby
        )
        with atomic(self.session):
            for new_txn, matched in result.pairs:
                new_txn.is_transfer = True
                matched.is_transfer = True
        logger.info(
            f"transfer_detect: account={account_id} batch={len(batch)}"
            f" candidates={len(candidates)} pairs={len(result.pairs)}"
            f" ambiguous={len(result.ambiguous_ids)}"
        )
        return {
            "pairs": [(a.id, b.id) for a, b in result.pairs],
            "ambiguous": len(result.ambiguous_ids),
        }


class SplitService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.transactions = TransactionService(session, user_id)

    def mark_split(self, transaction_id: int, participants: int) -> Transaction:
        txn = self.transactions.get(transaction_id)
        parent = (
            self.session.get(Transaction, txn.split_parent_id)
            if txn.split_parent_id is not None
            else None
        )
        validate_split_shape(
            amount_cents=txn.amount_cents,
            is_transfer=txn.is_transfer,
            split_participants=participants,
            split_parent=parent,
        )
        with atomic(self.session):
            txn.is_split = True
            txn.split_participants = participants
        return txn

    def unmark_split(self, transaction_id: int) -> Transaction:
        txn = self.transactions.get(transaction_id)
        if not txn.is_split:
            return txn
        with atomic(self.session):
            self.transactions._orphan_children([txn.id])
            txn.is_split = False
            txn.split_participants = None
        return txn

    def add_reimbursement(self, parent_id: int, data: ReimbursementIn) -> Transaction:
        return self.transactions.create(
            TransactionIn(
                account_id=data.account_id,
                date=data.date,
                description=data.description,
                amount_cents=data.amount_cents,
                category_id=data.category_id,
                notes=data.notes,
                split_parent_id=parent_id,
            )
        )

    def link_reimbursement(self, child_id: int, parent_id: int) -> Transaction:
        child = self.transactions.get(child_id)
        parent = self.transactions.require_split_parent(parent_id)
        if child.id == parent.id:
            raise LedgerValidationError("A transaction cannot reimburse itself")
        validate_split_shape(
            amount_cents=child.amount_cents,
            is_transfer=child.is_transfer,
            split_participants=child.split_participants if child.is_split else None,
            split_parent=parent,
        )
        with atomic(self.session):
            child.split_parent_id = parent.id
        return child

    def unlink_reimbursement(self, child_id: int) -> Transaction:
        child = self.transactions.get(child_id)
        with atomic(self.session):
            child.split_parent_id = None
        return child

    def reimbursements_for(self, parent_id: int) -> list[Transaction]:
        parent = self.transactions.get(parent_id)
        stmt = (
            select(Transaction)
            .where(Transaction.split_parent_id == parent.id)
            .order_by(Transaction.date, Transaction.id)
        )
        return self.session.scalars(stmt).all()

    def summary(self, parent_id: int) -> dict[str, int]:
        parent = self.transactions.require_split_parent(parent_id)
        children = self.reimbursements_for(parent.id)
        reimbursed = reimbursements_by_parent(children)
        net = net_amount(parent, reimbursed)
        share = fair_share(parent.amount_cents, parent.split_participants or 2)
        paid_back = reimbursed.get(parent.id, 0)
        return {
            "amount_cents": parent.amount_cents,
            "participants": parent.split_participants or 2,
            "reimbursed_cents": paid_back,
            "net_cents": net,
            "fair_share_cents": share,
            "outstanding_cents": max(0, share - parent.amount_cents - paid_back),
            "reimbursement_count": len(children),
        }


class StatsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def stats(
        self,
        account_id: Optional[int] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
    ) -> dict[str, object]:
        ids = accessible_account_ids(self.session, self.user_id)
        if account_id is not None and account_id not in ids:
            raise AccessDenied("Access denied")
        stmt = _ledger_query(
            ids,
            TransactionFilters(account_id=account_id, date_from=date_from, date_to=date_to),
        )
        transactions = self.session.scalars(stmt).all()
        summary = summarize(transactions)

        by_category: dict[int, int] = summary["by_category"]
        categories = {
            c.id: c
            for c in self.session.scalars(
                select(Category).where(Category.id.in_(list(by_category)))
            ).all()
        }
        category_stats = [
            {"category": categories.get(category_id), "amount_cents": amount}
            for category_id, amount in sorted(by_category.items(), key=lambda kv: kv[1])
        ]
        return {
            "income": summary["income"],
            "expenses": summary["expenses"],
            "net": summary["net"],
            "transaction_count": summary["transaction_count"],
            "category_stats": category_stats,
        }


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Budget]:
        household_id = primary_household_id(self.session, self.user_id)
        if household_id is None:
            return []
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.household_id == household_id)
            .order_by(Budget.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget:
            raise NotFound("Budget not found")
        if not can_access_household(self.session, self.user_id, budget.household_id):
            raise AccessDenied(
                "Access denied: You do not have access to this household"
            )
        return budget

    @staticmethod
    def _check_amount(amount_cents: int) -> None:
        if amount_cents <= 0:
            raise LedgerValidationError("Budget amount must be greater than 0")

    def upsert(self, data: BudgetIn) -> Budget:
        household_id = primary_household_id(self.session, self.user_id)
        if household_id is None:
            raise LedgerValidationError(
                "You must be part of a household to create budgets"
            )
        self._check_amount(data.amount_cents)
        CategoryService(self.session, self.user_id).get(data.category_id)

        existing = self.session.scalar(
            select(Budget).where(
                Budget.household_id == household_id,
                Budget.category_id == data.category_id,
            )
        )
        with atomic(self.session):
            if existing:
                existing.amount_cents = data.amount_cents
                existing.period = data.period
                budget = existing
            else:
                budget = Budget(
                    household_id=household_id,
                    category_id=data.category_id,
                    amount_cents=data.amount_cents,
                    period=data.period,
                )
                self.session.add(budget)
                self.session.flush()
        return budget

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        budget = self.get(budget_id)
        if data.amount_cents is not None:
            self._check_amount(data.amount_cents)
        with atomic(self.session):
            if data.amount_cents is not None:
                budget.amount_cents = data.amount_cents
            if data.period is not None:
                budget.period = data.period
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        with atomic(self.session):
            self.session.delete(budget)

    def progress(self, date_from: str, date_to: str) -> list[dict[str, object]]:
        budgets = self.list_all()
        if not budgets:
            return []
        ids = accessible_account_ids(self.session, self.user_id)
        transactions = self.session.scalars(
            _ledger_query(ids, TransactionFilters(date_from=date_from, date_to=date_to))
        ).all()
        spent = spent_by_category(transactions)
        return [
            {
                "budget": budget,
                "category": budget.category,
                **budget_progress(budget.amount_cents, spent.get(budget.category_id)),
            }
            for budget in budgets
        ]


class GoalService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Goal]:
        household_id = primary_household_id(self.session, self.user_id)
        if household_id is None:
            return []
        stmt = (
            select(Goal)
            .where(Goal.household_id == household_id)
            .order_by(Goal.created_at.desc(), Goal.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, goal_id: int) -> Goal:
        goal = self.session.get(Goal, goal_id)
        if not goal:
            raise NotFound("Goal not found")
        if not can_access_household(self.session, self.user_id, goal.household_id):
            raise AccessDenied(
                "Access denied: You do not have access to this household"
            )
        return goal

    @staticmethod
    def _check_amounts(
        target_amount_cents: Optional[int], current_amount_cents: Optional[int]
    ) -> None:
        if target_amount_cents is not None and target_amount_cents <= 0:
            raise LedgerValidationError("Target amount must be greater than 0")
        if current_amount_cents is not None and current_amount_cents < 0:
            raise LedgerValidationError("Current amount cannot be negative")

    def create(self, data: GoalIn) -> Goal:
        household_id = primary_household_id(self.session, self.user_id)
        if household_id is None:
            raise LedgerValidationError(
                "You must be part of a household to create goals"
            )
        name = _clean_text(data.name, "Goal name")
        self._check_amounts(data.target_amount_cents, data.current_amount_cents)
        with atomic(self.session):
            goal = Goal(
                household_id=household_id,
                name=name,
                target_amount_cents=data.target_amount_cents,
                current_amount_cents=data.current_amount_cents,
                target_date=data.target_date,
                icon=data.icon or "savings",
                color=data.color or "#10b981",
            )
            self.session.add(goal)
            self.session.flush()
        logger.info(f"goal_created: id={goal.id} household={household_id}")
        return goal

    def update(self, goal_id: int, data: GoalUpdate) -> Goal:
        goal = self.get(goal_id)
        fields = data.model_dump(exclude_unset=True)
        # Only the target date may be cleared with an explicit null.
        fields = {k: v for k, v in fields.items() if v is not None or k == "target_date"}
        if "name" in fields:
            fields["name"] = _clean_text(fields["name"], "Goal name")
        self._check_amounts(
            fields.get("target_amount_cents"), fields.get("current_amount_cents")
        )
        with atomic(self.session):
            for key, value in fields.items():
                setattr(goal, key, value)
        return goal

    def add_funds(self, goal_id: int, amount_cents: int) -> Goal:
        """Add to the saved amount, capped at the target."""
        goal = self.get(goal_id)
        if amount_cents <= 0:
            raise LedgerValidationError("Amount must be greater than 0")
        with atomic(self.session):
            goal.current_amount_cents = min(
                goal.current_amount_cents + amount_cents, goal.target_amount_cents
            )
        logger.info(
            f"goal_funded: id={goal.id} amount_cents={amount_cents}"
            f" current_cents={goal.current_amount_cents}"
        )
        return goal

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        with atomic(self.session):
            self.session.delete(goal)


class RecurringTransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def _household_id(self) -> int:
        household_id = (
            primary_household_id(self.session, self.user_id)
            if self.user_id is not None
            else None
        )
        if household_id is None:
            raise LedgerValidationError(
                "You must be part of a household to create recurring transactions"
            )
        return household_id

    def _validate(
        self,
        *,
        description: str,
        day_of_month: Optional[int],
        day_of_week: Optional[int],
        account_id: Optional[int],
        category_id: Optional[int],
    ) -> str:
        clean = _clean_text(description, "Description")
        if day_of_month is not None and not 1 <= day_of_month <= 31:
            raise LedgerValidationError("Day of month must be between 1 and 31")
        if day_of_week is not None and not 0 <= day_of_week <= 6:
            raise LedgerValidationError(
                "Day of week must be between 0 (Sunday) and 6 (Saturday)"
            )
        if account_id is not None:
            require_account(self.session, self.user_id, account_id)
        if category_id is not None:
            CategoryService(self.session, self.user_id).get(category_id)
        return clean

    def list_all(self) -> list[RecurringTransaction]:
        household_id = primary_household_id(self.session, self.user_id)
        if household_id is None:
            return []
        stmt = (
            select(RecurringTransaction)
            .where(RecurringTransaction.household_id == household_id)
            .order_by(RecurringTransaction.next_run_date, RecurringTransaction.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, rule_id: int) -> RecurringTransaction:
        rule = self.session.get(RecurringTransaction, rule_id)
        if not rule:
            raise NotFound("Recurring transaction not found")
        if not can_access_household(self.session, self.user_id, rule.household_id):
            raise AccessDenied(
                "Access denied: You do not have access to this household"
            )
        return rule

    def create(self, data: RecurringTransactionIn) -> RecurringTransaction:
        household_id = self._household_id()
        description = self._validate(
            description=data.description,
            day_of_month=data.day_of_month,
            day_of_week=data.day_of_week,
            account_id=data.account_id,
            category_id=data.category_id,
        )
        with atomic(self.session):
            rule = RecurringTransaction(
                household_id=household_id,
                account_id=data.account_id,
                category_id=data.category_id,
                description=description,
                amount_cents=data.amount_cents,
                interval=data.interval,
                day_of_month=data.day_of_month,
                day_of_week=data.day_of_week,
                next_run_date=data.next_run_date,
                active=True,
            )
            self.session.add(rule)
            self.session.flush()
        return rule

    def update(
        self, rule_id: int, data: RecurringTransactionUpdate
    ) -> RecurringTransaction:
        rule = self.get(rule_id)
        fields = {
            key: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if value is not None or key in ("account_id", "category_id")
        }
        merged = {
            "description": fields.get("description", rule.description),
            "day_of_month": fields.get("day_of_month", rule.day_of_month),
            "day_of_week": fields.get("day_of_week", rule.day_of_week),
            "account_id": fields.get("account_id"),
            "category_id": fields.get("category_id"),
        }
        fields["description"] = self._validate(**merged)
        with atomic(self.session):
            for key, value in fields.items():
                setattr(rule, key, value)
        return rule

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        with atomic(self.session):
            self.session.delete(rule)

    def toggle_active(self, rule_id: int) -> RecurringTransaction:
        rule = self.get(rule_id)
        with atomic(self.session):
            rule.active = not rule.active
        return rule

    def process_due(self, today: Optional[str] = None) -> int:
        """Post every due occurrence of every active rule, across households."""
        today = today or local_today()
        engine = RecurringEngine(self.session)
        posted = 0
        for rule in engine.due_rules(today):
            rule_id = rule.id
            try:
                with atomic(self.session):
                    count = engine.catch_up_rule(rule, today)
            except Exception:
                logger.exception(f"recurring_failed: rule={rule_id}")
                continue
            posted += count
        logger.info(f"recurring_process: today={today} posted={posted}")
        return posted


class StatementImportService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    @staticmethod
    def duplicate_key(txn_date: str, amount_cents: int, description: str) -> str:
        return f"{txn_date}|{amount_cents}|{description.lower()[:30]}"

    @staticmethod
    def resolve_category(
        name: Optional[str], categories: Sequence[Category]
    ) -> Optional[Category]:
        by_name = {c.name.strip().lower(): c for c in categories}
        fallback = by_name.get(FALLBACK_CATEGORY.lower())
        clean = (name or "").strip().lower()
        if not clean:
            return fallback
        exact = by_name.get(clean)
        if exact:
            return exact

        best_distance: Optional[int] = None
        best: list[Category] = []
        for category_name, category in by_name.items():
            dist = int(Levenshtein.distance(clean, category_name))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)
        if best_distance is not None and best_distance <= 1 and len(best) == 1:
            return best[0]
        return fallback

    def _existing_keys(self, account_id: int, dates: Sequence[str]) -> set[str]:
        if not dates:
            return set()
        rows = self.session.execute(
            select(
                Transaction.date, Transaction.amount_cents, Transaction.description
            ).where(
                Transaction.account_id == account_id,
                Transaction.date >= min(dates),
                Transaction.date <= max(dates),
            )
        ).all()
        return {self.duplicate_key(r.date, r.amount_cents, r.description) for r in rows}

    def preview(
        self, account_id: int, candidates: Sequence[StatementCandidate]
    ) -> list[dict[str, object]]:
        require_account(self.session, self.user_id, account_id)
        categories = CategoryService(self.session, self.user_id).list_all()
        existing = self._existing_keys(account_id, [c.date for c in candidates])
        preview: list[dict[str, object]] = []
        for candidate in candidates:
            category = self.resolve_category(candidate.category, categories)
            preview.append(
                {
                    "date": candidate.date,
                    "description": candidate.description,
                    "amount_cents": candidate.amount_cents,
                    "category": category.name if category else FALLBACK_CATEGORY,
                    "category_id": category.id if category else None,
                    "is_duplicate": self.duplicate_key(
                        candidate.date, candidate.amount_cents, candidate.description
                    )
                    in existing,
                }
            )
        return preview

    def commit(self, data: StatementCommitIn) -> dict[str, object]:
        require_account(self.session, self.user_id, data.account_id)
        if not data.transactions:
            raise LedgerValidationError("No transactions selected for import.")

        rows = list(data.transactions)
        skipped = 0
        if data.skip_duplicates:
            existing = self._existing_keys(data.account_id, [r.date for r in rows])
            fresh = [
                r
                for r in rows
                if self.duplicate_key(r.date, r.amount_cents, r.description)
                not in existing
            ]
            skipped = len(rows) - len(fresh)
            if not fresh:
                raise LedgerValidationError(
                    f"All {len(rows)} transactions were already imported."
                    " No new transactions to add."
                )
            rows = fresh

        created = TransactionService(self.session, self.user_id).bulk_create(
            data.account_id,
            [
                BulkTransactionRow(
                    date=r.date,
                    description=r.description,
                    amount_cents=r.amount_cents,
                    category_id=r.category_id,
                    notes=f"Imported from {data.file_name}",
                )
                for r in rows
            ],
        )
        transfers = TransferDetectionService(self.session, self.user_id).detect(
            data.account_id, created["ids"]
        )
        with atomic(self.session):
            statement = Statement(
                user_id=self.user_id,
                account_id=data.account_id,
                file_name=data.file_name,
                file_type=data.file_type,
                transaction_count=created["count"],
                processed=True,
            )
            self.session.add(statement)
            self.session.flush()
        logger.info(
            f"statement_import: account={data.account_id} statement={statement.id}"
            f" rows={created['count']} skipped={skipped}"
            f" transfers={len(transfers['pairs'])}"
        )
        return {
            "success": True,
            "statement_id": statement.id,
            "transaction_count": created["count"],
            "transaction_ids": created["ids"],
            "skipped_duplicates": skipped,
            "transfers_detected": len(transfers["pairs"]),
        }

    def process(
        self,
        account_id: int,
        file_name: str,
        file_type: str,
        candidates: Sequence[StatementCandidate],
    ) -> dict[str, object]:
        """Import extracted rows without review, skipping duplicates."""
        categories = CategoryService(self.session, self.user_id).list_all()
        rows = []
        for candidate in candidates:
            category = self.resolve_category(candidate.category, categories)
            rows.append(
                StatementRowIn(
                    date=candidate.date,
                    description=candidate.description,
                    amount_cents=candidate.amount_cents,
                    category_id=category.id if category else None,
                )
            )
        return self.commit(
            StatementCommitIn(
                account_id=account_id,
                file_name=file_name,
                file_type=file_type,
                transactions=rows,
                skip_duplicates=True,
            )
        )
