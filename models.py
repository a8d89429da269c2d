from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit = "credit"
    personal = "personal"
    joint = "joint"


class HouseholdRole(str, Enum):
    owner = "owner"
    member = "member"


class BudgetPeriod(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class RecurringInterval(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Household(Base, TimestampMixin):
    __tablename__ = "households"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)

    members: Mapped[list["HouseholdMember"]] = relationship(
        "HouseholdMember", back_populates="household"
    )
    accounts: Mapped[list["Account"]] = relationship(
        "Account", back_populates="household"
    )


class HouseholdMember(Base):
    __tablename__ = "household_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[HouseholdRole] = mapped_column(
        SAEnum(HouseholdRole), nullable=False, default=HouseholdRole.member
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    household: Mapped["Household"] = relationship(
        "Household", back_populates="members"
    )

    __table_args__ = (
        UniqueConstraint("household_id", "user_id", name="uq_household_member"),
        Index("ix_household_members_user", "user_id"),
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    starting_balance_cents: Mapped[Optional[int]] = mapped_column(Integer)
    # ISO YYYY-MM-DD; transactions dated before it do not count toward balance
    starting_balance_date: Mapped[Optional[str]] = mapped_column(String(10))
    color: Mapped[Optional[str]] = mapped_column(String(9))
    icon: Mapped[Optional[str]] = mapped_column(String(40))
    owner_id: Mapped[Optional[int]] = mapped_column(Integer)
    household_id: Mapped[Optional[int]] = mapped_column(ForeignKey("households.id"))

    household: Mapped[Optional["Household"]] = relationship(
        "Household", back_populates="accounts"
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )

    __table_args__ = (
        CheckConstraint(
            "(owner_id IS NULL AND household_id IS NOT NULL)"
            " OR (owner_id IS NOT NULL AND household_id IS NULL)",
            name="ck_account_single_owner",
        ),
        Index("ix_accounts_owner", "owner_id"),
        Index("ix_accounts_household", "household_id"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    icon: Mapped[Optional[str]] = mapped_column(String(40))
    color: Mapped[Optional[str]] = mapped_column(String(9))
    is_custom: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    owner_id: Mapped[Optional[int]] = mapped_column(Integer)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("owner_id", "name", name="uq_category_owner_name"),
        Index("ix_categories_owner", "owner_id"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[str] = mapped_column(String(10), nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_transfer: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_split: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    split_participants: Mapped[Optional[int]] = mapped_column(Integer)
    split_parent_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")
    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )
    split_parent: Mapped[Optional["Transaction"]] = relationship(
        "Transaction", remote_side="Transaction.id", back_populates="reimbursements"
    )
    reimbursements: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="split_parent", passive_deletes=True
    )

    __table_args__ = (
        Index("ix_transactions_account_date", "account_id", "date"),
        Index("ix_transactions_date", "date"),
        Index("ix_transactions_category", "category_id"),
        Index("ix_transactions_split_parent", "split_parent_id"),
        CheckConstraint(
            "NOT (is_split AND is_transfer)", name="ck_txn_split_not_transfer"
        ),
        CheckConstraint(
            "NOT is_split OR (amount_cents < 0 AND split_participants >= 2)",
            name="ck_txn_split_shape",
        ),
        CheckConstraint(
            "split_parent_id IS NULL OR amount_cents > 0",
            name="ck_txn_reimbursement_positive",
        ),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    period: Mapped[BudgetPeriod] = mapped_column(
        SAEnum(BudgetPeriod), nullable=False, default=BudgetPeriod.monthly
    )

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint(
            "household_id", "category_id", name="uq_budget_household_category"
        ),
        CheckConstraint("amount_cents > 0", name="ck_budget_amount_positive"),
    )


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    target_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    target_date: Mapped[Optional[str]] = mapped_column(String(10))
    icon: Mapped[Optional[str]] = mapped_column(String(40), default="savings")
    color: Mapped[Optional[str]] = mapped_column(String(9), default="#10b981")

    __table_args__ = (
        Index("ix_goals_household", "household_id"),
        CheckConstraint("target_amount_cents > 0", name="ck_goal_target_positive"),
        CheckConstraint(
            "current_amount_cents >= 0", name="ck_goal_current_non_negative"
        ),
    )


class RecurringTransaction(Base, TimestampMixin):
    __tablename__ = "recurring_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    interval: Mapped[RecurringInterval] = mapped_column(
        SAEnum(RecurringInterval), nullable=False
    )
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer)
    day_of_week: Mapped[Optional[int]] = mapped_column(Integer)  # 0 = Sunday
    next_run_date: Mapped[str] = mapped_column(String(10), nullable=False)
    last_run_date: Mapped[Optional[str]] = mapped_column(String(10))
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    account: Mapped[Optional["Account"]] = relationship("Account")
    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        Index("ix_recurring_next_run", "next_run_date", "active"),
        Index("ix_recurring_household", "household_id"),
        CheckConstraint(
            "day_of_month IS NULL OR (day_of_month BETWEEN 1 AND 31)",
            name="ck_recurring_day_of_month",
        ),
        CheckConstraint(
            "day_of_week IS NULL OR (day_of_week BETWEEN 0 AND 6)",
            name="ck_recurring_day_of_week",
        ),
    )


class Statement(Base):
    __tablename__ = "statements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_type: Mapped[str] = mapped_column(String(100), nullable=False)
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (Index("ix_statements_account", "account_id"),)
