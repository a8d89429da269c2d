import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal, session_scope
from models import Account, Budget, Category, Goal, RecurringTransaction, Transaction
from periods import Period, resolve_period
from recurrence import local_today
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountUpdate,
    BudgetIn,
    BudgetUpdate,
    BulkCategoryIn,
    BulkCreateIn,
    BulkDeleteIn,
    CategoryIn,
    CategoryUpdate,
    GoalFundsIn,
    GoalIn,
    GoalUpdate,
    RecurringTransactionIn,
    RecurringTransactionUpdate,
    ReimbursementIn,
    SplitIn,
    SplitParentIn,
    StatementCommitIn,
    StatementPreviewIn,
    StatementProcessIn,
    TransactionIn,
    TransactionUpdate,
    TransferDetectIn,
)
from services import (
    AccessDenied,
    AccountService,
    BudgetService,
    CategoryService,
    GoalService,
    LedgerError,
    NotFound,
    ReconciliationFailure,
    RecurringTransactionService,
    SplitService,
    StatementImportService,
    StatsService,
    TransactionFilters,
    TransactionService,
    TransferDetectionService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Household Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(x_user_id: Optional[int] = Header(default=None)) -> int:
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    with session_scope() as session:
        CategoryService(session, 0).seed_defaults()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(ReconciliationFailure)
def reconciliation_failure_handler(request: Request, exc: ReconciliationFailure):
    logger.error(f"reconciliation_failure: path={request.url.path} error={exc}")
    return JSONResponse(status_code=500, content={"detail": "Balance update failed"})


def http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AccessDenied):
        return HTTPException(status_code=403, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def period_from_request(request: Request, default: str = "this_month") -> Period:
    try:
        return resolve_period(
            request.query_params.get("period"),
            request.query_params.get("start"),
            request.query_params.get("end"),
            today=date.fromisoformat(local_today()),
            default=default,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _int_param(request: Request, name: str) -> Optional[int]:
    raw = request.query_params.get(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name}") from exc


def account_dict(account: Account) -> dict[str, object]:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "balance_cents": account.balance_cents,
        "starting_balance_cents": account.starting_balance_cents,
        "starting_balance_date": account.starting_balance_date,
        "color": account.color,
        "icon": account.icon,
        "owner_id": account.owner_id,
        "household_id": account.household_id,
    }


def category_dict(category: Optional[Category]) -> Optional[dict[str, object]]:
    if category is None:
        return None
    return {
        "id": category.id,
        "name": category.name,
        "icon": category.icon,
        "color": category.color,
        "is_custom": category.is_custom,
    }


def transaction_dict(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "category_id": txn.category_id,
        "date": txn.date,
        "description": txn.description,
        "amount_cents": txn.amount_cents,
        "notes": txn.notes,
        "is_recurring": txn.is_recurring,
        "is_transfer": txn.is_transfer,
        "is_split": txn.is_split,
        "split_participants": txn.split_participants,
        "split_parent_id": txn.split_parent_id,
    }


def budget_dict(budget: Budget) -> dict[str, object]:
    return {
        "id": budget.id,
        "category_id": budget.category_id,
        "amount_cents": budget.amount_cents,
        "period": budget.period.value,
    }


def goal_dict(goal: Goal) -> dict[str, object]:
    return {
        "id": goal.id,
        "name": goal.name,
        "target_amount_cents": goal.target_amount_cents,
        "current_amount_cents": goal.current_amount_cents,
        "target_date": goal.target_date,
        "icon": goal.icon,
        "color": goal.color,
    }


def recurring_dict(rule: RecurringTransaction) -> dict[str, object]:
    return {
        "id": rule.id,
        "account_id": rule.account_id,
        "category_id": rule.category_id,
        "description": rule.description,
        "amount_cents": rule.amount_cents,
        "interval": rule.interval.value,
        "day_of_month": rule.day_of_month,
        "day_of_week": rule.day_of_week,
        "next_run_date": rule.next_run_date,
        "last_run_date": rule.last_run_date,
        "active": rule.active,
    }


# Accounts


@app.get("/api/accounts")
def api_list_accounts(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return [account_dict(a) for a in AccountService(db, user_id).list_all()]


@app.post("/api/accounts", status_code=201)
def api_create_account(
    payload: AccountIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        account = AccountService(db, user_id).create(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return account_dict(account)


@app.get("/api/accounts/{account_id}")
def api_get_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        return account_dict(AccountService(db, user_id).get(account_id))
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.patch("/api/accounts/{account_id}")
def api_update_account(
    account_id: int,
    payload: AccountUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        account = AccountService(db, user_id).update(account_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return account_dict(account)


@app.delete("/api/accounts/{account_id}")
def api_delete_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        AccountService(db, user_id).delete(account_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"success": True}


@app.post("/api/accounts/{account_id}/recalculate")
def api_recalculate_balance(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        return AccountService(db, user_id).recalculate_balance(account_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


# Categories


@app.get("/api/categories")
def api_list_categories(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return [category_dict(c) for c in CategoryService(db, user_id).list_all()]


@app.post("/api/categories", status_code=201)
def api_create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        category = CategoryService(db, user_id).create(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return category_dict(category)


@app.patch("/api/categories/{category_id}")
def api_update_category(
    category_id: int,
    payload: CategoryUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        category = CategoryService(db, user_id).update(category_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return category_dict(category)


@app.delete("/api/categories/{category_id}")
def api_delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        CategoryService(db, user_id).delete(category_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"success": True}


# Transactions


@app.get("/api/transactions")
def api_list_transactions(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    period = period_from_request(request, default="all")
    filters = TransactionFilters(
        account_id=_int_param(request, "account_id"),
        category_id=_int_param(request, "category_id"),
        date_from=period.date_from,
        date_to=period.date_to,
        search=request.query_params.get("q") or None,
        min_amount_cents=_int_param(request, "min_amount_cents"),
        max_amount_cents=_int_param(request, "max_amount_cents"),
    )
    page = max(_int_param(request, "page") or 1, 1)
    limit = min(max(_int_param(request, "limit") or 50, 1), 100)
    try:
        items, total = TransactionService(db, user_id).list_page(
            filters, limit=limit, offset=(page - 1) * limit
        )
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {
        "items": [
            {**transaction_dict(t), "category": category_dict(t.category)}
            for t in items
        ],
        "page": page,
        "limit": limit,
        "total": total,
        "has_more": page * limit < total,
    }


@app.post("/api/transactions", status_code=201)
def api_create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        txn = TransactionService(db, user_id).create(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return transaction_dict(txn)


@app.post("/api/transactions/bulk", status_code=201)
def api_bulk_create(
    payload: BulkCreateIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        return TransactionService(db, user_id).bulk_create(
            payload.account_id, payload.transactions
        )
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post("/api/transactions/bulk-delete")
def api_bulk_delete(
    payload: BulkDeleteIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        return TransactionService(db, user_id).bulk_delete(payload.ids)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post("/api/transactions/bulk-category")
def api_bulk_category(
    payload: BulkCategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        return TransactionService(db, user_id).bulk_update_category(
            payload.ids, payload.category_id
        )
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post("/api/transactions/detect-transfers")
def api_detect_transfers(
    payload: TransferDetectIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        return TransferDetectionService(db, user_id).detect(
            payload.account_id, payload.ids
        )
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get("/api/transactions/{transaction_id}")
def api_get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        txn = TransactionService(db, user_id).get(transaction_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {**transaction_dict(txn), "category": category_dict(txn.category)}


@app.patch("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        txn = TransactionService(db, user_id).update(transaction_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return transaction_dict(txn)


@app.delete("/api/transactions/{transaction_id}")
def api_delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"success": True}


# Splits and reimbursements


@app.post("/api/transactions/{transaction_id}/split")
def api_mark_split(
    transaction_id: int,
    payload: SplitIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        txn = SplitService(db, user_id).mark_split(transaction_id, payload.participants)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return transaction_dict(txn)


@app.delete("/api/transactions/{transaction_id}/split")
def api_unmark_split(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        txn = SplitService(db, user_id).unmark_split(transaction_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return transaction_dict(txn)


@app.get("/api/transactions/{transaction_id}/reimbursements")
def api_list_reimbursements(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = SplitService(db, user_id)
    try:
        children = service.reimbursements_for(transaction_id)
        summary = service.summary(transaction_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"items": [transaction_dict(c) for c in children], "summary": summary}


@app.post("/api/transactions/{transaction_id}/reimbursements", status_code=201)
def api_add_reimbursement(
    transaction_id: int,
    payload: ReimbursementIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        child = SplitService(db, user_id).add_reimbursement(transaction_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return transaction_dict(child)


@app.put("/api/transactions/{transaction_id}/split-parent")
def api_set_split_parent(
    transaction_id: int,
    payload: SplitParentIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = SplitService(db, user_id)
    try:
        if payload.parent_id is None:
            txn = service.unlink_reimbursement(transaction_id)
        else:
            txn = service.link_reimbursement(transaction_id, payload.parent_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return transaction_dict(txn)


# Statistics and budgets


@app.get("/api/stats")
def api_stats(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    period = period_from_request(request, default="all")
    try:
        stats = StatsService(db, user_id).stats(
            account_id=_int_param(request, "account_id"),
            date_from=period.date_from,
            date_to=period.date_to,
        )
    except LedgerError as exc:
        raise http_error(exc) from exc
    stats["category_stats"] = [
        {"category": category_dict(row["category"]), "amount_cents": row["amount_cents"]}
        for row in stats["category_stats"]
    ]
    return {**stats, "period": period.slug}


@app.get("/api/budgets")
def api_list_budgets(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return [
        {**budget_dict(b), "category": category_dict(b.category)}
        for b in BudgetService(db, user_id).list_all()
    ]


@app.post("/api/budgets")
def api_upsert_budget(
    payload: BudgetIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        budget = BudgetService(db, user_id).upsert(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return budget_dict(budget)


@app.get("/api/budgets/progress")
def api_budget_progress(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    period = period_from_request(request)
    if period.date_from is None or period.date_to is None:
        raise HTTPException(status_code=400, detail="Budget progress needs a bounded period")
    rows = BudgetService(db, user_id).progress(period.date_from, period.date_to)
    return [
        {
            **budget_dict(row["budget"]),
            "category": category_dict(row["category"]),
            "spent": row["spent"],
            "remaining": row["remaining"],
            "percentage": row["percentage"],
            "is_over_budget": row["is_over_budget"],
        }
        for row in rows
    ]


@app.patch("/api/budgets/{budget_id}")
def api_update_budget(
    budget_id: int,
    payload: BudgetUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        budget = BudgetService(db, user_id).update(budget_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return budget_dict(budget)


@app.delete("/api/budgets/{budget_id}")
def api_delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        BudgetService(db, user_id).delete(budget_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"success": True}


# Goals


@app.get("/api/goals")
def api_list_goals(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return [goal_dict(g) for g in GoalService(db, user_id).list_all()]


@app.post("/api/goals", status_code=201)
def api_create_goal(
    payload: GoalIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        goal = GoalService(db, user_id).create(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return goal_dict(goal)


@app.get("/api/goals/{goal_id}")
def api_get_goal(
    goal_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        goal = GoalService(db, user_id).get(goal_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return goal_dict(goal)


@app.patch("/api/goals/{goal_id}")
def api_update_goal(
    goal_id: int,
    payload: GoalUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        goal = GoalService(db, user_id).update(goal_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return goal_dict(goal)


@app.post("/api/goals/{goal_id}/funds")
def api_add_goal_funds(
    goal_id: int,
    payload: GoalFundsIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        goal = GoalService(db, user_id).add_funds(goal_id, payload.amount_cents)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return goal_dict(goal)


@app.delete("/api/goals/{goal_id}")
def api_delete_goal(
    goal_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        GoalService(db, user_id).delete(goal_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"success": True}


# Recurring transactions


@app.get("/api/recurring")
def api_list_recurring(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return [recurring_dict(r) for r in RecurringTransactionService(db, user_id).list_all()]


@app.post("/api/recurring", status_code=201)
def api_create_recurring(
    payload: RecurringTransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        rule = RecurringTransactionService(db, user_id).create(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return recurring_dict(rule)


@app.post("/api/recurring/process")
def api_process_recurring(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    posted = RecurringTransactionService(db, user_id).process_due()
    return {"posted": posted}


@app.patch("/api/recurring/{rule_id}")
def api_update_recurring(
    rule_id: int,
    payload: RecurringTransactionUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        rule = RecurringTransactionService(db, user_id).update(rule_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return recurring_dict(rule)


@app.post("/api/recurring/{rule_id}/toggle")
def api_toggle_recurring(
    rule_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        rule = RecurringTransactionService(db, user_id).toggle_active(rule_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return recurring_dict(rule)


@app.delete("/api/recurring/{rule_id}")
def api_delete_recurring(
    rule_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        RecurringTransactionService(db, user_id).delete(rule_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"success": True}


# Statement import


@app.post("/api/statements/preview")
def api_statement_preview(
    payload: StatementPreviewIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        rows = StatementImportService(db, user_id).preview(
            payload.account_id, payload.transactions
        )
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"transactions": rows}


@app.post("/api/statements/commit")
def api_statement_commit(
    payload: StatementCommitIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        return StatementImportService(db, user_id).commit(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post("/api/statements/process")
def api_statement_process(
    payload: StatementProcessIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        return StatementImportService(db, user_id).process(
            payload.account_id,
            payload.file_name,
            payload.file_type,
            payload.transactions,
        )
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get("/health")
def health():
    return {"status": "ok", "timezone": get_settings().timezone}
