"""
Ledger Store: account balances and the append-only transaction log.

apply_transaction is the only code path that changes a balance. It applies
the delta as an in-place increment guarded in the WHERE clause, so concurrent
writers to one account serialize on the row and writers to different
accounts never contend.
"""
import logging
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from common.error_handling import (
    AccountNotFound, AlreadyExists, BusinessLogicError, InsufficientBalance, ErrorCodes,
)
from common.schemas import (
    AccountStatus, AccountView, LedgerAudit, OpenAccount, TokenTransactionRequest,
    TokenTransactionResponse, TransactionType, TransactionView,
)
from game_service.models import Account, LedgerTransaction
from game_service.notifier import enqueue
from game_service.store import Store, load_replay, remember, request_fingerprint

logger = logging.getLogger(__name__)

SIGN = {
    TransactionType.ADMIN_CREDIT: 1,
    TransactionType.BET_WIN: 1,
    TransactionType.ADMIN_DEBIT: -1,
    TransactionType.BET_DEBIT: -1,
    TransactionType.BET_LOSS: 0,
}

AGGREGATE_COLUMN = {
    TransactionType.ADMIN_CREDIT: "total_deposit",
    TransactionType.ADMIN_DEBIT: "total_withdraw",
    TransactionType.BET_WIN: "total_win",
    TransactionType.BET_LOSS: "total_loss",
}

def signed_amount(tx_type, amount: int) -> int:
    return SIGN[TransactionType(tx_type)] * amount

def apply_transaction(
    session: Session,
    account_id: str,
    tx_type: TransactionType,
    amount: int,
    reference: Optional[str] = None,
    admin_id: Optional[str] = None,
    aggregate_amount: Optional[int] = None,
    expected_balance: Optional[int] = None,
) -> LedgerTransaction:
    """Apply one transaction to an account inside the caller's transaction.

    Debits are guarded by ``token_balance >= amount``. ``expected_balance``
    turns the write into a compare-and-swap (used for adjust-to-target);
    a mismatch raises StaleDataError so the unit of work is retried.
    ``aggregate_amount`` overrides what is added to the lifetime aggregate
    (a win credits 2x the stake but only the stake counts as profit).
    """
    if amount <= 0:
        raise ValueError(f"transaction amount must be positive, got {amount}")

    delta = signed_amount(tx_type, amount)
    values = {Account.token_balance: Account.token_balance + delta}
    aggregate = AGGREGATE_COLUMN.get(tx_type)
    if aggregate:
        column = getattr(Account, aggregate)
        values[column] = column + (amount if aggregate_amount is None else aggregate_amount)

    stmt = update(Account).where(Account.id == account_id)
    if delta < 0:
        stmt = stmt.where(Account.token_balance >= -delta)
    if expected_balance is not None:
        stmt = stmt.where(Account.token_balance == expected_balance)

    result = session.execute(stmt.values(values).execution_options(synchronize_session=False))
    if result.rowcount == 0:
        current = session.execute(
            select(Account.token_balance).where(Account.id == account_id)
        ).scalar_one_or_none()
        if current is None:
            raise AccountNotFound(f"Account {account_id} not found", context={"account_id": account_id})
        if expected_balance is not None and current != expected_balance:
            raise StaleDataError(f"balance of {account_id} moved from {expected_balance} to {current}")
        raise InsufficientBalance(
            f"Balance {current} is less than {amount}",
            context={"balance": current, "required": amount},
        )

    # The row stays locked by our UPDATE until commit, so this read is our own write
    balance_after = session.execute(
        select(Account.token_balance).where(Account.id == account_id)
    ).scalar_one()

    tx = LedgerTransaction(
        account_id=account_id,
        type=TransactionType(tx_type).value,
        amount=amount,
        balance_before=balance_after - delta,
        balance_after=balance_after,
        reference=reference,
        admin_id=admin_id,
    )
    session.add(tx)
    session.flush()

    enqueue(session, "balance", account_id, tx.id, {
        "account_id": account_id,
        "balance": balance_after,
        "transaction_id": tx.id,
        "transaction_type": tx.type,
        "amount": amount,
    })
    return tx

def transaction_view(tx: LedgerTransaction) -> TransactionView:
    return TransactionView(
        id=tx.id,
        account_id=tx.account_id,
        type=tx.type,
        amount=tx.amount,
        balance_before=tx.balance_before,
        balance_after=tx.balance_after,
        reference=tx.reference,
        created_at=tx.created_at,
    )

def account_view(acc: Account) -> AccountView:
    return AccountView(
        account_id=acc.id,
        display_name=acc.display_name,
        status=acc.status,
        token_balance=acc.token_balance,
        total_deposit=acc.total_deposit,
        total_withdraw=acc.total_withdraw,
        total_win=acc.total_win,
        total_loss=acc.total_loss,
    )

def load_account(session: Session, account_id: str) -> Account:
    acc = session.execute(
        select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if acc is None:
        raise AccountNotFound(f"Account {account_id} not found", context={"account_id": account_id})
    return acc

class LedgerStore:
    def __init__(self, store: Store):
        self.store = store

    # --- accounts ---

    def open_account(self, req: OpenAccount) -> AccountView:
        def work(db: Session):
            if db.get(Account, req.account_id) is not None:
                raise AlreadyExists(f"Account {req.account_id} already exists")
            acc = Account(
                id=req.account_id,
                display_name=req.display_name,
                status=AccountStatus(req.status).value,
                token_balance=0,
                total_deposit=0,
                total_withdraw=0,
                total_win=0,
                total_loss=0,
            )
            db.add(acc)
            db.flush()
            return account_view(acc)

        view = self.store.transact(work)
        logger.info(f"👤 Opened account {view.account_id} ({view.status.value})")
        return view

    def set_account_status(self, account_id: str, status: AccountStatus) -> AccountView:
        def work(db: Session):
            acc = load_account(db, account_id)
            acc.status = AccountStatus(status).value
            db.flush()
            return account_view(acc)

        view = self.store.transact(work)
        logger.info(f"👤 Account {account_id} is now {view.status.value}")
        return view

    def get_account(self, account_id: str) -> AccountView:
        return self.store.read(lambda db: account_view(load_account(db, account_id)))

    def is_approved(self, account_id: str) -> bool:
        status = self.store.read(
            lambda db: db.execute(select(Account.status).where(Account.id == account_id)).scalar_one_or_none()
        )
        return status == AccountStatus.APPROVED.value

    def get_balance(self, account_id: str) -> int:
        return self.get_account(account_id).token_balance

    def balance_snapshot(self, account_id: str) -> dict:
        """Balance plus the id of the last transaction, the version of the balance feed."""
        def work(db: Session):
            acc = load_account(db, account_id)
            last_id = db.execute(
                select(func.max(LedgerTransaction.id)).where(LedgerTransaction.account_id == account_id)
            ).scalar()
            return {"account_id": account_id, "balance": acc.token_balance, "version": last_id or 0}
        return self.store.read(work)

    def list_transactions(self, account_id: str, limit: int = 50) -> List[TransactionView]:
        def work(db: Session):
            load_account(db, account_id)
            rows = db.execute(
                select(LedgerTransaction)
                .where(LedgerTransaction.account_id == account_id)
                .order_by(LedgerTransaction.id.desc())
                .limit(limit)
            ).scalars().all()
            return [transaction_view(tx) for tx in rows]
        return self.store.read(work)

    def audit(self, account_id: str) -> LedgerAudit:
        """Replay the account's transactions from zero and compare with the stored balance."""
        def work(db: Session):
            acc = load_account(db, account_id)
            rows = db.execute(
                select(LedgerTransaction.type, LedgerTransaction.amount)
                .where(LedgerTransaction.account_id == account_id)
                .order_by(LedgerTransaction.id)
            ).all()
            replayed = 0
            for tx_type, amount in rows:
                replayed += signed_amount(tx_type, amount)
            return LedgerAudit(
                account_id=account_id,
                stored_balance=acc.token_balance,
                replayed_balance=replayed,
                transactions=len(rows),
                consistent=replayed == acc.token_balance,
            )

        result = self.store.read(work)
        if not result.consistent:
            logger.critical(f"🚨 Ledger mismatch for {account_id}: stored={result.stored_balance} replayed={result.replayed_balance}")
        return result

    # --- manual token transactions ---

    def process_token_transaction(self, account_id: str, admin_id: str, req: TokenTransactionRequest) -> TokenTransactionResponse:
        """Admin credit, debit, or adjust-to-target."""
        scope = f"tokens:{account_id}"
        fingerprint = request_fingerprint({"action": req.action, "amount": req.amount})

        def work(db: Session):
            replay = load_replay(db, scope, req.request_id, fingerprint)
            if replay is not None:
                return TokenTransactionResponse(**replay)

            acc = load_account(db, account_id)
            before = acc.token_balance
            expected = None
            if req.action == "ADD":
                tx_type, amount = TransactionType.ADMIN_CREDIT, req.amount
            elif req.action == "WITHDRAW":
                tx_type, amount = TransactionType.ADMIN_DEBIT, req.amount
            else:
                diff = req.amount - before
                expected = before
                if diff == 0:
                    return TokenTransactionResponse(success=True, before_balance=before, after_balance=before)
                tx_type = TransactionType.ADMIN_CREDIT if diff > 0 else TransactionType.ADMIN_DEBIT
                amount = abs(diff)

            if amount <= 0:
                raise BusinessLogicError("Amount must be positive", code=ErrorCodes.VALIDATION_ERROR, field="amount")

            tx = apply_transaction(
                db, account_id, tx_type, amount,
                reference=req.reference or f"Admin action: {req.action}",
                admin_id=admin_id,
                expected_balance=expected,
            )
            response = TokenTransactionResponse(
                success=True,
                before_balance=tx.balance_before,
                after_balance=tx.balance_after,
                transaction=transaction_view(tx),
            )
            remember(db, scope, req.request_id, response.model_dump(mode="json"), fingerprint)
            return response

        response = self.store.transact(work)
        logger.info(f"💰 {req.action} by {admin_id} on {account_id}: {response.before_balance} -> {response.after_balance}")
        return response
