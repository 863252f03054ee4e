"""
Transaction Processing Module

Applies deposits and withdrawals to accounts. Each mutation locks the
account row, re-validates against the locked state, updates the balance and
appends an immutable transaction record in one atomic unit, so concurrent
requests against the same account are linearized and never lose an update.
"""

from decimal import Decimal, Inexact, InvalidOperation, localcontext
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Union
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .accounts import AccountManager, Account
from .errors import (
    WalletError, InvalidAmountError, InvalidTransactionTypeError,
    AccountNotFoundError, InsufficientFundsError, InternalFailureError
)
from .logging_config import get_logger, log_action
from .events import (
    EventDispatcher, DomainEvent, create_transaction_event, create_failure_event
)


class TransactionType(Enum):
    """Direction of a balance mutation"""
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"


@dataclass(frozen=True)
class Transaction(StorageRecord):
    """
    Immutable record of a single deposit or withdrawal.

    ``amount`` is always positive; the direction is carried by
    ``transaction_type``. ``sequence`` is the account version this
    transaction produced, starting at 1.
    """
    account_id: str
    amount: Decimal
    transaction_type: TransactionType
    sequence: int

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError("Transaction amount must be positive")

    @property
    def signed_amount(self) -> Decimal:
        """Amount with the sign of its effect on the balance"""
        if self.transaction_type == TransactionType.WITHDRAWAL:
            return -self.amount
        return self.amount

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        """Create instance from stored dictionary"""
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            account_id=data['account_id'],
            amount=Decimal(data['amount']),
            transaction_type=TransactionType(data['transaction_type']),
            sequence=int(data['sequence']),
        )


@dataclass(frozen=True)
class BalanceReconciliation:
    """Result of replaying an account's history against its stored balance"""
    account_id: str
    recorded_balance: Decimal
    replayed_balance: Decimal
    transaction_count: int

    @property
    def is_consistent(self) -> bool:
        return self.recorded_balance == self.replayed_balance


class TransactionLog:
    """Append-only store of transaction records"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transactions"
        self.storage.ensure_table(self.table_name)

    def append(self, transaction: Transaction) -> Transaction:
        """Persist a new transaction record"""
        if self.storage.exists(self.table_name, transaction.id):
            raise ValueError(f"Transaction {transaction.id} already recorded")
        self.storage.save(self.table_name, transaction.id, transaction.to_dict())
        return transaction

    def get(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return Transaction.from_dict(data)
        return None

    def find_for_account(self, account_id: str, newest_first: bool = True) -> List[Transaction]:
        """All transactions of an account ordered by (created_at, sequence)"""
        records = self.storage.find(self.table_name, {"account_id": account_id})
        transactions = [Transaction.from_dict(data) for data in records]
        transactions.sort(key=lambda t: (t.created_at, t.sequence), reverse=newest_first)
        return transactions


AmountLike = Union[Decimal, int, float, str]


class TransactionProcessor:
    """
    Balance mutation engine plus read access to transaction history
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        transaction_log: Optional[TransactionLog] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        lock_timeout: Optional[float] = 5.0,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.transaction_log = transaction_log or TransactionLog(storage)
        self.lock_timeout = lock_timeout
        self.logger = get_logger("wallet.transactions")
        self._event_dispatcher = event_dispatcher
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def parse_amount(amount: AmountLike) -> Decimal:
        """
        Convert an amount to Decimal and check it is finite and positive

        Raises:
            InvalidAmountError: If the amount is malformed or not strictly positive
        """
        if isinstance(amount, bool):
            raise InvalidAmountError("Amount must be a number", {"amount": amount})
        try:
            value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidAmountError("Amount must be a number", {"amount": amount})
        if not value.is_finite() or value <= 0:
            raise InvalidAmountError("Amount must be positive", {"amount": amount})
        return value

    @staticmethod
    def parse_transaction_type(transaction_type: Union[TransactionType, str]) -> TransactionType:
        """Accept a TransactionType or its string value"""
        if isinstance(transaction_type, TransactionType):
            return transaction_type
        try:
            return TransactionType(str(transaction_type).upper())
        except ValueError:
            raise InvalidTransactionTypeError(
                "Transaction type must be DEPOSIT or WITHDRAWAL",
                {"transaction_type": transaction_type}
            )

    def deposit(self, account_id: str, amount: AmountLike) -> Transaction:
        """Deposit funds into an account"""
        return self.apply_transaction(account_id, amount, TransactionType.DEPOSIT)

    def withdraw(self, account_id: str, amount: AmountLike) -> Transaction:
        """Withdraw funds from an account"""
        return self.apply_transaction(account_id, amount, TransactionType.WITHDRAWAL)

    def apply_transaction(
        self,
        account_id: str,
        amount: AmountLike,
        transaction_type: Union[TransactionType, str]
    ) -> Transaction:
        """
        Apply a deposit or withdrawal to an account

        Validation runs in this order and the first failure wins: amount,
        account existence, then funds for withdrawals. Existence and funds
        are checked once without a lock and again, authoritatively, while
        the account row is locked.

        Args:
            account_id: Account to mutate
            amount: Strictly positive amount
            transaction_type: DEPOSIT or WITHDRAWAL

        Returns:
            The persisted Transaction

        Raises:
            InvalidAmountError: Amount is not strictly positive (no lock attempted),
                or the new balance would need rounding (nothing is written)
            InvalidTransactionTypeError: Unknown transaction type
            AccountNotFoundError: Account does not exist
            InsufficientFundsError: Withdrawal exceeds the balance
            InternalFailureError: Storage failure or lock timeout; nothing was changed
        """
        try:
            value = self.parse_amount(amount)
            direction = self.parse_transaction_type(transaction_type)
        except WalletError as e:
            self._record_failure(account_id, transaction_type, amount, e)
            raise

        try:
            # Advisory check: cheap early rejection without taking the lock
            self._check(self.account_manager.get_account(account_id), account_id, value, direction)

            with self.storage.atomic(lock_timeout=self.lock_timeout):
                account = self.account_manager.get_account_for_update(account_id)
                self._check(account, account_id, value, direction)
                transaction = self._post(account, value, direction)

        except WalletError as e:
            self._record_failure(account_id, direction.value, value, e)
            raise
        except Exception as e:
            error = InternalFailureError(
                "Transaction processing failed",
                {"account_id": account_id, "cause": type(e).__name__}
            )
            self._record_failure(account_id, direction.value, value, error, exc_info=True)
            raise error from e

        log_action(
            self.logger, "info",
            f"{direction.value} transaction created for account {account_id}",
            action="apply_transaction", resource=f"transaction:{transaction.id}",
            extra={
                "account_id": account_id,
                "transaction_type": direction.value,
                "amount": str(value),
                "sequence": transaction.sequence,
            }
        )

        if self._event_dispatcher:
            self._event_dispatcher.publish(
                create_transaction_event(DomainEvent.TRANSACTION_POSTED, transaction)
            )

        return transaction

    def _check(
        self,
        account: Optional[Account],
        account_id: str,
        amount: Decimal,
        direction: TransactionType
    ) -> None:
        if account is None:
            raise AccountNotFoundError(account_id)
        if direction == TransactionType.WITHDRAWAL and account.balance < amount:
            raise InsufficientFundsError(account_id, account.balance, amount)

    def _post(self, account: Account, amount: Decimal, direction: TransactionType) -> Transaction:
        """Update the locked account and append the matching record"""
        new_balance = self._new_balance(account, amount, direction)
        created_at = self._next_timestamp(account)
        updated = replace(
            account,
            balance=new_balance,
            version=account.version + 1,
            updated_at=created_at,
        )

        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=created_at,
            account_id=account.id,
            amount=amount,
            transaction_type=direction,
            sequence=updated.version,
        )

        self.account_manager.save_account(updated)
        self.transaction_log.append(transaction)
        return transaction

    @staticmethod
    def _new_balance(account: Account, amount: Decimal, direction: TransactionType) -> Decimal:
        """
        Exact balance after the mutation

        Raises:
            InvalidAmountError: If the result cannot be represented without rounding
        """
        try:
            with localcontext() as context:
                context.traps[Inexact] = True
                if direction == TransactionType.DEPOSIT:
                    return account.balance + amount
                return account.balance - amount
        except Inexact:
            raise InvalidAmountError(
                "Amount cannot be applied without rounding the balance",
                {"account_id": account.id, "amount": str(amount)}
            )

    def _next_timestamp(self, account: Account) -> datetime:
        """Server timestamp never earlier than the account's previous transaction"""
        now = self._clock()
        if account.version > 0 and now <= account.updated_at:
            return account.updated_at + timedelta(microseconds=1)
        return now

    def _record_failure(
        self,
        account_id: str,
        transaction_type: Any,
        amount: Any,
        error: WalletError,
        exc_info: bool = False
    ) -> None:
        if isinstance(transaction_type, TransactionType):
            transaction_type = transaction_type.value
        level = "warning" if error.recoverable else "error"
        log_action(
            self.logger, level, f"Transaction rejected: {error.message}",
            action="apply_transaction", resource=f"account:{account_id}",
            extra={
                "error_kind": error.kind.value,
                "transaction_type": str(transaction_type),
                "amount": str(amount),
            },
            exc_info=exc_info
        )
        if self._event_dispatcher:
            self._event_dispatcher.publish(
                create_failure_event(account_id, str(transaction_type), amount, error)
            )

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by ID"""
        try:
            return self.transaction_log.get(transaction_id)
        except Exception as e:
            self.logger.error(f"Failed to retrieve transaction {transaction_id}: {e}")
            raise InternalFailureError("Transaction retrieval failed") from e

    def list_transactions(self, account_id: str) -> List[Transaction]:
        """
        All transactions of an account, newest first

        An existing account without activity yields an empty list.

        Raises:
            AccountNotFoundError: If the account does not exist
            InternalFailureError: If storage fails
        """
        try:
            account = self.account_manager.get_account(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            return self.transaction_log.find_for_account(account_id)
        except AccountNotFoundError:
            self.logger.warning(f"Account not found: {account_id}")
            raise
        except Exception as e:
            log_action(
                self.logger, "error", "Failed to retrieve transactions",
                action="list_transactions", resource=f"account:{account_id}",
                extra={"error": str(e)}, exc_info=True
            )
            raise InternalFailureError("Transaction retrieval failed") from e

    def reconcile(self, account_id: str) -> BalanceReconciliation:
        """
        Replay an account's history from zero and compare with its balance

        Reads the balance and the history in one atomic unit so a
        concurrent commit cannot fall between the two reads.
        """
        try:
            with self.storage.atomic(lock_timeout=self.lock_timeout):
                account = self.account_manager.get_account_for_update(account_id)
                if account is None:
                    raise AccountNotFoundError(account_id)
                history = self.transaction_log.find_for_account(account_id, newest_first=False)
        except WalletError:
            raise
        except Exception as e:
            self.logger.error(f"Reconciliation failed for account {account_id}: {e}")
            raise InternalFailureError("Reconciliation failed") from e

        replayed = Decimal('0')
        for transaction in history:
            replayed += transaction.signed_amount

        result = BalanceReconciliation(
            account_id=account_id,
            recorded_balance=account.balance,
            replayed_balance=replayed,
            transaction_count=len(history),
        )
        if not result.is_consistent:
            log_action(
                self.logger, "error", "Balance does not match transaction history",
                action="reconcile", resource=f"account:{account_id}",
                extra={
                    "recorded_balance": str(result.recorded_balance),
                    "replayed_balance": str(result.replayed_balance),
                }
            )
        return result
