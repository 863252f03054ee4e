"""
Account Management Module

Manages account creation and balance lookups. The balance is the only
mutable part of an account and is changed exclusively by the transaction
processor while it holds the account's row lock.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Optional
import uuid

from .storage import StorageInterface, StorageRecord
from .errors import AccountNotFoundError, InternalFailureError
from .logging_config import get_logger, log_action
from .events import EventDispatcher, DomainEvent, create_account_event


@dataclass(frozen=True)
class Account(StorageRecord):
    """
    Wallet account holding a non-negative balance.

    ``updated_at`` is the timestamp of the last committed mutation and
    ``version`` counts committed mutations; both start at creation values.
    """
    updated_at: datetime
    balance: Decimal = Decimal('0')
    version: int = 0

    def __post_init__(self):
        if not isinstance(self.balance, Decimal):
            object.__setattr__(self, 'balance', Decimal(str(self.balance)))
        if self.balance < 0:
            raise ValueError("Account balance cannot be negative")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        """Create instance from stored dictionary"""
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            balance=Decimal(data['balance']),
            version=int(data.get('version', 0)),
        )


class AccountManager:
    """
    Creates accounts and serves read-only balance queries
    """

    def __init__(
        self,
        storage: StorageInterface,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.accounts_table = "accounts"
        self.logger = get_logger("wallet.accounts")
        self._event_dispatcher = event_dispatcher
        self.storage.ensure_table(self.accounts_table)

    def create_account(self) -> Account:
        """
        Create a new account with a zero balance

        Returns:
            Created Account object

        Raises:
            InternalFailureError: If the account could not be persisted
        """
        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            balance=Decimal('0'),
        )

        try:
            with self.storage.atomic():
                self.save_account(account)
        except Exception as e:
            log_action(
                self.logger, "error", "Failed to create account",
                action="create_account", extra={"error": str(e)}, exc_info=True
            )
            raise InternalFailureError("Failed to create account") from e

        log_action(
            self.logger, "info", "Account created",
            action="create_account", resource=f"account:{account.id}"
        )

        if self._event_dispatcher:
            self._event_dispatcher.publish(create_account_event(DomainEvent.ACCOUNT_CREATED, account))

        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get the last committed state of an account"""
        account_dict = self.storage.load(self.accounts_table, account_id)
        if account_dict:
            return Account.from_dict(account_dict)
        return None

    def get_account_for_update(self, account_id: str) -> Optional[Account]:
        """
        Get an account while holding its exclusive row lock.

        Must run inside ``storage.atomic()``; the lock is released when the
        enclosing unit commits or rolls back.
        """
        account_dict = self.storage.load_for_update(self.accounts_table, account_id)
        if account_dict:
            return Account.from_dict(account_dict)
        return None

    def save_account(self, account: Account) -> None:
        """Insert or update an account"""
        self.storage.save(self.accounts_table, account.id, account.to_dict())

    def get_balance(self, account_id: str) -> Decimal:
        """
        Get the current (last committed) balance of an account

        Raises:
            AccountNotFoundError: If the account does not exist
            InternalFailureError: If storage fails
        """
        try:
            account = self.get_account(account_id)
        except Exception as e:
            log_action(
                self.logger, "error", "Failed to check account balance",
                action="get_balance", resource=f"account:{account_id}",
                extra={"error": str(e)}, exc_info=True
            )
            raise InternalFailureError("Failed to check account balance") from e

        if account is None:
            self.logger.warning(f"Account not found: {account_id}")
            raise AccountNotFoundError(account_id)

        return account.balance
