"""
Wallet System Module

Wires storage, account manager and transaction processor together from
configuration. The HTTP layer and the entry point both build on this.
"""

from typing import Optional

from .config import WalletConfig, get_config
from .storage import StorageInterface, create_storage
from .events import EventDispatcher
from .accounts import AccountManager
from .transactions import TransactionProcessor, TransactionLog


class WalletSystem:
    """Wallet core with all components initialized"""

    def __init__(
        self,
        config: Optional[WalletConfig] = None,
        storage: Optional[StorageInterface] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(
            self.config.database_url, lock_timeout=self.config.lock_timeout_seconds
        )
        self.event_dispatcher = event_dispatcher or EventDispatcher()

        self.account_manager = AccountManager(self.storage, self.event_dispatcher)
        self.transaction_log = TransactionLog(self.storage)
        self.transaction_processor = TransactionProcessor(
            self.storage,
            self.account_manager,
            transaction_log=self.transaction_log,
            event_dispatcher=self.event_dispatcher,
            lock_timeout=self.config.lock_timeout_seconds,
        )

    def close(self) -> None:
        self.storage.close()
