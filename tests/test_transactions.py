"""
Test suite for transaction processing

Tests the balance mutation engine: validation order, balance updates,
atomicity on failure, history ordering and reconciliation.
"""

import pytest
import threading
from decimal import Decimal
from datetime import datetime, timezone, timedelta

from wallet_core.storage import InMemoryStorage, StorageError
from wallet_core.events import EventDispatcher, DomainEvent
from wallet_core.errors import (
    ErrorKind, InvalidAmountError, InvalidTransactionTypeError,
    AccountNotFoundError, InsufficientFundsError, InternalFailureError
)
from wallet_core.accounts import AccountManager
from wallet_core.transactions import (
    TransactionProcessor, TransactionLog, Transaction, TransactionType
)


class RecordingStorage(InMemoryStorage):
    """In-memory storage that records calls and can fail chosen tables"""

    def __init__(self):
        super().__init__()
        self.calls = []
        self.fail_tables = set()

    def begin_transaction(self, lock_timeout=None):
        self.calls.append("begin")
        super().begin_transaction(lock_timeout)

    def load(self, table, record_id):
        self.calls.append(("load", table))
        return super().load(table, record_id)

    def load_for_update(self, table, record_id):
        self.calls.append(("load_for_update", table))
        return super().load_for_update(table, record_id)

    def save(self, table, record_id, data):
        if table in self.fail_tables:
            raise StorageError(f"cannot write {table}")
        super().save(table, record_id, data)


@pytest.fixture
def storage():
    return RecordingStorage()


@pytest.fixture
def dispatcher():
    return EventDispatcher()


@pytest.fixture
def account_manager(storage):
    return AccountManager(storage)


@pytest.fixture
def processor(storage, account_manager, dispatcher):
    return TransactionProcessor(storage, account_manager, event_dispatcher=dispatcher, lock_timeout=1.0)


@pytest.fixture
def account(account_manager):
    return account_manager.create_account()


class TestTransaction:
    """Test Transaction record"""

    def test_amount_must_be_positive(self):
        now = datetime.now(timezone.utc)
        with pytest.raises(ValueError, match="must be positive"):
            Transaction(
                id="T1", created_at=now, account_id="A1", amount=Decimal('0'),
                transaction_type=TransactionType.DEPOSIT, sequence=1
            )

    def test_signed_amount(self):
        now = datetime.now(timezone.utc)
        deposit = Transaction(
            id="T1", created_at=now, account_id="A1", amount=Decimal('5'),
            transaction_type=TransactionType.DEPOSIT, sequence=1
        )
        withdrawal = Transaction(
            id="T2", created_at=now, account_id="A1", amount=Decimal('5'),
            transaction_type=TransactionType.WITHDRAWAL, sequence=2
        )
        assert deposit.signed_amount == Decimal('5')
        assert withdrawal.signed_amount == Decimal('-5')

    def test_storage_form(self):
        """Type is stored by value and amount as a string"""
        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id="T1", created_at=now, account_id="A1", amount=Decimal('7.25'),
            transaction_type=TransactionType.WITHDRAWAL, sequence=4
        )
        data = transaction.to_dict()

        assert data["transaction_type"] == "WITHDRAWAL"
        assert data["amount"] == "7.25"
        assert Transaction.from_dict(data) == transaction


class TestApplyTransaction:
    """Test the deposit/withdrawal scenarios"""

    def test_deposit_into_empty_account(self, processor, account_manager, account):
        """Deposit 100 into a zero balance account"""
        transaction = processor.apply_transaction(account.id, Decimal('100'), TransactionType.DEPOSIT)

        assert transaction.transaction_type == TransactionType.DEPOSIT
        assert transaction.amount == Decimal('100')
        assert transaction.account_id == account.id
        assert transaction.sequence == 1
        assert account_manager.get_balance(account.id) == Decimal('100')
        assert processor.list_transactions(account.id) == [transaction]

    def test_withdraw_from_funded_account(self, processor, account_manager, account):
        """Withdraw 50 from a 100 balance account"""
        processor.deposit(account.id, 100)

        transaction = processor.withdraw(account.id, 50)

        assert transaction.transaction_type == TransactionType.WITHDRAWAL
        assert transaction.amount == Decimal('50')
        assert account_manager.get_balance(account.id) == Decimal('50')

    def test_withdraw_entire_balance(self, processor, account_manager, account):
        processor.deposit(account.id, "25.50")
        processor.withdraw(account.id, "25.50")
        assert account_manager.get_balance(account.id) == Decimal('0')

    def test_insufficient_funds(self, processor, account_manager, account):
        """Withdraw 150 from 100 fails and leaves no trace"""
        processor.deposit(account.id, 100)

        with pytest.raises(InsufficientFundsError) as exc_info:
            processor.withdraw(account.id, 150)

        assert exc_info.value.kind == ErrorKind.INSUFFICIENT_FUNDS
        assert exc_info.value.balance == Decimal('100')
        assert exc_info.value.amount == Decimal('150')
        assert account_manager.get_balance(account.id) == Decimal('100')
        assert len(processor.list_transactions(account.id)) == 1

    def test_negative_amount_rejected_before_locking(self, processor, storage, account):
        """Deposit -10 fails with InvalidAmount without touching storage"""
        storage.calls.clear()

        with pytest.raises(InvalidAmountError):
            processor.deposit(account.id, -10)

        assert storage.calls == []

    @pytest.mark.parametrize("amount", [0, "0.00", "-0.01", "abc", "NaN", "Infinity", None, True])
    def test_invalid_amounts(self, processor, account, amount):
        with pytest.raises(InvalidAmountError):
            processor.deposit(account.id, amount)

    def test_unknown_account(self, processor, storage):
        """Mutating an unknown account fails with AccountNotFound"""
        with pytest.raises(AccountNotFoundError) as exc_info:
            processor.deposit("does-not-exist", 10)

        assert exc_info.value.kind == ErrorKind.ACCOUNT_NOT_FOUND
        assert storage.find("transactions", {}) == []

    def test_invalid_amount_wins_over_unknown_account(self, processor):
        """Amount is validated first"""
        with pytest.raises(InvalidAmountError):
            processor.withdraw("does-not-exist", 0)

    def test_unknown_account_wins_over_funds(self, processor):
        """Existence is checked before funds"""
        with pytest.raises(AccountNotFoundError):
            processor.withdraw("does-not-exist", 1000)

    def test_transaction_type_as_string(self, processor, account_manager, account):
        processor.apply_transaction(account.id, 10, "DEPOSIT")
        processor.apply_transaction(account.id, 3, "withdrawal")
        assert account_manager.get_balance(account.id) == Decimal('7')

    def test_invalid_transaction_type(self, processor, account):
        with pytest.raises(InvalidTransactionTypeError) as exc_info:
            processor.apply_transaction(account.id, 10, "TRANSFER")
        assert exc_info.value.kind == ErrorKind.INVALID_TRANSACTION_TYPE

    def test_row_lock_taken_for_mutation(self, processor, storage, account):
        """The authoritative read happens under the account row lock"""
        storage.calls.clear()
        processor.deposit(account.id, 10)

        assert "begin" in storage.calls
        assert ("load_for_update", "accounts") in storage.calls

    def test_decimal_precision(self, processor, account_manager, account):
        """No float drift in balances"""
        for _ in range(3):
            processor.deposit(account.id, "0.1")
        assert account_manager.get_balance(account.id) == Decimal('0.3')

    def test_largest_exact_sum_is_accepted(self, processor, account_manager, account):
        """1E+30 + 1000 still fits in 28 significant digits"""
        processor.deposit(account.id, "1E+30")
        processor.deposit(account.id, "1000")

        assert account_manager.get_balance(account.id) == Decimal('1000000000000000000000000001000')
        assert processor.reconcile(account.id).is_consistent

    @pytest.mark.parametrize("method", ["deposit", "withdraw"])
    @pytest.mark.parametrize("amount", ["1", "0.01"])
    def test_amount_that_would_round_balance_is_rejected(self, processor, account_manager, account, method, amount):
        """A mutation whose exact result needs rounding changes nothing"""
        processor.deposit(account.id, "1E+30")

        with pytest.raises(InvalidAmountError, match="rounding"):
            getattr(processor, method)(account.id, amount)

        assert account_manager.get_balance(account.id) == Decimal('1E+30')
        assert account_manager.get_account(account.id).version == 1
        assert len(processor.list_transactions(account.id)) == 1
        assert processor.reconcile(account.id).is_consistent

    def test_versions_follow_transactions(self, processor, account_manager, account):
        sequences = [processor.deposit(account.id, 1).sequence for _ in range(5)]
        assert sequences == [1, 2, 3, 4, 5]
        assert account_manager.get_account(account.id).version == 5


class TestAtomicity:
    """Failures after locking leave no partial state"""

    def test_log_failure_rolls_back_balance(self, processor, storage, account_manager, account):
        """A failed append leaves balance and history unchanged"""
        processor.deposit(account.id, 100)
        storage.fail_tables = {"transactions"}

        with pytest.raises(InternalFailureError, match="Transaction processing failed") as exc_info:
            processor.deposit(account.id, 50)

        assert isinstance(exc_info.value.__cause__, StorageError)
        storage.fail_tables = set()
        assert account_manager.get_balance(account.id) == Decimal('100')
        assert len(processor.list_transactions(account.id)) == 1

    def test_account_write_failure_records_nothing(self, processor, storage, account_manager, account):
        processor.deposit(account.id, 100)
        storage.fail_tables = {"accounts"}

        with pytest.raises(InternalFailureError):
            processor.withdraw(account.id, 40)

        storage.fail_tables = set()
        assert account_manager.get_balance(account.id) == Decimal('100')
        assert len(processor.list_transactions(account.id)) == 1

    def test_lock_timeout_is_internal_failure(self, storage, account_manager, account):
        """Waiting too long for the row lock fails without changes"""
        processor = TransactionProcessor(storage, account_manager, lock_timeout=0.05)
        acquired = threading.Event()
        release = threading.Event()

        def hold_lock():
            with storage.atomic(lock_timeout=1):
                account_manager.get_account_for_update(account.id)
                acquired.set()
                release.wait(5)

        holder = threading.Thread(target=hold_lock)
        holder.start()
        try:
            assert acquired.wait(5)
            with pytest.raises(InternalFailureError) as exc_info:
                processor.deposit(account.id, 10)
            assert exc_info.value.details["cause"] == "LockTimeoutError"
        finally:
            release.set()
            holder.join()

        assert account_manager.get_balance(account.id) == Decimal('0')
        assert processor.list_transactions(account.id) == []


class TestHistory:
    """Test the query side of transactions"""

    def test_new_account_has_empty_history(self, processor, account):
        """An account without activity is not an error"""
        assert processor.list_transactions(account.id) == []

    def test_history_unknown_account(self, processor):
        with pytest.raises(AccountNotFoundError):
            processor.list_transactions("missing")

    def test_history_newest_first(self, processor, account):
        first = processor.deposit(account.id, 10)
        second = processor.withdraw(account.id, 5)
        third = processor.deposit(account.id, 1)

        history = processor.list_transactions(account.id)

        assert [t.id for t in history] == [third.id, second.id, first.id]

    def test_history_is_per_account(self, processor, account_manager, account):
        other = account_manager.create_account()
        processor.deposit(account.id, 10)
        processor.deposit(other.id, 20)

        history = processor.list_transactions(other.id)
        assert len(history) == 1
        assert history[0].amount == Decimal('20')

    def test_timestamps_never_go_backwards(self, storage, account_manager, account):
        """A clock stepping back still yields increasing created_at per account"""
        times = iter([
            datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
            datetime(2026, 1, 1, 11, 0, 0, tzinfo=timezone.utc),
            datetime(2026, 1, 1, 11, 0, 0, tzinfo=timezone.utc),
        ])
        processor = TransactionProcessor(storage, account_manager, clock=lambda: next(times))

        created = [processor.deposit(account.id, 1).created_at for _ in range(3)]

        assert created[0] < created[1] < created[2]
        assert created[1] == created[0] + timedelta(microseconds=1)
        assert account_manager.get_account(account.id).updated_at == created[2]

    def test_get_transaction(self, processor, account):
        transaction = processor.deposit(account.id, 10)
        assert processor.get_transaction(transaction.id) == transaction
        assert processor.get_transaction("missing") is None

    def test_history_storage_failure(self, processor, storage, account):
        processor.deposit(account.id, 10)

        def broken_find(table, filters):
            raise StorageError("connection lost")

        storage.find = broken_find
        with pytest.raises(InternalFailureError, match="Transaction retrieval failed"):
            processor.list_transactions(account.id)


class TestTransactionLog:
    """Test the append-only log"""

    def test_append_refuses_duplicate_ids(self, storage):
        log = TransactionLog(storage)
        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id="T1", created_at=now, account_id="A1", amount=Decimal('1'),
            transaction_type=TransactionType.DEPOSIT, sequence=1
        )
        log.append(transaction)

        with pytest.raises(ValueError, match="already recorded"):
            log.append(transaction)


class TestReconciliation:
    """Conservation: balance equals replayed history"""

    def test_balance_matches_history(self, processor, account_manager, account):
        operations = [("d", 100), ("w", 30), ("d", "12.5"), ("w", "0.5"), ("d", 8)]
        for kind, amount in operations:
            if kind == "d":
                processor.deposit(account.id, amount)
            else:
                processor.withdraw(account.id, amount)

        result = processor.reconcile(account.id)

        assert result.is_consistent
        assert result.transaction_count == 5
        assert result.recorded_balance == Decimal('90.0')
        deposits = sum(t.amount for t in processor.list_transactions(account.id)
                       if t.transaction_type == TransactionType.DEPOSIT)
        withdrawals = sum(t.amount for t in processor.list_transactions(account.id)
                          if t.transaction_type == TransactionType.WITHDRAWAL)
        assert account_manager.get_balance(account.id) == deposits - withdrawals

    def test_detects_tampered_balance(self, processor, storage, account):
        processor.deposit(account.id, 100)
        record = storage.load("accounts", account.id)
        record["balance"] = "1000"
        storage.save("accounts", account.id, record)

        result = processor.reconcile(account.id)

        assert not result.is_consistent
        assert result.replayed_balance == Decimal('100')
        assert result.recorded_balance == Decimal('1000')

    def test_reconcile_unknown_account(self, processor):
        with pytest.raises(AccountNotFoundError):
            processor.reconcile("missing")


class TestEvents:
    """The processor notifies its observer on success and failure"""

    def test_posted_event(self, processor, dispatcher, account):
        received = []
        dispatcher.subscribe(DomainEvent.TRANSACTION_POSTED, received.append)

        transaction = processor.deposit(account.id, 10)

        assert len(received) == 1
        assert received[0].entity_id == transaction.id
        assert received[0].data["amount"] == "10"
        assert received[0].data["transaction_type"] == "DEPOSIT"

    def test_failed_event(self, processor, dispatcher, account):
        received = []
        dispatcher.subscribe(DomainEvent.TRANSACTION_FAILED, received.append)

        with pytest.raises(InsufficientFundsError):
            processor.withdraw(account.id, 10)

        assert len(received) == 1
        assert received[0].data["error_kind"] == "insufficient_funds"
        assert received[0].entity_id == account.id

    def test_failing_observer_does_not_break_transaction(self, processor, dispatcher, account_manager, account):
        def broken_handler(event):
            raise RuntimeError("observer down")

        dispatcher.subscribe_all(broken_handler)
        processor.deposit(account.id, 10)

        assert account_manager.get_balance(account.id) == Decimal('10')
