"""
Storage Backend Module

Provides the data-access contract (single-row operations on accounts, entries
and transfers), the transactional database handle every backend implements,
and an in-memory implementation with row-level locking for tests and
development. SQL backends live in ``sql_storage``.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple
from datetime import datetime, timezone
import itertools
import threading

from .currency import Currency
from .errors import StoreError, StoreErrorKind
from .models import Account, Entry, Transfer


ACCOUNTS = "accounts"
ENTRIES = "entries"
TRANSFERS = "transfers"


class Queries(ABC):
    """Single-row operations, bound to a transaction or to autocommit mode"""

    # Accounts

    @abstractmethod
    def create_account(self, owner: str, balance: int, currency: Currency) -> Account:
        """Create an account; (owner, currency) must be unique"""
        pass

    @abstractmethod
    def get_account(self, account_id: int) -> Account:
        """Load an account or raise NOT_FOUND"""
        pass

    @abstractmethod
    def list_accounts(self, owner: str, limit: int, offset: int) -> List[Account]:
        """List an owner's accounts ordered by id"""
        pass

    @abstractmethod
    def update_account(self, account_id: int, balance: int) -> Account:
        """Overwrite an account balance"""
        pass

    @abstractmethod
    def add_account_balance(self, account_id: int, amount: int) -> Account:
        """Add a signed delta to an account balance, locking the row"""
        pass

    @abstractmethod
    def delete_account(self, account_id: int) -> None:
        """Delete an account or raise NOT_FOUND"""
        pass

    # Entries

    @abstractmethod
    def create_entry(self, account_id: int, amount: int) -> Entry:
        pass

    @abstractmethod
    def get_entry(self, entry_id: int) -> Entry:
        pass

    @abstractmethod
    def list_entries(self, account_id: int, limit: int, offset: int) -> List[Entry]:
        pass

    @abstractmethod
    def delete_entries(self, account_id: int) -> int:
        """Delete every entry of an account, returning the number removed"""
        pass

    # Transfers

    @abstractmethod
    def create_transfer(self, from_account_id: int, to_account_id: int, amount: int) -> Transfer:
        pass

    @abstractmethod
    def get_transfer(self, transfer_id: int) -> Transfer:
        pass

    @abstractmethod
    def list_transfers(self, from_account_id: Optional[int], to_account_id: Optional[int],
                       limit: int, offset: int) -> List[Transfer]:
        """List transfers leaving from_account_id OR arriving at to_account_id"""
        pass

    @abstractmethod
    def delete_transfers(self, account_id: int) -> int:
        """Delete every transfer where the account is source or destination"""
        pass


class StoreTransaction(ABC):
    """An open unit of work on a database"""

    @property
    @abstractmethod
    def queries(self) -> Queries:
        """Transaction-bound data-access handle"""
        pass

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass


class Database(ABC):
    """Owns the connection(s) to a store and hands out transactions"""

    @abstractmethod
    def begin(self) -> StoreTransaction:
        """Start a new transaction"""
        pass

    def queries(self) -> Queries:
        """Data-access handle where every call is its own transaction"""
        from .transactions import AutocommitQueries
        return AutocommitQueries(self)

    def close(self) -> None:
        """Release connections (default no-op)"""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class InMemoryDatabase(Database):
    """
    In-memory store for testing

    Read-committed isolation: each transaction buffers its writes and sees
    committed rows plus its own changes. Rows updated or deleted by a
    transaction stay exclusively locked until it commits or rolls back; a
    waiter gives up after ``lock_timeout`` seconds with LOCK_TIMEOUT.
    """

    def __init__(self, lock_timeout: float = 10.0):
        self.lock_timeout = lock_timeout
        self._lock = threading.RLock()
        self._row_released = threading.Condition(self._lock)
        self._tables: Dict[str, Dict[int, object]] = {
            ACCOUNTS: {}, ENTRIES: {}, TRANSFERS: {}
        }
        self._sequences = {table: itertools.count(1) for table in self._tables}
        self._row_owners: Dict[Tuple[str, int], int] = {}
        self._tx_ids = itertools.count(1)

    def begin(self) -> 'InMemoryTransaction':
        with self._lock:
            tx_id = next(self._tx_ids)
        return InMemoryTransaction(self, tx_id)

    def next_id(self, table: str) -> int:
        """Allocate an id; ids are never reused, even after rollback"""
        with self._lock:
            return next(self._sequences[table])

    def committed(self, table: str, record_id: int):
        with self._lock:
            return self._tables[table].get(record_id)

    def snapshot(self, table: str) -> Dict[int, object]:
        with self._lock:
            return dict(self._tables[table])

    def acquire_row(self, table: str, record_id: int, tx_id: int) -> None:
        """Take the exclusive lock on a row, waiting for its current holder"""
        key = (table, record_id)
        with self._row_released:
            granted = self._row_released.wait_for(
                lambda: self._row_owners.get(key, tx_id) == tx_id,
                timeout=self.lock_timeout
            )
            if not granted:
                raise StoreError(
                    StoreErrorKind.LOCK_TIMEOUT,
                    f"timed out after {self.lock_timeout}s waiting for lock on {table} row {record_id}"
                )
            self._row_owners[key] = tx_id

    def release_rows(self, tx_id: int) -> None:
        with self._row_released:
            for key in [k for k, owner in self._row_owners.items() if owner == tx_id]:
                del self._row_owners[key]
            self._row_released.notify_all()

    def apply(self, writes: Dict[str, Dict[int, object]]) -> None:
        """Validate constraints against the merged state and publish writes"""
        with self._lock:
            merged = {}
            for table, rows in self._tables.items():
                view = dict(rows)
                for record_id, record in writes[table].items():
                    if record is None:
                        view.pop(record_id, None)
                    else:
                        view[record_id] = record
                merged[table] = view

            check_constraints(merged, writes)

            for table, rows in writes.items():
                for record_id, record in rows.items():
                    if record is None:
                        self._tables[table].pop(record_id, None)
                    else:
                        self._tables[table][record_id] = record


def check_constraints(tables: Dict[str, Dict[int, object]],
                      writes: Dict[str, Dict[int, object]]) -> None:
    """Enforce unique (owner, currency) and entry/transfer -> account references"""
    accounts = tables[ACCOUNTS]

    written_accounts = [a for a in writes[ACCOUNTS].values() if a is not None]
    for account in written_accounts:
        for other in accounts.values():
            if (other.id != account.id and other.owner == account.owner
                    and other.currency == account.currency):
                raise StoreError(
                    StoreErrorKind.UNIQUE_VIOLATION,
                    f"account for owner {account.owner} in {account.currency.code} already exists"
                )

    for entry in writes[ENTRIES].values():
        if entry is not None and entry.account_id not in accounts:
            raise StoreError(
                StoreErrorKind.FOREIGN_KEY_VIOLATION,
                f"entry {entry.id} references missing account {entry.account_id}"
            )

    for transfer in writes[TRANSFERS].values():
        if transfer is None:
            continue
        for account_id in (transfer.from_account_id, transfer.to_account_id):
            if account_id not in accounts:
                raise StoreError(
                    StoreErrorKind.FOREIGN_KEY_VIOLATION,
                    f"transfer {transfer.id} references missing account {account_id}"
                )

    deleted_accounts = {i for i, a in writes[ACCOUNTS].items() if a is None}
    if not deleted_accounts:
        return
    for entry in tables[ENTRIES].values():
        if entry.account_id in deleted_accounts:
            raise StoreError(
                StoreErrorKind.FOREIGN_KEY_VIOLATION,
                f"account {entry.account_id} is still referenced by entry {entry.id}"
            )
    for transfer in tables[TRANSFERS].values():
        for account_id in (transfer.from_account_id, transfer.to_account_id):
            if account_id in deleted_accounts:
                raise StoreError(
                    StoreErrorKind.FOREIGN_KEY_VIOLATION,
                    f"account {account_id} is still referenced by transfer {transfer.id}"
                )


class InMemoryTransaction(StoreTransaction):
    """Buffered unit of work on an InMemoryDatabase"""

    def __init__(self, database: InMemoryDatabase, tx_id: int):
        self.database = database
        self.tx_id = tx_id
        self.writes: Dict[str, Dict[int, object]] = {
            ACCOUNTS: {}, ENTRIES: {}, TRANSFERS: {}
        }
        self._finished = False
        self._queries = InMemoryQueries(self)

    @property
    def queries(self) -> 'InMemoryQueries':
        return self._queries

    def ensure_active(self) -> None:
        if self._finished:
            raise StoreError(StoreErrorKind.UNKNOWN, f"transaction {self.tx_id} is already finished")

    def read(self, table: str, record_id: int):
        self.ensure_active()
        if record_id in self.writes[table]:
            return self.writes[table][record_id]
        return self.database.committed(table, record_id)

    def scan(self, table: str) -> List:
        """Rows visible to this transaction, ordered by id"""
        self.ensure_active()
        view = self.database.snapshot(table)
        for record_id, record in self.writes[table].items():
            if record is None:
                view.pop(record_id, None)
            else:
                view[record_id] = record
        return [view[record_id] for record_id in sorted(view)]

    def write(self, table: str, record) -> None:
        self.ensure_active()
        self.writes[table][record.id] = record

    def lock(self, table: str, record_id: int) -> None:
        self.ensure_active()
        self.database.acquire_row(table, record_id, self.tx_id)

    def remove(self, table: str, record_id: int) -> None:
        self.lock(table, record_id)
        self.writes[table][record_id] = None

    def commit(self) -> None:
        self.ensure_active()
        try:
            self.database.apply(self.writes)
        finally:
            self._finished = True
            self.database.release_rows(self.tx_id)

    def rollback(self) -> None:
        if self._finished:
            return
        self._finished = True
        self.writes = {table: {} for table in self.writes}
        self.database.release_rows(self.tx_id)


def _page(rows: List, limit: int, offset: int) -> List:
    return rows[offset:offset + limit]


class InMemoryQueries(Queries):
    """Data-access operations bound to an InMemoryTransaction"""

    def __init__(self, tx: InMemoryTransaction):
        self.tx = tx

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _require(self, table: str, resource: str, record_id: int):
        record = self.tx.read(table, record_id)
        if record is None:
            raise StoreError.not_found(resource, record_id)
        return record

    def _require_account(self, account_id: int) -> Account:
        record = self.tx.read(ACCOUNTS, account_id)
        if record is None:
            raise StoreError(
                StoreErrorKind.FOREIGN_KEY_VIOLATION,
                f"account {account_id} does not exist"
            )
        return record

    # Accounts

    def create_account(self, owner: str, balance: int, currency: Currency) -> Account:
        for other in self.tx.scan(ACCOUNTS):
            if other.owner == owner and other.currency == currency:
                raise StoreError(
                    StoreErrorKind.UNIQUE_VIOLATION,
                    f"account for owner {owner} in {currency.code} already exists"
                )
        account = Account(
            id=self.tx.database.next_id(ACCOUNTS),
            created_at=self._now(),
            owner=owner,
            balance=balance,
            currency=currency
        )
        self.tx.write(ACCOUNTS, account)
        return account

    def get_account(self, account_id: int) -> Account:
        return self._require(ACCOUNTS, "account", account_id)

    def list_accounts(self, owner: str, limit: int, offset: int) -> List[Account]:
        rows = [a for a in self.tx.scan(ACCOUNTS) if a.owner == owner]
        return _page(rows, limit, offset)

    def _set_balance(self, account_id: int, balance_of: Callable[[Account], int]) -> Account:
        # Lock before reading so the value read is the latest committed one
        self._require(ACCOUNTS, "account", account_id)
        self.tx.lock(ACCOUNTS, account_id)
        current = self._require(ACCOUNTS, "account", account_id)
        updated = Account(
            id=current.id,
            created_at=current.created_at,
            owner=current.owner,
            balance=balance_of(current),
            currency=current.currency
        )
        self.tx.write(ACCOUNTS, updated)
        return updated

    def update_account(self, account_id: int, balance: int) -> Account:
        return self._set_balance(account_id, lambda account: balance)

    def add_account_balance(self, account_id: int, amount: int) -> Account:
        return self._set_balance(account_id, lambda account: account.balance + amount)

    def delete_account(self, account_id: int) -> None:
        self._require(ACCOUNTS, "account", account_id)
        for entry in self.tx.scan(ENTRIES):
            if entry.account_id == account_id:
                raise StoreError(
                    StoreErrorKind.FOREIGN_KEY_VIOLATION,
                    f"account {account_id} is still referenced by entry {entry.id}"
                )
        for transfer in self.tx.scan(TRANSFERS):
            if transfer.involves(account_id):
                raise StoreError(
                    StoreErrorKind.FOREIGN_KEY_VIOLATION,
                    f"account {account_id} is still referenced by transfer {transfer.id}"
                )
        self.tx.remove(ACCOUNTS, account_id)

    # Entries

    def create_entry(self, account_id: int, amount: int) -> Entry:
        self._require_account(account_id)
        entry = Entry(
            id=self.tx.database.next_id(ENTRIES),
            created_at=self._now(),
            account_id=account_id,
            amount=amount
        )
        self.tx.write(ENTRIES, entry)
        return entry

    def get_entry(self, entry_id: int) -> Entry:
        return self._require(ENTRIES, "entry", entry_id)

    def list_entries(self, account_id: int, limit: int, offset: int) -> List[Entry]:
        rows = [e for e in self.tx.scan(ENTRIES) if e.account_id == account_id]
        return _page(rows, limit, offset)

    def delete_entries(self, account_id: int) -> int:
        doomed = [e.id for e in self.tx.scan(ENTRIES) if e.account_id == account_id]
        for entry_id in doomed:
            self.tx.remove(ENTRIES, entry_id)
        return len(doomed)

    # Transfers

    def create_transfer(self, from_account_id: int, to_account_id: int, amount: int) -> Transfer:
        if amount <= 0:
            raise StoreError(
                StoreErrorKind.CHECK_VIOLATION,
                f"transfer amount must be positive, got {amount}"
            )
        self._require_account(from_account_id)
        self._require_account(to_account_id)
        transfer = Transfer(
            id=self.tx.database.next_id(TRANSFERS),
            created_at=self._now(),
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            amount=amount
        )
        self.tx.write(TRANSFERS, transfer)
        return transfer

    def get_transfer(self, transfer_id: int) -> Transfer:
        return self._require(TRANSFERS, "transfer", transfer_id)

    def list_transfers(self, from_account_id: Optional[int], to_account_id: Optional[int],
                       limit: int, offset: int) -> List[Transfer]:
        rows = [
            t for t in self.tx.scan(TRANSFERS)
            if t.from_account_id == from_account_id or t.to_account_id == to_account_id
        ]
        return _page(rows, limit, offset)

    def delete_transfers(self, account_id: int) -> int:
        doomed = [t.id for t in self.tx.scan(TRANSFERS) if t.involves(account_id)]
        for transfer_id in doomed:
            self.tx.remove(TRANSFERS, transfer_id)
        return len(doomed)


def create_database(config) -> Database:
    """
    Build a database handle from configuration.

    ``memory://`` gives an InMemoryDatabase, ``sqlite:///<path>`` an
    SQLiteDatabase and ``postgresql://...`` a PostgreSQLDatabase. SQL
    backends are migrated when ``config.auto_migrate`` is set.
    """
    url = config.database_url
    if url.startswith("memory://"):
        return InMemoryDatabase(lock_timeout=config.lock_timeout_seconds)

    from .sql_storage import SQLiteDatabase, PostgreSQLDatabase
    from .migrations import MigrationManager

    if url.startswith("sqlite://"):
        database = SQLiteDatabase(
            url[len("sqlite:///"):] or ":memory:",
            pool_size=config.database_pool_size,
            pool_timeout=config.database_pool_timeout,
            busy_timeout=config.lock_timeout_seconds
        )
    elif url.startswith(("postgresql://", "postgres://")):
        database = PostgreSQLDatabase(
            url,
            pool_size=config.database_pool_size,
            lock_timeout=config.lock_timeout_seconds
        )
    else:
        raise ValueError(f"Unsupported database URL: {url}")

    if config.auto_migrate:
        MigrationManager(database).migrate()
    return database
