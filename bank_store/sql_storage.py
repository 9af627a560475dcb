"""
SQL Storage Backends

SQLite and PostgreSQL implementations of the data-access contract. Both share
one set of SQL statements; each backend supplies its connection pool, its
transaction start and the translation of driver exceptions into StoreError
kinds.
"""

from abc import abstractmethod
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union
from datetime import datetime, timezone
from pathlib import Path
import queue
import sqlite3
import threading

from .currency import Currency
from .errors import StoreError, StoreErrorKind
from .logging_config import get_logger
from .models import Account, Entry, Transfer
from .storage import Database, Queries, StoreTransaction


logger = get_logger(__name__)

ACCOUNT_COLUMNS = "id, owner, balance, currency, created_at"
ENTRY_COLUMNS = "id, account_id, amount, created_at"
TRANSFER_COLUMNS = "id, from_account_id, to_account_id, amount, created_at"


def _to_datetime(value: Union[str, datetime]) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _account(row: Sequence[Any]) -> Account:
    return Account(
        id=row[0],
        owner=row[1],
        balance=row[2],
        currency=Currency.from_code(row[3]),
        created_at=_to_datetime(row[4])
    )


def _entry(row: Sequence[Any]) -> Entry:
    return Entry(id=row[0], account_id=row[1], amount=row[2], created_at=_to_datetime(row[3]))


def _transfer(row: Sequence[Any]) -> Transfer:
    return Transfer(
        id=row[0],
        from_account_id=row[1],
        to_account_id=row[2],
        amount=row[3],
        created_at=_to_datetime(row[4])
    )


class SQLQueries(Queries):
    """Data-access operations executed on one DB-API connection"""

    def __init__(self, connection, database: 'SQLDatabase'):
        self.connection = connection
        self.database = database

    def execute(self, sql: str, params: Sequence[Any] = ()) -> Tuple[List[tuple], int]:
        """Run a statement, returning (rows, rowcount)"""
        sql = self.database.prepare(sql)
        cursor = self.connection.cursor()
        try:
            cursor.execute(sql, tuple(params))
            rows = cursor.fetchall() if cursor.description else []
            return rows, cursor.rowcount
        except self.database.driver_errors as exc:
            raise self.database.translate_error(exc) from exc
        finally:
            cursor.close()

    def _one(self, sql: str, params: Sequence[Any], convert: Callable, resource: str, record_id):
        rows, _ = self.execute(sql, params)
        if not rows:
            raise StoreError.not_found(resource, record_id)
        return convert(rows[0])

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # Accounts

    def create_account(self, owner: str, balance: int, currency: Currency) -> Account:
        rows, _ = self.execute(
            f"INSERT INTO accounts (owner, balance, currency, created_at) "
            f"VALUES (?, ?, ?, ?) RETURNING {ACCOUNT_COLUMNS}",
            (owner, balance, currency.code, self.database.timestamp(self._now()))
        )
        return _account(rows[0])

    def get_account(self, account_id: int) -> Account:
        return self._one(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id = ?",
            (account_id,), _account, "account", account_id
        )

    def list_accounts(self, owner: str, limit: int, offset: int) -> List[Account]:
        rows, _ = self.execute(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE owner = ? "
            f"ORDER BY id LIMIT ? OFFSET ?",
            (owner, limit, offset)
        )
        return [_account(row) for row in rows]

    def update_account(self, account_id: int, balance: int) -> Account:
        return self._one(
            f"UPDATE accounts SET balance = ? WHERE id = ? RETURNING {ACCOUNT_COLUMNS}",
            (balance, account_id), _account, "account", account_id
        )

    def add_account_balance(self, account_id: int, amount: int) -> Account:
        return self._one(
            f"UPDATE accounts SET balance = balance + ? WHERE id = ? RETURNING {ACCOUNT_COLUMNS}",
            (amount, account_id), _account, "account", account_id
        )

    def delete_account(self, account_id: int) -> None:
        _, count = self.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
        if count == 0:
            raise StoreError.not_found("account", account_id)

    # Entries

    def create_entry(self, account_id: int, amount: int) -> Entry:
        rows, _ = self.execute(
            f"INSERT INTO entries (account_id, amount, created_at) "
            f"VALUES (?, ?, ?) RETURNING {ENTRY_COLUMNS}",
            (account_id, amount, self.database.timestamp(self._now()))
        )
        return _entry(rows[0])

    def get_entry(self, entry_id: int) -> Entry:
        return self._one(
            f"SELECT {ENTRY_COLUMNS} FROM entries WHERE id = ?",
            (entry_id,), _entry, "entry", entry_id
        )

    def list_entries(self, account_id: int, limit: int, offset: int) -> List[Entry]:
        rows, _ = self.execute(
            f"SELECT {ENTRY_COLUMNS} FROM entries WHERE account_id = ? "
            f"ORDER BY id LIMIT ? OFFSET ?",
            (account_id, limit, offset)
        )
        return [_entry(row) for row in rows]

    def delete_entries(self, account_id: int) -> int:
        _, count = self.execute("DELETE FROM entries WHERE account_id = ?", (account_id,))
        return count

    # Transfers

    def create_transfer(self, from_account_id: int, to_account_id: int, amount: int) -> Transfer:
        rows, _ = self.execute(
            f"INSERT INTO transfers (from_account_id, to_account_id, amount, created_at) "
            f"VALUES (?, ?, ?, ?) RETURNING {TRANSFER_COLUMNS}",
            (from_account_id, to_account_id, amount, self.database.timestamp(self._now()))
        )
        return _transfer(rows[0])

    def get_transfer(self, transfer_id: int) -> Transfer:
        return self._one(
            f"SELECT {TRANSFER_COLUMNS} FROM transfers WHERE id = ?",
            (transfer_id,), _transfer, "transfer", transfer_id
        )

    def list_transfers(self, from_account_id: Optional[int], to_account_id: Optional[int],
                       limit: int, offset: int) -> List[Transfer]:
        rows, _ = self.execute(
            f"SELECT {TRANSFER_COLUMNS} FROM transfers "
            f"WHERE from_account_id = ? OR to_account_id = ? "
            f"ORDER BY id LIMIT ? OFFSET ?",
            (from_account_id, to_account_id, limit, offset)
        )
        return [_transfer(row) for row in rows]

    def delete_transfers(self, account_id: int) -> int:
        _, count = self.execute(
            "DELETE FROM transfers WHERE from_account_id = ? OR to_account_id = ?",
            (account_id, account_id)
        )
        return count


class SQLTransaction(StoreTransaction):
    """A transaction holding one pooled connection until it finishes"""

    def __init__(self, database: 'SQLDatabase', connection):
        self.database = database
        self.connection = connection
        self._queries = SQLQueries(connection, database)
        self._finished = False

    @property
    def queries(self) -> SQLQueries:
        return self._queries

    def commit(self) -> None:
        if self._finished:
            raise StoreError(StoreErrorKind.UNKNOWN, "transaction is already finished")
        self._finished = True
        try:
            self.database.commit_connection(self.connection)
        except self.database.driver_errors as exc:
            self.database.discard(self.connection)
            raise self.database.translate_error(exc) from exc
        except BaseException:
            self.database.release(self.connection)
            raise
        self.database.release(self.connection)

    def rollback(self) -> None:
        if self._finished:
            return
        self._finished = True
        try:
            self.connection.rollback()
        except self.database.driver_errors as exc:
            self.database.discard(self.connection)
            raise self.database.translate_error(exc) from exc
        except BaseException:
            self.database.release(self.connection)
            raise
        self.database.release(self.connection)


class SQLDatabase(Database):
    """Shared plumbing for DB-API backed databases"""

    dialect = ""
    placeholder = "?"
    driver_errors: Tuple[type, ...] = ()

    def prepare(self, sql: str) -> str:
        if self.placeholder == "?":
            return sql
        return sql.replace("?", self.placeholder)

    def timestamp(self, value: datetime):
        """Convert a datetime into the driver's parameter representation"""
        return value

    def begin(self) -> SQLTransaction:
        connection = self.acquire()
        try:
            self.start_transaction(connection)
        except self.driver_errors as exc:
            self.release(connection)
            raise self.translate_error(exc) from exc
        return SQLTransaction(self, connection)

    def commit_connection(self, connection) -> None:
        connection.commit()

    @abstractmethod
    def acquire(self):
        """Check a connection out of the pool"""
        pass

    @abstractmethod
    def release(self, connection) -> None:
        """Return a connection to the pool"""
        pass

    @abstractmethod
    def discard(self, connection) -> None:
        """Drop a connection left mid-transaction and replace it in the pool"""
        pass

    @abstractmethod
    def start_transaction(self, connection) -> None:
        pass

    @abstractmethod
    def translate_error(self, exc: Exception) -> StoreError:
        pass


class SQLiteDatabase(SQLDatabase):
    """
    SQLite backend

    Writers serialize through ``BEGIN IMMEDIATE``; waits are bounded by the
    busy timeout. An in-memory database is a single shared connection, so
    its transactions run one at a time.
    """

    dialect = "sqlite"
    placeholder = "?"
    driver_errors = (sqlite3.Error,)

    def __init__(self, db_path: Union[str, Path] = ":memory:", pool_size: int = 5,
                 pool_timeout: float = 30.0, busy_timeout: float = 10.0):
        self.db_path = str(db_path)
        self.pool_timeout = pool_timeout
        self.busy_timeout = busy_timeout
        if self.db_path == ":memory:":
            pool_size = 1
        self._pool: "queue.Queue[sqlite3.Connection]" = queue.Queue()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        for _ in range(pool_size):
            connection = self._connect()
            self._connections.append(connection)
            self._pool.put(connection)

    def _connect(self) -> sqlite3.Connection:
        try:
            # isolation_level=None: transactions are started explicitly
            connection = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                isolation_level=None,
                timeout=self.busy_timeout
            )
            connection.execute("PRAGMA foreign_keys = ON")
            if self.db_path != ":memory:":
                connection.execute("PRAGMA journal_mode = WAL")
                connection.execute("PRAGMA synchronous = NORMAL")
        except sqlite3.Error as exc:
            raise self.translate_error(exc) from exc
        return connection

    def timestamp(self, value: datetime) -> str:
        return value.isoformat()

    def acquire(self) -> sqlite3.Connection:
        try:
            return self._pool.get(timeout=self.pool_timeout)
        except queue.Empty:
            raise StoreError(
                StoreErrorKind.CONNECTION_FAILURE,
                f"timed out after {self.pool_timeout}s waiting for a connection"
            )

    def release(self, connection: sqlite3.Connection) -> None:
        self._pool.put(connection)

    def discard(self, connection: sqlite3.Connection) -> None:
        if self.db_path == ":memory:":
            # Closing the only connection would drop the database
            self._pool.put(connection)
            return
        logger.warning("replacing SQLite connection left in an unfinished transaction")
        with self._connections_lock:
            self._connections.remove(connection)
        connection.close()
        replacement = self._connect()
        with self._connections_lock:
            self._connections.append(replacement)
        self._pool.put(replacement)

    def start_transaction(self, connection: sqlite3.Connection) -> None:
        connection.execute("BEGIN IMMEDIATE")

    def translate_error(self, exc: Exception) -> StoreError:
        message = str(exc)
        if isinstance(exc, sqlite3.IntegrityError):
            if "UNIQUE" in message:
                return StoreError(StoreErrorKind.UNIQUE_VIOLATION, message)
            if "FOREIGN KEY" in message:
                return StoreError(StoreErrorKind.FOREIGN_KEY_VIOLATION, message)
            if "CHECK" in message:
                return StoreError(StoreErrorKind.CHECK_VIOLATION, message)
        if isinstance(exc, sqlite3.OperationalError):
            if "locked" in message or "busy" in message:
                return StoreError(StoreErrorKind.LOCK_TIMEOUT, message)
            if "unable to open" in message:
                return StoreError(StoreErrorKind.CONNECTION_FAILURE, message)
        if isinstance(exc, sqlite3.ProgrammingError) and "closed" in message:
            return StoreError(StoreErrorKind.CONNECTION_FAILURE, message)
        return StoreError(StoreErrorKind.UNKNOWN, message)

    def close(self) -> None:
        """Close every pooled SQLite connection"""
        for connection in self._connections:
            connection.close()
        self._connections = []


# SQLSTATE codes mapped onto StoreErrorKind
POSTGRES_ERROR_KINDS = {
    "23505": StoreErrorKind.UNIQUE_VIOLATION,
    "23503": StoreErrorKind.FOREIGN_KEY_VIOLATION,
    "23514": StoreErrorKind.CHECK_VIOLATION,
    "40001": StoreErrorKind.SERIALIZATION_FAILURE,
    "40P01": StoreErrorKind.DEADLOCK_DETECTED,
    "55P03": StoreErrorKind.LOCK_TIMEOUT,
    "57014": StoreErrorKind.LOCK_TIMEOUT,  # statement timeout
    "08000": StoreErrorKind.CONNECTION_FAILURE,
    "08003": StoreErrorKind.CONNECTION_FAILURE,
    "08006": StoreErrorKind.CONNECTION_FAILURE,
}


class PostgreSQLDatabase(SQLDatabase):
    """PostgreSQL backend with a threaded connection pool"""

    dialect = "postgresql"
    placeholder = "%s"

    def __init__(self, connection_string: str, pool_size: int = 5,
                 pool_timeout: float = 30.0, lock_timeout: float = 10.0):
        try:
            import psycopg2
            import psycopg2.pool
            self.psycopg2 = psycopg2
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.driver_errors = (psycopg2.Error,)
        self.connection_string = connection_string
        self.pool_timeout = pool_timeout
        self.lock_timeout = lock_timeout
        self._slots = threading.BoundedSemaphore(pool_size)
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(1, pool_size, connection_string)
        except psycopg2.Error as exc:
            raise self.translate_error(exc) from exc

    def acquire(self):
        if not self._slots.acquire(timeout=self.pool_timeout):
            raise StoreError(
                StoreErrorKind.CONNECTION_FAILURE,
                f"timed out after {self.pool_timeout}s waiting for a connection"
            )
        try:
            connection = self._pool.getconn()
        except self.psycopg2.pool.PoolError as exc:
            self._slots.release()
            raise StoreError(StoreErrorKind.CONNECTION_FAILURE, str(exc)) from exc
        except self.psycopg2.Error as exc:
            self._slots.release()
            raise self.translate_error(exc) from exc
        connection.autocommit = False
        return connection

    def release(self, connection) -> None:
        try:
            self._pool.putconn(connection)
        finally:
            self._slots.release()

    def discard(self, connection) -> None:
        logger.warning("closing PostgreSQL connection left in an unfinished transaction")
        try:
            self._pool.putconn(connection, close=True)
        finally:
            self._slots.release()

    def start_transaction(self, connection) -> None:
        # psycopg2 opens the transaction implicitly on the first statement
        cursor = connection.cursor()
        try:
            cursor.execute(
                "SELECT set_config('lock_timeout', %s, true)",
                (f"{int(self.lock_timeout * 1000)}ms",)
            )
        finally:
            cursor.close()

    def translate_error(self, exc: Exception) -> StoreError:
        message = str(exc).strip()
        kind = POSTGRES_ERROR_KINDS.get(getattr(exc, "pgcode", None))
        if kind is None:
            if isinstance(exc, (self.psycopg2.OperationalError, self.psycopg2.InterfaceError)):
                kind = StoreErrorKind.CONNECTION_FAILURE
            else:
                kind = StoreErrorKind.UNKNOWN
        return StoreError(kind, message)

    def close(self) -> None:
        """Close all pooled PostgreSQL connections"""
        self._pool.closeall()
