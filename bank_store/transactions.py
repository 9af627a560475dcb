"""
Transaction Scope Module

Runs a unit of work against a transaction-bound data-access handle: begin,
run once, commit on success, roll back and re-raise on failure. This is the
only place that drives a store transaction's lifecycle; the autocommit
handle returned by ``Database.queries()`` runs every call through a scope.
"""

from contextlib import contextmanager
from enum import Enum
from typing import Callable, Iterator, TypeVar

from .errors import RollbackFailed, TransactionAborted
from .logging_config import get_logger, log_action
from .storage import Database, Queries, StoreTransaction


T = TypeVar("T")

logger = get_logger(__name__)


class TransactionState(Enum):
    """Lifecycle of a single transaction scope"""
    STARTED = "started"
    COMMITTED = "committed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class TransactionScope:
    """
    Atomic unit-of-work runner bound to one database handle.

    The scope itself holds no transaction: every ``run``/``atomic`` call opens
    its own, so one scope can serve concurrent callers.
    """

    def __init__(self, database: Database):
        self.database = database

    def run(self, work: Callable[[Queries], T]) -> T:
        """
        Run ``work`` inside one transaction and return its result.

        Raises:
            Exception: whatever ``work`` raised, unchanged, after rollback
            RollbackFailed: ``work`` failed and so did the rollback
            TransactionAborted: the commit failed
        """
        with self.atomic() as queries:
            return work(queries)

    @contextmanager
    def atomic(self) -> Iterator[Queries]:
        """Context manager form of ``run``; yields the transaction-bound handle"""
        tx = self.database.begin()
        logger.debug("transaction %s", TransactionState.STARTED.value)
        try:
            yield tx.queries
        except BaseException as exc:
            self._rollback(tx, exc)
            raise
        self._commit(tx)

    def _rollback(self, tx: StoreTransaction, cause: BaseException) -> None:
        try:
            tx.rollback()
        except Exception as rollback_error:
            log_action(
                logger, "error",
                f"rollback failed: {rollback_error}",
                action="rollback",
                resource="transaction",
                extra={"state": TransactionState.FAILED.value, "cause": str(cause)}
            )
            raise RollbackFailed(cause, rollback_error) from cause
        log_action(
            logger, "warning",
            f"transaction rolled back: {cause}",
            action="rollback",
            resource="transaction",
            extra={"state": TransactionState.ROLLED_BACK.value, "error": type(cause).__name__}
        )

    def _commit(self, tx: StoreTransaction) -> None:
        try:
            tx.commit()
        except Exception as exc:
            log_action(
                logger, "error",
                f"commit failed: {exc}",
                action="commit",
                resource="transaction",
                extra={"state": TransactionState.FAILED.value}
            )
            raise TransactionAborted(f"commit failed: {exc}", exc) from exc
        logger.debug("transaction %s", TransactionState.COMMITTED.value)


class AutocommitQueries(Queries):
    """Runs each data-access call in a transaction scope of its own"""

    def __init__(self, database: Database):
        self.database = database
        self.scope = TransactionScope(database)

    def _run(self, call: Callable[[Queries], T]) -> T:
        return self.scope.run(call)

    def create_account(self, owner, balance, currency):
        return self._run(lambda q: q.create_account(owner, balance, currency))

    def get_account(self, account_id):
        return self._run(lambda q: q.get_account(account_id))

    def list_accounts(self, owner, limit, offset):
        return self._run(lambda q: q.list_accounts(owner, limit, offset))

    def update_account(self, account_id, balance):
        return self._run(lambda q: q.update_account(account_id, balance))

    def add_account_balance(self, account_id, amount):
        return self._run(lambda q: q.add_account_balance(account_id, amount))

    def delete_account(self, account_id):
        return self._run(lambda q: q.delete_account(account_id))

    def create_entry(self, account_id, amount):
        return self._run(lambda q: q.create_entry(account_id, amount))

    def get_entry(self, entry_id):
        return self._run(lambda q: q.get_entry(entry_id))

    def list_entries(self, account_id, limit, offset):
        return self._run(lambda q: q.list_entries(account_id, limit, offset))

    def delete_entries(self, account_id):
        return self._run(lambda q: q.delete_entries(account_id))

    def create_transfer(self, from_account_id, to_account_id, amount):
        return self._run(lambda q: q.create_transfer(from_account_id, to_account_id, amount))

    def get_transfer(self, transfer_id):
        return self._run(lambda q: q.get_transfer(transfer_id))

    def list_transfers(self, from_account_id, to_account_id, limit, offset):
        return self._run(lambda q: q.list_transfers(from_account_id, to_account_id, limit, offset))

    def delete_transfers(self, account_id):
        return self._run(lambda q: q.delete_transfers(account_id))
