"""
Test suite for the transaction scope

Covers commit on success, rollback and re-raise on failure, commit failures
surfaced as TransactionAborted and rollback failures surfaced as RollbackFailed.
"""

import pytest

from bank_store.currency import Currency
from bank_store.errors import (
    RollbackFailed, StoreError, StoreErrorKind, TransactionAborted
)
from bank_store.storage import Database, InMemoryDatabase, StoreTransaction
from bank_store.transactions import TransactionScope

from conftest import random_owner


class FakeTransaction(StoreTransaction):
    """Transaction whose commit or rollback can be made to fail"""

    def __init__(self, commit_error=None, rollback_error=None, queries=None):
        self.commit_error = commit_error
        self.rollback_error = rollback_error
        self.committed = False
        self.rolled_back = False
        self._queries = queries if queries is not None else object()

    @property
    def queries(self):
        return self._queries

    def commit(self):
        if self.commit_error is not None:
            raise self.commit_error
        self.committed = True

    def rollback(self):
        if self.rollback_error is not None:
            raise self.rollback_error
        self.rolled_back = True


class MissingAccountQueries:
    """Queries stub whose account lookups always miss"""

    def get_account(self, account_id):
        raise StoreError.not_found("account", account_id)

    def create_account(self, owner, balance, currency):
        return {"owner": owner, "balance": balance, "currency": currency}


class FakeDatabase(Database):
    """Hands out a single prepared FakeTransaction"""

    def __init__(self, tx: FakeTransaction):
        self.tx = tx
        self.begun = 0

    def begin(self):
        self.begun += 1
        return self.tx


class TestTransactionScope:
    """Test TransactionScope against the in-memory store"""

    def setup_method(self):
        self.database = InMemoryDatabase()
        self.scope = TransactionScope(self.database)

    def test_successful_work_is_committed(self):
        account = self.scope.run(
            lambda q: q.create_account(random_owner(), 100, Currency.USD)
        )

        assert self.database.queries().get_account(account.id) == account

    def test_result_is_returned(self):
        assert self.scope.run(lambda q: 42) == 42

    def test_failed_work_is_rolled_back(self):
        account = self.database.queries().create_account(random_owner(), 100, Currency.USD)

        def work(queries):
            queries.add_account_balance(account.id, 500)
            queries.create_entry(account.id, 500)
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            self.scope.run(work)

        queries = self.database.queries()
        assert queries.get_account(account.id).balance == 100
        assert queries.list_entries(account.id, limit=10, offset=0) == []

    def test_work_error_is_reraised_unchanged(self):
        error = StoreError(StoreErrorKind.NOT_FOUND, "account 7 not found")

        def work(queries):
            raise error

        with pytest.raises(StoreError) as exc_info:
            self.scope.run(work)
        assert exc_info.value is error

    def test_work_runs_exactly_once(self):
        calls = []

        def work(queries):
            calls.append(queries)
            raise RuntimeError("fail")

        with pytest.raises(RuntimeError):
            self.scope.run(work)
        assert len(calls) == 1

    def test_atomic_context_manager(self):
        owner = random_owner()
        with self.scope.atomic() as queries:
            first = queries.create_account(owner, 0, Currency.USD)
            second = queries.create_account(owner, 0, Currency.EUR)

        listed = self.database.queries().list_accounts(owner, limit=10, offset=0)
        assert [a.id for a in listed] == [first.id, second.id]

    def test_atomic_rolls_back_on_error(self):
        owner = random_owner()
        with pytest.raises(KeyError):
            with self.scope.atomic() as queries:
                queries.create_account(owner, 0, Currency.USD)
                raise KeyError("missing")

        assert self.database.queries().list_accounts(owner, limit=10, offset=0) == []

    def test_commit_constraint_failure_is_aborted(self):
        account = self.database.queries().create_account(random_owner(), 0, Currency.USD)

        with pytest.raises(TransactionAborted) as exc_info:
            with self.scope.atomic() as queries:
                queries.create_entry(account.id, 10)
                # Account disappears before this transaction commits
                self.database.queries().delete_account(account.id)

        assert exc_info.value.kind == StoreErrorKind.FOREIGN_KEY_VIOLATION
        assert isinstance(exc_info.value.cause, StoreError)


class TestTransactionScopeFailures:
    """Commit and rollback failures reported by the store"""

    def test_commit_failure_raises_transaction_aborted(self):
        cause = StoreError(StoreErrorKind.SERIALIZATION_FAILURE, "could not serialize access")
        database = FakeDatabase(FakeTransaction(commit_error=cause))
        scope = TransactionScope(database)

        with pytest.raises(TransactionAborted) as exc_info:
            scope.run(lambda q: "done")

        assert exc_info.value.cause is cause
        assert exc_info.value.kind == StoreErrorKind.SERIALIZATION_FAILURE
        assert not isinstance(exc_info.value, RollbackFailed)

    def test_non_store_commit_failure_has_unknown_kind(self):
        database = FakeDatabase(FakeTransaction(commit_error=OSError("disk full")))
        scope = TransactionScope(database)

        with pytest.raises(TransactionAborted) as exc_info:
            scope.run(lambda q: None)
        assert exc_info.value.kind == StoreErrorKind.UNKNOWN

    def test_rollback_failure_reports_both_errors(self):
        rollback_error = StoreError(StoreErrorKind.CONNECTION_FAILURE, "connection lost")
        tx = FakeTransaction(rollback_error=rollback_error)
        scope = TransactionScope(FakeDatabase(tx))
        cause = ValueError("work failed")

        def work(queries):
            raise cause

        with pytest.raises(RollbackFailed) as exc_info:
            scope.run(work)

        error = exc_info.value
        assert error.cause is cause
        assert error.rollback_error is rollback_error
        assert error.kind == StoreErrorKind.UNKNOWN
        assert str(error) == (
            "tx error: work failed, rollback error: connection_failure: connection lost"
        )

    def test_successful_rollback_does_not_commit(self):
        tx = FakeTransaction()
        scope = TransactionScope(FakeDatabase(tx))

        def work(queries):
            raise ValueError("x")

        with pytest.raises(ValueError):
            scope.run(work)

        assert tx.rolled_back
        assert not tx.committed

    def test_each_run_begins_a_new_transaction(self):
        database = FakeDatabase(FakeTransaction())
        scope = TransactionScope(database)

        scope.run(lambda q: None)
        scope.run(lambda q: None)
        assert database.begun == 2


class TestAutocommitQueries:
    """The autocommit handle follows the same error rules as a scope"""

    def test_rollback_failure_keeps_the_lookup_error(self):
        rollback_error = StoreError(StoreErrorKind.CONNECTION_FAILURE, "connection lost")
        tx = FakeTransaction(rollback_error=rollback_error, queries=MissingAccountQueries())
        queries = FakeDatabase(tx).queries()

        with pytest.raises(RollbackFailed) as exc_info:
            queries.get_account(7)

        assert isinstance(exc_info.value.cause, StoreError)
        assert exc_info.value.cause.kind == StoreErrorKind.NOT_FOUND
        assert exc_info.value.rollback_error is rollback_error

    def test_lookup_error_is_reraised_unchanged(self):
        tx = FakeTransaction(queries=MissingAccountQueries())

        with pytest.raises(StoreError) as exc_info:
            FakeDatabase(tx).queries().get_account(7)

        assert exc_info.value.kind == StoreErrorKind.NOT_FOUND
        assert tx.rolled_back
        assert not tx.committed

    def test_commit_failure_is_aborted(self):
        cause = StoreError(StoreErrorKind.UNIQUE_VIOLATION, "duplicate owner and currency")
        tx = FakeTransaction(commit_error=cause, queries=MissingAccountQueries())

        with pytest.raises(TransactionAborted) as exc_info:
            FakeDatabase(tx).queries().create_account("alice", 0, Currency.USD)

        assert exc_info.value.cause is cause
        assert exc_info.value.kind == StoreErrorKind.UNIQUE_VIOLATION
