"""
Transaction Coordinator Module

Multi-row money movements executed as single atomic units: a transfer writes
the transfer record, a debit and a credit entry and both balance changes; an
account deletion removes the account together with its ledger rows.

Balance adjustments always lock the account with the lower id first, so two
transfers running in opposite directions between the same accounts acquire
row locks in the same order and cannot deadlock.
"""

from typing import Tuple

from .logging_config import get_logger, log_action
from .models import Account, TransferTxParams, TransferTxResult
from .storage import Database, Queries
from .transactions import TransactionScope


logger = get_logger(__name__)


def add_money(queries: Queries, first_account_id: int, first_amount: int,
              second_account_id: int, second_amount: int) -> Tuple[Account, Account]:
    """Apply two balance deltas in the given order, returning both accounts"""
    first = queries.add_account_balance(first_account_id, first_amount)
    second = queries.add_account_balance(second_account_id, second_amount)
    return first, second


class TransactionCoordinator:
    """
    Coordinates transfers and cascading account deletion.

    Preconditions such as positive amounts, matching currencies and sufficient
    funds are the caller's to check; the coordinator guarantees atomicity and
    lock ordering only.
    """

    def __init__(self, database: Database):
        self.scope = TransactionScope(database)

    def transfer_money(self, params: TransferTxParams) -> TransferTxResult:
        """Move ``params.amount`` from one account to another"""
        result = self.scope.run(lambda queries: self._transfer(queries, params))

        log_action(
            logger, "info",
            f"transfer {result.transfer.id} committed",
            action="transfer",
            resource="transfer",
            extra=params.to_dict()
        )
        return result

    @staticmethod
    def _transfer(queries: Queries, params: TransferTxParams) -> TransferTxResult:
        transfer = queries.create_transfer(
            params.from_account_id, params.to_account_id, params.amount
        )
        from_entry = queries.create_entry(params.from_account_id, -params.amount)
        to_entry = queries.create_entry(params.to_account_id, params.amount)

        if params.from_account_id < params.to_account_id:
            from_account, to_account = add_money(
                queries,
                params.from_account_id, -params.amount,
                params.to_account_id, params.amount
            )
        else:
            to_account, from_account = add_money(
                queries,
                params.to_account_id, params.amount,
                params.from_account_id, -params.amount
            )

        return TransferTxResult(
            transfer=transfer,
            from_account=from_account,
            to_account=to_account,
            from_entry=from_entry,
            to_entry=to_entry
        )

    def delete_account_cascade(self, account_id: int) -> None:
        """Delete an account with every entry it owns and every transfer it took part in"""
        counts = self.scope.run(lambda queries: self._delete_account(queries, account_id))

        log_action(
            logger, "info",
            f"account {account_id} deleted",
            action="delete_account",
            resource="account",
            extra={"account_id": account_id, "entries": counts[0], "transfers": counts[1]}
        )

    @staticmethod
    def _delete_account(queries: Queries, account_id: int) -> Tuple[int, int]:
        entries = queries.delete_entries(account_id)
        transfers = queries.delete_transfers(account_id)
        queries.delete_account(account_id)
        return entries, transfers
