"""
Bank Service Module

Caller-side policy in front of the transaction coordinator: ownership,
currency and funds checks before a transfer, ownership checks before a
cascading delete, and page-size normalization for listings.
"""

from typing import List, Optional, Tuple

from .config import BankStoreConfig, get_config
from .coordinator import TransactionCoordinator
from .currency import Currency, format_amount
from .errors import RejectionReason, TransferRejected
from .logging_config import get_logger, log_action
from .models import Account, Entry, Transfer, TransferTxParams, TransferTxResult
from .storage import Database


logger = get_logger(__name__)


class BankService:
    """Validates requests and hands money movements to the coordinator"""

    def __init__(self, database: Database, coordinator: Optional[TransactionCoordinator] = None,
                 config: Optional[BankStoreConfig] = None):
        self.database = database
        self.queries = database.queries()
        self.coordinator = coordinator or TransactionCoordinator(database)
        self.config = config or get_config()

    def normalize_page(self, limit: Optional[int], offset: Optional[int]) -> Tuple[int, int]:
        """Clamp limit into 1..max_page_size (default when unset) and offset to >= 0"""
        if limit is None or limit <= 0:
            limit = self.config.default_page_size
        elif limit > self.config.max_page_size:
            limit = self.config.max_page_size
        if offset is None or offset < 0:
            offset = 0
        return limit, offset

    # Accounts

    def open_account(self, owner: str, currency: Currency) -> Account:
        """Open an empty account; one account per owner and currency"""
        account = self.queries.create_account(owner, 0, currency)
        log_action(
            logger, "info", f"account {account.id} opened",
            action="open_account", resource="account",
            extra={"account_id": account.id, "currency": currency.code}
        )
        return account

    def get_account(self, owner: str, account_id: int) -> Account:
        account = self.queries.get_account(account_id)
        self._check_owner(account, owner)
        return account

    def list_accounts(self, owner: str, limit: Optional[int] = None,
                      offset: Optional[int] = None) -> List[Account]:
        limit, offset = self.normalize_page(limit, offset)
        return self.queries.list_accounts(owner, limit, offset)

    def delete_account(self, owner: str, account_id: int) -> None:
        """Delete an owner's account together with its ledger rows"""
        account = self.queries.get_account(account_id)
        self._check_owner(account, owner)
        self.coordinator.delete_account_cascade(account_id)

    # Transfers

    def create_transfer(self, owner: str, from_account_id: int, to_account_id: int,
                        amount: int, currency: Currency) -> TransferTxResult:
        """
        Validate a transfer request and execute it.

        Raises:
            TransferRejected: the request breaks a policy rule
            StoreError: NOT_FOUND when either account does not exist
        """
        if amount <= 0:
            raise TransferRejected(
                RejectionReason.INVALID_AMOUNT,
                f"transfer amount must be positive, got {amount}"
            )
        if from_account_id == to_account_id:
            raise TransferRejected(
                RejectionReason.SAME_ACCOUNT,
                "cannot transfer to the same account",
                account_id=from_account_id
            )

        from_account = self._validate_account(from_account_id, currency)
        self._check_owner(from_account, owner, reason_message="wrong origin account")
        if from_account.balance < amount:
            raise TransferRejected(
                RejectionReason.INSUFFICIENT_FUNDS,
                f"not enough funds in account [{from_account_id}]: "
                f"balance {format_amount(from_account.balance, currency)}, "
                f"requested {format_amount(amount, currency)}",
                account_id=from_account_id
            )
        self._validate_account(to_account_id, currency)

        return self.coordinator.transfer_money(TransferTxParams(
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            amount=amount
        ))

    def get_transfer(self, transfer_id: int) -> Transfer:
        return self.queries.get_transfer(transfer_id)

    def list_transfers(self, from_account_id: Optional[int] = None,
                       to_account_id: Optional[int] = None,
                       limit: Optional[int] = None,
                       offset: Optional[int] = None) -> List[Transfer]:
        """List transfers leaving ``from_account_id`` or arriving at ``to_account_id``"""
        if not from_account_id and not to_account_id:
            raise TransferRejected(
                RejectionReason.MISSING_ACCOUNT_FILTER,
                "params for from or to account missing"
            )
        limit, offset = self.normalize_page(limit, offset)
        return self.queries.list_transfers(from_account_id, to_account_id, limit, offset)

    def list_entries(self, account_id: int, limit: Optional[int] = None,
                     offset: Optional[int] = None) -> List[Entry]:
        limit, offset = self.normalize_page(limit, offset)
        return self.queries.list_entries(account_id, limit, offset)

    def _validate_account(self, account_id: int, currency: Currency) -> Account:
        account = self.queries.get_account(account_id)
        if account.currency != currency:
            raise TransferRejected(
                RejectionReason.CURRENCY_MISMATCH,
                f"account [{account_id}] currency mismatch: "
                f"transaction must be in {account.currency.code}",
                account_id=account_id
            )
        return account

    @staticmethod
    def _check_owner(account: Account, owner: str, reason_message: str = "wrong account id") -> None:
        if account.owner != owner:
            raise TransferRejected(
                RejectionReason.WRONG_OWNER,
                reason_message,
                account_id=account.id
            )
