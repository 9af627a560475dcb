"""
Data Model Module

Accounts, ledger entries and transfers as immutable snapshots returned by the
storage layer, plus the parameter and result records of a coordinated
transfer. Monetary values are integers in the currency's smallest unit.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict

from .currency import Currency


@dataclass(frozen=True)
class StorageRecord:
    """Base class for all stored records"""
    id: int
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-ready dictionary"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        if isinstance(data.get('created_at'), str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        return cls(**data)


@dataclass(frozen=True)
class Account(StorageRecord):
    """Bank account holding a balance in a single currency"""
    owner: str
    balance: int
    currency: Currency

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        data = dict(data)
        if isinstance(data.get('currency'), str):
            data['currency'] = Currency.from_code(data['currency'])
        return super().from_dict(data)


@dataclass(frozen=True)
class Entry(StorageRecord):
    """
    Immutable ledger line against one account.
    Negative amounts are debits, positive amounts are credits.
    """
    account_id: int
    amount: int

    @property
    def is_debit(self) -> bool:
        return self.amount < 0

    @property
    def is_credit(self) -> bool:
        return self.amount > 0


@dataclass(frozen=True)
class Transfer(StorageRecord):
    """Immutable record of money moved from one account to another"""
    from_account_id: int
    to_account_id: int
    amount: int

    def involves(self, account_id: int) -> bool:
        """Check if the account is the source or the destination"""
        return account_id in (self.from_account_id, self.to_account_id)


@dataclass(frozen=True)
class TransferTxParams:
    """Input of a coordinated transfer"""
    from_account_id: int
    to_account_id: int
    amount: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TransferTxResult:
    """Everything a committed transfer created or changed"""
    transfer: Transfer
    from_account: Account
    to_account: Account
    from_entry: Entry
    to_entry: Entry

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transfer': self.transfer.to_dict(),
            'from_account': self.from_account.to_dict(),
            'to_account': self.to_account.to_dict(),
            'from_entry': self.from_entry.to_dict(),
            'to_entry': self.to_entry.to_dict()
        }
