"""
Tests for data models and currency helpers
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from bank_store.currency import Currency, format_amount, to_major_units
from bank_store.models import Account, Entry, Transfer, TransferTxParams, TransferTxResult


NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestCurrency:
    """Test currency helpers"""

    def test_from_code(self):
        assert Currency.from_code("usd") == Currency.USD
        assert Currency.from_code("EUR").precision == 2

    def test_unsupported_code(self):
        with pytest.raises(ValueError, match="Unsupported currency"):
            Currency.from_code("JPY")

    def test_to_major_units(self):
        assert to_major_units(12345, Currency.CAD) == Decimal("123.45")
        assert to_major_units(-5, Currency.USD) == Decimal("-0.05")

    def test_format_amount(self):
        assert format_amount(150, Currency.USD) == "USD 1.50"
        assert format_amount(123456789, Currency.EUR) == "EUR 1,234,567.89"


class TestModels:
    """Test record serialization"""

    def test_account_to_dict(self):
        account = Account(id=1, created_at=NOW, owner="alice", balance=100, currency=Currency.USD)

        assert account.to_dict() == {
            "id": 1,
            "created_at": "2024-03-01T12:00:00+00:00",
            "owner": "alice",
            "balance": 100,
            "currency": "USD"
        }
        assert Account.from_dict(account.to_dict()) == account

    def test_entry_direction(self):
        debit = Entry(id=1, created_at=NOW, account_id=1, amount=-10)
        credit = Entry(id=2, created_at=NOW, account_id=2, amount=10)

        assert debit.is_debit and not debit.is_credit
        assert credit.is_credit and not credit.is_debit

    def test_transfer_involves(self):
        transfer = Transfer(id=1, created_at=NOW, from_account_id=1, to_account_id=2, amount=10)

        assert transfer.involves(1)
        assert transfer.involves(2)
        assert not transfer.involves(3)

    def test_transfer_result_to_dict(self):
        transfer = Transfer(id=9, created_at=NOW, from_account_id=1, to_account_id=2, amount=30)
        result = TransferTxResult(
            transfer=transfer,
            from_account=Account(id=1, created_at=NOW, owner="a", balance=70, currency=Currency.USD),
            to_account=Account(id=2, created_at=NOW, owner="b", balance=30, currency=Currency.USD),
            from_entry=Entry(id=1, created_at=NOW, account_id=1, amount=-30),
            to_entry=Entry(id=2, created_at=NOW, account_id=2, amount=30)
        )

        data = result.to_dict()
        assert data["transfer"]["amount"] == 30
        assert data["from_account"]["currency"] == "USD"
        assert data["to_entry"]["amount"] == 30

    def test_params_are_immutable(self):
        params = TransferTxParams(from_account_id=1, to_account_id=2, amount=5)

        assert params.to_dict() == {"from_account_id": 1, "to_account_id": 2, "amount": 5}
        with pytest.raises(AttributeError):
            params.amount = 10
