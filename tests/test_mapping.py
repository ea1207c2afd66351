"""Tests for canonical mapping helpers."""

from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError

from banklink.app.bank_integration.mapping import (
    DEFAULT_CATEGORY, amount_from_outflow_positive, build_transaction, map_account_type,
    map_category, parse_date, signed_amount, to_decimal
)
from banklink.app.bank_integration.schemas import CanonicalTransaction
from banklink.app.models import AccountType, TransactionKind


class TestAmounts:

    def test_to_decimal_rounds_to_cents(self):
        assert to_decimal(12.345) == Decimal("12.35")
        assert to_decimal("7") == Decimal("7.00")
        assert to_decimal(None) == Decimal("0.00")

    def test_to_decimal_rejects_garbage(self):
        with pytest.raises(ValueError):
            to_decimal("twelve")

    def test_signed_amount_uses_direction_not_sign(self):
        assert signed_amount("42.10", is_debit=True) == Decimal("-42.10")
        assert signed_amount("-42.10", is_debit=True) == Decimal("-42.10")
        assert signed_amount("-2000", is_debit=False) == Decimal("2000.00")

    def test_outflow_positive_amounts_are_negated(self):
        assert amount_from_outflow_positive(89.4) == Decimal("-89.40")
        assert amount_from_outflow_positive(-500) == Decimal("500.00")


class TestLookups:

    def test_account_type_mapping(self):
        table = {"savings": AccountType.SAVINGS}

        assert map_account_type("Savings ", table) == AccountType.SAVINGS
        assert map_account_type("brokerage", table) == AccountType.CHECKING
        assert map_account_type(None, table, default=AccountType.CREDIT_CARD) == AccountType.CREDIT_CARD

    def test_category_mapping(self):
        table = {"groceries": "Groceries"}

        assert map_category("GROCERIES", table) == "Groceries"
        assert map_category("transport", table) == "Transport"
        assert map_category("lottery", table) == DEFAULT_CATEGORY
        assert map_category(None, table) == DEFAULT_CATEGORY

    def test_parse_date(self):
        assert parse_date("2024-03-06") == date(2024, 3, 6)
        assert parse_date("2024-03-06T23:10:00Z") == date(2024, 3, 6)
        assert parse_date("not a date") is None
        assert parse_date("") is None


class TestBuildTransaction:

    def test_kind_follows_sign(self):
        debit = build_transaction("tx-1", Decimal("-5.00"), "gbp", date(2024, 1, 2), "Coffee")
        credit = build_transaction("tx-2", Decimal("5.00"), "GBP", date(2024, 1, 2), "Refund")

        assert debit.kind == TransactionKind.DEBIT
        assert debit.currency == "GBP"
        assert credit.kind == TransactionKind.CREDIT

    def test_pending_transactions_have_no_posted_date(self):
        pending = build_transaction("tx-1", Decimal("-5.00"), "GBP", date(2024, 1, 2), pending=True)
        booked = build_transaction("tx-2", Decimal("-5.00"), "GBP", date(2024, 1, 2))

        assert pending.posted_date is None
        assert booked.posted_date == date(2024, 1, 2)

    def test_description_falls_back_to_merchant(self):
        tx = build_transaction("tx-1", Decimal("-5.00"), "GBP", date(2024, 1, 2), "  ", merchant_name="Pret")
        assert tx.description == "Pret"

    def test_sign_and_kind_must_agree(self):
        with pytest.raises(ValidationError):
            CanonicalTransaction(
                provider_transaction_id="tx-1",
                amount=Decimal("10.00"),
                currency="GBP",
                kind=TransactionKind.DEBIT,
                transaction_date=date(2024, 1, 2)
            )
