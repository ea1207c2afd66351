"""
Canonical Mapping

Helpers every provider uses to turn provider-native accounts and transactions
into the canonical model. Sign convention: debit (money out) is negative,
credit (money in) is positive.
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional

from banklink.app.models import AccountType, TransactionKind
from .schemas import CanonicalTransaction

CENT = Decimal("0.01")

DEFAULT_CATEGORY = "Other"

CANONICAL_CATEGORIES = (
    "Food & Dining",
    "Groceries",
    "Shopping",
    "Transport",
    "Bills",
    "Entertainment",
    "Income",
    "Transfer",
    "Cash",
    "Fees",
    DEFAULT_CATEGORY,
)


def to_decimal(value: Any) -> Decimal:
    """Convert a provider number or string to a 2-place Decimal."""
    if value is None or value == "":
        return Decimal("0.00")
    try:
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid monetary amount: {value!r}") from e


def signed_amount(magnitude: Any, is_debit: bool) -> Decimal:
    """Apply the canonical sign to an amount whose direction is given separately."""
    amount = abs(to_decimal(magnitude))
    return -amount if is_debit else amount


def amount_from_outflow_positive(value: Any) -> Decimal:
    """Convert a provider amount where positive means money leaving the account."""
    return -to_decimal(value)


def kind_for_amount(amount: Decimal) -> TransactionKind:
    return TransactionKind.DEBIT if amount < 0 else TransactionKind.CREDIT


def map_account_type(
    native_type: Optional[str],
    table: Dict[str, AccountType],
    default: AccountType = AccountType.CHECKING
) -> AccountType:
    if not native_type:
        return default
    return table.get(native_type.strip().lower(), default)


def map_category(native_category: Optional[str], table: Dict[str, str]) -> str:
    if not native_category:
        return DEFAULT_CATEGORY
    key = native_category.strip().lower()
    if key in table:
        return table[key]
    # Already canonical (e.g. a provider that uses our own labels)
    for category in CANONICAL_CATEGORIES:
        if category.lower() == key:
            return category
    return DEFAULT_CATEGORY


def parse_date(value: Any) -> Optional[date]:
    """Parse ``YYYY-MM-DD`` or an ISO timestamp into a date."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value)
    try:
        if len(text) > 10:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        return date.fromisoformat(text)
    except ValueError:
        return None


def build_transaction(
    provider_transaction_id: str,
    amount: Decimal,
    currency: str,
    transaction_date: date,
    description: Optional[str] = None,
    merchant_name: Optional[str] = None,
    category: str = DEFAULT_CATEGORY,
    posted_date: Optional[date] = None,
    pending: bool = False
) -> CanonicalTransaction:
    """
    Assemble a canonical transaction from already-signed values.

    The kind is derived from the sign so the two can never disagree. A
    transaction without a description falls back to its merchant name.
    """
    description = (description or "").strip()
    merchant_name = merchant_name.strip() if merchant_name else None
    if not description and merchant_name:
        description = merchant_name

    return CanonicalTransaction(
        provider_transaction_id=provider_transaction_id,
        amount=amount,
        currency=(currency or "").upper(),
        description=description,
        merchant_name=merchant_name or None,
        category=category or DEFAULT_CATEGORY,
        kind=kind_for_amount(amount),
        transaction_date=transaction_date,
        posted_date=None if pending else (posted_date or transaction_date),
        pending=pending,
    )
