"""
Mock Banking Provider

Deterministic reference implementation for development and tests. Produces
synthetic but reproducible data without network access: the same account and
day always yield the same transaction ids and amounts.
"""

import hashlib
import random
from typing import Dict, Any, List, Optional, Iterable
from datetime import date, datetime, timedelta, timezone
from urllib.parse import urlencode

from banklink.app.models import AccountType, ProviderKind
from ..errors import InvalidCredentialError, ProviderUnavailableError
from ..mapping import map_account_type, map_category, parse_date, signed_amount, build_transaction, to_decimal
from ..schemas import (
    AccountBalance, AuthInitiation, CanonicalAccount, CanonicalTransaction,
    ClientHandleAuth, CredentialGrant, CredentialRefresh, RedirectAuth
)
from .base import BaseBankProvider

CODE_PREFIX = "mock-code-"
PUBLIC_TOKEN_PREFIX = "public-mock-"

ACCOUNT_TYPES = {
    "current": AccountType.CHECKING,
    "savings": AccountType.SAVINGS,
    "card": AccountType.CREDIT_CARD,
}

CATEGORIES = {
    "eat": "Food & Dining",
    "shop": "Shopping",
    "travel": "Transport",
    "utility": "Bills",
    "fun": "Entertainment",
    "grocery": "Groceries",
    "salary": "Income",
    "interest": "Income",
}

MERCHANTS = [
    ("Tesco", "grocery"),
    ("Sainsburys", "grocery"),
    ("Amazon", "shop"),
    ("Starbucks", "eat"),
    ("Uber", "travel"),
    ("Netflix", "fun"),
    ("Spotify", "fun"),
    ("Costa Coffee", "eat"),
    ("Pret A Manger", "eat"),
    ("Transport for London", "travel"),
    ("Thames Water", "utility"),
]

DEFAULT_ACCOUNTS = [
    {
        "ref": "mock_checking_1",
        "name": "Current Account",
        "type": "current",
        "currency": "GBP",
        "balance": "2547.83",
        "available": "2547.83",
        "number": "12341234",
    },
    {
        "ref": "mock_savings_1",
        "name": "Savings Account",
        "type": "savings",
        "currency": "GBP",
        "balance": "10250.00",
        "available": "10250.00",
        "number": "56785678",
    },
]


class MockBankingProvider(BaseBankProvider):
    """
    Reference provider satisfying the full provider contract.

    Can act as either integration shape (``auth_style='redirect'`` or
    ``'client_handle'``). ``fail_account_refs`` makes data calls for the listed
    accounts raise ProviderUnavailableError, to exercise partial failures.
    """

    kind = ProviderKind.MOCK

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        auth_style: str = "redirect",
        accounts: Optional[List[Dict[str, Any]]] = None,
        fail_account_refs: Iterable[str] = (),
        today: Optional[date] = None
    ):
        super().__init__(config)
        if auth_style not in ("redirect", "client_handle"):
            raise ValueError(f"Unknown auth style: {auth_style}")
        self.auth_style = auth_style
        self.redirect_uri = self.get_config_value('redirect_uri', 'http://localhost:3000/api/banking/callback')
        self.accounts = DEFAULT_ACCOUNTS if accounts is None else accounts
        self.fail_account_refs = set(fail_account_refs)
        self._today = today
        self.revoked_tokens = []

    def today(self) -> date:
        return self._today or date.today()

    async def initiate_auth(self, user_id: str, correlation_state: str) -> AuthInitiation:
        if self.auth_style == "client_handle":
            return ClientHandleAuth(
                token=f"link-mock-{_digest(user_id, correlation_state)}",
                expires_at=datetime.now(timezone.utc) + timedelta(hours=4)
            )

        # Redirect straight back to the callback, as if the user had consented
        query = urlencode({'code': f"{CODE_PREFIX}{correlation_state}", 'state': correlation_state})
        return RedirectAuth(url=f"{self.redirect_uri}?{query}")

    async def complete_auth(self, code_or_handle: str) -> CredentialGrant:
        prefix = PUBLIC_TOKEN_PREFIX if self.auth_style == "client_handle" else CODE_PREFIX
        if not code_or_handle or not code_or_handle.startswith(prefix):
            raise InvalidCredentialError("Mock provider rejected authorization code", provider=self.kind.value)

        digest = _digest(code_or_handle)
        return CredentialGrant(
            access_token=f"mock-access-{digest}",
            refresh_token=f"mock-refresh-{digest}",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            provider_account_ref=f"mock-item-{digest[:8]}"
        )

    async def refresh_credential(self, refresh_token: str) -> CredentialRefresh:
        if not refresh_token or not refresh_token.startswith("mock-refresh-"):
            raise InvalidCredentialError("Mock provider rejected refresh token", provider=self.kind.value)

        return CredentialRefresh(
            access_token=f"mock-access-{_digest(refresh_token, datetime.now(timezone.utc).isoformat())}",
            refresh_token=refresh_token,
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1)
        )

    async def list_accounts(self, access_token: str) -> List[CanonicalAccount]:
        self._check_token(access_token)
        return [
            CanonicalAccount(
                provider_account_ref=account['ref'],
                account_name=account['name'],
                account_type=map_account_type(account['type'], ACCOUNT_TYPES),
                currency=account['currency'],
                current_balance=to_decimal(account['balance']),
                available_balance=to_decimal(account['available']),
                account_mask=account.get('number', '')[-4:] or None
            )
            for account in self.accounts
        ]

    async def get_account_balance(self, access_token: str, account_ref: str) -> AccountBalance:
        account = self._account(access_token, account_ref)
        return AccountBalance(
            current=to_decimal(account['balance']),
            available=to_decimal(account['available'])
        )

    async def list_transactions(
        self,
        access_token: str,
        account_ref: str,
        from_date: date,
        to_date: date
    ) -> List[CanonicalTransaction]:
        account = self._account(access_token, account_ref)

        transactions = []
        for raw in self._raw_transactions(account):
            tx_date = parse_date(raw['date'])
            if tx_date is None or not (from_date <= tx_date <= to_date):
                continue
            transactions.append(build_transaction(
                provider_transaction_id=raw['id'],
                amount=signed_amount(raw['amount'], raw['direction'] == 'out'),
                currency=account['currency'],
                transaction_date=tx_date,
                description=raw['text'],
                merchant_name=raw.get('merchant'),
                category=map_category(raw['code'], CATEGORIES),
                pending=raw['pending']
            ))
        return transactions

    async def revoke(self, access_token: str) -> None:
        self._check_token(access_token)
        self.revoked_tokens.append(access_token)

    def _check_token(self, access_token: str):
        if not access_token or not access_token.startswith("mock-access-"):
            raise InvalidCredentialError("Mock provider rejected access token", provider=self.kind.value)

    def _account(self, access_token: str, account_ref: str) -> Dict[str, Any]:
        self._check_token(access_token)
        if account_ref in self.fail_account_refs:
            raise ProviderUnavailableError(
                f"Mock provider unavailable for account {account_ref}", provider=self.kind.value, status_code=503
            )
        for account in self.accounts:
            if account['ref'] == account_ref:
                return account
        raise InvalidCredentialError(f"Unknown mock account {account_ref}", provider=self.kind.value, status_code=404)

    def _raw_transactions(self, account: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Provider-native rows: unsigned amounts with an in/out direction flag.

        Covers the trailing 90 days: 2-4 card payments per day seeded by
        (account, day), plus fixed entries for each account type.
        """
        today = self.today()
        ref = account['ref']
        rows = []

        if account['type'] == 'current':
            for offset in range(90):
                day = today - timedelta(days=offset)
                rng = random.Random(f"{ref}:{day.isoformat()}")
                for index in range(rng.randint(2, 4)):
                    merchant, code = rng.choice(MERCHANTS)
                    rows.append({
                        'id': f"{ref}-{day.isoformat()}-{index}",
                        'date': day.isoformat(),
                        'amount': f"{rng.uniform(5, 55):.2f}",
                        'direction': 'out',
                        'text': f"Payment to {merchant}",
                        'merchant': merchant,
                        'code': code,
                        'pending': offset == 0,
                    })

            rows.append({
                'id': f"{ref}-weekly-shop-{(today - timedelta(days=1)).isoformat()}",
                'date': (today - timedelta(days=1)).isoformat(),
                'amount': "42.10",
                'direction': 'out',
                'text': "Weekly shop",
                'merchant': "Tesco",
                'code': 'grocery',
                'pending': False,
            })
            rows.append({
                'id': f"{ref}-salary-{(today - timedelta(days=3)).isoformat()}",
                'date': (today - timedelta(days=3)).isoformat(),
                'amount': "2000.00",
                'direction': 'in',
                'text': "Salary Payment",
                'merchant': "Employer Ltd",
                'code': 'salary',
                'pending': False,
            })
        else:
            for offset in range(0, 90, 7):
                day = today - timedelta(days=offset)
                rows.append({
                    'id': f"{ref}-interest-{day.isoformat()}",
                    'date': day.isoformat(),
                    'amount': "12.50",
                    'direction': 'in',
                    'text': "Interest",
                    'merchant': None,
                    'code': 'interest',
                    'pending': False,
                })
                rows.append({
                    'id': f"{ref}-transfer-{day.isoformat()}",
                    'date': day.isoformat(),
                    'amount': "100.00",
                    'direction': 'out',
                    'text': "Transfer to current account",
                    'merchant': None,
                    'code': 'transfer',
                    'pending': False,
                })

        return rows


def _digest(*parts: str) -> str:
    return hashlib.sha256("|".join(parts).encode()).hexdigest()[:24]
