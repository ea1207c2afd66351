"""
Plaid Provider Implementation

US/Canada aggregation API using Plaid Link: we create a short-lived link token,
the client-side Link widget turns it into a public token, and the public token
is exchanged server-side for a permanent access token.

Documentation: https://plaid.com/docs/api/
"""

import logging
from typing import Dict, Any, List, Optional
from datetime import date, datetime

import httpx

from banklink.app.models import AccountType, ProviderKind
from ..errors import InvalidCredentialError, ProviderError, ProviderUnavailableError, UnsupportedOperationError
from ..mapping import amount_from_outflow_positive, build_transaction, map_account_type, map_category, parse_date, to_decimal
from ..schemas import (
    AccountBalance, AuthInitiation, CanonicalAccount, CanonicalTransaction,
    ClientHandleAuth, CredentialGrant, CredentialRefresh
)
from .base import BaseBankProvider

logger = logging.getLogger(__name__)

ENVIRONMENTS = {
    'production': 'https://production.plaid.com',
    'sandbox': 'https://sandbox.plaid.com',
}

PAGE_SIZE = 500
MAX_PAGES = 100

# Plaid error codes that mean the user must re-authorize
CREDENTIAL_ERROR_CODES = {
    'INVALID_ACCESS_TOKEN',
    'INVALID_PUBLIC_TOKEN',
    'ITEM_LOGIN_REQUIRED',
    'ITEM_NOT_FOUND',
    'ACCESS_NOT_GRANTED',
    'INVALID_CREDENTIALS',
}

TRANSIENT_ERROR_TYPES = {'RATE_LIMIT_EXCEEDED', 'API_ERROR', 'INSTITUTION_ERROR'}

# "subtype" wins over "type" so savings/money market become savings
ACCOUNT_SUBTYPES = {
    'savings': AccountType.SAVINGS,
    'money market': AccountType.SAVINGS,
    'cd': AccountType.SAVINGS,
    'credit card': AccountType.CREDIT_CARD,
    'paypal': AccountType.CHECKING,
    'checking': AccountType.CHECKING,
}

ACCOUNT_TYPES = {
    'credit': AccountType.CREDIT_CARD,
    'depository': AccountType.CHECKING,
}

# personal_finance_category.primary
PERSONAL_FINANCE_CATEGORIES = {
    'food_and_drink': 'Food & Dining',
    'general_merchandise': 'Shopping',
    'transportation': 'Transport',
    'travel': 'Transport',
    'rent_and_utilities': 'Bills',
    'loan_payments': 'Bills',
    'entertainment': 'Entertainment',
    'income': 'Income',
    'transfer_in': 'Transfer',
    'transfer_out': 'Transfer',
    'bank_fees': 'Fees',
}

# Legacy category hierarchy, first element
LEGACY_CATEGORIES = {
    'food and drink': 'Food & Dining',
    'shops': 'Shopping',
    'travel': 'Transport',
    'service': 'Bills',
    'recreation': 'Entertainment',
    'transfer': 'Transfer',
    'bank fees': 'Fees',
    'payment': 'Bills',
}


class PlaidProvider(BaseBankProvider):
    """
    Plaid integration (opaque-handle-exchange style).

    Plaid access tokens never expire, so there is no refresh token and
    refresh_credential is unsupported. Plaid reports outflows as positive
    amounts; they are negated here to match the canonical sign convention.
    """

    kind = ProviderKind.PLAID

    def __init__(self, config: Optional[Dict[str, Any]] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(config, transport)

        self.client_id = self.get_config_value('client_id')
        self.secret = self.get_config_value('secret')
        if not self.client_id or not self.secret:
            raise ValueError("Plaid client_id and secret are required")

        environment = self.get_config_value('environment', 'sandbox')
        self.base_url = ENVIRONMENTS.get(environment, ENVIRONMENTS['sandbox'])
        self.client_name = self.get_config_value('client_name', 'Networth Finance Coach')
        self.redirect_uri = self.get_config_value('redirect_uri')

    async def initiate_auth(self, user_id: str, correlation_state: str) -> AuthInitiation:
        body = {
            'client_name': self.client_name,
            'user': {'client_user_id': user_id},
            'products': ['transactions'],
            'country_codes': ['US', 'CA'],
            'language': 'en',
        }
        if self.redirect_uri:
            body['redirect_uri'] = self.redirect_uri

        data = await self._post("/link/token/create", body, "link token creation")
        return ClientHandleAuth(
            token=data['link_token'],
            expires_at=_parse_timestamp(data.get('expiration'))
        )

    async def complete_auth(self, code_or_handle: str) -> CredentialGrant:
        data = await self._post(
            "/item/public_token/exchange", {'public_token': code_or_handle}, "public token exchange"
        )
        return CredentialGrant(
            access_token=data['access_token'],
            provider_account_ref=data.get('item_id')
        )

    async def refresh_credential(self, refresh_token: str) -> CredentialRefresh:
        raise UnsupportedOperationError(
            "Plaid access tokens do not expire and cannot be refreshed",
            provider=self.kind.value
        )

    async def list_accounts(self, access_token: str) -> List[CanonicalAccount]:
        data = await self._post("/accounts/get", {'access_token': access_token}, "list accounts")

        accounts = []
        for account in data.get('accounts', []):
            balances = account.get('balances') or {}
            subtype = account.get('subtype')
            if subtype and subtype.lower() in ACCOUNT_SUBTYPES:
                account_type = ACCOUNT_SUBTYPES[subtype.lower()]
            else:
                account_type = map_account_type(account.get('type'), ACCOUNT_TYPES)

            current = to_decimal(balances.get('current'))
            available = balances.get('available')
            accounts.append(CanonicalAccount(
                provider_account_ref=account['account_id'],
                account_name=account.get('official_name') or account.get('name') or 'Account',
                account_type=account_type,
                currency=balances.get('iso_currency_code') or 'USD',
                current_balance=current,
                available_balance=current if available is None else to_decimal(available),
                account_mask=account.get('mask')
            ))

        logger.info(f"Plaid item {data.get('item', {}).get('item_id', '?')}: {len(accounts)} accounts")
        return accounts

    async def get_account_balance(self, access_token: str, account_ref: str) -> AccountBalance:
        data = await self._post(
            "/accounts/balance/get",
            {'access_token': access_token, 'options': {'account_ids': [account_ref]}},
            "get balance"
        )

        for account in data.get('accounts', []):
            if account.get('account_id') == account_ref:
                balances = account.get('balances') or {}
                current = to_decimal(balances.get('current'))
                available = balances.get('available')
                return AccountBalance(current=current, available=current if available is None else to_decimal(available))

        raise ProviderError(f"Plaid account {account_ref} not found", provider=self.kind.value, status_code=404)

    async def list_transactions(
        self,
        access_token: str,
        account_ref: str,
        from_date: date,
        to_date: date
    ) -> List[CanonicalTransaction]:
        """
        Fetch transactions with offset pagination until total_transactions is reached.
        """
        transactions = []
        offset = 0

        for page_num in range(1, MAX_PAGES + 1):
            data = await self._post("/transactions/get", {
                'access_token': access_token,
                'start_date': from_date.isoformat(),
                'end_date': to_date.isoformat(),
                'options': {'account_ids': [account_ref], 'count': PAGE_SIZE, 'offset': offset},
            }, "list transactions")

            page = data.get('transactions', [])
            transactions.extend(self._normalize_transaction(tx) for tx in page)
            offset += len(page)

            total = data.get('total_transactions', offset)
            logger.info(f"Plaid page {page_num}: {len(page)} transactions ({offset}/{total})")
            if not page or offset >= total:
                break
        else:
            logger.warning(f"Reached page limit of {MAX_PAGES}, stopping pagination")

        return [tx for tx in transactions if tx is not None]

    async def revoke(self, access_token: str) -> None:
        await self._post("/item/remove", {'access_token': access_token}, "item removal")

    async def _post(self, path: str, body: Dict[str, Any], action: str) -> Dict[str, Any]:
        payload = dict(body, client_id=self.client_id, secret=self.secret)

        async with self._client() as client:
            response = await self._send(
                client, "POST", f"{self.base_url}{path}", action,
                json=payload, headers={'Content-Type': 'application/json'}
            )

        if not response.is_success:
            self._raise_plaid_error(response, action)
        return response.json()

    def _raise_plaid_error(self, response: httpx.Response, action: str):
        """
        Translate a Plaid error body into the error taxonomy.

        Plaid error format:
        {
            "error_type": "ITEM_ERROR",
            "error_code": "ITEM_LOGIN_REQUIRED",
            "error_message": "the login details of this item have changed",
            "request_id": "..."
        }
        """
        try:
            error = response.json()
        except ValueError:
            error = {}

        error_type = error.get('error_type', '')
        error_code = error.get('error_code', '')
        message = f"Plaid {action} failed ({response.status_code} {error_code or error_type}): " \
                  f"{error.get('error_message') or response.text[:300]}"

        if error_code in CREDENTIAL_ERROR_CODES:
            logger.error(message)
            raise InvalidCredentialError(message, provider=self.kind.value, status_code=response.status_code)
        if error_type in TRANSIENT_ERROR_TYPES:
            logger.warning(message)
            raise ProviderUnavailableError(message, provider=self.kind.value, status_code=response.status_code)

        self._raise_for_status(response, action)

    def _normalize_transaction(self, tx: Dict[str, Any]):
        """
        Convert Plaid transaction format to canonical.

        Plaid format:
        {
            "transaction_id": "lPNjeW1nR6CDn5okmGQ6hEpMo4lLNoSrzqDje",
            "account_id": "BxBXxLj1m4HMXBm9WZZmCWVbPjX16EHwv99vp",
            "amount": 2307.21,
            "iso_currency_code": "USD",
            "date": "2017-01-29",
            "authorized_date": "2017-01-27",
            "name": "Apple Store",
            "merchant_name": "Apple",
            "pending": false,
            "category": ["Shops", "Computers and Electronics"],
            "personal_finance_category": {"primary": "GENERAL_MERCHANDISE", ...}
        }
        """
        posted = parse_date(tx.get('date'))
        tx_date = parse_date(tx.get('authorized_date')) or posted
        if not tx.get('transaction_id') or tx_date is None:
            logger.warning(f"Skipping Plaid transaction without id or date: {tx.get('transaction_id')}")
            return None

        pfc = tx.get('personal_finance_category') or {}
        legacy = tx.get('category') or []
        if pfc.get('primary'):
            category = map_category(pfc['primary'], PERSONAL_FINANCE_CATEGORIES)
        else:
            category = map_category(legacy[0] if legacy else None, LEGACY_CATEGORIES)

        return build_transaction(
            provider_transaction_id=tx['transaction_id'],
            amount=amount_from_outflow_positive(tx.get('amount')),
            currency=tx.get('iso_currency_code') or tx.get('unofficial_currency_code') or 'USD',
            transaction_date=tx_date,
            description=tx.get('name'),
            merchant_name=tx.get('merchant_name'),
            category=category,
            posted_date=posted,
            pending=bool(tx.get('pending'))
        )


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        logger.warning(f"Could not parse Plaid timestamp '{value}'")
        return None
