"""
TrueLayer Provider Implementation

UK Open Banking data API using the standard OAuth2 authorization-code flow:
the user is redirected to TrueLayer, then back to our callback with ``code``
and ``state`` query parameters.

Documentation: https://docs.truelayer.com/
"""

import logging
from typing import Dict, Any, List, Optional
from datetime import date, datetime, timedelta, timezone
from urllib.parse import urlencode

import httpx

from banklink.app.models import AccountType, ProviderKind
from ..errors import InvalidCredentialError, ProviderUnavailableError
from ..mapping import build_transaction, map_account_type, map_category, parse_date, signed_amount, to_decimal
from ..schemas import (
    AccountBalance, AuthInitiation, CanonicalAccount, CanonicalTransaction,
    CredentialGrant, CredentialRefresh, RedirectAuth
)
from .base import BaseBankProvider

logger = logging.getLogger(__name__)

SCOPES = "info accounts balance transactions offline_access"

ENVIRONMENTS = {
    'production': ('https://auth.truelayer.com', 'https://api.truelayer.com'),
    'sandbox': ('https://auth.truelayer-sandbox.com', 'https://api.truelayer-sandbox.com'),
}

ACCOUNT_TYPES = {
    'transaction': AccountType.CHECKING,
    'current': AccountType.CHECKING,
    'savings': AccountType.SAVINGS,
    'business_savings': AccountType.SAVINGS,
    'credit_card': AccountType.CREDIT_CARD,
}

# transaction_classification[0] values
CLASSIFICATIONS = {
    'eating out': 'Food & Dining',
    'food & dining': 'Food & Dining',
    'groceries': 'Groceries',
    'shopping': 'Shopping',
    'auto & transport': 'Transport',
    'travel': 'Transport',
    'bills and utilities': 'Bills',
    'bills & utilities': 'Bills',
    'entertainment': 'Entertainment',
    'income': 'Income',
    'transfer': 'Transfer',
    'fees & charges': 'Fees',
    'cash': 'Cash',
}

# transaction_category fallback when no classification is given
TRANSACTION_CATEGORIES = {
    'atm': 'Cash',
    'bill_payment': 'Bills',
    'direct_debit': 'Bills',
    'standing_order': 'Bills',
    'fee_charge': 'Fees',
    'interest': 'Income',
    'dividend': 'Income',
    'transfer': 'Transfer',
    'purchase': 'Shopping',
}


class TrueLayerProvider(BaseBankProvider):
    """
    TrueLayer Data API integration (redirect-authorization style).

    Access tokens expire after one hour and are refreshed with the
    refresh token issued for the ``offline_access`` scope.
    """

    kind = ProviderKind.TRUELAYER

    def __init__(self, config: Optional[Dict[str, Any]] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Extracts configuration:
        - client_id / client_secret: TrueLayer application credentials
        - redirect_uri: Callback registered with TrueLayer
        - environment: 'sandbox' or 'production'
        """
        super().__init__(config, transport)

        self.client_id = self.get_config_value('client_id')
        self.client_secret = self.get_config_value('client_secret')
        self.redirect_uri = self.get_config_value('redirect_uri')
        if not self.client_id or not self.client_secret:
            raise ValueError("TrueLayer client_id and client_secret are required")

        environment = self.get_config_value('environment', 'sandbox')
        self.auth_base_url, self.api_base_url = ENVIRONMENTS.get(environment, ENVIRONMENTS['sandbox'])
        self.bank_providers = self.get_config_value(
            'providers', 'uk-ob-all uk-oauth-all' if environment == 'production' else 'uk-cs-mock uk-ob-all uk-oauth-all'
        )

    async def initiate_auth(self, user_id: str, correlation_state: str) -> AuthInitiation:
        params = {
            'response_type': 'code',
            'client_id': self.client_id,
            'redirect_uri': self.redirect_uri,
            'scope': SCOPES,
            'state': correlation_state,
            'providers': self.bank_providers,
        }
        return RedirectAuth(url=f"{self.auth_base_url}/?{urlencode(params)}")

    async def complete_auth(self, code_or_handle: str) -> CredentialGrant:
        data = await self._token_request({
            'grant_type': 'authorization_code',
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'redirect_uri': self.redirect_uri,
            'code': code_or_handle,
        }, action="code exchange")

        return CredentialGrant(
            access_token=data['access_token'],
            refresh_token=data.get('refresh_token'),
            expires_at=_expiry(data.get('expires_in'))
        )

    async def refresh_credential(self, refresh_token: str) -> CredentialRefresh:
        data = await self._token_request({
            'grant_type': 'refresh_token',
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'refresh_token': refresh_token,
        }, action="token refresh")

        return CredentialRefresh(
            access_token=data['access_token'],
            refresh_token=data.get('refresh_token', refresh_token),
            expires_at=_expiry(data.get('expires_in'))
        )

    async def list_accounts(self, access_token: str) -> List[CanonicalAccount]:
        results = await self._get_results(access_token, "/data/v1/accounts", "list accounts")

        accounts = []
        for account in results:
            account_ref = account['account_id']
            balance = await self.get_account_balance(access_token, account_ref)
            number = (account.get('account_number') or {}).get('number') or ''
            accounts.append(CanonicalAccount(
                provider_account_ref=account_ref,
                account_name=account.get('display_name') or account.get('account_type') or 'Account',
                account_type=map_account_type(account.get('account_type'), ACCOUNT_TYPES),
                currency=account.get('currency', 'GBP'),
                current_balance=balance.current,
                available_balance=balance.available,
                account_mask=number[-4:] or None
            ))

        logger.info(f"TrueLayer returned {len(accounts)} accounts")
        return accounts

    async def get_account_balance(self, access_token: str, account_ref: str) -> AccountBalance:
        results = await self._get_results(access_token, f"/data/v1/accounts/{account_ref}/balance", "get balance")
        if not results:
            return AccountBalance(current=to_decimal(0), available=to_decimal(0))

        balance = results[0]
        current = to_decimal(balance.get('current'))
        available = balance.get('available')
        return AccountBalance(current=current, available=current if available is None else to_decimal(available))

    async def list_transactions(
        self,
        access_token: str,
        account_ref: str,
        from_date: date,
        to_date: date
    ) -> List[CanonicalTransaction]:
        params = {'from': from_date.isoformat(), 'to': to_date.isoformat()}

        booked = await self._get_results(
            access_token, f"/data/v1/accounts/{account_ref}/transactions", "list transactions", params=params
        )
        pending = await self._get_results(
            access_token, f"/data/v1/accounts/{account_ref}/transactions/pending", "list pending transactions",
            params=params
        )

        transactions = [self._normalize_transaction(tx, pending=False) for tx in booked]
        transactions += [self._normalize_transaction(tx, pending=True) for tx in pending]
        logger.info(
            f"TrueLayer account {account_ref}: {len(booked)} booked, {len(pending)} pending "
            f"between {from_date} and {to_date}"
        )
        return [tx for tx in transactions if tx is not None]

    async def revoke(self, access_token: str) -> None:
        async with self._client() as client:
            response = await self._send(
                client, "DELETE", f"{self.auth_base_url}/api/delete", "revoke",
                headers={'Authorization': f'Bearer {access_token}'}
            )
        self._raise_for_status(response, "revoke")

    async def _token_request(self, form: Dict[str, str], action: str) -> Dict[str, Any]:
        async with self._client() as client:
            response = await self._send(client, "POST", f"{self.auth_base_url}/connect/token", action, data=form)

        self._raise_for_status(response, action, credential_call=True)
        data = response.json()
        if not data.get('access_token'):
            raise InvalidCredentialError(f"TrueLayer {action} returned no access_token", provider=self.kind.value)
        return data

    async def _get_results(
        self,
        access_token: str,
        path: str,
        action: str,
        params: Optional[Dict[str, str]] = None
    ) -> List[Dict[str, Any]]:
        async with self._client() as client:
            response = await self._send(
                client, "GET", f"{self.api_base_url}{path}", action,
                params=params,
                headers={'Authorization': f'Bearer {access_token}', 'Accept': 'application/json'}
            )

        self._raise_for_status(response, action)
        try:
            return response.json().get('results', [])
        except ValueError as e:
            raise ProviderUnavailableError(f"TrueLayer {action} returned invalid JSON", provider=self.kind.value) from e

    def _normalize_transaction(self, tx: Dict[str, Any], pending: bool):
        """
        Convert TrueLayer transaction format to canonical.

        TrueLayer format:
        {
            "transaction_id": "03c333979b729315545816aaa365c33f",
            "timestamp": "2018-03-06T00:00:00",
            "description": "GOOGLE PLAY STORE",
            "amount": -2.99,
            "currency": "GBP",
            "transaction_type": "DEBIT",
            "transaction_category": "PURCHASE",
            "transaction_classification": ["Entertainment", "Games"],
            "merchant_name": "Google play",
            "running_balance": {...}
        }
        """
        tx_date = parse_date(tx.get('timestamp'))
        if not tx.get('transaction_id') or tx_date is None:
            logger.warning(f"Skipping TrueLayer transaction without id or timestamp: {tx.get('transaction_id')}")
            return None

        tx_type = (tx.get('transaction_type') or '').upper()
        is_debit = tx_type == 'DEBIT' if tx_type else to_decimal(tx.get('amount')) < 0

        classification = tx.get('transaction_classification') or []
        if classification:
            category = map_category(classification[0], CLASSIFICATIONS)
        else:
            category = map_category(tx.get('transaction_category'), TRANSACTION_CATEGORIES)

        return build_transaction(
            provider_transaction_id=tx['transaction_id'],
            amount=signed_amount(tx.get('amount'), is_debit),
            currency=tx.get('currency', 'GBP'),
            transaction_date=tx_date,
            description=tx.get('description'),
            merchant_name=tx.get('merchant_name'),
            category=category,
            pending=pending
        )


def _expiry(expires_in: Any) -> Optional[datetime]:
    if expires_in in (None, ""):
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
