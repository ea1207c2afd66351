"""
Abstract base class for bank integration providers

Defines the common interface that all bank data providers must implement, so
the lifecycle manager and sync engine never branch on provider identity.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional
from datetime import date
import logging

import httpx

from banklink.app.models import ProviderKind
from ..errors import InvalidCredentialError, ProviderError, ProviderUnavailableError
from ..schemas import (
    AccountBalance, AuthInitiation, CanonicalAccount, CanonicalTransaction,
    CredentialGrant, CredentialRefresh
)

logger = logging.getLogger(__name__)


class BaseBankProvider(ABC):
    """
    Abstract base class for bank integration providers.

    Concrete providers (TrueLayer, Plaid, the mock reference provider) return
    canonical values only: signed amounts, canonical account types and
    categories. Provider-native field names never leave the implementation.
    """

    kind: ProviderKind

    def __init__(self, config: Optional[Dict[str, Any]] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize provider with configuration.

        Args:
            config: Provider settings (client ids, secrets, environment, ...)
            transport: Optional httpx transport, used to stub the network in tests
        """
        self.config_data = dict(config or {})
        self._transport = transport
        self.timeout = float(self.get_config_value('timeout', 30.0))

    @abstractmethod
    async def initiate_auth(
        self,
        user_id: str,
        correlation_state: str
    ) -> AuthInitiation:
        """
        Start authorization for a user.

        Args:
            user_id: Local user identifier
            correlation_state: Single-use state token to echo back on completion

        Returns:
            RedirectAuth with the URL to send the user to, or ClientHandleAuth
            with a short-lived handle for a client-side widget
        """
        pass

    @abstractmethod
    async def complete_auth(
        self,
        code_or_handle: str
    ) -> CredentialGrant:
        """
        Exchange an authorization code (redirect style) or a public token
        (handle style) for credentials.

        Raises:
            InvalidCredentialError: If the provider rejects the code/token
        """
        pass

    @abstractmethod
    async def refresh_credential(
        self,
        refresh_token: str
    ) -> CredentialRefresh:
        """
        Refresh an expired access token.

        Raises:
            UnsupportedOperationError: Provider credentials never expire
            InvalidCredentialError: Refresh token rejected
        """
        pass

    @abstractmethod
    async def list_accounts(
        self,
        access_token: str
    ) -> List[CanonicalAccount]:
        pass

    @abstractmethod
    async def get_account_balance(
        self,
        access_token: str,
        account_ref: str
    ) -> AccountBalance:
        pass

    @abstractmethod
    async def list_transactions(
        self,
        access_token: str,
        account_ref: str,
        from_date: date,
        to_date: date
    ) -> List[CanonicalTransaction]:
        """
        Fetch transactions for an account within date range (both inclusive).

        Returns:
            Canonical transactions, debit amounts negative and credits positive
        """
        pass

    @abstractmethod
    async def revoke(
        self,
        access_token: str
    ) -> None:
        """Revoke access token (disconnect bank)."""
        pass

    def get_config_value(self, key: str, default: Any = None) -> Any:
        value = self.config_data.get(key)
        return default if value in (None, "") else value

    # HTTP helpers shared by network-backed providers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, action: str, **kwargs) -> httpx.Response:
        """
        Perform a request, translating network failures.

        Raises:
            ProviderUnavailableError: Connection errors and timeouts
        """
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            logger.warning(f"{self.kind.value}: {action} failed at transport level: {e}")
            raise ProviderUnavailableError(
                f"{self.kind.value} unreachable during {action}: {e}",
                provider=self.kind.value
            ) from e

    def _raise_for_status(self, response: httpx.Response, action: str, credential_call: bool = False):
        """
        Map an unsuccessful HTTP response onto the error taxonomy.

        401/403 always mean a bad credential. 400 means a bad credential on
        credential endpoints (code/token exchange, refresh). 429 and 5xx are
        transient.
        """
        if response.is_success:
            return

        status = response.status_code
        message = f"{self.kind.value} {action} failed ({status}): {response.text[:500]}"
        logger.error(message)

        if status in (401, 403) or (credential_call and status == 400):
            raise InvalidCredentialError(message, provider=self.kind.value, status_code=status)
        if status == 429 or status >= 500:
            raise ProviderUnavailableError(message, provider=self.kind.value, status_code=status)
        raise ProviderError(message, provider=self.kind.value, status_code=status)
