"""
Bank Integration Errors

Typed failures raised by providers, the credential vault, the connection
lifecycle manager and the sync engine.
"""


class BankIntegrationError(Exception):
    """Base class for every bank integration failure."""
    pass


# Authorization lifecycle

class AuthExpiredError(BankIntegrationError):
    """Correlation state is unknown or past its time-to-live."""
    pass


class AuthAlreadyConsumedError(AuthExpiredError):
    """Correlation state was already used by a successful exchange."""
    pass


class AuthStateMismatchError(BankIntegrationError):
    """Correlation state belongs to a different user or provider."""
    pass


class NoAccountsFoundError(BankIntegrationError):
    """Authorization succeeded but the provider exposed no accounts."""
    pass


class AccountAlreadyLinkedError(BankIntegrationError):
    """A discovered account is already connected by another user."""
    pass


class ConnectionNotFoundError(BankIntegrationError):
    pass


class ProviderNotConfiguredError(BankIntegrationError):
    pass


class InvalidStateTransitionError(BankIntegrationError):
    pass


# Provider calls

class ProviderError(BankIntegrationError):
    """Failure reported by, or while talking to, an external provider."""

    def __init__(self, message: str, provider: str = None, status_code: int = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderUnavailableError(ProviderError):
    """Transient failure: network error, rate limit or provider 5xx."""
    pass


class InvalidCredentialError(ProviderError):
    """Exchange, refresh or data call rejected the credential."""
    pass


class UnsupportedOperationError(ProviderError):
    """Operation is not offered by this provider (e.g. refreshing a non-expiring token)."""
    pass


# Credential vault

class VaultError(BankIntegrationError):
    pass


class EncryptionNotConfiguredError(VaultError):
    """No usable encryption key is configured; the vault refuses to operate."""
    pass


class CredentialDecryptionError(VaultError):
    """Ciphertext is malformed, tampered with, or sealed with an unknown key."""
    pass
