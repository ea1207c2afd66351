from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Dict, Optional


class Settings(BaseSettings):
    database_url: str = "sqlite:///./banklink.db"
    environment: str = "development"

    # Credential vault: comma separated "key_id:fernet_key" pairs
    credential_encryption_keys: str = ""
    credential_active_key_id: Optional[str] = None

    # Connection lifecycle
    auth_attempt_ttl_minutes: int = 10
    app_url: str = "http://localhost:3000"

    # Sync engine
    sync_window_days: int = 30
    sync_max_concurrency: int = 4
    sync_interval_hours: int = 24
    provider_timeout_seconds: float = 30.0

    # TrueLayer (redirect authorization)
    truelayer_client_id: str = ""
    truelayer_client_secret: str = ""
    truelayer_redirect_uri: str = ""
    truelayer_environment: str = "sandbox"

    # Plaid (link token / public token exchange)
    plaid_client_id: str = ""
    plaid_secret: str = ""
    plaid_environment: str = "sandbox"
    plaid_client_name: str = "Networth Finance Coach"

    class Config:
        env_file = ".env"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def banking_callback_url(self) -> str:
        return self.truelayer_redirect_uri or f"{self.app_url}/api/banking/callback"

    def encryption_keys(self) -> Dict[str, str]:
        """Parse ``credential_encryption_keys`` into ``{key_id: key}``."""
        keys = {}
        for entry in self.credential_encryption_keys.split(","):
            entry = entry.strip()
            if not entry:
                continue
            key_id, sep, key = entry.partition(":")
            if not sep or not key_id.strip() or not key.strip():
                raise ValueError(f"Malformed credential key entry: {key_id.strip() or '?'}")
            keys[key_id.strip()] = key.strip()
        return keys


@lru_cache()
def get_settings():
    return Settings()
