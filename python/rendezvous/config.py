"""Client settings loaded from environment variables.

Environment Configuration:
    RENDEZVOUS_ENV: Deployment environment (local | test | staging | prod)

Backend Configuration (required in staging/prod):
    APPWRITE_ENDPOINT: Appwrite REST endpoint (e.g. https://cloud.appwrite.io/v1)
    APPWRITE_PROJECT_ID: Appwrite project ID
    APPWRITE_API_KEY: Server API key (optional; browser-style sessions omit it)
    APPWRITE_DATABASE_ID: Database holding the messaging collections

Messaging Configuration:
    CONVERSATION_KEY_SALT: Application-wide salt mixed into conversation keys
        (must be overridden in staging/prod)
    LOCAL_CACHE_SECRET: Secret for the encrypted local conversation cache
    SUPPORT_USER_ID: Identity of the support account

Timers:
    PRESENCE_HEARTBEAT_INTERVAL_S, REALTIME_RECONNECT_DELAY_S,
    MESSAGE_CLEANUP_INTERVAL_S, CALL_LINGER_S
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

DEFAULT_CONVERSATION_KEY_SALT = "rendezvous-e2e-conversation-salt-dev"


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Messaging client configuration.

    Settings are loaded from environment variables.
    Validation rules:
    - APPWRITE_ENDPOINT and APPWRITE_PROJECT_ID are required in staging and prod
    - CONVERSATION_KEY_SALT must not be the development default in staging and prod
    - All timer intervals must be positive
    """

    rendezvous_env: Environment = Field(default=Environment.LOCAL, alias="RENDEZVOUS_ENV")

    # Appwrite backend
    appwrite_endpoint: str | None = Field(default=None, alias="APPWRITE_ENDPOINT")
    appwrite_project_id: str | None = Field(default=None, alias="APPWRITE_PROJECT_ID")
    appwrite_api_key: str | None = Field(default=None, alias="APPWRITE_API_KEY")
    appwrite_database_id: str = Field(default="messaging", alias="APPWRITE_DATABASE_ID")
    appwrite_timeout_s: float = Field(default=15.0, alias="APPWRITE_TIMEOUT_S")

    # Collections
    conversations_collection_id: str = Field(
        default="conversations", alias="CONVERSATIONS_COLLECTION_ID"
    )
    messages_collection_id: str = Field(default="messages", alias="MESSAGES_COLLECTION_ID")
    calls_collection_id: str = Field(default="calls", alias="CALLS_COLLECTION_ID")
    presence_collection_id: str = Field(default="user_presence", alias="PRESENCE_COLLECTION_ID")
    notifications_collection_id: str = Field(
        default="notifications", alias="NOTIFICATIONS_COLLECTION_ID"
    )

    # Identities
    support_user_id: str = Field(default="support-system-user", alias="SUPPORT_USER_ID")
    support_email_domain: str = Field(
        default="support.rendezvous.app", alias="SUPPORT_EMAIL_DOMAIN"
    )

    # Secrets
    conversation_key_salt: str = Field(
        default=DEFAULT_CONVERSATION_KEY_SALT, alias="CONVERSATION_KEY_SALT"
    )
    local_cache_secret: str | None = Field(default=None, alias="LOCAL_CACHE_SECRET")

    # Timers (seconds)
    presence_heartbeat_interval_s: float = Field(
        default=30.0, alias="PRESENCE_HEARTBEAT_INTERVAL_S"
    )
    realtime_reconnect_delay_s: float = Field(default=5.0, alias="REALTIME_RECONNECT_DELAY_S")
    message_cleanup_interval_s: float = Field(default=60.0, alias="MESSAGE_CLEANUP_INTERVAL_S")
    call_linger_s: float = Field(default=1.0, alias="CALL_LINGER_S")

    # Page sizes
    message_page_size: int = Field(default=50, alias="MESSAGE_PAGE_SIZE")
    conversation_page_size: int = Field(default=50, alias="CONVERSATION_PAGE_SIZE")

    # Fire-and-forget offline path used on page unload
    presence_beacon_path: str = Field(
        default="/api/presence/offline/{user_id}", alias="PRESENCE_BEACON_PATH"
    )

    log_json: bool = Field(default=True, alias="LOG_JSON")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Ensure deployment settings are coherent for the environment."""
        for name in (
            "presence_heartbeat_interval_s",
            "realtime_reconnect_delay_s",
            "message_cleanup_interval_s",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be > 0")
        if self.call_linger_s < 0:
            raise ValueError("CALL_LINGER_S must be >= 0")
        if self.message_page_size < 1 or self.conversation_page_size < 1:
            raise ValueError("Page sizes must be >= 1")

        if self.rendezvous_env in (Environment.STAGING, Environment.PROD):
            missing = []
            if not self.appwrite_endpoint:
                missing.append("APPWRITE_ENDPOINT")
            if not self.appwrite_project_id:
                missing.append("APPWRITE_PROJECT_ID")
            if missing:
                raise ValueError(
                    f"Missing required Appwrite settings for RENDEZVOUS_ENV="
                    f"{self.rendezvous_env.value}: {', '.join(missing)}"
                )
            if self.conversation_key_salt == DEFAULT_CONVERSATION_KEY_SALT:
                raise ValueError(
                    f"CONVERSATION_KEY_SALT must be set for RENDEZVOUS_ENV="
                    f"{self.rendezvous_env.value}"
                )

        return self

    @property
    def normalized_endpoint(self) -> str | None:
        """Return the Appwrite endpoint with trailing slash stripped."""
        if self.appwrite_endpoint:
            return self.appwrite_endpoint.rstrip("/")
        return None

    @property
    def effective_cache_secret(self) -> str:
        """Return the local cache secret, falling back to the conversation salt."""
        return self.local_cache_secret or self.conversation_key_salt


@lru_cache
def get_settings() -> Settings:
    """Get cached client settings.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
