"""Runtime configuration loaded from the environment.

Variables use the ``APIM_`` prefix and may also come from a ``.env`` file.
"""

from functools import lru_cache

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from apim_lifecycle.errors import ConfigurationError

REMOTE_FIELDS = ("subscription_id", "resource_group", "service_name", "access_token")


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="APIM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Remote management plane
    subscription_id: str | None = Field(default=None, description="Cloud subscription id")
    resource_group: str | None = Field(default=None, description="Resource group of the service")
    service_name: str | None = Field(default=None, description="API Management service name")
    access_token: SecretStr | None = Field(default=None, description="Bearer token for the management API")
    management_endpoint: str = Field(default="https://management.azure.com")
    api_version: str = Field(default="2022-08-01", description="Management REST api-version")
    request_timeout: float = Field(default=30.0, gt=0, description="Seconds allowed per remote call")

    # Logging
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)

    # Versioning rules
    reserved_query_names: list[str] = Field(default=["subscription-key"])
    reserved_header_names: list[str] = Field(
        default=["Ocp-Apim-Subscription-Key", "Authorization", "Host", "Content-Length", "Content-Type"],
    )

    def require_remote(self) -> None:
        """Fail unless everything needed to reach the management plane is set."""
        missing = [f"APIM_{name.upper()}" for name in REMOTE_FIELDS if not getattr(self, name)]
        if missing:
            raise ConfigurationError(f"missing required environment variables: {', '.join(missing)}")


@lru_cache
def get_settings() -> Settings:
    return Settings()
