"""Service-wide settings for the REDCap integration service.

Everything here comes from environment variables or a .env file and is
validated once at start-up.

Per-project rules (REDCap tokens, attribute mappings) live in the YAML
file named by ``projects_file``; see adapters/projects/loader.py.
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from redcap_integration.core.models import FetchFailurePolicy


class Settings(BaseSettings):
    """Settings read from the environment.

    Variable names are the field names, case-insensitive
    (MANAGEMENT_PORTAL_URL, WEBHOOK_PORT, ...). A .env file in the working
    directory is read as well.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Project table
    projects_file: str = Field(
        default="./projects.yml",
        description="YAML file listing REDCap projects and their Management Portal projects",
    )

    # Management Portal configuration
    management_portal_url: str = Field(
        default="http://localhost:8080/managementportal/",
        description="Management Portal base URL",
    )
    mp_oauth_client_id: str = Field(
        default="",
        description="OAuth2 client id used against Management Portal",
    )
    mp_oauth_client_secret: str = Field(
        default="",
        description="OAuth2 client secret used against Management Portal",
        repr=False,
    )
    mp_token_endpoint: str = Field(
        default="oauth/token",
        description="Token endpoint, relative to the Management Portal URL",
    )
    mp_subject_endpoint: str = Field(
        default="api/subjects",
        description="Subject endpoint, relative to the Management Portal URL",
    )
    mp_project_endpoint: str = Field(
        default="api/projects/",
        description="Project endpoint prefix, relative to the Management Portal URL",
    )

    # Pipeline behaviour
    fetch_failure_policy: Literal["lenient", "strict"] = Field(
        default="lenient",
        description="Continue (lenient) or abort (strict) when REDCap fields cannot be fetched",
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for every outbound HTTP call",
    )

    # Trigger endpoint
    webhook_host: str = Field(
        default="0.0.0.0",
        description="Interface the trigger endpoint binds to",
    )
    webhook_port: int = Field(
        default=8080,
        description="Port the trigger endpoint listens on",
    )
    webhook_trigger_path: str = Field(
        default="/trigger",
        description="Path REDCap posts Data Entry Triggers to",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level",
    )
    log_format: Literal["json", "text"] = Field(
        default="text",
        description="Log line format: json or text",
    )

    # Development
    debug: bool = Field(
        default=False,
        description="Force DEBUG logging regardless of log_level",
    )

    @property
    def fetch_policy(self) -> FetchFailurePolicy:
        return FetchFailurePolicy(self.fetch_failure_policy)

    @field_validator("http_timeout_seconds")
    @classmethod
    def validate_http_timeout(cls, v: float) -> float:
        """Ensure the outbound timeout is positive."""
        if v <= 0:
            raise ValueError("http_timeout_seconds must be positive")
        return v

    @field_validator("webhook_port")
    @classmethod
    def validate_webhook_port(cls, v: int) -> int:
        """Ensure the port is a valid TCP port."""
        if not 1 <= v <= 65535:
            raise ValueError("webhook_port must be between 1 and 65535")
        return v

    @field_validator("webhook_trigger_path")
    @classmethod
    def validate_trigger_path(cls, v: str) -> str:
        """Ensure the trigger path is absolute."""
        if not v.startswith("/"):
            raise ValueError("webhook_trigger_path must start with '/'")
        return v

    @field_validator("management_portal_url")
    @classmethod
    def validate_management_portal_url(cls, v: str) -> str:
        """Ensure the portal URL is absolute and ends with a slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("management_portal_url must start with http:// or https://")
        return v if v.endswith("/") else f"{v}/"


def load_settings(env_file: str | None = None) -> Settings:
    """Read and validate settings.

    Args:
        env_file: .env file to read instead of the one in the working
            directory.

    Raises:
        pydantic.ValidationError: If any value is invalid.
    """
    if env_file:
        return Settings(_env_file=env_file)  # type: ignore[call-arg]
    return Settings()


__all__ = ["Settings", "load_settings"]
