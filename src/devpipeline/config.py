"""Dev pipeline configuration using pydantic-settings.

This module defines the DevPipelineSettings class that reads configuration
from environment variables with the DEVPIPELINE_ prefix. Only the GitHub token
and the database URL are strictly required; everything else has a default
suitable for a single-repository deployment.
"""

from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


STORE_BACKENDS = ("github-project", "collection")
OWNER_TYPES = ("user", "org")


class DevPipelineSettings(BaseSettings):
    """Dev pipeline configuration from environment variables.

    All environment variables are prefixed with DEVPIPELINE_
    (e.g., DEVPIPELINE_GITHUB_TOKEN).

    Required fields (must be set via environment variables):
    - github_token: GitHub API token for issues, PRs, branches and projects
    - database_url: PostgreSQL connection string for work items and artifacts
    """

    model_config = SettingsConfigDict(
        env_prefix="DEVPIPELINE_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # GitHub Configuration
    # -------------------------------------------------------------------------
    # GitHub API token for issues, comments, PRs and project fields
    github_token: str

    # Repository owner (user or organization login)
    github_owner: str = "octo-org"

    # Repository name the pipeline operates on
    github_repo: str = "app"

    # Base URL for GitHub API (supports GitHub Enterprise)
    github_base_url: str = "https://api.github.com"

    # Projects V2 board number holding the Status / Review Status fields
    github_project_number: int = 1

    # Whether the project belongs to a user or an organization
    github_owner_type: str = "user"

    # -------------------------------------------------------------------------
    # Store Configuration
    # -------------------------------------------------------------------------
    # Backing store for status fields: "github-project" or "collection"
    store_backend: str = "collection"

    # -------------------------------------------------------------------------
    # Database Configuration
    # -------------------------------------------------------------------------
    # PostgreSQL connection string for work items, intake and artifacts
    database_url: str

    # -------------------------------------------------------------------------
    # Agent Configuration
    # -------------------------------------------------------------------------
    # Path to the agent CLI executable
    agent_cli_path: str = "/usr/local/bin/claude"

    # Timeout in seconds for a single agent run
    agent_timeout_seconds: int = 3600

    # -------------------------------------------------------------------------
    # Workflow Configuration
    # -------------------------------------------------------------------------
    # Undo window for status changes, in seconds
    undo_window_seconds: int = 300

    # Attempts for rate-limited project field calls
    rate_limit_max_attempts: int = 3

    # Initial backoff delay for rate-limited calls, doubled per attempt
    rate_limit_base_delay_seconds: float = 1.0

    # Secret used to sign decision links sent in notifications
    decision_token_secret: str = "change-me"

    # -------------------------------------------------------------------------
    # Notification Configuration
    # -------------------------------------------------------------------------
    # Telegram bot token; notifications only go to logs when unset
    telegram_bot_token: Optional[str] = None

    # Telegram chat receiving admin notifications
    telegram_chat_id: Optional[str] = None

    # Base URL of the Telegram Bot API
    telegram_api_url: str = "https://api.telegram.org"

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    # Host address to bind the server to
    host: str = "0.0.0.0"

    # Port number for the server
    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("github_token")
    @classmethod
    def validate_github_token(cls, v: str) -> str:
        """Validate that GitHub token is not empty."""
        if not v or not v.strip():
            raise ValueError("github_token cannot be empty")
        return v

    @field_validator("github_owner", "github_repo")
    @classmethod
    def validate_repository_parts(cls, v: str) -> str:
        """Validate that owner and repository names are not empty."""
        if not v or not v.strip():
            raise ValueError("repository owner and name cannot be empty")
        return v

    @field_validator("github_base_url")
    @classmethod
    def validate_github_base_url(cls, v: str) -> str:
        """Validate that the GitHub base URL is an http(s) URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("github_base_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("github_owner_type")
    @classmethod
    def validate_owner_type(cls, v: str) -> str:
        """Validate the project owner type."""
        if v not in OWNER_TYPES:
            raise ValueError(f"github_owner_type must be one of {OWNER_TYPES}")
        return v

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        """Validate the store backend name."""
        if v not in STORE_BACKENDS:
            raise ValueError(f"store_backend must be one of {STORE_BACKENDS}")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate that database URL is not empty and has valid format."""
        if not v or not v.strip():
            raise ValueError("database_url cannot be empty")
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("agent_timeout_seconds", "undo_window_seconds")
    @classmethod
    def validate_positive_seconds(cls, v: int) -> int:
        """Validate that timeouts and windows are positive."""
        if v < 1:
            raise ValueError("value must be at least 1 second")
        return v

    @field_validator("rate_limit_max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        """Validate that at least one attempt is made."""
        if v < 1:
            raise ValueError("rate_limit_max_attempts must be at least 1")
        return v

    @field_validator("rate_limit_base_delay_seconds")
    @classmethod
    def validate_base_delay(cls, v: float) -> float:
        """Validate that the base delay is not negative."""
        if v < 0:
            raise ValueError("rate_limit_base_delay_seconds cannot be negative")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @property
    def telegram_enabled(self) -> bool:
        """Whether both Telegram credentials are configured."""
        return bool(self.telegram_bot_token and self.telegram_chat_id)


def get_settings() -> DevPipelineSettings:
    """Create and return DevPipelineSettings instance.

    Returns:
        DevPipelineSettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return DevPipelineSettings()
