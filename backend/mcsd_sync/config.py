"""Application configuration using pydantic-settings."""

import warnings
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Find .env file: check backend dir first, then project root
_BACKEND_DIR = Path(__file__).parent.parent
_PROJECT_ROOT = _BACKEND_DIR.parent
_ENV_FILE = _BACKEND_DIR / ".env" if (_BACKEND_DIR / ".env").exists() else _PROJECT_ROOT / ".env"

# Resource types synchronized from root directories unless a directory overrides them
DEFAULT_ALLOWED_RESOURCE_TYPES = ["Organization", "Endpoint"]


class DirectoryConfig(BaseModel):
    """Configuration of a single FHIR directory."""

    fhir_base_url: str = ""
    # Resource types this directory is authoritative for (None = global allow-list)
    resource_types: list[str] | None = None
    # Only discover other administration directories through mCSD directory Endpoints
    discover: bool = False


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Nested values (root_directories, local_directory) are given as JSON, e.g.
    MCSD_ROOT_DIRECTORIES='{"lrza": {"fhir_base_url": "https://lrza.example.org/fhir"}}'.
    Settings are read once at startup and are not reloaded.
    """

    model_config = SettingsConfigDict(
        env_prefix="MCSD_",
        env_file=str(_ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Remote administration directories, keyed by a configuration name
    root_directories: dict[str, DirectoryConfig] = Field(default_factory=dict)

    # Local query directory the updates are applied to
    local_directory: DirectoryConfig = Field(default_factory=DirectoryConfig)

    allowed_resource_types: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_RESOURCE_TYPES)
    )

    # Base URLs never registered through discovery; the local and root directories always are excluded
    exclude_admin_directories: list[str] = Field(default_factory=list)

    # Seconds between scheduled updates; 0 disables the scheduler
    update_interval: float = 0.0

    # Timeout for a single HTTP request to a directory
    request_timeout: float = 30.0

    # Deadline for one directory's complete fetch/build/submit pipeline
    directory_timeout: float = 120.0

    # Application
    log_level: str = "INFO"
    debug: bool = False

    def model_post_init(self, __context) -> None:
        """Warn about an unconfigured local directory."""
        if not self.local_directory.fhir_base_url:
            warnings.warn(
                "Local query directory not configured! Set MCSD_LOCAL_DIRECTORY environment variable.",
                UserWarning,
                stacklevel=2,
            )


settings = Settings()
