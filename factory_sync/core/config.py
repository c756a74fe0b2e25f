"""
Configuration Management - Pydantic Settings
Securely loads and validates environment variables.
"""
import os
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class N8NConfig(BaseModel):
    """Connection details for one n8n instance, passed explicitly to every call."""
    api_url: str
    api_key: str
    webhook_base_url: Optional[str] = None

    @property
    def base_url(self) -> str:
        """Instance root without the API suffix or trailing slash."""
        url = self.api_url.rstrip("/")
        if url.endswith("/api/v1"):
            url = url[: -len("/api/v1")]
        return url

    @property
    def api_base(self) -> str:
        """Ensure the API URL is correctly formatted."""
        return self.base_url + "/api/v1/"

    @property
    def webhook_base(self) -> str:
        return (self.webhook_base_url or self.base_url).rstrip("/")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # n8n Configuration (defaults; values saved in the settings store win)
    n8n_api_url: Optional[str] = Field(default=None, alias="N8N_API_URL")
    n8n_api_key: Optional[str] = Field(default=None, alias="N8N_API_KEY")
    n8n_webhook_base_url: Optional[str] = Field(default=None, alias="N8N_WEBHOOK_BASE_URL")

    # Bundle and local state
    workflows_dir: str = Field(
        default_factory=lambda: os.path.join(os.getcwd(), "workflows"),
        alias="WORKFLOWS_DIR"
    )
    data_dir: str = Field(
        default_factory=lambda: os.path.join(os.path.expanduser("~"), ".product-factory"),
        alias="DATA_DIR"
    )

    # Server Configuration
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # HTTP Client Configuration
    http_timeout: float = Field(default=30.0, alias="HTTP_TIMEOUT")

    # Import tuning
    activation_pause_seconds: float = Field(default=3.0, alias="ACTIVATION_PAUSE_SECONDS")
    activation_retries: int = Field(default=8, alias="ACTIVATION_RETRIES")
    activation_retry_delay: float = Field(default=3.0, alias="ACTIVATION_RETRY_DELAY")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True
    )

    @property
    def registry_path(self) -> str:
        return os.path.join(self.data_dir, "workflow_registry.json")

    @property
    def settings_path(self) -> str:
        return os.path.join(self.data_dir, "app_settings.json")

    def env_n8n_config(self) -> Optional[N8NConfig]:
        """n8n connection from the environment, if both URL and key are set."""
        if not self.n8n_api_url or not self.n8n_api_key:
            return None
        return N8NConfig(
            api_url=self.n8n_api_url,
            api_key=self.n8n_api_key,
            webhook_base_url=self.n8n_webhook_base_url
        )


# Global settings instance
settings = Settings()
