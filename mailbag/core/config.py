"""
Configuration Management

Centralized configuration using Pydantic Settings.
All settings loaded from environment variables with sensible defaults.
"""
import logging
from dataclasses import dataclass
from typing import Optional, List

from pydantic import Field, ConfigDict
from pydantic_settings import BaseSettings


@dataclass(frozen=True)
class ServerConfig:
    """Connection parameters for one mail server (credentials are opaque)"""
    host: str
    port: int
    username: str
    password: str = ""
    use_ssl: bool = True        # implicit TLS (IMAPS / SMTPS)
    use_starttls: bool = False  # upgrade a plain connection with STARTTLS
    connect_timeout: float = 10.0
    command_timeout: float = 30.0

    def __repr__(self) -> str:
        return f"ServerConfig(host={self.host!r}, port={self.port}, username={self.username!r})"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ignore extra environment variables that aren't defined in the model
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ============================================================
    # IMAP Configuration (read side)
    # ============================================================
    imap_host: str = Field("localhost", description="IMAP server hostname")
    imap_port: int = Field(993, description="IMAP server port")
    imap_username: str = Field("", description="IMAP username/email")
    imap_password: str = Field("", description="IMAP password")
    imap_use_ssl: bool = Field(True, description="Use implicit TLS for IMAP")

    # ============================================================
    # SMTP Configuration (submission side)
    # ============================================================
    smtp_host: str = Field("localhost", description="SMTP server hostname")
    smtp_port: int = Field(587, description="SMTP server port (587=STARTTLS, 465=SSL)")
    smtp_username: Optional[str] = Field(None, description="SMTP username (defaults to IMAP username)")
    smtp_password: Optional[str] = Field(None, description="SMTP password (defaults to IMAP password)")
    smtp_use_tls: bool = Field(True, description="Upgrade SMTP connection with STARTTLS")
    smtp_use_ssl: bool = Field(False, description="Use implicit TLS for SMTP")

    # Email identity
    from_name: str = Field("", description="Display name in From field")
    from_email: Optional[str] = Field(None, description="From email address (defaults to imap_username)")
    sent_folder: Optional[str] = Field(
        None,
        description="Folder that receives a copy of every sent message (disabled when unset)"
    )

    # ============================================================
    # Session Pool / Timeouts
    # ============================================================
    imap_pool_size: int = Field(4, ge=1, description="Max concurrent IMAP sessions")
    smtp_pool_size: int = Field(2, ge=1, description="Max concurrent SMTP sessions")
    connect_timeout: float = Field(10.0, gt=0, description="Transport connect timeout (seconds)")
    command_timeout: float = Field(30.0, gt=0, description="Per-command reply timeout (seconds)")
    operation_timeout: float = Field(60.0, gt=0, description="Upper bound for one logical operation")

    # ============================================================
    # Message Rendering
    # ============================================================
    prefer_html: bool = Field(True, description="Return the HTML part when a message has one")

    # ============================================================
    # Contacts Store
    # ============================================================
    contacts_database_url: str = Field("sqlite:///./contacts.db", description="Contact store database URL")

    # ============================================================
    # API Configuration
    # ============================================================
    api_key: Optional[str] = Field(None, description="API key for authentication (optional for dev)")
    allowed_origins: str = Field(
        "http://localhost:3000,http://localhost:8000",
        description="Comma-separated CORS allowed origins"
    )
    api_port: int = Field(8000, description="API server port")

    # ============================================================
    # Logging Configuration
    # ============================================================
    log_level: str = Field("INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)")
    log_format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse allowed origins into list."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def from_email_address(self) -> str:
        """Get from email (defaults to IMAP username)."""
        return self.from_email or self.smtp_username or self.imap_username

    def imap_server(self) -> ServerConfig:
        return ServerConfig(
            host=self.imap_host,
            port=self.imap_port,
            username=self.imap_username,
            password=self.imap_password,
            use_ssl=self.imap_use_ssl,
            connect_timeout=self.connect_timeout,
            command_timeout=self.command_timeout,
        )

    def smtp_server(self) -> ServerConfig:
        return ServerConfig(
            host=self.smtp_host,
            port=self.smtp_port,
            username=self.smtp_username or self.imap_username,
            password=self.smtp_password or self.imap_password,
            use_ssl=self.smtp_use_ssl,
            use_starttls=self.smtp_use_tls and not self.smtp_use_ssl,
            connect_timeout=self.connect_timeout,
            command_timeout=self.command_timeout,
        )


def configure_logging(settings: "Settings") -> None:
    """Install the root log handler once, using the configured level/format."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=settings.log_format,
    )


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings (singleton).

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
