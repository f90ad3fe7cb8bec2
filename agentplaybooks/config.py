"""Configuration management for the AgentPlaybooks service."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)


@dataclass
class AuthConfig:
    """Session authentication configuration (JWT cookies / bearer tokens).

    Sessions are optional. If session_secret is empty, session auth is
    disabled and only playbook API keys can authorize writes.
    """

    session_secret: str = ""  # HS256 signing key for JWT sessions

    # Cookie settings
    cookie_name: str = "session"
    cookie_domain: str = ""  # empty = use request host
    cookie_secure: bool = True  # set False for local HTTP dev
    jwt_expiry_days: int = 7

    @property
    def enabled(self) -> bool:
        return bool(self.session_secret)


@dataclass
class ServerConfig:
    """HTTP server configuration."""

    host: str = "127.0.0.1"
    port: int = 8000
    # Public URL used in exported OpenAPI documents
    base_url: str = "https://agentplaybooks.ai"
    cors_origins: list[str] = field(default_factory=lambda: ["*"])


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: Optional[str] = None


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "agentplaybooks"
    user: str = "playbooks"
    password: str = "playbooks"
    pool_min_size: int = 2
    pool_max_size: int = 10

    @property
    def url(self) -> str:
        """Async SQLAlchemy connection URL."""
        return (
            f"postgresql+asyncpg://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


@dataclass
class Config:
    """Main configuration container."""

    server: ServerConfig = field(default_factory=ServerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to config file. Defaults to config/default.yaml

    Returns:
        Populated Config dataclass
    """
    if config_path is None:
        candidates = [
            Path("config/default.yaml"),
            Path(__file__).parent.parent / "config" / "default.yaml",
        ]
        for candidate in candidates:
            if candidate.exists():
                config_path = str(candidate)
                break

    config = Config()

    if config_path and Path(config_path).exists():
        with open(config_path) as f:
            data = yaml.safe_load(f)

        if data:
            if "server" in data:
                config.server = ServerConfig(**data["server"])
            if "database" in data:
                config.database = DatabaseConfig(**data["database"])
            if "auth" in data:
                config.auth = AuthConfig(**data["auth"])
            if "logging" in data:
                config.logging = LoggingConfig(**data["logging"])

    # Environment variable overrides
    if os.environ.get("PLAYBOOKS_DB_HOST"):
        config.database.host = os.environ["PLAYBOOKS_DB_HOST"]
    if os.environ.get("PLAYBOOKS_DB_PORT"):
        config.database.port = int(os.environ["PLAYBOOKS_DB_PORT"])
    if os.environ.get("PLAYBOOKS_DB_NAME"):
        config.database.database = os.environ["PLAYBOOKS_DB_NAME"]
    if os.environ.get("PLAYBOOKS_DB_USER"):
        config.database.user = os.environ["PLAYBOOKS_DB_USER"]
    if os.environ.get("PLAYBOOKS_DB_PASSWORD"):
        config.database.password = os.environ["PLAYBOOKS_DB_PASSWORD"]
    if os.environ.get("PLAYBOOKS_LOG_LEVEL"):
        config.logging.level = os.environ["PLAYBOOKS_LOG_LEVEL"]
    if os.environ.get("PLAYBOOKS_BASE_URL"):
        config.server.base_url = os.environ["PLAYBOOKS_BASE_URL"]

    # Auth overrides
    if os.environ.get("AUTH_SESSION_SECRET"):
        config.auth.session_secret = os.environ["AUTH_SESSION_SECRET"]
    if os.environ.get("AUTH_COOKIE_SECURE"):
        config.auth.cookie_secure = os.environ["AUTH_COOKIE_SECURE"].lower() == "true"

    return config


def setup_logging(config: LoggingConfig) -> None:
    """
    Configure logging based on configuration.

    Args:
        config: Logging configuration
    """
    level = getattr(logging, config.level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(config.file))

    logging.basicConfig(
        level=level,
        format=config.format,
        handlers=handlers,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    logger.info(f"Logging configured at level {config.level}")
