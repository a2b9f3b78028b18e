import json
from pathlib import Path
from typing import Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

from src.core.logger import logger

BASE_DIR = Path(__file__).parent.parent.parent
ENV_FILE = BASE_DIR / ".env"
DEFAULT_SCRIPT_PATH = Path(__file__).parent.parent / "sync" / "data" / "demo_script.json"

load_dotenv(ENV_FILE, override=True)
logger.info(f"Loaded environment from: {ENV_FILE}")


def mask_sensitive_data(data: dict) -> dict:
    masked = {}
    sensitive_keys = ["key", "token", "secret", "password"]

    for key, value in data.items():
        if isinstance(value, dict):
            masked[key] = mask_sensitive_data(value)
        elif isinstance(value, str) and any(s in key.lower() for s in sensitive_keys):
            if not value:
                masked[key] = "<not set>"
            elif len(value) <= 4:
                masked[key] = "***"
            else:
                masked[key] = f"{value[:4]}...{value[-4:]}"
        else:
            masked[key] = value

    return masked


class CoreSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE) if ENV_FILE.exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        protected_namespaces=(),
    )


class ApiSettings(CoreSettings):
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000, gt=0, le=65535)
    API_WORKERS: int = Field(default=1, ge=1)
    API_RELOAD: bool = Field(default=False)
    API_CORS_ORIGINS: list[str] = Field(default_factory=lambda: ["*"])

    DEFAULT_USER_ID: str = Field(
        default="default",
        description="User channel used when a request carries no identifier",
    )
    USER_ID_HEADER: str = Field(default="X-User-Id")


class SyncSettings(CoreSettings):
    PUSH_QUEUE_SIZE: int = Field(
        default=100,
        gt=0,
        description="Pending events per push connection before it is dropped as too slow",
    )
    SSE_KEEPALIVE_SECONDS: float = Field(
        default=15.0,
        gt=0.0,
        description="Idle time before a keepalive comment is written to an SSE stream",
    )
    ECHO_SUPPRESSION_MS: int = Field(
        default=100,
        ge=0,
        description="How long a surface stays in 'remote' mode after applying an incoming change",
    )
    BROADCAST_CHANNEL_NAME: str = Field(default="conversation-sync")
    IFRAME_SOURCE_TAG: str = Field(
        default="conversation-sync-iframe",
        description="Marker attached to envelopes relayed between an iframe and its parent window",
    )


class DemoSettings(CoreSettings):
    DEMO_SCRIPT_PATH: Path = Field(default=DEFAULT_SCRIPT_PATH)
    THINKING_DELAY_MS: int = Field(
        default=3000,
        ge=0,
        description="Simulated generation latency before an agent message is revealed",
    )
    AGENT_SWITCH_DELAY_MS: int = Field(default=3000, ge=0)
    CONNECT_DELAY_MS: int = Field(
        default=3000,
        ge=0,
        description="Time an integration stays 'connecting' after its button is pressed",
    )
    DEMO_API_BASE_URL: str = Field(default="http://localhost:8000")
    DEMO_USER_ID: Optional[str] = Field(default=None)


class Settings(CoreSettings):
    api: ApiSettings = Field(default_factory=ApiSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    demo: DemoSettings = Field(default_factory=DemoSettings)


try:
    settings = Settings()

    settings_dict = settings.model_dump(mode="json")
    masked_settings = mask_sensitive_data(settings_dict)
    logger.info(f"Settings loaded: {json.dumps(masked_settings, indent=2)}")

except ValidationError as e:
    logger.exception(f"Error validating settings: {e.json()}")
    raise
