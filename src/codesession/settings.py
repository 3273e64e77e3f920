from pathlib import Path
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderConfig(BaseModel):
    """Credentials for one model provider, addressed by ``id``."""

    id: str
    base_url: str
    api_key: str = ""
    models: List[str] = Field(default_factory=list)
    extra: Dict[str, Any] = Field(default_factory=dict)


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # JSON list in the environment, e.g.
    # PROVIDERS='[{"id": "openai", "base_url": "https://api.openai.com/v1", "api_key": "sk-..."}]'
    providers: List[ProviderConfig] = Field(default_factory=list)
    default_model: str = "openai/gpt-4o-mini"
    max_iterations: int = 25
    request_timeout_seconds: float = 120.0

    system_prompt: str = (
        "You are an expert software engineer working inside the user's project.\n"
        "Use the available tools to read and change files, then build the "
        "project to verify your work.\n"
        "Explain briefly what you changed when you are done."
    )

    require_persistence: bool = False
    redis_url: str | None = None
    context_ttl_seconds: int = 86400 * 30
    history_dir: Path | None = None

    # Semicolon-separated stdio commands, e.g. "python servers/fs.py;node git.js"
    mcp_server_cmds: str | None = None

    cors_origins: str = "*"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
