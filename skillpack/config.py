"""
Configuration management for skillpack.

Precedence: env vars > .env file > config.yaml > defaults

Home directory: SKILLPACK_HOME (default ~/.skillpack)
Config file:    {home}/config.yaml
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# Known config keys that can be set via `skillpack config set`
CONFIG_KEYS = {
    "plugins_dir", "state_file", "credentials_file", "token_budget",
    "command_prefix", "log_level",
}

DEFAULT_HOME = Path("~/.skillpack")


def _resolve_home() -> Path:
    """Resolve the home directory from env or default, before Settings init."""
    raw = os.environ.get("SKILLPACK_HOME", "")
    if raw:
        return Path(raw).expanduser().resolve()
    env_file = Path.cwd() / ".env"
    if env_file.exists():
        for line in env_file.read_text().splitlines():
            line = line.strip()
            if line.startswith("SKILLPACK_HOME="):
                val = line.split("=", 1)[1].strip()
                return Path(val).expanduser().resolve()
    return DEFAULT_HOME.expanduser().resolve()


def get_config_path(home: Path) -> Path:
    """Get the config.yaml path for a home directory."""
    return home / "config.yaml"


def load_yaml_config(home: Path) -> dict[str, Any]:
    """Load {home}/config.yaml. Missing or invalid files yield an empty dict."""
    config_file = get_config_path(home)
    if not config_file.exists():
        return {}
    try:
        with open(config_file) as f:
            data = yaml.safe_load(f) or {}
    except (yaml.YAMLError, OSError) as e:
        logger.warning(f"Error loading config.yaml: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"config.yaml is not a dict, ignoring: {config_file}")
        return {}
    return data


def save_yaml_config(home: Path, data: dict[str, Any]) -> Path:
    """Write config values to {home}/config.yaml."""
    config_file = get_config_path(home)
    config_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config_file, "w") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
    return config_file


class Settings(BaseSettings):
    """Runtime configuration. Precedence: env vars > .env > config.yaml > defaults."""

    home: Path = Field(
        default=DEFAULT_HOME,
        description="Base directory for plugins, state and credentials (SKILLPACK_HOME)",
    )
    plugins_dir: Optional[Path] = Field(
        default=None,
        description="Plugins root (defaults to {home}/plugins)",
    )
    state_file: Optional[Path] = Field(
        default=None,
        description="Enabled/disabled flags (defaults to {home}/plugin-state.yaml)",
    )
    credentials_file: Optional[Path] = Field(
        default=None,
        description="Credential store for ${VAR} placeholders (defaults to {home}/credentials.yaml)",
    )

    # Context assembly
    token_budget: int = Field(
        default=2000,
        ge=0,
        description="Default context budget in estimated tokens",
    )
    command_prefix: str = Field(default="/", min_length=1, description="Reserved command prefix")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string",
    )

    model_config = {
        "env_prefix": "SKILLPACK_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="before")
    @classmethod
    def _inject_yaml_config(cls, data: Any) -> Any:
        """Inject config.yaml values as fallbacks below env vars and .env."""
        if not isinstance(data, dict):
            data = {}

        home = Path(data["home"]).expanduser() if data.get("home") else _resolve_home()
        yaml_config = load_yaml_config(home)

        for key, value in yaml_config.items():
            if key not in data or data[key] is None:
                env_val = os.environ.get(f"SKILLPACK_{key.upper()}")
                if env_val is None:
                    data[key] = value

        data.setdefault("home", home)
        return data

    @property
    def home_path(self) -> Path:
        return self.home.expanduser()

    @property
    def plugins_path(self) -> Path:
        return (self.plugins_dir or self.home_path / "plugins").expanduser()

    @property
    def state_path(self) -> Path:
        return (self.state_file or self.home_path / "plugin-state.yaml").expanduser()

    @property
    def credentials_path(self) -> Path:
        return (self.credentials_file or self.home_path / "credentials.yaml").expanduser()

    @property
    def config_path(self) -> Path:
        return get_config_path(self.home_path)


def get_settings() -> Settings:
    """Build settings from the current environment."""
    return Settings()
