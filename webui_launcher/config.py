"""
Configuration for the launcher.

Settings come from built-in defaults, then the JSON settings file in the
data directory (~/.openwebui-launcher/config.json), then environment
variables (a .env file in the working directory is loaded first).
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .models import LaunchSpec

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.json"
DEFAULT_DATA_DIR = Path.home() / ".openwebui-launcher"

# Environment variable -> settings field
ENV_VARS = {
    "OPENWEBUI_URL": "web_url",
    "OPENWEBUI_COMMAND": "command",
    "OPENWEBUI_ARGS": "arguments",
    "OPENWEBUI_WORKING_DIR": "working_directory",
    "OPENWEBUI_STARTUP_DELAY": "startup_delay_ms",
    "OPENWEBUI_START_MINIMIZED": "start_minimized",
    "OPENWEBUI_APP_TITLE": "application_title",
    "LAUNCHER_HOST": "host",
    "LAUNCHER_PORT": "port",
    "LAUNCHER_LOG_MAX_BYTES": "log_max_bytes",
    "LAUNCHER_LOG_BACKUP_COUNT": "log_backup_count",
}


@dataclass
class Config:
    """Launcher configuration."""

    # Supervised server
    web_url: str = "http://localhost:8080"
    command: str = "open-webui"
    arguments: str = "serve"
    working_directory: str = ""  # Empty means the user's home directory

    # Startup behaviour
    startup_delay_ms: int = 20000
    start_minimized: bool = False
    application_title: str = "OpenWebUI Launcher"

    # Dashboard
    host: str = "127.0.0.1"
    port: int = 9901
    output_history: int = 2000

    # Logging
    log_max_bytes: int = 10 * 1024 * 1024  # 10MB
    log_backup_count: int = 5

    data_dir: Path = DEFAULT_DATA_DIR

    @property
    def config_path(self) -> Path:
        return self.data_dir / CONFIG_FILE_NAME

    @property
    def log_path(self) -> Path:
        return self.data_dir / "launcher.log"

    def effective_working_directory(self) -> str:
        """The configured working directory, or the user's home if blank."""
        if self.working_directory.strip():
            return self.working_directory
        return str(Path.home())

    def launch_spec(self) -> LaunchSpec:
        return LaunchSpec(
            command=self.command,
            arguments=self.arguments,
            working_directory=self.working_directory,
        )

    def to_dict(self) -> dict:
        """Settings persisted to the config file."""
        data = asdict(self)
        del data["data_dir"]
        return data

    def update(self, values: dict):
        """Apply known settings, converting to the field's type."""
        for f in fields(self):
            if f.name == "data_dir" or f.name not in values or values[f.name] is None:
                continue
            setattr(self, f.name, _coerce(values[f.name], type(getattr(self, f.name))))

    def apply_environment(self):
        """Override settings with any non-blank environment variables."""
        for env_name, field_name in ENV_VARS.items():
            value = os.environ.get(env_name)
            if value is None or not value.strip():
                continue
            try:
                setattr(self, field_name, _coerce(value, type(getattr(self, field_name))))
            except ValueError:
                logger.warning(f"Ignoring invalid value for {env_name}: {value!r}")

    def reset(self):
        """Restore all settings to their defaults."""
        defaults = Config(data_dir=self.data_dir)
        for f in fields(self):
            setattr(self, f.name, getattr(defaults, f.name))

    def save(self):
        """Write the settings to the config file."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(json.dumps(self.to_dict(), indent=2))
        logger.info(f"Saved settings to {self.config_path}")


def _coerce(value, target: type):
    if target is bool:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("true", "1", "yes"):
            return True
        if text in ("false", "0", "no"):
            return False
        raise ValueError(f"Not a boolean: {value!r}")
    return target(value)


def load_config(data_dir: Optional[Path] = None, use_environment: bool = True) -> Config:
    """Load configuration from the config file and environment."""
    if use_environment:
        load_dotenv()

    config = Config(data_dir=Path(data_dir) if data_dir else DEFAULT_DATA_DIR)

    try:
        if config.config_path.exists():
            config.update(json.loads(config.config_path.read_text()))
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Error loading config file {config.config_path}: {e}")

    if use_environment:
        config.apply_environment()

    config.data_dir.mkdir(parents=True, exist_ok=True)
    return config
