"""Configuration management module.

This module handles persistent configuration storage using TOML format.
Stores the broker endpoint and default run options.

Security:
- Config file permissions: 0600 (owner read/write only)
- Path validation
- The broker token is never stored here (see VDIWAVE_BROKER_TOKEN)
"""

import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import tomli
import tomlkit

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration operations fail."""

    pass


@dataclass
class VdiwaveConfig:
    """vdiwave configuration data."""

    broker_url: str | None = None
    verify_ssl: bool = True
    request_timeout: int = 30
    replica_check_workers: int = 1
    default_exclude: list[str] = field(default_factory=list)
    force_logoff: bool = False
    stop_on_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        data = asdict(self)
        # TOML has no null
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VdiwaveConfig":
        """Create from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        for key in data:
            if key not in known:
                logger.warning(f"Ignoring unknown config key: {key}")
        return cls(**{k: v for k, v in data.items() if k in known})

    @staticmethod
    def parse_value(key: str, raw: str) -> Any:
        """Convert a command-line string to the type of config field key.

        Raises:
            ConfigError: If key is unknown or raw cannot be converted
        """
        types = {f.name: f.type for f in fields(VdiwaveConfig)}
        if key not in types:
            raise ConfigError(f"Unknown config key: {key}")

        field_type = str(types[key])
        if "bool" in field_type:
            lowered = raw.strip().lower()
            if lowered in ("true", "yes", "1", "on"):
                return True
            if lowered in ("false", "no", "0", "off"):
                return False
            raise ConfigError(f"Invalid boolean for {key}: {raw}")
        if "int" in field_type:
            try:
                value = int(raw)
            except ValueError as e:
                raise ConfigError(f"Invalid integer for {key}: {raw}") from e
            if value < 1:
                raise ConfigError(f"{key} must be >= 1")
            return value
        if "list" in field_type:
            return [item.strip() for item in raw.split(",") if item.strip()]
        return raw


class ConfigManager:
    """Manage vdiwave configuration file.

    Configuration is stored at ~/.vdiwave/config.toml with secure permissions.
    """

    DEFAULT_CONFIG_DIR = Path.home() / ".vdiwave"
    DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"

    @classmethod
    def _validate_config_path(cls, path: Path) -> Path:
        """Ensure path is inside ~/.vdiwave, the working directory, or the temp dir.

        Raises:
            ConfigError: If path is outside allowed directories
        """
        resolved_path = path.resolve()
        allowed_dirs = [
            cls.DEFAULT_CONFIG_DIR.resolve(),
            Path.cwd().resolve(),
            Path(tempfile.gettempdir()).resolve(),
        ]

        for allowed_dir in allowed_dirs:
            try:
                resolved_path.relative_to(allowed_dir)
                return resolved_path
            except ValueError:
                continue

        raise ConfigError(
            f"Config path outside allowed directories: {resolved_path}\n"
            f"Allowed directories:\n"
            f"  - {cls.DEFAULT_CONFIG_DIR}\n"
            f"  - {Path.cwd()}"
        )

    @classmethod
    def get_config_path(cls, custom_path: str | None = None) -> Path:
        """Get configuration file path.

        Args:
            custom_path: Custom config file path (optional)

        Returns:
            Path to config file

        Raises:
            ConfigError: If path is outside allowed directories
        """
        if custom_path:
            return cls._validate_config_path(Path(custom_path).expanduser())
        return cls.DEFAULT_CONFIG_FILE

    @classmethod
    def load_config(cls, custom_path: str | None = None) -> VdiwaveConfig:
        """Load configuration from file.

        Args:
            custom_path: Custom config file path (optional)

        Returns:
            VdiwaveConfig object (defaults if the file does not exist)

        Raises:
            ConfigError: If loading fails
        """
        config_path = cls.get_config_path(custom_path)

        if not config_path.exists():
            logger.debug("Config file not found, using defaults")
            return VdiwaveConfig()

        try:
            mode = config_path.stat().st_mode & 0o777
            if mode & 0o077:
                logger.warning(
                    f"Config file has insecure permissions: {oct(mode)}. Fixing to 0600..."
                )
                os.chmod(config_path, 0o600)

            with open(config_path, "rb") as f:
                data = tomli.load(f)

            logger.debug(f"Loaded config from: {config_path}")
            return VdiwaveConfig.from_dict(data)

        except (OSError, tomli.TOMLDecodeError, TypeError) as e:
            raise ConfigError(f"Failed to load config: {e}") from e

    @classmethod
    def save_config(cls, config: VdiwaveConfig, custom_path: str | None = None) -> Path:
        """Save configuration to file, preserving existing comments.

        Args:
            config: Configuration to save
            custom_path: Custom config file path (optional)

        Returns:
            Path written

        Raises:
            ConfigError: If saving fails
        """
        config_path = cls.get_config_path(custom_path)
        temp_path = config_path.with_suffix(".tmp")
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            if config_path.parent == cls.DEFAULT_CONFIG_DIR:
                os.chmod(config_path.parent, 0o700)

            if config_path.exists():
                with open(config_path) as f:
                    doc = tomlkit.load(f)
            else:
                doc = tomlkit.document()
            for key, value in config.to_dict().items():
                doc[key] = value

            with open(temp_path, "w") as f:
                tomlkit.dump(doc, f)
            os.chmod(temp_path, 0o600)
            temp_path.replace(config_path)

            logger.debug(f"Saved config to: {config_path}")
            return config_path

        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise ConfigError(f"Failed to save config: {e}") from e

    @classmethod
    def update_config(cls, custom_path: str | None = None, **updates: Any) -> VdiwaveConfig:
        """Update configuration values.

        Raises:
            ConfigError: If a key is unknown or saving fails
        """
        config = cls.load_config(custom_path)
        for key, value in updates.items():
            if not hasattr(config, key):
                raise ConfigError(f"Unknown config key: {key}")
            setattr(config, key, value)

        cls.save_config(config, custom_path)
        return config

    @classmethod
    def get_broker_url(cls, cli_value: str | None = None, custom_path: str | None = None) -> str | None:
        """Get broker URL with CLI override.

        Args:
            cli_value: Broker URL from CLI argument (takes precedence)
            custom_path: Custom config file path (optional)

        Returns:
            Broker URL or None
        """
        if cli_value:
            return cli_value
        return cls.load_config(custom_path).broker_url


__all__ = ["ConfigError", "ConfigManager", "VdiwaveConfig"]
