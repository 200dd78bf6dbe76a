"""Configuration management - loads reconciler.yaml and environment variables."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from iap_reconciler.models import ProductCatalog, ReconcilerSettings


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class Config:
    """Application configuration loader and manager.

    Loads reconciler.yaml and provides validated access to:
    - Product catalog
    - Signature, connection and throttle settings
    - Storage, verification server and Pub/Sub settings
    """

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to reconciler.yaml. If not provided, uses CONFIG_PATH env var
                        or defaults to ./config/reconciler.yaml
        """
        self._config_path = self._resolve_config_path(config_path)
        self._settings: Optional[ReconcilerSettings] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path from argument, env var, or default."""
        if config_path:
            return Path(config_path)

        env_path = os.getenv("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path("config/reconciler.yaml")

    def _load_config(self) -> None:
        """Load and validate reconciler.yaml configuration."""
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                f"Please create config/reconciler.yaml or set CONFIG_PATH environment variable"
            )

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}")

        if not raw_config:
            raise ConfigurationError(f"Configuration file is empty: {self._config_path}")

        try:
            self._settings = ReconcilerSettings(**raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}")

    @property
    def settings(self) -> ReconcilerSettings:
        """Get validated settings."""
        if self._settings is None:
            raise ConfigurationError("Configuration not loaded")
        return self._settings

    @property
    def config_path(self) -> Path:
        """Get path to configuration file."""
        return self._config_path

    @property
    def catalog(self) -> ProductCatalog:
        """Get the product catalog."""
        return self.settings.catalog

    @property
    def package_name(self) -> str:
        """Get application package name (e.g. "com.example.trivialdrive")."""
        return self.settings.package_name

    @property
    def state_dir(self) -> Optional[Path]:
        """Directory for persisted state, or None for in-memory operation.

        The STATE_DIR environment variable overrides the file; an empty value
        selects in-memory operation.
        """
        env_dir = os.getenv("STATE_DIR")
        state_dir = env_dir if env_dir is not None else self.settings.storage.state_dir
        return Path(state_dir) if state_dir else None

    def reload(self) -> None:
        """Reload configuration from disk."""
        self._load_config()


_config_instance: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """Get global configuration instance (singleton).

    Args:
        config_path: Optional path to configuration file (only used on first call)

    Returns:
        Config instance
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_path)
    return _config_instance


def reload_config() -> None:
    """Reload global configuration from disk."""
    global _config_instance
    if _config_instance:
        _config_instance.reload()
    else:
        _config_instance = Config()


def reset_config() -> None:
    """Drop the global configuration (useful for testing)."""
    global _config_instance
    _config_instance = None
