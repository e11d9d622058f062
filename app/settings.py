import os
import json
import logging
from typing import Any, List

logger = logging.getLogger("storybook-app")


class AppConfig:
    """Application configuration management"""

    # Default configuration values
    _defaults = {
        "database_url": "sqlite+aiosqlite:///./data/storybook.sqlite",
        "image_poll_interval": 2.0,  # seconds between task-status polls
        "image_poll_max_attempts": 60,
        "default_image_size": "1024x1024",
        "http_timeout": 120.0,
        "llm_temperature": 0.8,
        "llm_max_tokens": 2000,
        "cors_origins": "http://localhost:5173,http://localhost:5174,http://127.0.0.1:5173",
        "host": "127.0.0.1",
        "port": 3001,
    }

    # Cache for config values
    _config_cache = None

    @classmethod
    def get_value(cls, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.
        Checks environment variables first, then config file, then defaults.
        """
        # Check environment variables (with STORYBOOK_ prefix)
        env_key = f"STORYBOOK_{key.upper()}"
        if env_key in os.environ:
            return os.environ[env_key]

        # Load config if not already loaded
        if cls._config_cache is None:
            cls._load_config()

        if key in cls._config_cache:
            return cls._config_cache[key]

        if key in cls._defaults:
            return cls._defaults[key]

        return default

    @classmethod
    def get_int(cls, key: str) -> int:
        return int(cls.get_value(key))

    @classmethod
    def get_float(cls, key: str) -> float:
        return float(cls.get_value(key))

    @classmethod
    def get_database_url(cls) -> str:
        """DATABASE_URL wins over the prefixed setting, as on hosted deployments."""
        url = os.environ.get("DATABASE_URL") or cls.get_value("database_url")
        if url.startswith("sqlite:///"):
            url = url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        return url

    @classmethod
    def get_cors_origins(cls) -> List[str]:
        value = cls.get_value("cors_origins") or ""
        if isinstance(value, list):
            return value
        return [origin.strip() for origin in value.split(",") if origin.strip()]

    @classmethod
    def reset(cls) -> None:
        """Drop the cached config file contents so the next lookup reloads it."""
        cls._config_cache = None

    @classmethod
    def _load_config(cls) -> None:
        """Load configuration from file"""
        cls._config_cache = {}

        config_path = os.environ.get("STORYBOOK_CONFIG_PATH", "./config.json")

        try:
            if os.path.exists(config_path):
                with open(config_path, "r") as f:
                    cls._config_cache = json.load(f)
                logger.info(f"Loaded configuration from {config_path}")
            else:
                logger.info("No configuration file found, using defaults")
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading configuration: {str(e)}")
            # Continue with empty config and defaults
