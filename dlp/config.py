"""
Configuration management for the DLP engine.
Handles loading settings from environment variables and YAML config files.
"""
import logging
import os
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

from .core import DEFAULT_SIZE_HINT

# Load environment variables from .env file if it exists
load_dotenv()

DEFAULT_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class ScanSettings(BaseModel):
    """Validated settings for the scan engine and its producers."""

    default_size_hint: int = DEFAULT_SIZE_HINT
    context_window: int = 50
    email_limit: int = 50
    file_system_limit: int = 1000
    database_limit: int = 10
    generic_limit: int = 100
    database_sample_size: int = 1000

    @field_validator('*')
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError('must be a positive integer')
        return v

    def limit_for(self, source: str) -> int:
        """Per-scan unit limit for a source kind."""
        return {
            'email': self.email_limit,
            'file_system': self.file_system_limit,
            'database': self.database_limit,
        }.get(source, self.generic_limit)


class Config:
    """DLP configuration loaded from defaults, environment variables and a YAML file."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration.

        Args:
            config_path: Optional path to a YAML config file.
        """
        self._config: Dict[str, Any] = {}
        self._config_path = config_path or os.getenv('DLP_CONFIG_PATH', 'config/dlp_config.yaml')
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from environment variables and the YAML file."""
        self._config = {
            'logging': {
                'level': os.getenv('DLP_LOG_LEVEL', 'INFO'),
                'file': os.getenv('DLP_LOG_FILE', ''),
                'format': os.getenv('DLP_LOG_FORMAT', DEFAULT_LOG_FORMAT),
            },
            'scan': {
                'default_size_hint': int(os.getenv('DLP_DEFAULT_SIZE_HINT', str(DEFAULT_SIZE_HINT))),
                'context_window': int(os.getenv('DLP_CONTEXT_WINDOW', '50')),
                'email_limit': int(os.getenv('DLP_EMAIL_LIMIT', '50')),
                'file_system_limit': int(os.getenv('DLP_FILE_SYSTEM_LIMIT', '1000')),
                'database_limit': int(os.getenv('DLP_DATABASE_LIMIT', '10')),
                'generic_limit': int(os.getenv('DLP_GENERIC_LIMIT', '100')),
                'database_sample_size': int(os.getenv('DLP_DATABASE_SAMPLE_SIZE', '1000')),
            },
            'rules': {
                'load_builtins': self._str_to_bool(os.getenv('DLP_LOAD_BUILTINS', 'True')),
                'patterns_file': os.getenv('DLP_PATTERNS_FILE', ''),
                'policies_file': os.getenv('DLP_POLICIES_FILE', ''),
            },
        }

        if self._config_path and os.path.exists(self._config_path):
            with open(self._config_path, 'r') as f:
                yaml_config = yaml.safe_load(f) or {}
                self._deep_update(self._config, yaml_config)

    def _deep_update(self, original: Dict, update: Dict) -> None:
        """Recursively update a dictionary."""
        for key, value in update.items():
            if key in original and isinstance(original[key], dict) and isinstance(value, dict):
                self._deep_update(original[key], value)
            else:
                original[key] = value

    @staticmethod
    def _str_to_bool(value: str) -> bool:
        """Convert a string to a boolean."""
        return value.lower() in ('true', '1', 't', 'y', 'yes')

    @property
    def config_path(self) -> str:
        return self._config_path

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dot notation."""
        value = self._config
        try:
            for k in key.split('.'):
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def __getitem__(self, key: str) -> Any:
        return self.get(key)

    def __contains__(self, key: str) -> bool:
        sentinel = object()
        return self.get(key, sentinel) is not sentinel

    def scan_settings(self) -> ScanSettings:
        """The ``scan`` section, validated."""
        return ScanSettings(**(self.get('scan') or {}))


def configure_logging(config: Config) -> None:
    """Configure root logging from the ``logging`` section."""
    level = getattr(logging, str(config.get('logging.level', 'INFO')).upper(), logging.INFO)
    handlers = [logging.StreamHandler()]
    log_file = config.get('logging.file')
    if log_file:
        os.makedirs(os.path.dirname(log_file) or '.', exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format=config.get('logging.format', DEFAULT_LOG_FORMAT),
        handlers=handlers,
        force=True,
    )
