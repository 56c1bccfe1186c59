#!/usr/bin/env python3
"""
Cloud Audit Engine - Configuration Manager
Loads config.yaml from the home directory, deep-merged over built-in defaults.
"""

import copy
import sys
import yaml
from typing import Any, Dict, Optional

from .paths import paths
from .exceptions import ConfigurationError


class Config:
    """Configuration manager with built-in defaults."""

    _instance: Optional['Config'] = None

    DEFAULTS = {
        'version': '1.0.0',
        'scanning': {
            'check_timeout_seconds': 120,
            'phase_timeout_seconds': 900,  # 0 disables the phase timeout
            'auth_retry_attempts': 1,
            'auth_retry_delay_seconds': 2,
            'max_concurrency': {
                'aws': 8,
                'gcp': 5,
                'azure': 5
            },
            'rest_max_retries': 4,
            'rest_backoff_seconds': 1.0,
            'rest_timeout_seconds': 30
        },
        'scheduling': {
            'tick_interval_seconds': 60,
            'max_parallel_audits': 4,
            'stale_audit_hours': 6
        },
        'risk': {
            'weights': {
                'critical': 10,
                'high': 5,
                'medium': 2,
                'low': 0.5
            }
        },
        'notifications': {
            'smtp_host': 'localhost',
            'smtp_port': 587,
            'smtp_user': '',
            'smtp_pass': '',
            'from_addr': 'cloudaudit@localhost',
            'use_tls': True,
            'webhook_timeout_seconds': 15,
            'dashboard_url': ''
        },
        'database': {
            'backend': 'sqlite',
            'name': 'cloudaudit'
        },
        'logging': {
            'level': 'INFO',
            'max_bytes': 10 * 1024 * 1024,
            'backup_count': 30
        }
    }

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self._initialized = True
        self._config: Dict[str, Any] = {}
        self._load()

    def _load(self):
        """Load configuration from file or create defaults."""
        config_file = paths.config_active

        if config_file.exists():
            try:
                with open(config_file, 'r') as f:
                    loaded = yaml.safe_load(f) or {}
                self._config = self._deep_merge(copy.deepcopy(self.DEFAULTS), loaded)
            except (OSError, yaml.YAMLError) as e:
                print(f"Warning: Failed to load config, using defaults: {e}", file=sys.stderr)
                self._config = copy.deepcopy(self.DEFAULTS)
        else:
            self._config = copy.deepcopy(self.DEFAULTS)
            self.save()

    def _deep_merge(self, base: Dict, override: Dict) -> Dict:
        """Deep merge override into base."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    def save(self):
        """Save configuration to file."""
        config_file = paths.config_active
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w') as f:
            yaml.dump(self._config, f, default_flow_style=False, sort_keys=False)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a config value using dot notation (e.g., 'scanning.check_timeout_seconds')."""
        keys = key.split('.')
        value = self._config
        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def set(self, key: str, value: Any):
        """Set a config value using dot notation."""
        keys = key.split('.')
        config = self._config
        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]
        config[keys[-1]] = value

    def get_concurrency(self, provider: str) -> int:
        """Get the per-phase check concurrency cap for a provider tag."""
        return max(1, int(self.get(f'scanning.max_concurrency.{provider.lower()}', 4)))

    def get_check_timeout(self) -> float:
        return float(self.get('scanning.check_timeout_seconds', 120))

    def get_phase_timeout(self) -> Optional[float]:
        """Phase timeout in seconds, or None when disabled."""
        value = self.get('scanning.phase_timeout_seconds', 0)
        return float(value) if value else None

    def get_tick_interval(self) -> float:
        return float(self.get('scheduling.tick_interval_seconds', 60))

    def get_risk_weights(self) -> Dict[str, float]:
        """
        Get severity weights for the risk score.

        Raises ConfigurationError if any weight is negative, since a negative
        weight would let more findings raise the score.
        """
        weights = self.get('risk.weights', {}) or {}
        result = {}
        for severity in ('critical', 'high', 'medium', 'low'):
            try:
                value = float(weights.get(severity, self.DEFAULTS['risk']['weights'][severity]))
            except (TypeError, ValueError):
                raise ConfigurationError(f"Risk weight for '{severity}' must be a number")
            if value < 0:
                raise ConfigurationError(
                    f"Risk weight for '{severity}' must be non-negative, got {value}"
                )
            result[severity] = value
        return result

    def get_smtp_settings(self) -> Dict[str, Any]:
        """Get SMTP settings used by the email alert sink."""
        return dict(self.get('notifications', {}))


# Singleton instance
config = Config()


def get_config() -> Config:
    """Get the singleton config instance."""
    return config
