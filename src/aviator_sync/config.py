"""
Configuration module for aviator_sync
Centralizes all constants and settings: built-in defaults, an optional YAML file,
then bounded environment overrides.
"""

import copy
import logging
import os
from collections.abc import Mapping
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Configuration validation error"""

    pass


def _safe_int_env(
    name: str,
    default: int,
    min_val: int | None = None,
    max_val: int | None = None,
    environ: Mapping[str, str] | None = None,
) -> int:
    """
    Safely parse integer environment variable with bounds.
    Falls back to default on invalid values.
    """
    env = os.environ if environ is None else environ
    try:
        value = int(env.get(name, str(default)))
        if min_val is not None:
            value = max(min_val, value)
        if max_val is not None:
            value = min(max_val, value)
        return value
    except (ValueError, TypeError):
        logger.warning(f"Invalid {name}, using default {default}")
        return default


def _safe_float_env(
    name: str,
    default: float,
    min_val: float | None = None,
    max_val: float | None = None,
    environ: Mapping[str, str] | None = None,
) -> float:
    """Float counterpart of _safe_int_env."""
    env = os.environ if environ is None else environ
    try:
        value = float(env.get(name, str(default)))
        if value != value:  # NaN
            raise ValueError(name)
        if min_val is not None:
            value = max(min_val, value)
        if max_val is not None:
            value = min(max_val, value)
        return value
    except (ValueError, TypeError):
        logger.warning(f"Invalid {name}, using default {default}")
        return default


class Config:
    """
    Engine configuration.

    Each section is a plain dict, read as ``config.POLLING['poll_interval_sec']``.
    Instances own deep copies of the defaults, so overrides never leak between engines.
    """

    # ========== Server API ==========
    API = {
        'base_url': 'http://localhost:8000',
        'access_token': None,
        'user_id': None,
        'timeout': 5.0,
        'endpoints': {
            'realtime': '/api/aviator/realtime/',
            'history': '/api/aviator/game-history/',
            'balance': '/api/aviator/balance/',
            'place_bet': '/api/aviator/place-bet/',
            'cashout': '/api/aviator/cashout/',
            'check_active_bet': '/api/aviator/check-active-bet/',
            'bet_history': '/api/aviator/history/',
            'bet_history_public': '/api/aviator/history-public/',
        },
        'login_path': '/login',
    }

    # ========== Polling & Resync ==========
    POLLING = {
        'poll_interval_sec': 0.5,
        'backoff_interval_sec': 2.0,
        'error_threshold': 3,
        'resync_after_errors': 3,
        'resync_debounce_sec': 2.0,
        'safety_net_interval_sec': 30.0,
        'post_recovery_fetch_delay_sec': 0.1,
    }

    # ========== Stall Watchdog ==========
    WATCHDOG = {
        'heartbeat_interval_sec': 2.0,
        'stale_poll_sec': 8.0,
        'countdown_stall_sec': 5.0,
        'bet_state_stale_sec': 10.0,
        'max_waiting_sec': 30.0,
        'max_playing_sec': 120.0,
    }

    # ========== Round Timing ==========
    TIMING = {
        'crash_hold_sec': 3.0,
        'recovery_sec': 1.5,
        'history_retry_sec': 0.8,
        'history_max_size': 20,
    }

    # ========== Financial Settings ==========
    FINANCIAL = {
        'min_stake': Decimal('10'),
        'max_stake': Decimal('100000'),
        'multi_slip': True,
        'auto_bet': False,
        'auto_bet_delay_sec': 1.0,
        'max_slips_kept': 50,
        'currency': '',
    }

    # ========== Multiplier Animation ==========
    ANIMATION = {
        'multiplier_rate_per_sec': 0.05,
        'frame_interval_sec': 1 / 60,
    }

    # ========== Logging Settings ==========
    LOGGING = {
        'level': 'INFO',
        'log_dir': str(Path.home() / '.aviator_sync' / 'logs'),
        'console_output': True,
        'file_output': False,
        'colored': True,
        'json_format': False,
        'max_bytes': 5 * 1024 * 1024,
        'backup_count': 3,
    }

    SECTIONS = ('API', 'POLLING', 'WATCHDOG', 'TIMING', 'FINANCIAL', 'ANIMATION', 'LOGGING')

    def __init__(self, overrides: Mapping[str, Mapping[str, Any]] | None = None, validate: bool = True):
        """
        Args:
            overrides: ``{section_name: {key: value}}`` merged over the defaults
            validate: Whether to validate configuration on init
        """
        for section in self.SECTIONS:
            setattr(self, section, copy.deepcopy(getattr(type(self), section)))

        if overrides:
            self.merge(overrides)

        if validate:
            self.validate()

    def merge(self, overrides: Mapping[str, Any]):
        """Section-merge ``overrides`` into this config. Section names are case-insensitive."""
        for name, values in overrides.items():
            section = str(name).upper()
            if section not in self.SECTIONS:
                raise ConfigError(f"Unknown config section: {name}")
            if not isinstance(values, Mapping):
                raise ConfigError(f"Config section {name} must be a mapping")

            target = getattr(self, section)
            for key, value in values.items():
                if key not in target:
                    logger.warning(f"Ignoring unknown config key {section}.{key}")
                    continue
                if isinstance(target[key], dict) and isinstance(value, Mapping):
                    target[key] = {**target[key], **value}
                elif isinstance(target[key], Decimal):
                    target[key] = Decimal(str(value))
                else:
                    target[key] = value

    def validate(self):
        """
        Validate all configuration values

        Raises:
            ConfigError: If configuration is invalid
        """
        errors = []

        if not str(self.API['base_url']).startswith(('http://', 'https://')):
            errors.append(f"base_url must be an http(s) URL, got {self.API['base_url']!r}")
        if self.API['timeout'] <= 0:
            errors.append("API timeout must be positive")

        if self.POLLING['poll_interval_sec'] <= 0:
            errors.append("poll_interval_sec must be positive")
        if self.POLLING['backoff_interval_sec'] < self.POLLING['poll_interval_sec']:
            errors.append("backoff_interval_sec must be >= poll_interval_sec")
        if self.POLLING['error_threshold'] < 1:
            errors.append("error_threshold must be at least 1")
        if self.POLLING['resync_after_errors'] < 1:
            errors.append("resync_after_errors must be at least 1")

        for key, value in self.WATCHDOG.items():
            if value <= 0:
                errors.append(f"{key} must be positive")

        if self.TIMING['crash_hold_sec'] < 0 or self.TIMING['recovery_sec'] < 0:
            errors.append("crash_hold_sec and recovery_sec cannot be negative")
        if self.TIMING['history_max_size'] < 1:
            errors.append("history_max_size must be at least 1")

        if self.FINANCIAL['min_stake'] <= 0:
            errors.append("min_stake must be positive")
        if self.FINANCIAL['max_stake'] < self.FINANCIAL['min_stake']:
            errors.append("max_stake must be >= min_stake")

        if self.ANIMATION['multiplier_rate_per_sec'] <= 0:
            errors.append("multiplier_rate_per_sec must be positive")
        if self.ANIMATION['frame_interval_sec'] <= 0:
            errors.append("frame_interval_sec must be positive")

        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if str(self.LOGGING['level']).upper() not in valid_levels:
            errors.append(f"Invalid log level: {self.LOGGING['level']}")

        if errors:
            raise ConfigError("Configuration validation failed:\n" + "\n".join(errors))

    def endpoint(self, name: str) -> str:
        return self.API['endpoints'][name]

    def as_dict(self) -> dict[str, dict[str, Any]]:
        return {section.lower(): copy.deepcopy(getattr(self, section)) for section in self.SECTIONS}


# Environment overrides: variable -> (section, key, parser)
ENV_MAPPINGS = {
    'AVIATOR_API_BASE_URL': ('API', 'base_url', str),
    'AVIATOR_ACCESS_TOKEN': ('API', 'access_token', str),
    'AVIATOR_USER_ID': ('API', 'user_id', str),
    'AVIATOR_LOG_LEVEL': ('LOGGING', 'level', str),
    'AVIATOR_LOG_DIR': ('LOGGING', 'log_dir', str),
}


def _apply_env(config: Config, environ: Mapping[str, str]):
    for env_key, (section, key, parse) in ENV_MAPPINGS.items():
        value = environ.get(env_key)
        if value:
            getattr(config, section)[key] = parse(value)

    if environ.get('AVIATOR_API_TIMEOUT'):
        config.API['timeout'] = _safe_float_env(
            'AVIATOR_API_TIMEOUT', config.API['timeout'], 0.5, 60.0, environ
        )
    if environ.get('AVIATOR_POLL_INTERVAL'):
        config.POLLING['poll_interval_sec'] = _safe_float_env(
            'AVIATOR_POLL_INTERVAL', config.POLLING['poll_interval_sec'], 0.1, 10.0, environ
        )
    if environ.get('AVIATOR_ERROR_THRESHOLD'):
        config.POLLING['error_threshold'] = _safe_int_env(
            'AVIATOR_ERROR_THRESHOLD', config.POLLING['error_threshold'], 1, 100, environ
        )
    if environ.get('AVIATOR_AUTO_BET'):
        config.FINANCIAL['auto_bet'] = environ['AVIATOR_AUTO_BET'].lower() == 'true'


def load_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Config:
    """
    Load configuration from defaults, YAML file and environment (in that order).

    Args:
        path: YAML file; defaults to $AVIATOR_CONFIG when set
        environ: Environment mapping (defaults to os.environ)

    Raises:
        ConfigError: the file is unreadable, not YAML, or has an invalid structure
    """
    env = os.environ if environ is None else environ
    config = Config(validate=False)

    if path is None and env.get('AVIATOR_CONFIG'):
        path = env['AVIATOR_CONFIG']

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        try:
            with open(config_path) as f:
                file_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Error loading config file {config_path}: {e}") from e
        if not isinstance(file_config, dict):
            raise ConfigError(f"Config file {config_path} must contain a mapping")
        config.merge(file_config)
        logger.info(f"Loaded configuration from {config_path}")

    _apply_env(config, env)
    config.validate()
    return config
