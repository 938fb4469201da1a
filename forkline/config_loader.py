"""
Forkline Configuration Loader

Loads configuration from config.yaml with environment variable overrides.
Environment variables override YAML settings with format:
  FORKLINE_{SECTION}_{KEY}

Example:
  FORKLINE_SERVER_PORT=9000
  FORKLINE_OPENROUTER_TIMEOUT=30
"""

import logging
import os
import yaml
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "FORKLINE_"

# Default configuration (fallback if config.yaml missing)
DEFAULT_CONFIG = {
    "server": {
        "host": "127.0.0.1",
        "port": 8000,
        "cors_origins": ["*"],
        "log_level": "INFO"
    },
    "database": {
        "path": os.path.join(os.path.dirname(os.path.abspath(__file__)), "data", "forkline.db")
    },
    "openrouter": {
        "base_url": "https://openrouter.ai/api/v1",
        "timeout": 120.0,
        "api_key_setting": "openrouter.apiKey",
        "app_title": "Forkline",
        "referer": "http://localhost"
    },
    "chat": {
        "fallback_system_prompt": "You are a helpful AI assistant.",
        "failure_prefix": "Failed to fetch a response: ",
        "main_branch_name": "Main"
    }
}


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from config.yaml with environment variable overrides.

    Args:
        config_path: Path to config.yaml file (optional, auto-detected if not provided)

    Returns:
        Complete configuration dictionary with nested sections
    """
    config = _deep_merge(DEFAULT_CONFIG, {})

    if config_path is None:
        config_path = os.environ.get(f"{ENV_PREFIX}CONFIG")
    if config_path is None:
        base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        config_path = os.path.join(base_dir, "config.yaml")

    if os.path.exists(config_path):
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                yaml_config = yaml.safe_load(f)
                if yaml_config:
                    config = _deep_merge(config, yaml_config)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"[CONFIG] Failed to load {config_path}: {e}; using defaults")
    else:
        logger.info(f"[CONFIG] config.yaml not found at {config_path}, using defaults")

    return _apply_env_overrides(config)


def _deep_merge(base: Dict, override: Dict) -> Dict:
    """
    Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Override dictionary (values take precedence)

    Returns:
        Merged dictionary
    """
    result = {}
    for key, value in base.items():
        result[key] = _deep_merge(value, {}) if isinstance(value, dict) else value
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_overrides(config: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Format: FORKLINE_{SECTION}_{KEY}. The section is the first segment, the
    rest of the name is the key, so multi-word keys keep their underscores:

        FORKLINE_SERVER_LOG_LEVEL=DEBUG
        FORKLINE_CHAT_MAIN_BRANCH_NAME=Trunk
    """
    environ = os.environ if environ is None else environ

    for env_key, env_value in environ.items():
        if not env_key.startswith(ENV_PREFIX):
            continue

        remainder = env_key[len(ENV_PREFIX):].lower()
        section, _, key = remainder.partition('_')
        if not key or not isinstance(config.get(section), dict):
            continue

        target = config[section]
        if key not in target:
            continue

        current = target[key]
        try:
            if isinstance(current, bool):
                target[key] = env_value.lower() in ('true', '1', 'yes')
            elif isinstance(current, int):
                target[key] = int(env_value)
            elif isinstance(current, float):
                target[key] = float(env_value)
            elif isinstance(current, list):
                target[key] = [part.strip() for part in env_value.split(',') if part.strip()]
            else:
                target[key] = env_value
        except ValueError:
            logger.warning(f"[CONFIG] Ignoring {env_key}: cannot convert {env_value!r}")

    return config


# Global config instance (loaded once on import)
CONFIG = load_config()
