"""
Companion Configuration Loader

Loads configuration from config.yaml with environment variable overrides.
Environment variables override YAML settings with format:
  COMPANION_{SECTION}_{KEY}

Example:
  COMPANION_SERVER_PORT=9000
  COMPANION_MONGO_URI=mongodb://localhost:27017
  COMPANION_COMPLETION_MAX_ATTEMPTS=3
"""

import copy
import logging
import os
import yaml
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

# Default configuration (fallback if config.yaml missing)
DEFAULT_CONFIG = {
    "server": {
        "host": "0.0.0.0",
        "port": 8000,
        "cors_origins": ["*"],
        "log_level": "INFO",
        # Base URL used for self-calls (character regeneration)
        "api_base_url": "http://127.0.0.1:8000"
    },
    "mongo": {
        "uri": "mongodb://127.0.0.1:27017",
        "database": "companion"
    },
    "completion": {
        "max_attempts": 5,
        "backoff_base_ms": 1000,
        "max_empty_attempts": 2,
        "timeout": 60.0,
        "temperature": 1.0,
        "default_max_tokens": 600
    },
    "classifiers": {
        "model": "gpt-4o",
        "generator_model": "llama-3-70b",
        "suggestions_model": "deepseek-v3-turbo",
        "max_tokens": 800
    },
    "pipeline": {
        "image_points_threshold": 50,
        "goal_confidence_threshold": 70,
        "goal_short_conversation": 3,
        "upsell_confidence": 0.6,
        "upsell_window_hours": 24,
        "upsell_sample_size": 6,
        "regeneration_timeout": 120.0,
        "max_pending_image_tasks": 5,
        "default_model": "llama-3-70b",
        "japanese_model": "deepseek-v3-turbo"
    },
    "pricing": {
        "image_cost_per_image": 10,
        "goal_reward_easy": 100,
        "goal_reward_medium": 200,
        "goal_reward_hard": 300
    },
    "image": {
        "api_url": "http://127.0.0.1:7861/api/generate-image",
        "timeout": 30.0
    },
    "auth": {
        "jwt_secret": "dev-secret-change-me",
        "jwt_algorithm": "HS256"
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
    config = copy.deepcopy(DEFAULT_CONFIG)

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
            logger.warning(f"[CONFIG] Failed to load {config_path}: {e}")
            logger.warning("[CONFIG] Using default configuration")
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
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _coerce(current: Any, raw: str) -> Any:
    # bool must be checked before int
    if isinstance(current, bool):
        return raw.lower() in ('true', '1', 'yes')
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, list):
        return [item.strip() for item in raw.split(',') if item.strip()]
    return raw


def _apply_env_overrides(config: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Format: COMPANION_{SECTION}_{KEY}. The section is the first segment, the
    rest of the name is the key, so keys containing underscores work:

        COMPANION_SERVER_PORT=9000
        COMPANION_PIPELINE_UPSELL_WINDOW_HOURS=12
    """
    env_prefix = "COMPANION_"
    environ = os.environ if environ is None else environ

    for env_key, env_value in environ.items():
        if not env_key.startswith(env_prefix):
            continue

        parts = env_key[len(env_prefix):].lower().split('_')
        if len(parts) < 2:
            continue

        section = config.get(parts[0])
        if not isinstance(section, dict):
            continue

        final_key = '_'.join(parts[1:])
        if final_key not in section:
            continue

        try:
            section[final_key] = _coerce(section[final_key], env_value)
        except ValueError:
            logger.warning(f"[CONFIG] Ignoring {env_key}: cannot convert {env_value!r}")

    return config


# Global config instance (loaded once on import)
CONFIG = load_config()
