"""
JSON-based configuration for the Trip Node
Single config.json file contains all configuration; environment variables override it
"""
import json
import os
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

# Environment variable -> (section, key, type)
ENV_OVERRIDES = {
    "DB_HOST": ("database", "host", str),
    "DB_PORT": ("database", "port", int),
    "DB_DATABASE": ("database", "name", str),
    "DB_USER": ("database", "user", str),
    "DB_PWD": ("database", "password", str),
    "RABBITMQ_HOST": ("rabbitmq", "host", str),
    "RABBITMQ_PORT": ("rabbitmq", "port", int),
    "RABBITMQ_USER": ("rabbitmq", "username", str),
    "RABBITMQ_PASSWORD": ("rabbitmq", "password", str),
    "RABBITMQ_QUEUE": ("rabbitmq", "queue", str),
    "WORKERS": ("consumer", "workers", int),
    "LOG_LEVEL": ("logging", "level", str),
    "HEALTH_PORT": ("health", "port", int),
}


class Config:
    """Main configuration class - loads from single config.json"""

    _config: Optional[Dict[str, Any]] = None
    _config_file: Optional[str] = None

    @classmethod
    def load(cls, file_path: Optional[str] = None) -> Dict[str, Any]:
        """Load configuration from JSON file"""
        if file_path:
            cls._config_file = file_path
            cls._config = None

        if cls._config is None:
            cls._config = cls._load_config()

        return cls._config

    @classmethod
    def reload(cls) -> Dict[str, Any]:
        """
        Force reload configuration from file.

        Clears the cached configuration, re-reads the file and re-applies
        environment overrides. Components that already copied values out of
        the configuration keep the old ones.
        """
        cls._config = None
        return cls.load()

    @classmethod
    def _load_config(cls) -> Dict[str, Any]:
        """Load JSON config with defaults, environment overrides and validation"""
        config_file = cls._find_config_file()

        try:
            if os.path.exists(config_file):
                with open(config_file, 'r', encoding='utf-8') as f:
                    config = json.load(f)
                logger.info(f"Loaded configuration from {config_file}")
                merged_config = cls._merge_with_defaults(config)
            else:
                logger.warning(f"Config file not found: {config_file}, using defaults")
                merged_config = cls._get_defaults()
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in config file: {e}", exc_info=True)
            merged_config = cls._get_defaults()
        except OSError as e:
            logger.error(f"Error reading config file: {e}", exc_info=True)
            merged_config = cls._get_defaults()

        cls._apply_env_overrides(merged_config)
        cls._validate_config(merged_config)
        return merged_config

    @classmethod
    def _apply_env_overrides(cls, config: Dict[str, Any]) -> None:
        """Apply deployment environment variables on top of file values"""
        for env_name, (section, key, cast) in ENV_OVERRIDES.items():
            raw = os.environ.get(env_name)
            if raw is None or raw == '':
                continue
            try:
                value = cast(raw)
            except ValueError:
                logger.warning(f"Ignoring {env_name}={raw!r}: expected {cast.__name__}")
                continue
            config.setdefault(section, {})[key] = value
            logger.debug(f"Config override from {env_name}: {section}.{key}")

    @classmethod
    def _validate_config(cls, config: Dict[str, Any]) -> None:
        """
        Validate configuration schema and values.

        Problems are logged as warnings; the node still starts so that
        health endpoints can report the degraded state.
        """
        required_sections = ['rabbitmq', 'consumer', 'processor', 'database']
        for section in required_sections:
            if section not in config:
                logger.warning(f"Missing required config section: {section}")

        rabbitmq_config = config.get('rabbitmq', {})
        if not rabbitmq_config.get('host'):
            logger.warning("RabbitMQ host not configured")
        if not rabbitmq_config.get('queue'):
            logger.warning("RabbitMQ queue not configured")

        numeric_checks = (
            ('consumer', 'workers', int, lambda v: v >= 1, "Consumer workers must be >= 1"),
            ('consumer', 'max_retries', int, lambda v: v >= 1, "Consumer max_retries must be >= 1"),
            ('processor', 'attempt_timeout', float, lambda v: v > 0, "Processor attempt_timeout must be > 0"),
        )
        for section, key, cast, valid, message in numeric_checks:
            raw = config.get(section, {}).get(key)
            if raw is None:
                continue
            try:
                value = cast(raw)
            except (TypeError, ValueError):
                logger.warning(f"Config {section}.{key}={raw!r} is not a number")
                continue
            if not valid(value):
                logger.warning(message)

        db_config = config.get('database', {})
        if not db_config.get('host'):
            logger.warning("Database host not configured")

        logger.debug("Configuration validation completed")

    @classmethod
    def _find_config_file(cls) -> str:
        """
        Locate config.json: explicit path, then TRIP_NODE_CONFIG, then the
        file next to this module.
        """
        if cls._config_file:
            return cls._config_file

        env_path = os.environ.get("TRIP_NODE_CONFIG")
        if env_path:
            return env_path

        node_dir = os.path.dirname(os.path.abspath(__file__))
        return os.path.join(node_dir, "config.json")

    @classmethod
    def _merge_with_defaults(cls, config: Dict[str, Any]) -> Dict[str, Any]:
        """Merge loaded config with defaults"""
        defaults = cls._get_defaults()
        result = defaults.copy()
        for key, value in config.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = {**result[key], **value}
            else:
                result[key] = value
        return result

    @classmethod
    def _get_defaults(cls) -> Dict[str, Any]:
        """Default configuration values for the trip node"""
        return {
            "rabbitmq": {
                "host": "localhost",
                "port": 5672,
                "virtual_host": "/",
                "username": "guest",
                "password": "guest",
                "exchange": "tracking_data_exchange",
                "queue": "trip_events_queue",
                "routing_key": "tracking.*.trip",
                "dead_letter_exchange": "dlx_tracking_data",
                "dead_letter_routing_key": "dlq_trip_events"
            },
            "consumer": {
                "workers": 2,
                "prefetch_count": 50,
                "max_retries": 5
            },
            "processor": {
                "attempt_timeout": 10.0,
                "store_retries": 3,
                "retry_initial_delay": 0.2,
                "retry_max_delay": 5.0,
                "max_point_jump_km": 10.0,
                "breaker_failure_threshold": 5,
                "breaker_recovery_timeout": 30.0
            },
            "decoder": {
                "odometer_scale": 1000
            },
            "database": {
                "host": "localhost",
                "port": 5432,
                "name": "siscom",
                "user": "postgres",
                "password": "",
                "pool_size": 10,
                "max_overflow": 20,
                "lock_timeout_ms": 5000
            },
            "health": {
                "port": 9091
            },
            "logging": {
                "log_file": "logs/trip_node.log",
                "level": "INFO",
                "max_bytes": 10485760,
                "backup_count": 5,
                "json_format": False
            }
        }

    @classmethod
    def get_database_config(cls) -> Dict[str, Any]:
        """Get database configuration"""
        return cls.load()["database"]


class ServerParams:
    """Node runtime parameters"""

    @classmethod
    def get(cls, key: str, default=None):
        """Get parameter using dot notation (e.g., 'processor.attempt_timeout')"""
        config = Config.load()
        keys = key.split('.')
        value = config
        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default
        return value if value is not None else default

    @classmethod
    def get_int(cls, key: str, default: int = 0) -> int:
        """Get integer parameter"""
        value = cls.get(key, default)
        try:
            return int(value)
        except (ValueError, TypeError):
            return default

    @classmethod
    def get_float(cls, key: str, default: float = 0.0) -> float:
        """Get float parameter"""
        value = cls.get(key, default)
        try:
            return float(value)
        except (ValueError, TypeError):
            return default

    @classmethod
    def get_bool(cls, key: str, default: bool = False) -> bool:
        """Get boolean parameter"""
        value = cls.get(key, default)
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ('true', '1', 'yes', 'on')
        return bool(value) if value is not None else default


# Auto-load config on module import
Config.load()
