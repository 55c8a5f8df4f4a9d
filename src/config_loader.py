"""
Configuration loader for the LED controller provisioning service
Loads and validates configuration from YAML files
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional
from pathlib import Path
from datetime import datetime
import pytz

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/config.yaml"


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from YAML file with validation.
    The CONFIG_FILE environment variable overrides the default path.
    """
    config_path = config_path or os.environ.get('CONFIG_FILE', DEFAULT_CONFIG_PATH)
    try:
        config_file = Path(config_path)
        if not config_file.exists():
            logger.error(f"Configuration file not found: {config_path}")
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_file, 'r') as f:
            config = yaml.safe_load(f) or {}

        # Validate required sections
        _validate_config(config)

        # Apply defaults
        config = _apply_defaults(config)

        logger.info(f"Configuration loaded from {config_path}")
        return config

    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        raise


def _validate_config(config: Dict) -> None:
    """Validate that required configuration sections exist"""
    if 'registry' not in config:
        raise ValueError("Missing required configuration section: registry")

    registry = config['registry']
    required_registry_fields = ['host', 'port', 'database', 'username', 'password', 'owner_id']
    for field in required_registry_fields:
        if field not in registry:
            raise ValueError(f"Missing required registry field: {field}")

    provisioning = config.get('provisioning') or {}
    for key in ('max_credential_attempts', 'max_discovery_attempts', 'manual_verify_attempts'):
        if key in provisioning and (not isinstance(provisioning[key], int) or provisioning[key] < 1):
            raise ValueError(f"provisioning.{key} must be a positive integer")

    delays = provisioning.get('discovery_retry_delays')
    if delays is not None and (not isinstance(delays, list) or not delays):
        raise ValueError("provisioning.discovery_retry_delays must be a non-empty list")

    timezone_name = (config.get('logging') or {}).get('timezone')
    if timezone_name and timezone_name not in pytz.all_timezones_set:
        raise ValueError(f"Unknown logging.timezone: {timezone_name}")


def _fill(section: Dict, defaults: Dict) -> Dict:
    for key, default_value in defaults.items():
        if key not in section:
            section[key] = default_value
    return section


def _apply_defaults(config: Dict) -> Dict:
    """Apply default values to configuration"""

    # Credential transports
    transport = config.setdefault('transport', {})
    _fill(transport.setdefault('rpc', {}), {
        'scan_timeout': 15,
        'connect_timeout': 20,
        'write_timeout': 10,
        'result_grace_seconds': 20,
        'name_filters': ['WLED', 'ESP', 'Dig-Octa'],
    })
    _fill(transport.setdefault('http', {}), {
        'base_url': 'http://4.3.2.1',
        'request_timeout': 15,
        'flash_write_delay': 2,
        'reboot_timeout': 5,
    })

    # Discovery defaults
    _fill(config.setdefault('discovery', {}), {
        'discovery_timeout': 15,
        'request_timeout': 3,
        'service_type': '_wled._tcp.local.',
        'hostnames': ['wled.local'],
        'ip_ranges': [],
        'max_concurrent_probes': 10,
    })

    # Verification defaults
    _fill(config.setdefault('verification', {}), {
        'timeout_seconds': 12,
        'identity_path': '/json/info',
    })

    # Orchestrator defaults
    _fill(config.setdefault('provisioning', {}), {
        'settle_delay_seconds': 45,
        'max_credential_attempts': 3,
        'max_discovery_attempts': 3,
        'discovery_timeout_seconds': 15,
        'discovery_retry_delays': [2, 15],
        'manual_verify_attempts': 3,
        'manual_retry_delay_seconds': 10,
        'session_ttl_seconds': 900,
    })

    _fill(config['registry'], {
        'poll_interval': 5,
    })

    # API defaults
    _fill(config.setdefault('api', {}), {
        'host': '0.0.0.0',
        'port': 8000,
        'cors_origins': ['*'],
    })

    # Logging defaults
    _fill(config.setdefault('logging', {}), {
        'level': 'INFO',
        'file': 'logs/provisioning_server.log',
        'console_output': True,
        'timezone': 'UTC',
    })

    return config


class TimezoneFormatter(logging.Formatter):
    """Formatter that renders timestamps in a configured timezone"""

    def __init__(self, fmt=None, timezone_name: str = 'UTC'):
        super().__init__(fmt)
        self.tz = pytz.timezone(timezone_name)

    def formatTime(self, record, datefmt=None):
        dt = datetime.fromtimestamp(record.created, tz=self.tz)
        if datefmt:
            return dt.strftime(datefmt)
        else:
            # Default format: YYYY-MM-DD HH:MM:SS TZ
            return dt.strftime('%Y-%m-%d %H:%M:%S %Z')


def setup_logging(config: Dict) -> None:
    """Setup logging based on configuration with timezone-aware timestamps"""
    log_config = config.get('logging', {})
    level = log_config.get('level', 'INFO')
    timezone_name = log_config.get('timezone', 'UTC')

    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = TimezoneFormatter(log_format, timezone_name)

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=log_format,
        handlers=[]
    )

    if log_config.get('console_output', True):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logging.getLogger().addHandler(console_handler)

    log_file = log_config.get('file')
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logging.getLogger().addHandler(file_handler)

    logger.info(f"Logging configured ({timezone_name} timestamps): level={level}, "
                f"console={log_config.get('console_output', True)}, file={log_file}")


def get_sample_config() -> Dict:
    """Return a sample configuration for reference"""
    return {
        "transport": {
            "rpc": {
                "scan_timeout": 15,
                "connect_timeout": 20,
                "write_timeout": 10,
                "result_grace_seconds": 20,  # wait for the controller's own answer
                "name_filters": ["WLED", "ESP", "Dig-Octa"]
            },
            "http": {
                "base_url": "http://4.3.2.1",  # controller setup hotspot
                "request_timeout": 15,
                "flash_write_delay": 2,
                "reboot_timeout": 5
            }
        },
        "discovery": {
            "discovery_timeout": 15,
            "service_type": "_wled._tcp.local.",
            "hostnames": ["wled.local"],
            "ip_ranges": [],  # e.g. ["192.168.1.2-192.168.1.254"]
            "max_concurrent_probes": 10
        },
        "verification": {
            "timeout_seconds": 12
        },
        "provisioning": {
            "settle_delay_seconds": 45,
            "max_credential_attempts": 3,
            "max_discovery_attempts": 3,
            "discovery_retry_delays": [2, 15],
            "manual_verify_attempts": 3,
            "manual_retry_delay_seconds": 10,
            "session_ttl_seconds": 900
        },
        "registry": {
            "host": "localhost",
            "port": 5432,
            "database": "controllers_db",
            "username": "postgres",
            "password": "postgres",
            "owner_id": "local-owner"
        },
        "api": {
            "host": "0.0.0.0",
            "port": 8000,
            "cors_origins": ["*"]
        },
        "logging": {
            "level": "INFO",
            "file": "logs/provisioning_server.log",
            "console_output": True,
            "timezone": "UTC"
        }
    }
