"""
Operator configuration.

Settings are read from a YAML file (CONFIG_PATH, or config.yaml in the
working directory) and completed with DEFAULTS. A handful of values that
usually come from the deployment rather than the file, such as the SMTP
password and the namespace to watch, may be supplied as environment
variables instead.
"""

import os
import yaml
import logging
from typing import Callable, Dict, Any, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when the configuration file is missing, unreadable or invalid."""
    pass


DEFAULTS = {
    'manager': {
        'workers': 4,
        'resync_interval_seconds': 300,
        'namespace': None,
    },
    'reconcile': {
        'retry_interval_seconds': 5,
        'max_parent_depth': 32,
    },
    'ldap': {
        'connection_timeout': 10,
        'receive_timeout': 10,
        'verify_ssl': True,
        'port': 636,
        'service_domain': 'svc',
        'max_retries': 3,
        'retry_wait_seconds': 2,
    },
    'logging': {
        'level': 'INFO',
        'log_dir': None,
        'rotation': 'daily',
        'retention_days': 7,
        'console_output': True,
        'console_level': 'INFO',
    },
    'notifications': {
        'enable_email': False,
        'email_on_failure': True,
        'smtp_port': 587,
        'smtp_tls': True,
    },
    'manifests': {
        'paths': [],
    },
}

LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


def _positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def _positive_integer(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


# (section, key, predicate, requirement)
FIELD_CHECKS: List[Tuple[str, str, Callable[[Any], bool], str]] = [
    ('manager', 'workers', _positive_integer, 'a positive integer'),
    ('manager', 'resync_interval_seconds', _positive_number, 'a positive number'),
    ('reconcile', 'retry_interval_seconds', _positive_number, 'a positive number'),
    ('reconcile', 'max_parent_depth', _positive_integer, 'a positive integer'),
    ('ldap', 'connection_timeout', _positive_number, 'a positive number'),
    ('ldap', 'receive_timeout', _positive_number, 'a positive number'),
    ('ldap', 'max_retries', _positive_integer, 'a positive integer'),
]


class ConfigLoader:
    """Reads, completes and validates the operator configuration."""
    
    # dotted config key -> environment variable
    ENV_OVERRIDES = {
        'notifications.smtp_password': 'SMTP_PASSWORD',
        'manager.namespace': 'WATCH_NAMESPACE',
    }
    
    def __init__(self, config_path: Optional[str] = None, allow_missing: bool = False):
        """
        Args:
            config_path: YAML file to read; defaults to $CONFIG_PATH, then config.yaml
            allow_missing: Start from DEFAULTS alone when the file does not exist
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.allow_missing = allow_missing
        self.config: Dict[str, Any] = {}
    
    def load(self) -> Dict[str, Any]:
        """
        Build the effective configuration.
        
        Returns:
            The configuration with every section of DEFAULTS present
        
        Raises:
            ConfigurationError: If the file is missing (and not allowed to be),
                is not valid YAML, or holds invalid values
        """
        self.config = self._read_file()
        
        for dotted_key, variable in self.ENV_OVERRIDES.items():
            value = os.getenv(variable)
            if value:
                section, key = dotted_key.split('.')
                if not isinstance(self.config.get(section), dict):
                    self.config[section] = {}
                self.config[section][key] = value
                logger.debug(f"{dotted_key} taken from ${variable}")
        
        self._fill_defaults()
        self._check(self._find_errors())
        
        logger.info(f"Configuration loaded from {self.config_path}")
        return self.config
    
    def _read_file(self) -> Dict[str, Any]:
        try:
            with open(self.config_path, 'r') as f:
                content = yaml.safe_load(f)
        except FileNotFoundError:
            if not self.allow_missing:
                raise ConfigurationError(f"Configuration file not found: {self.config_path}")
            logger.info(f"No configuration file at {self.config_path}, running with defaults")
            return {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {self.config_path}: {e}")
        
        if content is None:
            return {}
        if not isinstance(content, dict):
            raise ConfigurationError(f"{self.config_path} must contain a mapping at the top level")
        return content
    
    def _fill_defaults(self) -> None:
        for section, defaults in DEFAULTS.items():
            values = self.config.setdefault(section, {})
            if values is None:
                values = self.config[section] = {}
            if not isinstance(values, dict):
                continue
            for key, default in defaults.items():
                if key not in values:
                    values[key] = list(default) if isinstance(default, list) else default
        
        manifests = self.config['manifests']
        if isinstance(manifests, dict) and isinstance(manifests.get('paths'), str):
            manifests['paths'] = [manifests['paths']]
    
    def _find_errors(self) -> List[str]:
        malformed = [f"Section '{section}' must be a mapping"
                     for section in DEFAULTS if not isinstance(self.config[section], dict)]
        if malformed:
            return malformed
        
        errors = [f"{section}.{key} must be {requirement}"
                  for section, key, valid, requirement in FIELD_CHECKS
                  if not valid(self.config[section][key])]
        
        level = self.config['logging']['level']
        if str(level).upper() not in LOG_LEVELS:
            errors.append(f"Invalid logging level: {level}")
        
        notifications = self.config['notifications']
        if notifications.get('enable_email'):
            errors.extend(f"Missing required notifications field: {field}"
                          for field in ('smtp_server', 'email_to') if not notifications.get(field))
        
        return errors
    
    @staticmethod
    def _check(errors: List[str]) -> None:
        if errors:
            details = "\n".join(f"  - {error}" for error in errors)
            raise ConfigurationError(f"Configuration validation failed:\n{details}")


def load_config(config_path: Optional[str] = None, allow_missing: bool = False) -> Dict[str, Any]:
    """Load the operator configuration; see ConfigLoader."""
    return ConfigLoader(config_path, allow_missing=allow_missing).load()
